"""Low-level token primitives for the admin auth flow.

Pure functions with no domain knowledge.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

SESSION_TOKEN_BYTES = 32
OTP_DIGITS = 6


def generate_session_token() -> str:
    """Return a fresh opaque bearer token (64 hex chars, 256 bits of entropy)."""
    return secrets.token_hex(SESSION_TOKEN_BYTES)


def generate_otp_code(digits: int = OTP_DIGITS) -> str:
    """Uniform random numeric code, left-zero-padded to *digits*."""
    return f"{secrets.randbelow(10 ** digits):0{digits}d}"


def sha256_hash(data: bytes) -> str:
    """Compute SHA-256 hash. Returns hex-encoded digest."""
    return hashlib.sha256(data).hexdigest()


def token_id(token: str) -> str:
    """Storage key for a bearer token."""
    return sha256_hash(token.encode("utf-8"))


def constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
