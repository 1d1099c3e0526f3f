"""Auth models and schemas for one-time-code login.

Includes SQLModel tables for pending one-time codes (one row per identity)
and server-side admin sessions, plus Pydantic request/response schemas.
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, Field as PydanticField, field_validator
from sqlmodel import Field, SQLModel

from app.utils.clock import as_utc


class Role(str, Enum):
    ADMIN = "admin"


class OneTimeCode(SQLModel, table=True):
    """Pending login code for an identity.

    At most one row per identity. The ``id`` is regenerated on every
    issuance, so conditional updates/deletes keyed on it only ever hit
    the record the caller actually read.
    """

    __tablename__ = "one_time_codes"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    identity: str = Field(index=True, unique=True)
    code: str
    issued_at: datetime
    expires_at: datetime
    cooldown_until: datetime
    attempts: int = Field(default=0)


class AdminSession(SQLModel, table=True):
    """Server-side session record.

    ``id`` is the SHA-256 of the bearer token (never store raw). Rows are
    tombstoned on logout via ``revoked``, not deleted.
    """

    __tablename__ = "admin_sessions"

    id: str = Field(primary_key=True)
    identity: str = Field(index=True)
    role: Role = Field(default=Role.ADMIN)
    created_at: datetime
    expires_at: datetime
    revoked: bool = Field(default=False)
    revoked_at: datetime | None = Field(default=None)
    user_agent: str | None = Field(default=None)
    ip_address: str | None = Field(default=None)


# --- Pydantic request/response schemas ---

_EMAIL_SHAPE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _check_identity(v: str) -> str:
    v = v.strip()
    if not _EMAIL_SHAPE.match(v):
        raise ValueError("identity must be an email address")
    return v


class CodeRequest(BaseModel):
    """Ask for a login code to be mailed to an identity."""

    identity: str = PydanticField(
        min_length=3,
        max_length=320,
        validation_alias=AliasChoices("identity", "email"),
    )

    @field_validator("identity")
    @classmethod
    def identity_is_email(cls, v: str) -> str:
        return _check_identity(v)


class VerifyRequest(BaseModel):
    """Submit the code received by mail."""

    identity: str = PydanticField(
        min_length=3,
        max_length=320,
        validation_alias=AliasChoices("identity", "email"),
    )
    code: str = PydanticField(pattern=r"^\d{6}$")

    @field_validator("identity")
    @classmethod
    def identity_is_email(cls, v: str) -> str:
        return _check_identity(v)


class SessionResponse(BaseModel):
    ok: bool = True
    expires_at: datetime

    @field_validator("expires_at")
    @classmethod
    def expires_at_utc(cls, v: datetime) -> datetime:
        return as_utc(v)


class StatusResponse(BaseModel):
    ok: bool = True
    identity: str
    expires_at: datetime

    @field_validator("expires_at")
    @classmethod
    def expires_at_utc(cls, v: datetime) -> datetime:
        return as_utc(v)


class WhoAmIResponse(BaseModel):
    ok: bool = True
    who: str
    role: Role
