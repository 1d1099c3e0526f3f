"""Auth endpoints: request code, verify code, extend, status, logout.

Passwordless login by one-time code mailed to an allow-listed address,
backed by server-side revocable sessions carried in an HttpOnly cookie.
Every failure collapses to one generic body per endpoint so responses
never reveal whether an identity is known.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from app.db import StoreUnavailable
from app.dependencies import get_gateway, get_otp_service
from app.gateway import NO_STORE, SessionGateway, client_meta
from app.models.auth import CodeRequest, SessionResponse, StatusResponse, VerifyRequest
from app.services.otp import CodeRejected, CooldownActive, OtpService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

CODE_SENT_MESSAGE = "If the email is allowed, a code has been sent."
INVALID_CODE_DETAIL = "Invalid or expired code"


def _unauthenticated(gateway: SessionGateway) -> JSONResponse:
    response = JSONResponse(
        {"ok": False, "detail": "Unauthenticated"}, status_code=401, headers=NO_STORE
    )
    gateway.withdraw(response)
    return response


def _unavailable() -> JSONResponse:
    return JSONResponse({"detail": "Try again later"}, status_code=503, headers=NO_STORE)


@router.post("/code")
def request_code(
    body: CodeRequest,
    otp: OtpService = Depends(get_otp_service),
) -> JSONResponse:
    """Mail a login code. Same answer whether or not the address is allowed."""
    try:
        otp.issue(body.identity)
    except CooldownActive as exc:
        return JSONResponse(
            {
                "ok": False,
                "detail": "Please wait before requesting another code",
                "retry_after": exc.retry_after,
            },
            status_code=429,
            headers={**NO_STORE, "Retry-After": str(exc.retry_after)},
        )
    except StoreUnavailable:
        return _unavailable()

    return JSONResponse({"ok": True, "message": CODE_SENT_MESSAGE}, headers=NO_STORE)


@router.post("/verify")
def verify_code(
    body: VerifyRequest,
    request: Request,
    otp: OtpService = Depends(get_otp_service),
    gateway: SessionGateway = Depends(get_gateway),
) -> JSONResponse:
    """Exchange a valid code for a session cookie."""
    try:
        handle = otp.verify(body.identity, body.code, meta=client_meta(request))
    except CodeRejected as exc:
        logger.info("Code verification failed: %s", exc.reason.value)
        return JSONResponse(
            {"ok": False, "detail": INVALID_CODE_DETAIL}, status_code=401, headers=NO_STORE
        )
    except StoreUnavailable:
        return _unavailable()

    response = JSONResponse(
        SessionResponse(expires_at=handle.expires_at).model_dump(mode="json"),
        headers=NO_STORE,
    )
    gateway.grant(response, handle.token)
    return response


@router.post("/extend")
def extend(
    request: Request,
    gateway: SessionGateway = Depends(get_gateway),
) -> JSONResponse:
    """Slide the idle deadline. Clients call this only while the user is active."""
    session = gateway.keep_alive(request)
    if session is None:
        return _unauthenticated(gateway)

    response = JSONResponse(
        SessionResponse(expires_at=session.expires_at).model_dump(mode="json"),
        headers=NO_STORE,
    )
    gateway.grant(response, gateway.carrier.read(request), session)
    return response


@router.get("/status")
def status(
    request: Request,
    gateway: SessionGateway = Depends(get_gateway),
) -> JSONResponse:
    """Read-only session check; never extends."""
    session = gateway.check(request)
    if session is None:
        return _unauthenticated(gateway)
    return JSONResponse(
        StatusResponse(identity=session.identity, expires_at=session.expires_at).model_dump(
            mode="json"
        ),
        headers=NO_STORE,
    )


@router.post("/logout")
def logout(
    request: Request,
    gateway: SessionGateway = Depends(get_gateway),
) -> JSONResponse:
    """Revoke the current session and clear the cookie. Always succeeds."""
    try:
        gateway.store.revoke(gateway.carrier.read(request))
    except StoreUnavailable:
        logger.error("Logout could not revoke the session; clearing cookie only")

    response = JSONResponse({"ok": True}, headers=NO_STORE)
    gateway.withdraw(response)
    return response
