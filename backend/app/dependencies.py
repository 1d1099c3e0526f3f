"""FastAPI dependency injection for the auth services built at startup."""

from __future__ import annotations

from fastapi import HTTPException, Request

from app.gateway import SessionGateway
from app.models.auth import AdminSession
from app.services.otp import OtpService


def get_gateway(request: Request) -> SessionGateway:
    """Inject the SessionGateway initialized at startup."""
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise HTTPException(status_code=503, detail="Auth service unavailable")
    return gateway


def get_otp_service(request: Request) -> OtpService:
    """Inject the OtpService initialized at startup."""
    svc = getattr(request.app.state, "otp_service", None)
    if svc is None:
        raise HTTPException(status_code=503, detail="Auth service unavailable")
    return svc


def require_auth(request: Request) -> AdminSession:
    """Session admitted by the gateway middleware.

    Use for protected endpoints; the gateway has already denied anything
    unauthenticated, so this only guards against misrouted paths.
    """
    session = getattr(request.state, "admin_session", None)
    if session is None:
        raise HTTPException(status_code=401, detail="Unauthenticated")
    return session
