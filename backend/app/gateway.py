"""Session gateway: the single enforcement point for the protected area.

Every request is classified by path. Protected paths need a valid session
whose identity is authorized; anything else is denied with one generic
outcome (a redirect to ``/login`` for pages, ``401`` for ``/api``). A dead
credential is cleared on the way out, an unauthorized-but-valid one is not.

Only ``CredentialCarrier`` reads, sets or clears the session cookie.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from urllib.parse import urlsplit

from fastapi import Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, RedirectResponse

from app.config import Settings
from app.db import StoreUnavailable
from app.models.auth import AdminSession, Role
from app.services.sessions import ClientMeta, SessionStore

logger = logging.getLogger(__name__)

LOGIN_PATH = "/login"
HOME_PATH = "/admin"
PUBLIC_PREFIXES = (
    "/static",
    "/images",
    "/api/auth",
    "/api/health",
    "/docs",
    "/redoc",
)
PUBLIC_EXACT = frozenset({"/favicon.ico", "/openapi.json"})
UNSAFE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
NO_STORE = {"Cache-Control": "no-store"}


class PathClass(str, Enum):
    PUBLIC = "public"
    LOGIN = "login"
    PROTECTED = "protected"


class Outcome(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    DENY_AND_CLEAR = "deny_and_clear"
    REDIRECT_PROTECTED = "redirect_protected"


@dataclass(frozen=True, slots=True)
class GatewayDecision:
    outcome: Outcome
    session: AdminSession | None = None


class CredentialCarrier:
    """HttpOnly, SameSite=strict session cookie scoped to the whole app."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    @property
    def name(self) -> str:
        return self._settings.session_cookie_name

    def read(self, request: Request) -> str | None:
        return request.cookies.get(self.name) or None

    def issue(self, response: Response, token: str, max_age: int) -> None:
        response.set_cookie(
            key=self.name,
            value=token,
            max_age=max_age,
            path="/",
            secure=self._settings.cookie_secure,
            httponly=True,
            samesite="strict",
        )

    def clear(self, response: Response) -> None:
        response.set_cookie(
            key=self.name,
            value="",
            max_age=0,
            path="/",
            secure=self._settings.cookie_secure,
            httponly=True,
            samesite="strict",
        )


def classify(path: str) -> PathClass:
    if path == LOGIN_PATH or path == LOGIN_PATH + "/":
        return PathClass.LOGIN
    if path in PUBLIC_EXACT:
        return PathClass.PUBLIC
    for prefix in PUBLIC_PREFIXES:
        if path == prefix or path.startswith(prefix + "/"):
            return PathClass.PUBLIC
    return PathClass.PROTECTED


def client_meta(request: Request) -> ClientMeta:
    return ClientMeta(
        user_agent=request.headers.get("user-agent"),
        ip_address=request.client.host if request.client else None,
    )


class SessionGateway:
    def __init__(
        self,
        settings: Settings,
        store: SessionStore,
        carrier: CredentialCarrier | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self.carrier = carrier or CredentialCarrier(settings)

    @property
    def store(self) -> SessionStore:
        return self._store

    def is_authorized(self, session: AdminSession) -> bool:
        if session.role != Role.ADMIN:
            return False
        allow = self._settings.admin_allow_list
        return not allow or session.identity in allow

    def evaluate(self, request: Request) -> GatewayDecision:
        """Decide what to do with *request*. Blocks on the store; call off-loop."""
        path_class = classify(request.url.path)
        if path_class is PathClass.PUBLIC:
            return GatewayDecision(Outcome.ALLOW)

        token = self.carrier.read(request)
        if token is None:
            if path_class is PathClass.LOGIN:
                return GatewayDecision(Outcome.ALLOW)
            return GatewayDecision(Outcome.DENY)

        try:
            session = self._store.validate(token, client_meta(request))
        except StoreUnavailable:
            logger.warning("Store unavailable; denying %s", request.url.path)
            if path_class is PathClass.LOGIN:
                return GatewayDecision(Outcome.ALLOW)
            return GatewayDecision(Outcome.DENY_AND_CLEAR)

        if session is None:
            return GatewayDecision(Outcome.DENY_AND_CLEAR)

        if not self.is_authorized(session):
            logger.info("Authenticated but not authorized: %s", session.identity)
            if path_class is PathClass.LOGIN:
                return GatewayDecision(Outcome.ALLOW)
            return GatewayDecision(Outcome.DENY)

        if path_class is PathClass.LOGIN:
            return GatewayDecision(Outcome.REDIRECT_PROTECTED, session)
        return GatewayDecision(Outcome.ALLOW, session)

    def check(self, request: Request) -> AdminSession | None:
        """Read-only status check. Store failure counts as unauthenticated."""
        try:
            return self._store.validate(self.carrier.read(request), client_meta(request))
        except StoreUnavailable:
            return None

    def keep_alive(self, request: Request) -> AdminSession | None:
        """Slide the caller's session. Store failure counts as unauthenticated."""
        try:
            return self._store.touch(self.carrier.read(request), meta=client_meta(request))
        except StoreUnavailable:
            return None

    def grant(self, response: Response, token: str, session: AdminSession | None = None) -> None:
        if session is not None:
            max_age = self._store.remaining_seconds(session)
        else:
            max_age = self._store.idle_seconds
            if self._store.absolute_seconds:
                max_age = min(max_age, self._store.absolute_seconds)
        self.carrier.issue(response, token, max_age)

    def withdraw(self, response: Response) -> None:
        self.carrier.clear(response)

    def deny_response(self, request: Request, clear: bool) -> Response:
        if request.url.path.startswith("/api/"):
            response: Response = JSONResponse(
                {"detail": "Unauthenticated"}, status_code=401, headers=NO_STORE
            )
        else:
            response = RedirectResponse(LOGIN_PATH, status_code=303, headers=NO_STORE)
        if clear:
            self.withdraw(response)
        return response

    def origin_allowed(self, request: Request) -> bool:
        """Reject cross-site writes whose Origin/Referer we don't serve."""
        if request.method.upper() not in UNSAFE_METHODS:
            return True
        source = request.headers.get("origin")
        if not source:
            referer = request.headers.get("referer")
            if not referer:
                return True
            parts = urlsplit(referer)
            source = f"{parts.scheme}://{parts.netloc}"
        source = source.rstrip("/")

        allowed = self._settings.origin_allow_list
        if allowed:
            return source in allowed
        return source == _public_origin(request)


def _public_origin(request: Request) -> str:
    proto = request.headers.get("x-forwarded-proto", request.url.scheme).split(",")[0].strip()
    host = request.headers.get("x-forwarded-host") or request.headers.get("host") or request.url.netloc
    return f"{proto}://{host.split(',')[0].strip()}"


async def session_gateway_middleware(request: Request, call_next):
    """HTTP middleware wiring the gateway into every request."""
    gateway: SessionGateway | None = getattr(request.app.state, "gateway", None)
    if gateway is None:
        if classify(request.url.path) is PathClass.PROTECTED:
            return JSONResponse(
                {"detail": "Service starting"}, status_code=503, headers=NO_STORE
            )
        return await call_next(request)

    if not gateway.origin_allowed(request):
        logger.warning(
            "Blocked cross-site %s %s from %s",
            request.method,
            request.url.path,
            request.headers.get("origin") or request.headers.get("referer"),
        )
        return JSONResponse(
            {"detail": "Cross-site request blocked"}, status_code=403, headers=NO_STORE
        )

    decision = await run_in_threadpool(gateway.evaluate, request)
    request.state.admin_session = decision.session

    if decision.outcome is Outcome.REDIRECT_PROTECTED:
        return RedirectResponse(HOME_PATH, status_code=303, headers=NO_STORE)

    if decision.outcome is Outcome.ALLOW:
        return await call_next(request)

    clear = decision.outcome is Outcome.DENY_AND_CLEAR
    if classify(request.url.path) is PathClass.LOGIN:
        # Dead credential on the login page: render the form and drop the cookie
        response = await call_next(request)
        if clear:
            gateway.withdraw(response)
        return response
    return gateway.deny_response(request, clear)
