"""Server-side admin sessions: create, validate, slide, revoke.

Sessions are opaque random tokens whose validity is decided only by the
``admin_sessions`` table. The raw token lives in the caller's cookie; the
table is keyed by its SHA-256.

Two deadlines apply to every session:

* an idle deadline (``expires_at``) pushed forward by ``touch``;
* an optional absolute deadline (``created_at + SESSION_ABSOLUTE_SECONDS``)
  that no amount of touching can extend.

``touch`` performs its validity check and the extension in one conditional
UPDATE, so a keep-alive racing a logout or an expiry can never bring a dead
session back.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, or_, update

from app.config import Settings
from app.db import store_session
from app.models.auth import AdminSession, Role
from app.utils.clock import as_utc, utcnow
from app.utils.crypto import generate_session_token, token_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ClientMeta:
    """Soft device-binding data captured from the request."""

    user_agent: str | None = None
    ip_address: str | None = None


@dataclass(frozen=True, slots=True)
class SessionHandle:
    """What the caller gets back from a successful login."""

    token: str
    expires_at: datetime


class SessionStore:
    def __init__(
        self,
        settings: Settings,
        engine=None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = settings
        self._engine = engine
        self._clock = clock

    @property
    def idle_seconds(self) -> int:
        return self._settings.session_idle_seconds

    @property
    def absolute_seconds(self) -> int:
        return self._settings.session_absolute_seconds

    def create(
        self,
        identity: str,
        idle_ttl: int | None = None,
        meta: ClientMeta | None = None,
        role: Role = Role.ADMIN,
    ) -> SessionHandle:
        """Allocate a fresh token and persist its session row."""
        idle = idle_ttl if idle_ttl is not None else self.idle_seconds
        meta = meta or ClientMeta()
        now = self._clock()
        token = generate_session_token()
        expires_at = now + timedelta(seconds=idle)

        row = AdminSession(
            id=token_id(token),
            identity=identity,
            role=Role(role),
            created_at=now,
            expires_at=expires_at,
            user_agent=meta.user_agent,
            ip_address=meta.ip_address,
        )
        with store_session(self._engine) as db:
            db.add(row)
            db.commit()

        logger.info("Session created for %s, idle expiry %s", identity, expires_at.isoformat())
        return SessionHandle(token=token, expires_at=expires_at)

    def validate(
        self, token: str | None, meta: ClientMeta | None = None
    ) -> AdminSession | None:
        """Return the session if usable, else None. Never mutates."""
        if not token:
            return None
        with store_session(self._engine) as db:
            row = db.get(AdminSession, token_id(token))
        if row is None:
            return None
        if not self.is_usable(row, self._clock()):
            return None
        if meta is not None and not self._binding_matches(row, meta):
            logger.warning("Session binding mismatch for %s", row.identity)
            return None
        return row

    def touch(
        self,
        token: str | None,
        idle_ttl: int | None = None,
        meta: ClientMeta | None = None,
    ) -> AdminSession | None:
        """Slide the idle deadline of a usable session.

        Returns the refreshed session, or None (with nothing written) when
        the session is missing, revoked, idle-expired or past its cap.
        """
        if self.validate(token, meta) is None:
            return None

        idle = idle_ttl if idle_ttl is not None else self.idle_seconds
        now = self._clock()
        session_id = token_id(token)

        stmt = update(AdminSession).where(
            AdminSession.id == session_id,
            AdminSession.revoked == False,  # noqa: E712
            AdminSession.expires_at > now,
        )
        if self.absolute_seconds:
            stmt = stmt.where(
                AdminSession.created_at > now - timedelta(seconds=self.absolute_seconds)
            )
        stmt = stmt.values(expires_at=now + timedelta(seconds=idle))

        with store_session(self._engine) as db:
            result = db.exec(stmt)
            db.commit()
            if result.rowcount == 0:
                # Died between the check and the write
                return None
            return db.get(AdminSession, session_id)

    def revoke(self, token: str | None) -> None:
        """Tombstone a session. Unknown tokens are treated as already revoked."""
        if not token:
            return
        stmt = (
            update(AdminSession)
            .where(
                AdminSession.id == token_id(token),
                AdminSession.revoked == False,  # noqa: E712
            )
            .values(revoked=True, revoked_at=self._clock())
        )
        with store_session(self._engine) as db:
            result = db.exec(stmt)
            db.commit()
        if result.rowcount:
            logger.info("Session revoked")

    def purge_stale(self, retention: timedelta) -> int:
        """Delete sessions revoked or expired for longer than *retention*.

        Maintenance only; never called on the request path.
        """
        cutoff = self._clock() - retention
        conditions = [
            AdminSession.expires_at < cutoff,
            AdminSession.revoked_at < cutoff,
        ]
        if self.absolute_seconds:
            conditions.append(
                AdminSession.created_at < cutoff - timedelta(seconds=self.absolute_seconds)
            )
        with store_session(self._engine) as db:
            result = db.exec(delete(AdminSession).where(or_(*conditions)))
            db.commit()
        return result.rowcount or 0

    def remaining_seconds(self, session: AdminSession) -> int:
        """Seconds until the earlier of the idle and absolute deadlines."""
        deadline = as_utc(session.expires_at)
        if self.absolute_seconds:
            cap = as_utc(session.created_at) + timedelta(seconds=self.absolute_seconds)
            deadline = min(deadline, cap)
        return max(0, int((deadline - self._clock()).total_seconds()))

    def is_usable(self, session: AdminSession, now: datetime) -> bool:
        if session.revoked:
            return False
        if now >= as_utc(session.expires_at):
            return False
        if self.absolute_seconds and now >= as_utc(session.created_at) + timedelta(
            seconds=self.absolute_seconds
        ):
            return False
        return True

    def _binding_matches(self, session: AdminSession, meta: ClientMeta) -> bool:
        checks: list[tuple[str | None, str | None]] = []
        if self._settings.session_bind_user_agent:
            checks.append((session.user_agent, meta.user_agent))
        if self._settings.session_bind_ip:
            checks.append((session.ip_address, meta.ip_address))
        return all(not stored or stored == supplied for stored, supplied in checks)
