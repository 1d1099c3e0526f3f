"""One-time login codes: issuance (with cooldown) and single-use verification.

Every write here is conditional so the guarantees hold across processes
sharing the same database:

* issuance only overwrites a record whose cooldown has passed, and the
  unique index on ``identity`` arbitrates two racing first-time issues;
* verification bumps ``attempts`` and consumes the record with statements
  keyed on the record ``id`` it read, so of two racing correct submissions
  exactly one deletes the row and gets a session.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING
from uuid import uuid4

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from app.config import Settings
from app.db import store_session
from app.models.auth import OneTimeCode
from app.services.sessions import ClientMeta, SessionHandle, SessionStore
from app.utils.clock import as_utc, utcnow
from app.utils.crypto import constant_time_equals, generate_otp_code

if TYPE_CHECKING:
    from app.worker import BackgroundWorker

logger = logging.getLogger(__name__)


class VerifyFailure(str, Enum):
    NOT_ALLOWED = "not_allowed"
    NO_CODE = "no_code"
    EXPIRED = "expired"
    LOCKED = "locked"
    INVALID = "invalid"


class CodeRejected(ValueError):
    """Verification failed. ``reason`` is for logs and tests, never for clients."""

    def __init__(self, reason: VerifyFailure) -> None:
        super().__init__(f"Code rejected: {reason.value}")
        self.reason = reason


class CooldownActive(Exception):
    """A code was issued too recently for this identity."""

    def __init__(self, retry_after: int) -> None:
        super().__init__(f"Cooldown active, retry after {retry_after}s")
        self.retry_after = retry_after


def normalize_identity(identity: str) -> str:
    return identity.strip().lower()


class OtpService:
    def __init__(
        self,
        settings: Settings,
        sessions: SessionStore,
        worker: BackgroundWorker | None = None,
        engine=None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = settings
        self._sessions = sessions
        self._worker = worker
        self._engine = engine
        self._clock = clock

    def issue(self, identity: str) -> None:
        """Issue (and mail) a fresh code, subject to the per-identity cooldown.

        Unrecognized identities get a throttle-only record (empty code, no
        mail) so their rate-limit behaviour matches recognized ones.
        Raises CooldownActive or StoreUnavailable.
        """
        identity = normalize_identity(identity)
        allowed = identity in self._settings.otp_allow_list
        now = self._clock()
        code = generate_otp_code() if allowed else ""

        with store_session(self._engine) as db:
            existing = db.exec(
                select(OneTimeCode).where(OneTimeCode.identity == identity)
            ).first()
            if existing is not None and now < as_utc(existing.cooldown_until):
                raise CooldownActive(self._retry_after(as_utc(existing.cooldown_until), now))

            values = {
                "id": str(uuid4()),
                "code": code,
                "issued_at": now,
                "expires_at": now + timedelta(seconds=self._settings.otp_code_ttl_seconds),
                "cooldown_until": now + timedelta(seconds=self._settings.otp_cooldown_seconds),
                "attempts": 0,
            }
            replaced = db.exec(
                update(OneTimeCode)
                .where(
                    OneTimeCode.identity == identity,
                    OneTimeCode.cooldown_until <= now,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if replaced.rowcount == 0:
                db.add(OneTimeCode(identity=identity, **values))
                try:
                    db.commit()
                except IntegrityError:
                    # Another request issued for this identity in the meantime
                    db.rollback()
                    winner = db.exec(
                        select(OneTimeCode).where(OneTimeCode.identity == identity)
                    ).first()
                    until = as_utc(winner.cooldown_until) if winner is not None else now
                    raise CooldownActive(self._retry_after(until, now))
            else:
                db.commit()

        if not allowed:
            logger.info("Code requested for an identity outside the allow-list")
            return

        logger.info("Issued login code for %s", identity)
        self._dispatch(identity, code, values["expires_at"])

    def verify(
        self, identity: str, code: str, meta: ClientMeta | None = None
    ) -> SessionHandle:
        """Consume a matching code and open a session.

        Raises CodeRejected or StoreUnavailable.
        """
        identity = normalize_identity(identity)
        if identity not in self._settings.otp_allow_list:
            raise CodeRejected(VerifyFailure.NOT_ALLOWED)

        max_attempts = self._settings.otp_max_attempts
        now = self._clock()

        with store_session(self._engine) as db:
            record = db.exec(
                select(OneTimeCode).where(OneTimeCode.identity == identity)
            ).first()
            if record is None or not record.code:
                raise CodeRejected(VerifyFailure.NO_CODE)

            record_id = record.id
            expected = record.code

            if now >= as_utc(record.expires_at):
                self._discard(db, record_id)
                raise CodeRejected(VerifyFailure.EXPIRED)
            if record.attempts >= max_attempts:
                self._discard(db, record_id)
                raise CodeRejected(VerifyFailure.LOCKED)

            bumped = db.exec(
                update(OneTimeCode)
                .where(
                    OneTimeCode.id == record_id,
                    OneTimeCode.attempts < max_attempts,
                )
                .values(attempts=OneTimeCode.attempts + 1)
            )
            db.commit()
            if bumped.rowcount == 0:
                raise CodeRejected(VerifyFailure.NO_CODE)

            if not constant_time_equals(expected, code.strip()):
                raise CodeRejected(VerifyFailure.INVALID)

            consumed = db.exec(delete(OneTimeCode).where(OneTimeCode.id == record_id))
            db.commit()
            if consumed.rowcount == 0:
                # A concurrent submission consumed it first
                raise CodeRejected(VerifyFailure.NO_CODE)

        logger.info("Login code accepted for %s", identity)
        return self._sessions.create(identity, meta=meta)

    def purge_expired(self) -> int:
        """Delete code records that are past both expiry and cooldown."""
        now = self._clock()
        with store_session(self._engine) as db:
            result = db.exec(
                delete(OneTimeCode).where(
                    OneTimeCode.expires_at <= now,
                    OneTimeCode.cooldown_until <= now,
                )
            )
            db.commit()
        return result.rowcount or 0

    def _dispatch(self, identity: str, code: str, expires_at: datetime) -> None:
        """Hand the code to the outbound mail queue. Never raises."""
        if self._worker is None:
            logger.warning("No outbound mail worker; login code for %s not delivered", identity)
            return
        from app.worker import Job, JobType

        try:
            self._worker.submit_job(
                Job(
                    job_type=JobType.OTP_EMAIL,
                    payload={
                        "to": identity,
                        "code": code,
                        "expires_at": expires_at.isoformat(),
                        "ttl_minutes": max(1, self._settings.otp_code_ttl_seconds // 60),
                    },
                )
            )
        except Exception:
            logger.exception("Failed to enqueue login code mail for %s", identity)

    @staticmethod
    def _discard(db, record_id: str) -> None:
        db.exec(delete(OneTimeCode).where(OneTimeCode.id == record_id))
        db.commit()

    @staticmethod
    def _retry_after(until: datetime, now: datetime) -> int:
        return max(1, math.ceil((until - now).total_seconds()))
