"""Tests for one-time code issuance and verification."""
from __future__ import annotations

import threading
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlmodel import Session, SQLModel, select

from app.db import build_engine
from app.models.auth import AdminSession, OneTimeCode
from app.services.otp import (
    CodeRejected,
    CooldownActive,
    OtpService,
    VerifyFailure,
    normalize_identity,
)
from app.services.sessions import SessionHandle, SessionStore
from app.utils.clock import as_utc
from app.worker import JobType

from conftest import ADMIN, STRANGER, FakeClock, last_code, make_settings


def _record(session: Session, identity: str = ADMIN) -> OneTimeCode | None:
    session.expire_all()
    return session.exec(select(OneTimeCode).where(OneTimeCode.identity == identity)).first()


def _session_count(session: Session) -> int:
    return len(session.exec(select(AdminSession)).all())


def _wrong(code: str) -> str:
    return f"{(int(code) + 1) % 1_000_000:06d}"


# ── Issue ─────────────────────────────────────────────────────────────


class TestIssue:
    def test_issue_stores_code_and_queues_mail(self, otp_service, mail_worker, session, clock):
        otp_service.issue(ADMIN)

        record = _record(session)
        assert record is not None
        assert len(record.code) == 6 and record.code.isdigit()
        assert as_utc(record.expires_at) == clock.now + timedelta(seconds=600)
        assert as_utc(record.cooldown_until) == clock.now + timedelta(seconds=60)
        assert record.attempts == 0

        job = mail_worker.submit_job.call_args.args[0]
        assert job.job_type == JobType.OTP_EMAIL
        assert job.payload["to"] == ADMIN
        assert job.payload["code"] == record.code

    def test_identity_is_normalized(self, otp_service, session):
        otp_service.issue("  Admin@Example.COM ")
        assert _record(session) is not None
        assert normalize_identity("  Admin@Example.COM ") == ADMIN

    def test_unknown_identity_gets_no_mail(self, otp_service, mail_worker, session):
        otp_service.issue(STRANGER)

        mail_worker.submit_job.assert_not_called()
        record = _record(session, STRANGER)
        assert record is not None
        assert record.code == ""

    def test_mail_failure_does_not_propagate(self, otp_service, mail_worker, session):
        mail_worker.submit_job.side_effect = RuntimeError("queue full")
        otp_service.issue(ADMIN)
        assert _record(session) is not None

    def test_no_worker_still_issues(self, settings, session_store, engine, clock, session):
        service = OtpService(settings, session_store, worker=None, engine=engine, clock=clock)
        service.issue(ADMIN)
        assert _record(session) is not None


class TestCooldown:
    def test_second_issue_within_cooldown_rejected(self, otp_service, session, clock):
        otp_service.issue(ADMIN)
        original = _record(session)
        original_code, original_expiry = original.code, original.expires_at

        clock.advance(seconds=20)
        with pytest.raises(CooldownActive) as exc_info:
            otp_service.issue(ADMIN)

        assert exc_info.value.retry_after == 40
        record = _record(session)
        assert record.code == original_code
        assert record.expires_at == original_expiry

    def test_issue_after_cooldown_replaces_code(self, otp_service, mail_worker, session, clock):
        otp_service.issue(ADMIN)
        first = _record(session)
        first_id = first.id

        clock.advance(seconds=61)
        otp_service.issue(ADMIN)

        second = _record(session)
        assert second.id != first_id
        assert second.code == last_code(mail_worker)
        assert len(session.exec(select(OneTimeCode)).all()) == 1

    def test_unknown_identity_is_throttled_the_same_way(self, otp_service, clock):
        otp_service.issue(STRANGER)
        clock.advance(seconds=1)
        with pytest.raises(CooldownActive) as exc_info:
            otp_service.issue(STRANGER)
        assert exc_info.value.retry_after == 59

    def test_reissue_resets_attempts(self, otp_service, mail_worker, session, clock):
        otp_service.issue(ADMIN)
        code = last_code(mail_worker)
        for _ in range(3):
            with pytest.raises(CodeRejected):
                otp_service.verify(ADMIN, _wrong(code))

        clock.advance(seconds=61)
        otp_service.issue(ADMIN)
        assert _record(session).attempts == 0


# ── Verify ────────────────────────────────────────────────────────────


class TestVerify:
    def test_correct_code_creates_session(self, otp_service, mail_worker, session):
        otp_service.issue(ADMIN)
        handle = otp_service.verify(ADMIN, last_code(mail_worker))

        assert isinstance(handle, SessionHandle)
        assert _record(session) is None
        assert _session_count(session) == 1

    def test_single_use(self, otp_service, mail_worker, session):
        otp_service.issue(ADMIN)
        code = last_code(mail_worker)
        otp_service.verify(ADMIN, code)

        with pytest.raises(CodeRejected) as exc_info:
            otp_service.verify(ADMIN, code)

        assert exc_info.value.reason == VerifyFailure.NO_CODE
        assert _session_count(session) == 1

    def test_wrong_code_counts_attempt(self, otp_service, mail_worker, session):
        otp_service.issue(ADMIN)
        code = last_code(mail_worker)

        with pytest.raises(CodeRejected) as exc_info:
            otp_service.verify(ADMIN, _wrong(code))

        assert exc_info.value.reason == VerifyFailure.INVALID
        assert _record(session).attempts == 1

    def test_expired_code_rejected_and_deleted(self, otp_service, mail_worker, session, clock):
        otp_service.issue(ADMIN)
        code = last_code(mail_worker)
        clock.advance(seconds=601)

        with pytest.raises(CodeRejected) as exc_info:
            otp_service.verify(ADMIN, code)

        assert exc_info.value.reason == VerifyFailure.EXPIRED
        assert _record(session) is None
        assert _session_count(session) == 0

    def test_attempt_ceiling_locks_out_correct_code(self, otp_service, mail_worker, session):
        otp_service.issue(ADMIN)
        code = last_code(mail_worker)

        for _ in range(5):
            with pytest.raises(CodeRejected):
                otp_service.verify(ADMIN, _wrong(code))

        with pytest.raises(CodeRejected) as exc_info:
            otp_service.verify(ADMIN, code)

        assert exc_info.value.reason == VerifyFailure.LOCKED
        assert _record(session) is None
        assert _session_count(session) == 0

    def test_not_allowed_identity(self, otp_service):
        with pytest.raises(CodeRejected) as exc_info:
            otp_service.verify(STRANGER, "123456")
        assert exc_info.value.reason == VerifyFailure.NOT_ALLOWED

    def test_no_code_issued(self, otp_service):
        with pytest.raises(CodeRejected) as exc_info:
            otp_service.verify(ADMIN, "123456")
        assert exc_info.value.reason == VerifyFailure.NO_CODE

    def test_all_failures_share_one_message_type(self, otp_service):
        errors = []
        for identity in (STRANGER, ADMIN):
            with pytest.raises(CodeRejected) as exc_info:
                otp_service.verify(identity, "123456")
            errors.append(exc_info.value)
        assert all(isinstance(e, ValueError) for e in errors)


class TestPurgeExpired:
    def test_removes_only_dead_records(self, otp_service, session, clock):
        otp_service.issue(ADMIN)
        clock.advance(seconds=601)
        otp_service.issue("editor@example.com")

        assert otp_service.purge_expired() == 1
        assert _record(session) is None
        assert _record(session, "editor@example.com") is not None


# ── Concurrency ───────────────────────────────────────────────────────


class TestConcurrentVerify:
    def test_two_simultaneous_correct_submissions_yield_one_session(self, tmp_path):
        """Separate connections on a file database, racing on one code."""
        engine = build_engine(f"sqlite:///{tmp_path / 'race.db'}", 5.0)
        SQLModel.metadata.create_all(engine)
        settings = make_settings()
        clock = FakeClock()
        store = SessionStore(settings, engine=engine, clock=clock)
        worker = MagicMock()
        service = OtpService(settings, store, worker=worker, engine=engine, clock=clock)

        service.issue(ADMIN)
        code = last_code(worker)

        barrier = threading.Barrier(2)
        results: list[object] = []
        lock = threading.Lock()

        def attempt() -> None:
            barrier.wait()
            try:
                outcome: object = service.verify(ADMIN, code)
            except CodeRejected as exc:
                outcome = exc.reason
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=attempt) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        successes = [r for r in results if isinstance(r, SessionHandle)]
        failures = [r for r in results if isinstance(r, VerifyFailure)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert failures[0] in (VerifyFailure.NO_CODE, VerifyFailure.INVALID)

        with Session(engine) as session:
            assert _session_count(session) == 1
        engine.dispose()


class TestConcurrentIssue:
    def _race(self, service: OtpService, threads: int) -> list[str]:
        barrier = threading.Barrier(threads)
        results: list[str] = []
        lock = threading.Lock()

        def request() -> None:
            barrier.wait()
            try:
                service.issue(ADMIN)
                outcome = "ok"
            except CooldownActive:
                outcome = "cooldown"
            with lock:
                results.append(outcome)

        workers = [threading.Thread(target=request) for _ in range(threads)]
        for t in workers:
            t.start()
        for t in workers:
            t.join(timeout=30)
        return sorted(results)

    def test_simultaneous_requests_issue_exactly_once(self, tmp_path):
        """First-time inserts and cooldown-expired overwrites both admit one winner."""
        engine = build_engine(f"sqlite:///{tmp_path / 'issue-race.db'}", 5.0)
        SQLModel.metadata.create_all(engine)
        settings = make_settings()
        clock = FakeClock()
        store = SessionStore(settings, engine=engine, clock=clock)
        worker = MagicMock()
        service = OtpService(settings, store, worker=worker, engine=engine, clock=clock)

        assert self._race(service, 4) == ["cooldown", "cooldown", "cooldown", "ok"]
        assert worker.submit_job.call_count == 1
        with Session(engine) as session:
            first_id = session.exec(select(OneTimeCode)).one().id

        clock.advance(seconds=settings.otp_cooldown_seconds)
        assert self._race(service, 4) == ["cooldown", "cooldown", "cooldown", "ok"]
        assert worker.submit_job.call_count == 2

        with Session(engine) as session:
            records = session.exec(select(OneTimeCode)).all()
        assert len(records) == 1
        assert records[0].id != first_id
        assert records[0].code == last_code(worker)
        engine.dispose()
