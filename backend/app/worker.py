"""Background job processor for outbound login-code mail and store maintenance.

Runs a daemon thread that processes jobs from a thread-safe queue.
Jobs are submitted from FastAPI request handlers (and the maintenance
loop) and processed off the request path, so a slow or failing SMTP
server never delays a login response.

Mail jobs are persisted to the database with configurable retry and
exponential backoff. Once a mail job reaches a terminal state its code
is redacted from the stored payload.
"""

from __future__ import annotations

import json
import logging
import threading
import traceback
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from queue import Empty, Queue

from sqlalchemy import func
from sqlmodel import Session, select

from app.config import Settings
from app.models.job import BackgroundJob, JobStatus
from app.services.mailer import Mailer
from app.utils.clock import as_utc, utcnow

logger = logging.getLogger(__name__)

REDACTED = "******"


def _scrub(text: str, payload: dict) -> str:
    """Strip the code and recipient from error text before it is stored."""
    for secret in (payload.get("code"), payload.get("to")):
        if secret:
            text = text.replace(secret, REDACTED)
    return text


class JobType(str, Enum):
    OTP_EMAIL = "otp_email"  # Deliver a login code
    SESSION_SWEEP = "session_sweep"  # Purge stale sessions and spent codes


@dataclass
class Job:
    job_type: JobType
    payload: dict  # Contents depend on job_type


class BackgroundWorker:
    """Background job processor.

    Failed mail jobs are persisted and retried with exponential backoff.
    """

    __slots__ = (
        "_queue",
        "_thread",
        "_stop_event",
        "_mailer",
        "_settings",
    )

    def __init__(self, mailer: Mailer, settings: Settings | None = None) -> None:
        self._queue: Queue[Job] = Queue()
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._mailer = mailer
        if settings is None:
            from app.config import get_settings
            settings = get_settings()
        self._settings = settings

    def start(self) -> None:
        """Start the daemon worker thread."""
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="admin-auth-worker", daemon=True
        )
        self._thread.start()
        logger.info("Background worker started")

    def stop(self) -> None:
        """Signal the worker to stop and wait for it to finish."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=10)
            logger.info("Background worker stopped")

    def submit_job(self, job: Job) -> None:
        """Put a job on the queue for processing."""
        self._queue.put(job)
        logger.debug("Job submitted: %s", job.job_type.value)

    def _get_engine(self):
        """Get the DB engine (deferred import to avoid circular imports)."""
        from app.db import engine
        return engine

    def _persist_job(
        self,
        job_type: str,
        payload: dict,
        status: str,
        attempt: int = 1,
        max_attempts: int | None = None,
        error_message: str | None = None,
        error_traceback: str | None = None,
        next_retry_at: datetime | None = None,
        completed_at: datetime | None = None,
        job_id: str | None = None,
    ) -> str:
        """Create or update a BackgroundJob row. Returns the job ID."""
        engine = self._get_engine()
        if max_attempts is None:
            max_attempts = self._settings.worker_max_retries
        now = datetime.now(timezone.utc)

        with Session(engine) as session:
            if job_id:
                db_job = session.get(BackgroundJob, job_id)
            else:
                db_job = None

            if db_job is None:
                db_job = BackgroundJob(
                    job_type=job_type,
                    status=status,
                    payload_json=json.dumps(payload),
                    attempt=attempt,
                    max_attempts=max_attempts,
                    next_retry_at=next_retry_at,
                    error_message=error_message[:2000] if error_message else None,
                    error_traceback=error_traceback[:4000] if error_traceback else None,
                    completed_at=completed_at,
                )
            else:
                db_job.status = status
                db_job.payload_json = json.dumps(payload)
                db_job.attempt = attempt
                db_job.updated_at = now
                db_job.next_retry_at = next_retry_at
                db_job.error_message = error_message[:2000] if error_message else None
                db_job.error_traceback = error_traceback[:4000] if error_traceback else None
                db_job.completed_at = completed_at

            session.add(db_job)
            session.commit()
            session.refresh(db_job)
            return db_job.id

    def _calculate_retry_delay(self, attempt: int) -> timedelta:
        """Calculate exponential backoff delay: min(base * 2^(attempt-1), max_delay)."""
        base = self._settings.worker_retry_base_delay_seconds
        max_delay = self._settings.worker_retry_max_delay_seconds
        delay = min(base * (2 ** (attempt - 1)), max_delay)
        return timedelta(seconds=delay)

    def _run(self) -> None:
        """Thread main loop: pull jobs from queue and dispatch."""
        logger.info("Worker thread running")
        retry_check_counter = 0

        while not self._stop_event.is_set():
            try:
                job = self._queue.get(timeout=1.0)
            except Empty:
                # Check for retryable jobs every ~5 seconds when queue is empty
                retry_check_counter += 1
                if retry_check_counter >= 5:
                    retry_check_counter = 0
                    self._check_retryable_jobs()
                continue

            retry_check_counter = 0
            try:
                self._process_job(job)
            except Exception:
                logger.exception("Unhandled error processing job %s", job.job_type.value)

        logger.info("Worker thread exiting")

    def _check_retryable_jobs(self) -> None:
        """Query DB for pending jobs whose retry time has arrived and process them."""
        engine = self._get_engine()
        now = datetime.now(timezone.utc)

        try:
            with Session(engine) as session:
                stmt = (
                    select(BackgroundJob)
                    .where(BackgroundJob.status == JobStatus.PENDING.value)
                    .where(BackgroundJob.next_retry_at != None)  # noqa: E711
                    .where(BackgroundJob.next_retry_at <= now)
                    .order_by(BackgroundJob.next_retry_at)
                    .limit(5)
                )
                jobs = session.exec(stmt).all()

            for db_job in jobs:
                payload = json.loads(db_job.payload_json)
                job = Job(job_type=JobType(db_job.job_type), payload=payload)
                # Attach retry metadata to payload for tracking
                payload["_job_id"] = db_job.id
                payload["_attempt"] = db_job.attempt
                payload["_max_attempts"] = db_job.max_attempts
                try:
                    self._process_job(job)
                except Exception:
                    logger.exception(
                        "Unhandled error processing retried job %s (id=%s)",
                        db_job.job_type,
                        db_job.id,
                    )
        except Exception:
            logger.exception("Error checking retryable jobs")

    def _process_job(self, job: Job) -> None:
        """Dispatch a job by type."""
        if job.job_type == JobType.OTP_EMAIL:
            self._process_otp_email(job.payload)
        elif job.job_type == JobType.SESSION_SWEEP:
            self._process_session_sweep(job.payload)
        else:
            logger.warning("Unknown job type: %s", job.job_type)

    def _process_otp_email(self, payload: dict) -> None:
        """Deliver a login code, retrying with backoff until it expires."""
        # Extract retry metadata if present (from retried jobs)
        job_id = payload.pop("_job_id", None)
        attempt = payload.pop("_attempt", 1)
        max_attempts = payload.pop("_max_attempts", self._settings.worker_max_retries)

        job_id = self._persist_job(
            job_type=JobType.OTP_EMAIL.value,
            payload=payload,
            status=JobStatus.PROCESSING.value,
            attempt=attempt,
            max_attempts=max_attempts,
            job_id=job_id,
        )
        redacted = {**payload, "code": REDACTED}

        expires_at = as_utc(datetime.fromisoformat(payload["expires_at"]))
        if utcnow() >= expires_at:
            logger.warning("Login code for %s expired before delivery", payload["to"])
            self._persist_job(
                job_type=JobType.OTP_EMAIL.value,
                payload=redacted,
                status=JobStatus.FAILED.value,
                attempt=attempt,
                max_attempts=max_attempts,
                error_message="Code expired before delivery",
                completed_at=datetime.now(timezone.utc),
                job_id=job_id,
            )
            return

        try:
            self._mailer.send_otp(
                payload["to"], payload["code"], payload.get("ttl_minutes", 10)
            )

            self._persist_job(
                job_type=JobType.OTP_EMAIL.value,
                payload=redacted,
                status=JobStatus.SUCCEEDED.value,
                attempt=attempt,
                max_attempts=max_attempts,
                completed_at=datetime.now(timezone.utc),
                job_id=job_id,
            )
        except Exception as exc:
            tb = _scrub(traceback.format_exc(), payload)
            err_msg = _scrub(str(exc), payload)

            logger.error("Failed to deliver login code to %s: %s", payload["to"], err_msg)

            if attempt >= max_attempts:
                self._persist_job(
                    job_type=JobType.OTP_EMAIL.value,
                    payload=redacted,
                    status=JobStatus.FAILED.value,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    error_message=err_msg,
                    error_traceback=tb,
                    completed_at=datetime.now(timezone.utc),
                    job_id=job_id,
                )
            else:
                next_attempt = attempt + 1
                delay = self._calculate_retry_delay(attempt)
                retry_at = datetime.now(timezone.utc) + delay
                self._persist_job(
                    job_type=JobType.OTP_EMAIL.value,
                    payload=payload,
                    status=JobStatus.PENDING.value,
                    attempt=next_attempt,
                    max_attempts=max_attempts,
                    error_message=err_msg,
                    error_traceback=tb,
                    next_retry_at=retry_at,
                    job_id=job_id,
                )
                logger.info(
                    "Scheduled login code retry %d/%d at %s",
                    next_attempt,
                    max_attempts,
                    retry_at.isoformat(),
                )

    def _process_session_sweep(self, payload: dict) -> None:
        """Purge long-dead sessions and spent code records."""
        from app.services.otp import OtpService
        from app.services.sessions import SessionStore

        engine = self._get_engine()
        retention_days = payload.get("retention_days", self._settings.session_retention_days)
        store = SessionStore(self._settings, engine=engine)
        otp = OtpService(self._settings, store, engine=engine)
        try:
            sessions = store.purge_stale(timedelta(days=retention_days))
            codes = otp.purge_expired()
        except Exception:
            logger.exception("Session sweep failed")
            return
        if sessions or codes:
            logger.info("Session sweep: removed %d sessions, %d code records", sessions, codes)
        else:
            logger.debug("Session sweep: nothing to remove")

    def get_job_stats(self) -> dict:
        """Return job counts for the health endpoint. No payloads or error text."""
        stats = {"queue_depth": self._queue.qsize()}
        engine = self._get_engine()
        try:
            with Session(engine) as session:
                counts = dict(
                    session.exec(
                        select(BackgroundJob.status, func.count())
                        .group_by(BackgroundJob.status)
                    ).all()
                )
        except Exception:
            logger.exception("Error fetching job stats")
            return {**stats, "succeeded": -1, "failed": -1, "pending": -1}

        return {
            **stats,
            "succeeded": counts.get(JobStatus.SUCCEEDED.value, 0),
            "failed": counts.get(JobStatus.FAILED.value, 0),
            "pending": counts.get(JobStatus.PENDING.value, 0),
        }

    def recover_incomplete_jobs(self) -> None:
        """Recover in-flight jobs from a previous crash.

        Called once at startup. Resets jobs stuck in 'processing' state
        back to 'pending' so they get retried.
        """
        engine = self._get_engine()
        now = datetime.now(timezone.utc)

        try:
            with Session(engine) as session:
                stuck_jobs = session.exec(
                    select(BackgroundJob)
                    .where(BackgroundJob.status == JobStatus.PROCESSING.value)
                ).all()

                for db_job in stuck_jobs:
                    db_job.status = JobStatus.PENDING.value
                    db_job.next_retry_at = now
                    db_job.updated_at = now
                    session.add(db_job)

                if stuck_jobs:
                    session.commit()
                    logger.info(
                        "Recovered %d incomplete jobs from previous run",
                        len(stuck_jobs),
                    )
        except Exception:
            logger.exception("Error recovering incomplete jobs")
