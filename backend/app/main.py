from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import app.models  # noqa: F401  register SQLModel tables

from app.config import get_settings
from app.db import create_db_and_tables, ensure_sqlite_parent_dir
from app.gateway import NO_STORE, SessionGateway, session_gateway_middleware
from app.routers import admin, auth, health, pages
from app.services.mailer import Mailer
from app.services.otp import OtpService
from app.services.sessions import SessionStore
from app.worker import BackgroundWorker, Job, JobType

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    ensure_sqlite_parent_dir(settings.db_url)
    create_db_and_tables()

    mailer = Mailer(settings)
    if not mailer.configured:
        logger.warning("SMTP_HOST not set; login codes will only be logged")
    app.state.mailer = mailer

    # Outbound mail worker; requests only enqueue
    worker = BackgroundWorker(mailer, settings=settings)
    worker.start()
    worker.recover_incomplete_jobs()
    app.state.worker = worker

    session_store = SessionStore(settings)
    app.state.otp_service = OtpService(settings, session_store, worker=worker)
    app.state.gateway = SessionGateway(settings, session_store)

    # Periodic purge of long-dead sessions and spent codes
    async def _session_sweep_loop() -> None:
        while True:
            await asyncio.sleep(settings.session_sweep_interval_seconds)
            try:
                app.state.worker.submit_job(
                    Job(
                        job_type=JobType.SESSION_SWEEP,
                        payload={"retention_days": settings.session_retention_days},
                    )
                )
            except Exception:
                logger.exception("Error submitting session sweep job")

    sweep_task = asyncio.create_task(_session_sweep_loop())

    yield

    # Shutdown: cancel session sweep
    sweep_task.cancel()
    try:
        await sweep_task
    except asyncio.CancelledError:
        pass
    # Shutdown: stop background worker
    if getattr(app.state, "worker", None) is not None:
        app.state.worker.stop()


app = FastAPI(
    title="Odyssey Admin",
    description="Passwordless admin sign-in with server-side sessions",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError):
    # Auth endpoints never echo what was wrong with the payload
    if request.url.path.startswith("/api/auth"):
        return JSONResponse(
            {"ok": False, "detail": "Invalid payload"}, status_code=400, headers=NO_STORE
        )
    return await request_validation_exception_handler(request, exc)


# Registered before CORS so CORS stays outermost
app.middleware("http")(session_gateway_middleware)

settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        *settings.origin_allow_list,
        f"https://{settings.domain}",
        "http://localhost:3000",
        "http://localhost:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router)
app.include_router(admin.router)
app.include_router(pages.router)
app.include_router(health.router)
