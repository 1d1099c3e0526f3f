from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlmodel import Session, text

from app.db import get_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
def health(request: Request, session: Session = Depends(get_session)):
    db_status = "ok"
    try:
        session.exec(text("SELECT 1"))
    except Exception:
        logger.exception("Health check database query failed")
        db_status = "error"

    # Job counts only; payloads and error text stay in the database
    jobs_status: dict | str = "unavailable"
    worker = getattr(request.app.state, "worker", None)
    if worker is not None:
        try:
            jobs_status = worker.get_job_stats()
        except Exception:
            jobs_status = "error"

    mailer = getattr(request.app.state, "mailer", None)
    mail_status = "configured" if mailer is not None and mailer.configured else "not_configured"

    return {
        "status": "healthy" if db_status == "ok" else "unhealthy",
        "service": "odyssey-admin",
        "version": "0.1.0",
        "checks": {
            "database": db_status,
            "jobs": jobs_status,
            "mail": mail_status,
        },
    }


@router.get("/health/ready")
def readiness(session: Session = Depends(get_session)):
    try:
        session.exec(text("SELECT 1"))
    except Exception:
        logger.exception("Readiness check database query failed")
        return JSONResponse(
            status_code=503,
            content={
                "status": "not ready",
                "service": "odyssey-admin",
            },
        )

    return {
        "status": "ready",
        "service": "odyssey-admin",
    }
