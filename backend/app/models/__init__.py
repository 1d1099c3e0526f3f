from __future__ import annotations

from app.models.auth import AdminSession, OneTimeCode  # noqa: F401
from app.models.job import BackgroundJob  # noqa: F401
