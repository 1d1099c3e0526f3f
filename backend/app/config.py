from __future__ import annotations

import warnings
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_emails(raw: str) -> frozenset[str]:
    return frozenset(
        part.strip().lower() for part in raw.split(",") if part.strip()
    )


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    domain: str = "localhost"
    db_url: str = "sqlite:///./data/admin.db"
    db_timeout_seconds: float = 5.0  # Bound on every store operation

    # Allow-lists (comma-separated). OTP eligibility and admin authorization
    # are configured separately and may overlap.
    otp_allowed_emails: str = ""
    admin_emails: str = ""

    otp_code_ttl_seconds: int = 600
    otp_cooldown_seconds: int = 60
    otp_max_attempts: int = 5

    session_idle_seconds: int = 900
    session_absolute_seconds: int = 28800  # 0 disables the absolute cap
    session_bind_user_agent: bool = True
    session_bind_ip: bool = False
    session_retention_days: int = 30
    session_sweep_interval_seconds: int = 3600
    session_cookie_name: str = "admin_session"
    cookie_secure: bool = True

    allowed_origins: str = ""  # e.g. "https://admin.example.com,http://localhost:3000"

    # SMTP (OTP delivery)
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_ssl: bool = False  # True for implicit TLS (465), False for STARTTLS
    smtp_timeout_seconds: float = 20.0
    mail_from: str = ""
    mail_from_name: str = "Odyssey Cup"

    # Outbound mail retry settings
    worker_max_retries: int = 3
    worker_retry_base_delay_seconds: int = 30
    worker_retry_max_delay_seconds: int = 600  # 10 minutes cap

    @model_validator(mode="after")
    def _check_lifetimes(self) -> Settings:
        for name in (
            "otp_code_ttl_seconds",
            "otp_cooldown_seconds",
            "otp_max_attempts",
            "session_idle_seconds",
            "db_timeout_seconds",
        ):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name.upper()} must be > 0, got {value}")
        if self.session_absolute_seconds < 0:
            raise ValueError(
                "SESSION_ABSOLUTE_SECONDS must be >= 0 (0 disables the cap), "
                f"got {self.session_absolute_seconds}"
            )
        if not self.otp_allow_list:
            warnings.warn(
                "OTP_ALLOWED_EMAILS is empty; nobody will be able to sign in.",
                stacklevel=2,
            )
        return self

    @property
    def otp_allow_list(self) -> frozenset[str]:
        return _split_emails(self.otp_allowed_emails)

    @property
    def admin_allow_list(self) -> frozenset[str]:
        return _split_emails(self.admin_emails)

    @property
    def origin_allow_list(self) -> list[str]:
        return [o.strip().rstrip("/") for o in self.allowed_origins.split(",") if o.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
