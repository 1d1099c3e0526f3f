from __future__ import annotations

import logging
from collections.abc import Generator, Iterator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine

from app.config import get_settings

logger = logging.getLogger(__name__)


class StoreUnavailable(RuntimeError):
    """The auth store failed or did not answer within the configured timeout."""


@event.listens_for(Engine, "connect")
def _set_sqlite_pragmas(dbapi_connection, connection_record):
    if not type(dbapi_connection).__module__.startswith("sqlite3"):
        return
    busy_ms = int(get_settings().db_timeout_seconds * 1000)
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute(f"PRAGMA busy_timeout={busy_ms}")
    cursor.close()


def build_engine(db_url: str, timeout_seconds: float):
    """Create an engine whose connections never wait longer than *timeout_seconds*."""
    if db_url.startswith("sqlite"):
        return create_engine(
            db_url,
            echo=False,
            connect_args={"check_same_thread": False, "timeout": timeout_seconds},
        )
    return create_engine(
        db_url,
        echo=False,
        pool_pre_ping=True,
        pool_timeout=timeout_seconds,
        connect_args={"connect_timeout": max(1, int(timeout_seconds))},
    )


_settings = get_settings()
engine = build_engine(_settings.db_url, _settings.db_timeout_seconds)


def ensure_sqlite_parent_dir(db_url: str) -> None:
    """Create the directory holding a file-backed SQLite database."""
    url = make_url(db_url)
    if url.get_backend_name() != "sqlite" or not url.database or url.database == ":memory:":
        return
    Path(url.database).parent.mkdir(parents=True, exist_ok=True)


def create_db_and_tables() -> None:
    SQLModel.metadata.create_all(engine)
    _run_migrations(engine)


def _run_migrations(eng) -> None:
    """Lightweight forward-only migrations for schema additions."""
    from sqlalchemy import inspect, text

    insp = inspect(eng)
    if "admin_sessions" not in insp.get_table_names():
        return

    # Sessions created before roles and revocation timestamps existed
    columns = [c["name"] for c in insp.get_columns("admin_sessions")]
    for col_name, col_def in [
        ("role", "VARCHAR(5) DEFAULT 'ADMIN' NOT NULL"),
        ("revoked_at", "TIMESTAMP"),
    ]:
        if col_name not in columns:
            with eng.begin() as conn:
                conn.execute(
                    text(f"ALTER TABLE admin_sessions ADD COLUMN {col_name} {col_def}")
                )


@contextmanager
def store_session(eng=None) -> Iterator[Session]:
    """Short-lived session for one auth store operation.

    Any database failure (including lock/pool timeouts) is logged and
    re-raised as StoreUnavailable so callers can fail closed.
    """
    try:
        with Session(eng if eng is not None else engine) as session:
            yield session
    except SQLAlchemyError as exc:
        logger.error("Auth store unavailable: %s", exc, exc_info=True)
        raise StoreUnavailable("Auth store unavailable") from exc


def get_session() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session
