"""Database configuration and helper utilities."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
import logging
from pathlib import Path

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import URL, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from resonance.config import load_config


class Base(DeclarativeBase):
    pass


_engine: Engine | None = None
SessionLocal: sessionmaker[Session] | None = None
_initializing_db = False

_logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractContextManager[Session]]


def _synchronous_url(url: URL) -> URL:
    driver = url.drivername.lower()
    if driver in {"sqlite", "sqlite+aiosqlite"}:
        return url.set(drivername="sqlite+pysqlite")
    return url


def _database_file_path(url: URL) -> Path | None:
    if not url.drivername.startswith("sqlite"):
        return None
    database = url.database
    if not database or database == ":memory:":
        return None
    path = Path(database)
    if not path.is_absolute():
        path = (Path.cwd() / path).resolve()
    return path


def _build_engine(database_url: str) -> Engine:
    url = make_url(database_url)
    sync_url = _synchronous_url(url)
    connect_args: dict[str, object] = {}
    if sync_url.drivername.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = 30
    return create_engine(sync_url, future=True, connect_args=connect_args, pool_pre_ping=True)


def _dispose_engine() -> None:
    global _engine, SessionLocal

    if _engine is not None:
        _engine.dispose()

    _engine = None
    SessionLocal = None


def _ensure_engine(*, auto_init: bool = True) -> None:
    global _engine, SessionLocal

    database_url = load_config().database.url
    target_url = _synchronous_url(make_url(database_url)).render_as_string(hide_password=False)

    if _engine is not None and _engine.url.render_as_string(hide_password=False) == target_url:
        return

    _dispose_engine()

    path = _database_file_path(make_url(database_url))
    if path is not None:
        path.parent.mkdir(parents=True, exist_ok=True)

    _engine = _build_engine(database_url)
    SessionLocal = sessionmaker(
        bind=_engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )

    if auto_init and not _initializing_db:
        init_db()


def get_session() -> Session:
    if SessionLocal is None:
        _ensure_engine()
    if SessionLocal is None:
        raise RuntimeError("Database session factory is not initialized.")
    return SessionLocal()


@contextmanager
def session_scope() -> Iterator[Session]:
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db() -> None:
    """Create all tables for the ORM models if they are missing."""

    global _initializing_db

    if _initializing_db:
        return

    _initializing_db = True
    try:
        _ensure_engine(auto_init=False)
        if _engine is None:
            raise RuntimeError("Database engine was not initialised before bootstrap.")

        from resonance import models  # noqa: F401

        Base.metadata.create_all(bind=_engine, checkfirst=True)
        _logger.info("Database bootstrap completed", extra={"event": "database.bootstrap"})
    finally:
        _initializing_db = False


def reset_engine_for_tests() -> None:
    """Reset the cached engine/session so tests get a clean database handle."""

    global _initializing_db

    _dispose_engine()
    _initializing_db = False


__all__ = [
    "Base",
    "SessionFactory",
    "get_session",
    "init_db",
    "reset_engine_for_tests",
    "session_scope",
]
