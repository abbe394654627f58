"""Database engine and session management utilities."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from functools import lru_cache
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from backend.models.base import Base
from backend.services.errors import ConcurrencyConflictError, ReferenceNotFoundError
from backend.utils.config import get_settings

LOGGER = logging.getLogger(__name__)

# PostgreSQL serialization_failure / deadlock_detected / lock_not_available.
RETRYABLE_SQLSTATES = {"40001", "40P01", "55P03"}
SQLITE_BUSY_MARKERS = ("database is locked", "database table is locked")


def build_engine(url: str, *, echo: bool = False) -> Engine:
    """Create an engine whose transactions serialize concurrent writers."""

    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            echo=echo,
            future=True,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        _configure_sqlite(engine)
    else:
        engine = create_engine(
            url,
            echo=echo,
            future=True,
            isolation_level="SERIALIZABLE",
            pool_pre_ping=True,
        )

    Base.metadata.create_all(engine)
    return engine


def _configure_sqlite(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first DML statement; take the write lock
    # up front instead so that check-then-write sequences cannot interleave.

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(connection):  # type: ignore[no-untyped-def]
        connection.exec_driver_sql("BEGIN IMMEDIATE")


def build_session_factory(engine: Engine) -> sessionmaker:
    """Return a session factory whose objects stay readable after commit."""

    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


@lru_cache()
def get_engine() -> Engine:
    """Return the process-wide engine built from settings."""

    settings = get_settings()
    return build_engine(settings.database_url, echo=settings.database_echo)


@contextmanager
def get_session(factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    """Provide a transactional scope around a series of operations."""

    if factory is None:
        factory = build_session_factory(get_engine())

    session: Session = factory()
    try:
        with translate_db_errors():
            yield session
            session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def translate_db_errors() -> Iterator[None]:
    """Map driver-level failures onto the engine's error taxonomy."""

    try:
        yield
    except IntegrityError as exc:
        message = str(exc.orig).lower()
        if "foreign key" in message:
            LOGGER.warning("Foreign key rejected: %s", exc.orig)
            raise ReferenceNotFoundError("reference", _constraint_name(exc)) from exc
        LOGGER.warning("Integrity conflict treated as concurrent write: %s", exc.orig)
        raise ConcurrencyConflictError(
            "Concurrent modification detected; retry the operation"
        ) from exc
    except (OperationalError, DBAPIError) as exc:
        if not _is_retryable(exc):
            raise
        LOGGER.warning("Serialization failure: %s", exc.orig)
        raise ConcurrencyConflictError(
            "Transaction could not be serialized; retry the operation"
        ) from exc


def _is_retryable(exc: DBAPIError) -> bool:
    sqlstate = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
    if sqlstate in RETRYABLE_SQLSTATES:
        return True
    message = str(exc.orig).lower()
    return any(marker in message for marker in SQLITE_BUSY_MARKERS)


def _constraint_name(exc: IntegrityError) -> str:
    diag = getattr(exc.orig, "diag", None)
    constraint = getattr(diag, "constraint_name", None)
    return constraint or "foreign key"
