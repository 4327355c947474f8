"""
Engine and session plumbing.

Services receive a ``Session`` from their caller. Job handlers open their
own through ``get_db_transaction``, which turns unexpected storage failures
into ``DatabaseError`` so the task queue can retry them.
"""

from contextlib import contextmanager
from typing import Generator, Optional

from loguru import logger
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

from signalcopilot.config import settings
from signalcopilot.utils.errors import DatabaseError, SignalCopilotError


def _sqlite_foreign_keys_on(dbapi_conn, connection_record) -> None:
    # Cascading deletes of impacts depend on this
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _is_in_memory_sqlite(url: str) -> bool:
    return ":memory:" in url or url.rstrip("/") == "sqlite:"


def create_db_engine(url: Optional[str] = None) -> Engine:
    """
    Build an engine for ``url`` (``settings.database_url`` by default).

    An in-memory SQLite database is pinned to one connection so that every
    session, including those opened by job handlers, sees the same data.
    """
    url = url or settings.database_url

    if not url.startswith("sqlite"):
        return create_engine(
            url,
            echo=settings.debug,
            pool_pre_ping=True,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_recycle=1800,
        )

    options = {"echo": settings.debug, "connect_args": {"check_same_thread": False}}
    if _is_in_memory_sqlite(url):
        options["poolclass"] = StaticPool
    sqlite_engine = create_engine(url, **options)
    event.listen(sqlite_engine, "connect", _sqlite_foreign_keys_on)
    return sqlite_engine


engine = create_db_engine()

SessionLocal = scoped_session(
    sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
)


def configure_engine(url: str) -> Engine:
    """Point the module engine and ``SessionLocal`` at another database."""
    global engine
    SessionLocal.remove()
    engine.dispose()
    engine = create_db_engine(url)
    SessionLocal.configure(bind=engine)
    logger.info(f"Database engine rebound to {engine.url.render_as_string(hide_password=True)}")
    return engine


def init_db() -> None:
    from signalcopilot.db.models import Base

    Base.metadata.create_all(bind=engine, checkfirst=True)
    logger.info(f"Schema ready ({len(Base.metadata.tables)} tables)")


def get_db() -> Session:
    """Thread-local session; release it with ``close_db()``."""
    return SessionLocal()


def close_db() -> None:
    SessionLocal.remove()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """Session that commits on clean exit and rolls back on any exception."""
    db = get_db()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        close_db()


@contextmanager
def get_db_transaction() -> Generator[Session, None, None]:
    """
    Unit of work for a job handler.

    Package errors (not found, validation, ...) roll back and propagate
    as-is. Anything else is treated as a storage failure and re-raised as
    a retryable ``DatabaseError``.
    """
    db = get_db()
    try:
        yield db
        db.commit()
    except SignalCopilotError:
        db.rollback()
        raise
    except Exception as e:
        db.rollback()
        logger.error(f"Rolled back job transaction: {e}")
        raise DatabaseError(f"Transaction failed: {e}", details={"cause": type(e).__name__}) from e
    finally:
        close_db()
