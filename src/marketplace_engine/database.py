"""Database connection, session management and the unit-of-work runner."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING, Callable, Generator, TypeVar

from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from marketplace_engine.config import get_settings
from marketplace_engine.errors import ConcurrencyConflict

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

T = TypeVar("T")

# SQLSTATE for lock_not_available (raised when lock_timeout expires)
PG_LOCK_NOT_AVAILABLE = "55P03"


def get_engine(database_url: str | None = None) -> Engine:
    """Create database engine."""
    url = database_url or get_settings().database_url
    if url.startswith("sqlite"):
        return create_engine(url, echo=False)
    return create_engine(
        url,
        echo=False,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )


# Global engine and session factory
_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def init_db() -> tuple[Engine, sessionmaker[Session]]:
    """Initialize database engine and session factory."""
    global _engine, _session_factory
    if _engine is None:
        _engine = get_engine()
        _session_factory = sessionmaker(
            _engine,
            expire_on_commit=False,
            autoflush=False,
        )
    return _engine, _session_factory


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """Get a database session that commits on success."""
    _, factory = init_db()
    with factory() as session:
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise


def is_lock_timeout(exc: OperationalError) -> bool:
    """Check whether an OperationalError is a lock-wait timeout."""
    orig = exc.orig
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code == PG_LOCK_NOT_AVAILABLE:
        return True
    return "database is locked" in str(orig)


def set_lock_timeout(session: Session, timeout_ms: int) -> None:
    """Bound row-lock waits for the current transaction (PostgreSQL only)."""
    if session.get_bind().dialect.name == "postgresql":
        session.execute(text(f"SET LOCAL lock_timeout = '{int(timeout_ms)}ms'"))


def run_in_transaction(
    work: Callable[[Session], T],
    *,
    session_factory: Callable[[], Session] | None = None,
    attempts: int | None = None,
    lock_timeout_ms: int | None = None,
) -> T:
    """Run one unit of work in its own transaction.

    A lock-wait timeout rolls the unit back and re-runs it from a fresh
    session, so the retried attempt re-reads every locked row. Any other
    error rolls back and propagates.

    Args:
        work: Callable receiving the session; its return value is returned
        session_factory: Session factory (defaults to the global one)
        attempts: Maximum attempts before ConcurrencyConflict
        lock_timeout_ms: Per-transaction lock wait bound

    Returns:
        Whatever `work` returned, after commit.
    """
    settings = get_settings() if attempts is None or lock_timeout_ms is None else None
    if attempts is None:
        attempts = settings.lock_retry_attempts
    if lock_timeout_ms is None:
        lock_timeout_ms = settings.lock_timeout_ms
    if session_factory is None:
        _, session_factory = init_db()

    for attempt in range(1, attempts + 1):
        session = session_factory()
        try:
            set_lock_timeout(session, lock_timeout_ms)
            result = work(session)
            session.commit()
            return result
        except OperationalError as e:
            session.rollback()
            if not is_lock_timeout(e):
                raise
            logger.warning(
                "Lock wait timed out (attempt %d/%d), retrying unit of work",
                attempt,
                attempts,
            )
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    raise ConcurrencyConflict(attempts)
