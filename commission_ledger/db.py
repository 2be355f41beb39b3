"""Database connection, transactional scope and conflict retry."""

from contextlib import contextmanager
from typing import Callable, Generator, Optional, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import StaticPool
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import ConcurrencyConflict
from .logging_config import get_logger
from .settings import settings
from .tables import Base

logger = get_logger(__name__)

T = TypeVar("T")

AFTER_COMMIT = "after_commit_callbacks"

# SQLSTATE codes for serialization failure, deadlock, lock not available, unique violation
_CONFLICT_SQLSTATES = {"40001", "40P01", "55P03", "23505"}
_CONFLICT_MESSAGES = (
    "database is locked",
    "could not obtain lock",
    "lock_not_available",
    "could not serialize access",
    "deadlock detected",
    "lock wait timeout",
)
_UNIQUE_MESSAGES = ("unique constraint", "duplicate key")


def is_conflict(exc: BaseException) -> bool:
    """Whether a database error means another transaction got there first."""
    if isinstance(exc, StaleDataError):
        return True
    if not isinstance(exc, DBAPIError):
        return False
    orig = exc.orig
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate in _CONFLICT_SQLSTATES:
        return True
    message = str(orig).lower()
    if isinstance(exc, OperationalError):
        return any(m in message for m in _CONFLICT_MESSAGES)
    if isinstance(exc, IntegrityError):
        return any(m in message for m in _UNIQUE_MESSAGES)
    return False


def after_commit(session: Session, callback: Callable[[], None]) -> None:
    """Run ``callback`` once the enclosing ``Database.run`` transaction commits."""
    session.info.setdefault(AFTER_COMMIT, []).append(callback)


class Database:
    """Database connection manager."""

    def __init__(
        self,
        database_url: Optional[str] = None,
        *,
        echo: Optional[bool] = None,
        max_attempts: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        retry_max_delay: Optional[float] = None,
    ):
        """Initialize database connection.

        Args:
            database_url: Database URL (defaults to settings)
            echo: Echo SQL statements (defaults to settings)
            max_attempts: Attempts per transaction on concurrency conflicts
            retry_base_delay: Exponential backoff base in seconds
            retry_max_delay: Backoff cap in seconds
        """
        self.database_url = database_url or settings.database_url
        self.max_attempts = max_attempts or settings.transaction_max_attempts
        self.retry_base_delay = (
            settings.transaction_retry_base_delay if retry_base_delay is None else retry_base_delay
        )
        self.retry_max_delay = (
            settings.transaction_retry_max_delay if retry_max_delay is None else retry_max_delay
        )

        engine_kwargs = {
            "echo": settings.database_echo if echo is None else echo,
            "pool_pre_ping": True,
        }
        if self.database_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 15}
            if ":memory:" in self.database_url or self.database_url.rstrip("/") == "sqlite:":
                engine_kwargs["poolclass"] = StaticPool

        self.engine = create_engine(self.database_url, **engine_kwargs)
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine, "connect", _sqlite_pragmas)

        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine,
        )
        logger.info("database_initialized", url=self.engine.url.render_as_string(hide_password=True))

    def create_tables(self) -> None:
        """Create all tables in the database."""
        Base.metadata.create_all(bind=self.engine)
        logger.info("tables_created")

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Provide a transactional scope for database operations.

        Yields:
            Database session
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def run(self, work: Callable[[Session], T]) -> T:
        """Run ``work`` in one transaction, retrying on concurrency conflicts.

        Each attempt gets a fresh session so a retry re-reads every row and
        re-validates every transition. After-commit callbacks only fire for
        the attempt that committed.
        """
        retrying = Retrying(
            retry=retry_if_exception_type(ConcurrencyConflict),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_base_delay, max=self.retry_max_delay),
            before_sleep=_log_retry,
            reraise=True,
        )
        return retrying(self._run_once, work)

    def _run_once(self, work: Callable[[Session], T]) -> T:
        session = self.SessionLocal()
        try:
            result = work(session)
            session.commit()
            callbacks = session.info.pop(AFTER_COMMIT, [])
        except (DBAPIError, StaleDataError) as e:
            session.rollback()
            if is_conflict(e):
                raise ConcurrencyConflict(f"Transaction conflict: {e.__class__.__name__}") from e
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        for callback in callbacks:
            callback()
        return result


def _sqlite_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "transaction_retry",
        attempt=retry_state.attempt_number,
        error=str(exc) if exc else None,
    )
