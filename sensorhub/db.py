import logging
import threading
from typing import Callable, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine
from tenacity import Retrying, RetryError, retry_if_exception, stop_after_attempt, wait_exponential

from .errors import StoreUnavailable
from . import models  # noqa: F401  registers tables on SQLModel.metadata

log = logging.getLogger("db")

T = TypeVar("T")


def _is_connection_error(exc: BaseException) -> bool:
    if isinstance(exc, OperationalError):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


class Store:
    """Owns the engine and its bounded connection pool.

    `run` executes a unit of work and, on connection-level failures, throws the
    pool away and retries with exponential backoff before giving up with
    StoreUnavailable.
    """

    def __init__(
        self,
        url: str,
        pool_size: int = 5,
        max_overflow: int = 0,
        retries: int = 3,
        backoff: float = 1.0,
        max_backoff: float = 10.0,
    ) -> None:
        self.url = url
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self.retries = max(1, retries)
        self.backoff = backoff
        self.max_backoff = max_backoff
        self._engine = None
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings) -> "Store":
        return cls(
            settings.database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            retries=settings.db_retries,
            backoff=settings.db_retry_backoff,
        )

    def _create_engine(self):
        if self.url.startswith("sqlite"):
            kwargs = {"connect_args": {"check_same_thread": False}}
            if self.url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
            return create_engine(self.url, **kwargs)
        return create_engine(
            self.url,
            pool_pre_ping=True,
            pool_size=self.pool_size,
            max_overflow=self.max_overflow,
        )

    @property
    def engine(self):
        with self._lock:
            if self._engine is None:
                self._engine = self._create_engine()
            return self._engine

    def reset(self) -> None:
        """Dispose the pool; the next access builds a fresh one."""
        with self._lock:
            engine, self._engine = self._engine, None
        if engine is not None:
            try:
                engine.dispose()
            except Exception as e:
                log.warning("error disposing pool: %s", e)

    def init_db(self) -> None:
        self.run(lambda _s: SQLModel.metadata.create_all(self.engine))

    def get_session(self) -> Session:
        # prevent attribute expiration so simple reads after commit are safe
        return Session(self.engine, expire_on_commit=False)

    def _before_sleep(self, state) -> None:
        exc = state.outcome.exception()
        log.warning(
            "database error (attempt %d/%d): %s; recreating pool",
            state.attempt_number, self.retries, exc,
        )
        self.reset()

    def run(self, work: Callable[[Session], T]) -> T:
        retrying = Retrying(
            stop=stop_after_attempt(self.retries),
            wait=wait_exponential(multiplier=self.backoff, max=self.max_backoff),
            retry=retry_if_exception(_is_connection_error),
            before_sleep=self._before_sleep,
        )
        try:
            for attempt in retrying:
                with attempt:
                    with self.get_session() as session:
                        return work(session)
        except RetryError as e:
            cause = e.last_attempt.exception()
            log.error("database unavailable after %d attempts: %s", self.retries, cause)
            self.reset()
            raise StoreUnavailable(str(cause)) from cause

    def ping(self) -> bool:
        return self.run(lambda s: s.exec(text("SELECT 1")).scalar_one() == 1)

    def dispose(self) -> None:
        self.reset()
