"""Transactional document store over SQLAlchemy sessions."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Sequence
from functools import partial
from typing import Any, TypeVar

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import Settings, get_settings
from app.domain import ConflictError, MarketError

from .types import BatchWriteResult, DocumentWrite

T = TypeVar("T")

MAX_BATCH_WRITE_SIZE = 500
_CONFLICT_ERRORS = (StaleDataError, OperationalError)
# serialization_failure, deadlock_detected, lock_not_available
_RETRYABLE_SQLSTATES = frozenset({"40001", "40P01", "55P03"})
_RETRYABLE_SQLITE_MESSAGES = ("database is locked", "database table is locked")


class Store:
    """Injectable handle used by orchestrators and jobs for all persistence.

    ``run_transaction`` executes a callable in a fresh session and commits it,
    retrying the whole callable when optimistic version checks or the database
    report a conflict.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        retry_attempts: int = 5,
        retry_backoff: Sequence[float] = (0.05, 0.1, 0.2, 0.4),
        batch_size: int = MAX_BATCH_WRITE_SIZE,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._retry_attempts = max(1, retry_attempts)
        self._retry_backoff = tuple(retry_backoff) or (0.0,)
        self._batch_size = max(1, min(batch_size, MAX_BATCH_WRITE_SIZE))
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        session_factory: sessionmaker[Session] | None = None,
    ) -> "Store":
        settings = settings or get_settings()
        if session_factory is None:
            from app.db import SessionLocal

            session_factory = SessionLocal
        return cls(
            session_factory,
            retry_attempts=settings.transaction_retry_attempts,
            retry_backoff=settings.transaction_retry_backoff_schedule,
            batch_size=settings.batch_write_size,
        )

    @property
    def batch_size(self) -> int:
        return self._batch_size

    # ------------------------------------------------------------------
    # Reads

    def read(self, fn: Callable[[Session], T]) -> T:
        session = self._session_factory()
        try:
            return fn(session)
        finally:
            session.close()

    def get_document(self, model: type[T], key: Any) -> T | None:
        return self.read(lambda session: session.get(model, key))

    def get_collection(self, model: type[T], *criteria: Any) -> list[T]:
        return self.read(lambda session: list(session.scalars(select(model).where(*criteria))))

    # ------------------------------------------------------------------
    # Writes

    def run_transaction(self, fn: Callable[[Session], T], *, description: str = "transaction") -> T:
        attempts = self._retry_attempts
        for attempt in range(1, attempts + 1):
            session = self._session_factory()
            try:
                result = fn(session)
                session.commit()
                return result
            except _CONFLICT_ERRORS as exc:
                session.rollback()
                if not _is_retryable(exc):
                    raise
                if attempt >= attempts:
                    raise ConflictError(f"{description} failed after {attempts} attempts") from exc
                delay = self._retry_backoff[min(attempt - 1, len(self._retry_backoff) - 1)]
                logger.warning(
                    "Conflict during {} (attempt {}/{}): {}; retrying in {}s",
                    description,
                    attempt,
                    attempts,
                    exc.__class__.__name__,
                    delay,
                )
                if delay > 0:
                    self._sleep(delay)
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()
        raise ConflictError(f"{description} failed after {attempts} attempts")

    def batch_write(self, writes: Sequence[DocumentWrite]) -> BatchWriteResult:
        """Commit ``writes`` in chunks of at most ``batch_size`` rows.

        A failing chunk is logged and reported; later chunks still run.
        """

        result = BatchWriteResult()
        for index, chunk in enumerate(_chunked(writes, self._batch_size)):
            try:
                written, skipped = self.run_transaction(
                    partial(_apply_writes, chunk),
                    description=f"batch write chunk {index}",
                )
            except (MarketError, SQLAlchemyError) as exc:
                logger.exception("Batch write chunk {} of {} rows failed", index, len(chunk))
                result.failures.append(
                    {
                        "chunk": index,
                        "documents": [write.describe() for write in chunk],
                        "error": str(exc),
                    }
                )
                continue
            result.written += written
            result.skipped += skipped
        return result


def _apply_writes(chunk: Sequence[DocumentWrite], session: Session) -> tuple[int, int]:
    written = 0
    skipped = 0
    for write in chunk:
        if write.mode == "create":
            session.add(write.model(**write.fields))
            written += 1
            continue
        record = session.get(write.model, write.key)
        if record is None:
            logger.warning("Skipping update of missing {}", write.describe())
            skipped += 1
            continue
        for name, value in write.fields.items():
            setattr(record, name, value)
        written += 1
    return written, skipped


def _is_retryable(exc: Exception) -> bool:
    """Optimistic version clashes and transient lock errors; not outages or schema errors."""

    if isinstance(exc, StaleDataError):
        return True
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _RETRYABLE_SQLSTATES:
        return True
    message = str(orig or exc).lower()
    return any(marker in message for marker in _RETRYABLE_SQLITE_MESSAGES)


def _chunked(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    if size <= 0:
        yield items
        return
    for index in range(0, len(items), size):
        yield items[index : index + size]


__all__ = ["MAX_BATCH_WRITE_SIZE", "Store"]
