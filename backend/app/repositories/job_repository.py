"""Run-locks that keep scheduled jobs from overlapping."""

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from app.models import JobLock

from .mappers import as_utc


class JobLockRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def acquire(self, name: str, owner: str, *, now: datetime, ttl: timedelta) -> bool:
        """Take the lock, or an abandoned one older than ``ttl``."""

        lock = self._session.get(JobLock, name)
        if lock is None:
            self._session.add(JobLock(name=name, owner=owner, acquired_at=now))
            self._session.flush()
            return True
        if lock.owner == owner:
            return True
        if as_utc(lock.acquired_at) <= now - ttl:
            lock.owner = owner
            lock.acquired_at = now
            self._session.flush()
            return True
        return False

    def release(self, name: str, owner: str) -> bool:
        lock = self._session.get(JobLock, name)
        if lock is None or lock.owner != owner:
            return False
        self._session.delete(lock)
        return True


__all__ = ["JobLockRepository"]
