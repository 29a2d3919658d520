"""Exclusive per-target lock stored as a row in the history database."""

from __future__ import annotations

import logging
import os
import socket
import time
import uuid
from collections.abc import Callable
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Iterator, Optional

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from schemaflow.database import SessionLocal
from schemaflow.models import MigrationLock, utcnow
from schemaflow.services.migration_errors import LockTimeout

logger = logging.getLogger(__name__)


def default_holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def _as_aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ApplicationLock:
    """Only one holder may own the lock for a target at a time.

    Acquisition inserts the ``migration_locks`` row keyed by target; a primary key
    violation means another applier holds it, so we poll until ``timeout`` runs out.
    """

    def __init__(
        self,
        target: str,
        *,
        session_factory: Callable[[], Session] | None = None,
        timeout: float = 30.0,
        poll_interval: float = 0.5,
        stale_after: Optional[float] = None,
        holder: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.target = target
        self.holder = holder or default_holder_id()
        self._session_factory = session_factory or SessionLocal
        self._timeout = timeout
        self._poll_interval = poll_interval
        self._stale_after = stale_after
        self._sleep = sleep
        self._clock = clock
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def _try_insert(self) -> bool:
        with self._session_factory() as session:
            session.add(MigrationLock(target=self.target, holder=self.holder, acquired_at=utcnow()))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
        return True

    def _break_if_stale(self) -> None:
        if self._stale_after is None:
            return
        with self._session_factory() as session:
            existing = session.get(MigrationLock, self.target)
            if existing is None:
                return
            age = utcnow() - _as_aware(existing.acquired_at)
            if age < timedelta(seconds=self._stale_after):
                return
            logger.warning(
                "Breaking stale migration lock on %s held by %s since %s",
                self.target,
                existing.holder,
                existing.acquired_at,
            )
            session.execute(
                delete(MigrationLock).where(
                    MigrationLock.target == self.target,
                    MigrationLock.holder == existing.holder,
                )
            )
            session.commit()

    def acquire(self) -> None:
        if self._held:
            return
        started = self._clock()
        while True:
            if self._try_insert():
                self._held = True
                logger.debug("Acquired migration lock on %s as %s", self.target, self.holder)
                return
            self._break_if_stale()
            waited = self._clock() - started
            if waited >= self._timeout:
                logger.info("Timed out after %.1fs waiting for migration lock on %s", waited, self.target)
                raise LockTimeout(self.target, waited)
            self._sleep(min(self._poll_interval, max(self._timeout - waited, 0.0)))

    def release(self) -> None:
        if not self._held:
            return
        with self._session_factory() as session:
            session.execute(
                delete(MigrationLock).where(
                    MigrationLock.target == self.target,
                    MigrationLock.holder == self.holder,
                )
            )
            session.commit()
        self._held = False
        logger.debug("Released migration lock on %s", self.target)

    @contextmanager
    def hold(self) -> Iterator["ApplicationLock"]:
        self.acquire()
        try:
            yield self
        finally:
            self.release()


__all__ = ["ApplicationLock", "default_holder_id"]
