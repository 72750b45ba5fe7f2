"""estatefeed — Per-job overlap guard.

A run of a job is skipped outright while a previous run of the same job is
still in progress, whether that run lives in this process or in another
worker sharing the database. Different job names never block each other.

The lease is a `job_locks` row. Claiming it is a single conditional UPDATE
that only matches an idle or expired row, so of two concurrent claimers
exactly one sees `rowcount == 1`. A lease older than the TTL is treated as
abandoned (crashed worker) and may be taken over.
"""

import os
import socket
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator, Optional

from sqlalchemy import or_, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from estatefeed import database
from estatefeed.config import settings
from estatefeed.core.logging import get_logger
from estatefeed.feed.parsing import ensure_utc, utc_now
from estatefeed.models.feed_models import JobLock

logger = get_logger("scheduler.guard")


class JobAlreadyRunning(Exception):
    """Raised when a job is triggered while its previous run is active."""

    def __init__(self, job: str):
        self.job = job
        super().__init__(f"Job '{job}' is already running")


class JobGuard:
    def __init__(self, engine: Optional[Engine] = None, ttl: Optional[timedelta] = None):
        self._engine = engine
        self.ttl = (
            ttl if ttl is not None else timedelta(minutes=settings.feed_job_lock_ttl_minutes)
        )
        self.owner = f"{socket.gethostname()}:{os.getpid()}"

    @property
    def engine(self) -> Engine:
        return self._engine if self._engine is not None else database.engine

    def is_running(self, job: str) -> bool:
        with Session(self.engine) as session:
            lock = session.get(JobLock, job)
            return (
                lock is not None
                and lock.holder is not None
                and lock.expires_at is not None
                and ensure_utc(lock.expires_at) > utc_now()
            )

    @asynccontextmanager
    async def hold(self, job: str) -> AsyncIterator[None]:
        """Hold the job's lease or raise `JobAlreadyRunning` without waiting."""
        token = f"{self.owner}:{uuid.uuid4().hex[:8]}"
        if not self._claim(job, token):
            logger.warning(f"Skipping '{job}': previous run still active", extra={"job": job})
            raise JobAlreadyRunning(job)
        logger.debug(f"Lease on '{job}' acquired", extra={"job": job, "holder": token})
        try:
            yield
        finally:
            self._release(job, token)

    # ── Lease rows ──

    def _claim(self, job: str, token: str) -> bool:
        now = utc_now()
        with Session(self.engine) as session:
            if session.get(JobLock, job) is None:
                session.add(JobLock(name=job))
                try:
                    session.commit()
                except IntegrityError:
                    # Created by a concurrent claimer; the UPDATE below decides
                    session.rollback()

            result = session.execute(
                update(JobLock)
                .where(
                    JobLock.name == job,
                    or_(JobLock.holder.is_(None), JobLock.expires_at < now),  # type: ignore
                )
                .values(holder=token, acquired_at=now, expires_at=now + self.ttl)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1

    def _release(self, job: str, token: str) -> None:
        with Session(self.engine) as session:
            result = session.execute(
                update(JobLock)
                .where(JobLock.name == job, JobLock.holder == token)
                .values(holder=None, expires_at=None)
                .execution_options(synchronize_session=False)
            )
            session.commit()
        if result.rowcount != 1:
            logger.warning(
                f"Lease on '{job}' expired and was taken over before this run finished",
                extra={"job": job, "holder": token},
            )


guard = JobGuard()
