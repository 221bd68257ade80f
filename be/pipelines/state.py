"""Job status transitions and cooperative cancellation.

Terminal statuses are never overwritten: every transition is a conditional
UPDATE that only touches non-terminal rows. A CANCELLED written from the
outside therefore survives the worker's own COMPLETED/FAILED write, and a
FAILED transition happens at most once.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Union

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from be import models

logger = logging.getLogger(__name__)

JobModel = Union[type[models.IngestJob], type[models.AnalyticsJob]]

TERMINAL_STATUSES = frozenset({"COMPLETED", "FAILED", "CANCELLED"})


def _terminal_values(model: JobModel) -> list:
    status_enum = models.IngestStatus if model is models.IngestJob else models.AnalyticsStatus
    return [status_enum(value) for value in TERMINAL_STATUSES]


async def transition_job(
    session: AsyncSession,
    model: JobModel,
    job_id: int,
    status,
    *,
    error: str | None = None,
    commit: bool = True,
    **values,
) -> bool:
    """Move a job to ``status`` unless it already reached a terminal status.

    Args:
        session: Database session
        model: IngestJob or AnalyticsJob
        job_id: Job ID
        status: Target status
        error: Optional human-readable error to attach
        commit: Commit immediately
        **values: Extra columns to update in the same statement

    Returns:
        True if the row was updated
    """
    if error is not None:
        values["error"] = error

    result = await session.execute(
        update(model)
        .where(model.id == job_id, model.status.not_in(_terminal_values(model)))
        .values(status=status, **values)
        .execution_options(synchronize_session=False)
    )
    if commit:
        await session.commit()

    updated = result.rowcount > 0
    if updated:
        logger.info(f"{model.__name__} {job_id} -> {status.value}")
    else:
        logger.debug(f"{model.__name__} {job_id} already terminal, skipped -> {status.value}")
    return updated


async def job_status(session: AsyncSession, model: JobModel, job_id: int):
    """Current status of a job, or None if it does not exist."""
    result = await session.execute(select(model.status).where(model.id == job_id))
    return result.scalar_one_or_none()


class CancellationToken:
    """Cooperative cancellation flag for a running job.

    The flag trips locally through :meth:`cancel`, or when ``probe`` reports
    that the job was cancelled elsewhere (e.g. another process wrote CANCELLED
    to the job row). Workers call :meth:`check` once per chunk, batch or
    record, so at most one extra unit of work completes after a cancel.
    """

    def __init__(self, probe: Callable[[], Awaitable[bool]] | None = None) -> None:
        self._event = asyncio.Event()
        self._probe = probe

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def check(self) -> bool:
        """Return True if the job should stop before its next unit of work."""
        if not self._event.is_set() and self._probe is not None and await self._probe():
            self._event.set()
        return self._event.is_set()


def status_probe(
    session_factory: async_sessionmaker[AsyncSession],
    model: JobModel,
    job_id: int,
) -> Callable[[], Awaitable[bool]]:
    """Build a probe that reads the job row and reports CANCELLED."""

    async def probe() -> bool:
        async with session_factory() as session:
            status = await job_status(session, model, job_id)
        return status is not None and status.value == "CANCELLED"

    return probe


class ProjectLocks:
    """Per-project asyncio locks, dropped once no task holds or waits on one."""

    def __init__(self) -> None:
        self._locks: dict[int, asyncio.Lock] = {}
        self._users: dict[int, int] = {}

    @asynccontextmanager
    async def hold(self, project_id: int) -> AsyncIterator[None]:
        lock = self._locks.setdefault(project_id, asyncio.Lock())
        self._users[project_id] = self._users.get(project_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[project_id] -= 1
            if not self._users[project_id]:
                del self._users[project_id]
                del self._locks[project_id]

    def __len__(self) -> int:
        return len(self._locks)
