"""Ingest job queue: submission, per-project single-flight workers, cancellation.

Submissions create a PENDING job row, park the raw payload in a
:class:`PayloadStore` keyed by job id and enqueue the project on a bounded
asyncio queue. A fixed pool of worker tasks drains projects one at a time
under a per-project lock, so jobs of the same project run strictly in
submission order while different projects run concurrently.

Job lifecycle::

    PENDING -> PROCESSING -> [VECTORIZING] -> COMPLETED
                    \\              \\
                     +-> FAILED     +-> FAILED
    (any non-terminal) -> CANCELLED
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import models
from .config import settings
from .errors import NotFoundError, ValidationError
from .parsers import fetch_json_payload, parse_csv_payload
from .pipelines.ingest import IngestOptions, process_and_store
from .pipelines.state import CancellationToken, ProjectLocks, status_probe, transition_job
from .pipelines.vectorize import Embedder, vectorize_project

logger = logging.getLogger(__name__)

INTERRUPTED_ERROR = "Job interrupted by server restart."
PAYLOAD_LOST_ERROR = "Job payload lost."
CANCELLED_BY_USER = "Stopped by user"

RUNNING_STATUSES = (models.IngestStatus.PROCESSING, models.IngestStatus.VECTORIZING)


class PayloadKind(str, Enum):
    CSV = "CSV"
    API = "API"


@dataclass
class IngestPayload:
    """A submitted payload waiting for (or undergoing) processing.

    ``payload`` is the CSV text for CSV jobs and the source URL for API jobs.
    """
    kind: PayloadKind
    payload: str
    options: IngestOptions


class PayloadStore(ABC):
    """Job id -> raw payload, written once at submit and discarded at the end."""

    @abstractmethod
    def put(self, job_id: int, payload: IngestPayload) -> None: ...

    @abstractmethod
    def get(self, job_id: int) -> IngestPayload | None: ...

    @abstractmethod
    def discard(self, job_id: int) -> None: ...

    def has(self, job_id: int) -> bool:
        return self.get(job_id) is not None


class InMemoryPayloadStore(PayloadStore):
    """Process-local payload store.

    Not durable: a restart loses every in-flight payload, and the affected
    jobs are failed the next time their project is drained.
    """

    def __init__(self) -> None:
        self._payloads: dict[int, IngestPayload] = {}

    def put(self, job_id: int, payload: IngestPayload) -> None:
        self._payloads[job_id] = payload

    def get(self, job_id: int) -> IngestPayload | None:
        return self._payloads.get(job_id)

    def discard(self, job_id: int) -> None:
        self._payloads.pop(job_id, None)

    def __len__(self) -> int:
        return len(self._payloads)


class IngestQueue:
    """Bounded queue of projects with pending ingest jobs, plus its workers."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: Embedder,
        payload_store: PayloadStore | None = None,
        *,
        max_workers: int | None = None,
        max_pending: int | None = None,
        fetch_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.payload_store = payload_store or InMemoryPayloadStore()
        self.max_workers = max_workers or settings.ingest.max_workers
        self.fetch_transport = fetch_transport

        self._queue: asyncio.Queue[int] = asyncio.Queue(maxsize=max_pending or settings.ingest.max_pending)
        self._workers: list[asyncio.Task] = []
        self._locks = ProjectLocks()
        self._tokens: dict[int, CancellationToken] = {}

    # Lifecycle

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"ingest-worker-{n}")
            for n in range(self.max_workers)
        ]
        logger.info(f"Ingest queue started with {self.max_workers} workers")

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Ingest queue stopped")

    async def join(self) -> None:
        """Wait until every enqueued project has been drained."""
        await self._queue.join()

    # Operations

    async def submit(
        self,
        kind: PayloadKind | str,
        payload: str,
        options: IngestOptions,
    ) -> int:
        """Create a PENDING job and enqueue its project.

        Awaits while the queue is full.

        Returns:
            The new job id

        Raises:
            ValidationError: If the kind, project id, type or payload is missing
            NotFoundError: If the project does not exist
        """
        try:
            kind = PayloadKind(kind)
        except ValueError as e:
            raise ValidationError(f"Unsupported payload kind: {kind}") from e
        if not options.project_id:
            raise ValidationError("Project ID is required")
        if options.type is None:
            raise ValidationError("Record type is required")
        if not payload or not str(payload).strip():
            raise ValidationError("Payload is required")

        async with self.session_factory() as session:
            project = await session.get(models.Project, options.project_id)
            if project is None:
                raise NotFoundError(f"Project {options.project_id} not found")

            job = models.IngestJob(
                project_id=options.project_id,
                type=options.type,
                status=models.IngestStatus.PENDING,
            )
            session.add(job)
            await session.commit()
            job_id = job.id

        self.payload_store.put(job_id, IngestPayload(kind=kind, payload=payload, options=options))
        await self._queue.put(options.project_id)
        logger.info(f"Queued {kind.value} ingest job {job_id} for project {options.project_id}")
        return job_id

    async def cancel(self, job_id: int) -> models.IngestStatus:
        """Request cancellation of a job.

        Returns:
            The job status after the request

        Raises:
            NotFoundError: If the job does not exist
        """
        async with self.session_factory() as session:
            job = await session.get(models.IngestJob, job_id)
            if job is None:
                raise NotFoundError(f"Ingest job {job_id} not found")
            await transition_job(
                session,
                models.IngestJob,
                job_id,
                models.IngestStatus.CANCELLED,
                error=CANCELLED_BY_USER,
            )
            await session.refresh(job)
            status = job.status

        token = self._tokens.get(job_id)
        if token is not None:
            token.cancel()
        elif status == models.IngestStatus.CANCELLED:
            # Never picked up by a worker
            self.payload_store.discard(job_id)
        return status

    async def get_status(self, job_id: int) -> models.IngestJob:
        async with self.session_factory() as session:
            job = await session.get(models.IngestJob, job_id)
        if job is None:
            raise NotFoundError(f"Ingest job {job_id} not found")
        return job

    async def list_jobs(self, project_id: int, limit: int | None = None) -> list[models.IngestJob]:
        """Most recent ingest jobs of a project, newest first."""
        if not project_id:
            raise ValidationError("Project ID is required")
        limit = limit or settings.ingest.history_limit
        async with self.session_factory() as session:
            result = await session.execute(
                select(models.IngestJob)
                .where(models.IngestJob.project_id == project_id)
                .order_by(models.IngestJob.created_at.desc(), models.IngestJob.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    # Workers

    async def _worker(self, n: int) -> None:
        while True:
            project_id = await self._queue.get()
            try:
                async with self._locks.hold(project_id):
                    await self._drain_project(project_id)
            except Exception as e:
                logger.error(f"Worker {n} failed draining project {project_id}: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    async def _drain_project(self, project_id: int) -> None:
        """Run the project's PENDING jobs one after another, oldest first."""
        while True:
            async with self.session_factory() as session:
                running = await session.execute(
                    select(models.IngestJob.id).where(
                        models.IngestJob.project_id == project_id,
                        models.IngestJob.status.in_(RUNNING_STATUSES),
                    )
                )
                for job_id in running.scalars().all():
                    if self.payload_store.has(job_id):
                        logger.info(f"Project {project_id}: job {job_id} is still running")
                        return
                    logger.warning(f"Project {project_id}: job {job_id} lost its payload mid-run")
                    await transition_job(
                        session,
                        models.IngestJob,
                        job_id,
                        models.IngestStatus.FAILED,
                        error=INTERRUPTED_ERROR,
                    )

                oldest = await session.execute(
                    select(models.IngestJob.id)
                    .where(
                        models.IngestJob.project_id == project_id,
                        models.IngestJob.status == models.IngestStatus.PENDING,
                    )
                    .order_by(models.IngestJob.created_at, models.IngestJob.id)
                    .limit(1)
                )
                job_id = oldest.scalar_one_or_none()
                if job_id is None:
                    return

                payload = self.payload_store.get(job_id)
                if payload is None:
                    logger.warning(f"Project {project_id}: pending job {job_id} has no payload")
                    await transition_job(
                        session,
                        models.IngestJob,
                        job_id,
                        models.IngestStatus.FAILED,
                        error=PAYLOAD_LOST_ERROR,
                    )
                    continue

            await self._run_job(job_id, payload)

    async def _load_records(self, payload: IngestPayload) -> list[Any]:
        if payload.kind is PayloadKind.CSV:
            return parse_csv_payload(payload.payload)
        return await fetch_json_payload(payload.payload, transport=self.fetch_transport)

    async def _run_job(self, job_id: int, payload: IngestPayload) -> None:
        """Drive one job through its phases. Never raises."""
        options = payload.options
        token = CancellationToken(status_probe(self.session_factory, models.IngestJob, job_id))
        self._tokens[job_id] = token

        try:
            async with self.session_factory() as session:
                if not await transition_job(session, models.IngestJob, job_id, models.IngestStatus.PROCESSING):
                    logger.info(f"Ingest job {job_id} was cancelled before it started")
                    return

                try:
                    records = await self._load_records(payload)
                    await session.execute(
                        update(models.IngestJob)
                        .where(models.IngestJob.id == job_id)
                        .values(total_records=len(records))
                        .execution_options(synchronize_session=False)
                    )
                    await session.commit()

                    stored = await process_and_store(session, records, options, job_id, token=token)
                    if stored.cancelled:
                        return

                    if options.generate_embeddings:
                        if not await transition_job(
                            session, models.IngestJob, job_id, models.IngestStatus.VECTORIZING
                        ):
                            return
                        vectorized = await vectorize_project(
                            session,
                            self.gateway,
                            job_id=job_id,
                            project_id=options.project_id,
                            token=token,
                        )
                        if vectorized.failed or vectorized.cancelled:
                            return

                    await transition_job(session, models.IngestJob, job_id, models.IngestStatus.COMPLETED)

                except Exception as e:
                    logger.error(f"Ingest job {job_id} failed: {e}", exc_info=True)
                    await session.rollback()
                    await transition_job(
                        session,
                        models.IngestJob,
                        job_id,
                        models.IngestStatus.FAILED,
                        error=str(e),
                    )
        finally:
            self.payload_store.discard(job_id)
            self._tokens.pop(job_id, None)
