"""Guideline alignment: single-record compare and the bulk alignment job.

Both paths extract the project's guidelines document once, then ask the model
gateway for a verdict that starts with ``ALIGNMENT_SCORE: <0-100>``. The
verdict text is cached on the record's ``alignment_analysis``.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ai.gateway import UpstreamGatewayError
from ai.scoring import extract_alignment_score
from be import models
from be.config import settings
from be.errors import NotFoundError, ValidationError
from be.parsers import ParseError, extract_text
from be.pipelines.state import CancellationToken, ProjectLocks, status_probe, transition_job
from config.prompts import ALIGNMENT_PROMPT, ALIGNMENT_SYSTEM_PROMPT

logger = logging.getLogger(__name__)

CANCELLED_BY_ADMIN = "Stopped by admin"
INTERRUPTED_ERROR = "Job interrupted by server restart."

ACTIVE_STATUSES = (models.AnalyticsStatus.PENDING, models.AnalyticsStatus.PROCESSING)


class Completer(Protocol):
    async def complete(self, prompt: str, system_prompt: str | None = None) -> str: ...


@dataclass
class AlignmentVerdict:
    """Alignment verdict for one record."""
    record_id: int
    evaluation: str
    alignment_score: int | None
    record_content: str
    project_name: str
    record_type: models.RecordType
    metadata: dict[str, Any] | None
    cached: bool


async def guidelines_text(
    project: models.Project,
    text_extractor: Callable[[bytes], str] = extract_text,
) -> str:
    """Extract the project's guidelines as plain text.

    Raises:
        ValidationError: If the project has no guidelines document
        ParseError: If the document cannot be read or yields no text
    """
    if not project.guidelines:
        raise ValidationError(f"No guidelines uploaded for project {project.name}.")

    # PDF extraction is CPU bound
    text = await asyncio.to_thread(text_extractor, project.guidelines)
    if not text or not text.strip():
        raise ParseError("Guidelines document appears to be empty or unreadable.")
    return text


def build_alignment_prompts(project_name: str, guidelines: str, content: str) -> tuple[str, str]:
    """Return (prompt, system_prompt) for one alignment call."""
    return (
        ALIGNMENT_PROMPT.format(guidelines=guidelines, content=content),
        ALIGNMENT_SYSTEM_PROMPT.format(project_name=project_name),
    )


async def compare_record(
    session: AsyncSession,
    gateway: Completer,
    record_id: int,
    force_regenerate: bool = False,
    *,
    text_extractor: Callable[[bytes], str] = extract_text,
) -> AlignmentVerdict:
    """Grade one record against its project's guidelines.

    Returns the cached verdict unless ``force_regenerate`` is set.

    Raises:
        NotFoundError: If the record does not exist
        ValidationError: If the project has no guidelines
        ParseError: If the guidelines cannot be read
        UpstreamGatewayError: If the completion call fails
    """
    record = await session.get(models.DataRecord, record_id)
    if record is None:
        raise NotFoundError(f"Record {record_id} not found")
    project = await session.get(models.Project, record.project_id)

    def verdict(evaluation: str, cached: bool) -> AlignmentVerdict:
        return AlignmentVerdict(
            record_id=record.id,
            evaluation=evaluation,
            alignment_score=extract_alignment_score(evaluation),
            record_content=record.content,
            project_name=project.name,
            record_type=record.type,
            metadata=record.metadata_,
            cached=cached,
        )

    if record.alignment_analysis and not force_regenerate:
        return verdict(record.alignment_analysis, cached=True)

    guidelines = await guidelines_text(project, text_extractor)
    prompt, system_prompt = build_alignment_prompts(project.name, guidelines, record.content)
    evaluation = await gateway.complete(prompt, system_prompt)

    record.alignment_analysis = evaluation
    await session.commit()
    logger.info(f"Alignment verdict stored for record {record_id}")
    return verdict(evaluation, cached=False)


class AlignmentJobRunner:
    """Starts, runs and cancels bulk alignment jobs.

    One active job per project: ``start`` returns the id of an existing
    PENDING/PROCESSING job instead of creating a second one. Each job runs as
    its own asyncio task and scores records one gateway call at a time.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: Completer,
        *,
        text_extractor: Callable[[bytes], str] = extract_text,
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.text_extractor = text_extractor
        self._locks = ProjectLocks()
        self._tasks: dict[int, asyncio.Task] = {}
        self._tokens: dict[int, CancellationToken] = {}

    async def start(self, project_id: int) -> int | None:
        """Start bulk alignment for a project.

        Returns:
            The new or already active job id, or None when every record of
            the project already has a verdict
        """
        if not project_id:
            raise ValidationError("Project ID is required")

        async with self._locks.hold(project_id):
            async with self.session_factory() as session:
                active = await session.execute(
                    select(models.AnalyticsJob.id)
                    .where(
                        models.AnalyticsJob.project_id == project_id,
                        models.AnalyticsJob.status.in_(ACTIVE_STATUSES),
                    )
                    .order_by(models.AnalyticsJob.created_at.desc(), models.AnalyticsJob.id.desc())
                )
                for active_id in active.scalars().all():
                    if active_id in self._tasks:
                        logger.info(f"Project {project_id} already has alignment job {active_id}")
                        return active_id
                    # Left behind by a previous process
                    logger.warning(f"Project {project_id}: alignment job {active_id} has no runner")
                    await transition_job(
                        session,
                        models.AnalyticsJob,
                        active_id,
                        models.AnalyticsStatus.FAILED,
                        error=INTERRUPTED_ERROR,
                    )

                pending = await session.execute(
                    select(func.count())
                    .select_from(models.DataRecord)
                    .where(
                        models.DataRecord.project_id == project_id,
                        models.DataRecord.alignment_analysis.is_(None),
                    )
                )
                target_count = pending.scalar_one()
                if target_count == 0:
                    logger.info(f"Project {project_id} has no records awaiting alignment")
                    return None

                job = models.AnalyticsJob(
                    project_id=project_id,
                    status=models.AnalyticsStatus.PROCESSING,
                    total_records=target_count,
                    processed_count=0,
                )
                session.add(job)
                await session.commit()
                job_id = job.id

            token = CancellationToken(status_probe(self.session_factory, models.AnalyticsJob, job_id))
            self._tokens[job_id] = token
            task = asyncio.create_task(self.run(job_id, project_id, token), name=f"alignment-job-{job_id}")
            self._tasks[job_id] = task
            task.add_done_callback(lambda _t, jid=job_id: self._forget(jid))

        logger.info(f"Started alignment job {job_id} for project {project_id} ({target_count} records)")
        return job_id

    def _forget(self, job_id: int) -> None:
        self._tasks.pop(job_id, None)
        self._tokens.pop(job_id, None)

    async def run(self, job_id: int, project_id: int, token: CancellationToken | None = None) -> None:
        """Score every record of the project that lacks a verdict.

        Never raises: project-level failures mark the job FAILED.
        """
        try:
            async with self.session_factory() as session:
                project = await session.get(models.Project, project_id)
                if project is None or not project.guidelines:
                    raise ValidationError("Project guidelines not found.")

                guidelines = await guidelines_text(project, self.text_extractor)
                project_name = project.name

                result = await session.execute(
                    select(models.DataRecord.id, models.DataRecord.content)
                    .where(
                        models.DataRecord.project_id == project_id,
                        models.DataRecord.alignment_analysis.is_(None),
                    )
                    .order_by(models.DataRecord.created_at.desc(), models.DataRecord.id.desc())
                )
                pending = result.all()

                for i, (record_id, content) in enumerate(pending):
                    if token is not None and await token.check():
                        logger.info(f"Alignment job {job_id} cancelled after {i} records")
                        break

                    prompt, system_prompt = build_alignment_prompts(project_name, guidelines, content)
                    try:
                        evaluation = await self.gateway.complete(prompt, system_prompt)
                    except UpstreamGatewayError as e:
                        logger.warning(f"Alignment job {job_id}: record {record_id} skipped: {e}")
                        evaluation = None

                    if evaluation:
                        await session.execute(
                            update(models.DataRecord)
                            .where(models.DataRecord.id == record_id)
                            .values(alignment_analysis=evaluation)
                            .execution_options(synchronize_session=False)
                        )
                    await session.execute(
                        update(models.AnalyticsJob)
                        .where(models.AnalyticsJob.id == job_id)
                        .values(processed_count=i + 1)
                        .execution_options(synchronize_session=False)
                    )
                    await session.commit()

                await transition_job(session, models.AnalyticsJob, job_id, models.AnalyticsStatus.COMPLETED)

        except Exception as e:
            logger.error(f"Alignment job {job_id} failed: {e}", exc_info=True)
            async with self.session_factory() as session:
                await transition_job(
                    session,
                    models.AnalyticsJob,
                    job_id,
                    models.AnalyticsStatus.FAILED,
                    error=str(e),
                )

    async def cancel(self, job_id: int) -> models.AnalyticsStatus:
        """Mark a job CANCELLED; a job already terminal is left as is.

        Returns:
            The job status after the request

        Raises:
            NotFoundError: If the job does not exist
        """
        async with self.session_factory() as session:
            job = await session.get(models.AnalyticsJob, job_id)
            if job is None:
                raise NotFoundError(f"Alignment job {job_id} not found")
            await transition_job(
                session,
                models.AnalyticsJob,
                job_id,
                models.AnalyticsStatus.CANCELLED,
                error=CANCELLED_BY_ADMIN,
            )
            await session.refresh(job)
            status = job.status

        token = self._tokens.get(job_id)
        if token is not None:
            token.cancel()
        return status

    async def list_jobs(self, project_id: int, limit: int | None = None) -> list[models.AnalyticsJob]:
        """Most recent alignment jobs of a project, newest first."""
        limit = limit or settings.alignment.history_limit
        async with self.session_factory() as session:
            result = await session.execute(
                select(models.AnalyticsJob)
                .where(models.AnalyticsJob.project_id == project_id)
                .order_by(models.AnalyticsJob.created_at.desc(), models.AnalyticsJob.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def join(self) -> None:
        """Wait for every running job task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def stop(self) -> None:
        """Cancel running job tasks (used on shutdown)."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
