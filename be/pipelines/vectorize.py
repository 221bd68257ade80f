"""Vectorization worker: batched embedding generation for a project.

Repeatedly selects records without an embedding, embeds their content in one
gateway call per batch and commits the vectors together with the job's
progress. Records the gateway cannot embed are quarantined for the rest of
the run; repeated total failures are treated as an outage and fail the job.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from itertools import zip_longest
from typing import Protocol, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ai.gateway import UpstreamGatewayError
from be import models
from be.config import settings
from be.pipelines.state import CancellationToken, transition_job

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    async def embed(self, texts: list[str]) -> list[list[float]]: ...


@dataclass
class VectorizeResult:
    """Outcome of a vectorization run."""
    embedded_count: int = 0
    quarantined_ids: set[int] = field(default_factory=set)
    gateway_calls: int = 0
    cancelled: bool = False
    failed: bool = False
    error: str | None = None


async def count_pending(session: AsyncSession, project_id: int) -> int:
    """Number of records in the project still lacking an embedding."""
    result = await session.execute(
        select(func.count())
        .select_from(models.DataRecord)
        .where(
            models.DataRecord.project_id == project_id,
            models.DataRecord.embedding.is_(None),
        )
    )
    return result.scalar_one()


async def project_dimension(session: AsyncSession, project_id: int) -> int | None:
    """Dimension of the vectors already stored for the project, if any."""
    result = await session.execute(
        select(models.DataRecord.embedding)
        .where(
            models.DataRecord.project_id == project_id,
            models.DataRecord.embedding.is_not(None),
        )
        .limit(1)
    )
    vector = result.scalar_one_or_none()
    return len(vector) if vector is not None else None


async def next_batch(
    session: AsyncSession,
    project_id: int,
    *,
    exclude: set[int],
    batch_size: int,
) -> Sequence[tuple[int, str]]:
    query = (
        select(models.DataRecord.id, models.DataRecord.content)
        .where(
            models.DataRecord.project_id == project_id,
            models.DataRecord.embedding.is_(None),
        )
        .order_by(models.DataRecord.id)
        .limit(batch_size)
    )
    if exclude:
        query = query.where(models.DataRecord.id.not_in(sorted(exclude)))
    result = await session.execute(query)
    return result.all()


async def vectorize_project(
    session: AsyncSession,
    gateway: Embedder,
    *,
    job_id: int,
    project_id: int,
    token: CancellationToken | None = None,
    batch_size: int | None = None,
    max_consecutive_failures: int | None = None,
    retry_delay: float | None = None,
) -> VectorizeResult:
    """Embed every record of a project that lacks an embedding.

    Args:
        session: Database session
        gateway: Anything with an async ``embed(texts)`` method
        job_id: IngestJob receiving progress (total_records, saved_count)
        project_id: Project whose records are embedded
        token: Cancellation token, checked once per batch
        batch_size: Records per gateway call (default from config)
        max_consecutive_failures: Failed batches in a row before the job fails
        retry_delay: Seconds to wait after a failed batch

    Returns:
        VectorizeResult; ``failed`` is set when the job was marked FAILED
    """
    batch_size = batch_size or settings.vectorize.batch_size
    max_failures = max_consecutive_failures or settings.vectorize.max_consecutive_failures
    delay = settings.vectorize.retry_delay_seconds if retry_delay is None else retry_delay

    result = VectorizeResult()
    total = await count_pending(session, project_id)
    expected_dim = await project_dimension(session, project_id)

    await session.execute(
        update(models.IngestJob)
        .where(models.IngestJob.id == job_id)
        .values(total_records=total, saved_count=0)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    logger.info(f"Vectorizing {total} records for project {project_id} (job {job_id})")

    consecutive_failures = 0

    while True:
        if token is not None and await token.check():
            logger.info(f"Vectorization for job {job_id} cancelled")
            result.cancelled = True
            break

        batch = await next_batch(
            session,
            project_id,
            exclude=result.quarantined_ids,
            batch_size=batch_size,
        )
        if not batch:
            break

        failure: str | None = None
        vectors: list[list[float]] = []
        try:
            result.gateway_calls += 1
            vectors = await gateway.embed([content for _, content in batch])
        except UpstreamGatewayError as e:
            failure = f"Embedding API error: {e}. Check AI provider connection."
            logger.error(
                f"Vectorization API error (attempt {consecutive_failures + 1}/{max_failures}): {e}"
            )
        else:
            if all(not vec for vec in vectors):
                failure = (
                    f"Embedding generation failed after {max_failures} consecutive attempts. "
                    "Check AI provider connection."
                )
                logger.error(
                    f"Vectorization batch returned empty (attempt {consecutive_failures + 1}/{max_failures})"
                )

        if failure is not None:
            consecutive_failures += 1
            if consecutive_failures >= max_failures:
                await transition_job(
                    session,
                    models.IngestJob,
                    job_id,
                    models.IngestStatus.FAILED,
                    error=failure,
                )
                result.failed = True
                result.error = failure
                break
            await asyncio.sleep(delay)
            continue

        consecutive_failures = 0

        embedded = 0
        for (record_id, _), vector in zip_longest(batch, vectors[:len(batch)], fillvalue=None):
            if not vector:
                result.quarantined_ids.add(record_id)
                continue
            if expected_dim is None:
                expected_dim = len(vector)
            if len(vector) != expected_dim:
                logger.warning(
                    f"Record {record_id}: embedding has {len(vector)} dimensions, "
                    f"project uses {expected_dim}"
                )
                result.quarantined_ids.add(record_id)
                continue
            await session.execute(
                update(models.DataRecord)
                .where(models.DataRecord.id == record_id)
                .values(embedding=[float(x) for x in vector])
                .execution_options(synchronize_session=False)
            )
            embedded += 1

        result.embedded_count += embedded
        await session.execute(
            update(models.IngestJob)
            .where(models.IngestJob.id == job_id)
            .values(saved_count=result.embedded_count)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

    if result.quarantined_ids:
        logger.warning(
            f"Vectorization for job {job_id} finished with "
            f"{len(result.quarantined_ids)} records that could not be embedded"
        )
    return result
