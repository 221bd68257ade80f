"""Chunked store routine for ingest jobs.

For each chunk: check cancellation, extract fields, apply the keyword filter,
drop duplicates, then persist the surviving records together with the job's
running counters in one commit. Ingestion is chunk-atomic: a failure aborts
the remaining chunks but keeps what earlier chunks committed.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Sequence

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from .. import models
from ..config import settings
from .dedup import Candidate, partition_duplicates
from .fields import extract_fields
from .state import CancellationToken

logger = logging.getLogger(__name__)

KEYWORD_MISMATCH_REASON = "Keyword Mismatch"


@dataclass
class IngestOptions:
    """Options supplied with an ingest submission."""
    project_id: int
    source: str
    type: models.RecordType
    filter_keywords: list[str] | None = None
    generate_embeddings: bool = False


@dataclass
class StoreResult:
    """Outcome of the store phase."""
    saved_count: int = 0
    skipped_count: int = 0
    skipped_details: dict[str, int] = field(default_factory=dict)
    cancelled: bool = False


def matches_keywords(content: str, keywords: Sequence[str] | None) -> bool:
    """Case-insensitive substring match against any keyword; no keywords match all."""
    keywords = [k.strip().lower() for k in keywords or [] if k and k.strip()]
    if not keywords:
        return True
    lowered = content.lower()
    return any(k in lowered for k in keywords)


def record_metadata(raw: Any) -> dict[str, Any]:
    """Metadata stored alongside a record: the raw object, or a wrapped scalar."""
    return dict(raw) if isinstance(raw, dict) else {"value": raw}


async def store_chunk(
    session: AsyncSession,
    chunk: Sequence[Any],
    options: IngestOptions,
) -> tuple[list[models.DataRecord], Counter]:
    """Filter, deduplicate and stage one chunk of raw records.

    Records are added to the session but not committed.

    Returns:
        Tuple of (staged records, skip reason counter)
    """
    reasons: Counter = Counter()
    candidates: list[Candidate] = []

    for raw in chunk:
        fields = extract_fields(raw)
        if not matches_keywords(fields.content, options.filter_keywords):
            reasons[KEYWORD_MISMATCH_REASON] += 1
            continue
        candidates.append(Candidate(raw=raw, fields=fields))

    dedup = await partition_duplicates(
        session,
        candidates,
        project_id=options.project_id,
        record_type=options.type,
    )
    reasons.update(dedup.reasons)

    records = [
        models.DataRecord(
            project_id=options.project_id,
            type=options.type,
            category=c.fields.category,
            source=options.source,
            content=c.fields.content,
            metadata_=record_metadata(c.raw),
        )
        for c in dedup.unique
    ]
    session.add_all(records)
    return records, reasons


async def process_and_store(
    session: AsyncSession,
    records: Sequence[Any],
    options: IngestOptions,
    job_id: int,
    *,
    token: CancellationToken | None = None,
    chunk_size: int | None = None,
) -> StoreResult:
    """Persist raw records in bounded chunks with live progress.

    Args:
        session: Database session
        records: Parsed raw records (dicts or bare strings)
        options: Ingest options
        job_id: IngestJob receiving the running counters
        token: Cancellation token, checked before every chunk
        chunk_size: Records per chunk (default from config)

    Returns:
        StoreResult with the final counters
    """
    chunk_size = chunk_size or settings.ingest.chunk_size
    result = StoreResult()
    details: Counter = Counter()

    for start in range(0, len(records), chunk_size):
        if token is not None and await token.check():
            logger.info(f"Ingest job {job_id} cancelled before chunk at offset {start}")
            result.cancelled = True
            break

        chunk = records[start:start + chunk_size]
        try:
            staged, reasons = await store_chunk(session, chunk, options)

            details.update(reasons)
            result.saved_count += len(staged)
            result.skipped_count += sum(reasons.values())
            result.skipped_details = dict(details)

            await session.execute(
                update(models.IngestJob)
                .where(models.IngestJob.id == job_id)
                .values(
                    saved_count=result.saved_count,
                    skipped_count=result.skipped_count,
                    skipped_details=result.skipped_details,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        except Exception:
            await session.rollback()
            raise

        logger.debug(
            f"Ingest job {job_id}: chunk at offset {start} saved {len(staged)}, "
            f"skipped {sum(reasons.values())}"
        )

    logger.info(
        f"Ingest job {job_id} stored {result.saved_count} records, "
        f"skipped {result.skipped_count} {result.skipped_details}"
    )
    return result
