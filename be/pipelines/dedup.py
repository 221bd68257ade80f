"""Type-scoped duplicate suppression by external identifier.

A record carrying ``task_id``/``id``/``uuid``/``record_id`` is a duplicate when
the same project already stores a record of the same type with that value
under any of those metadata keys. TASK and FEEDBACK rows never suppress each
other.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import String, cast, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from be import models
from be.pipelines.fields import ExtractedFields
from config.field_vocabulary import EXTERNAL_ID_FIELDS

logger = logging.getLogger(__name__)

DUPLICATE_REASON = "Duplicate ID"


@dataclass
class Candidate:
    """A raw record that passed extraction and filtering."""
    raw: Any
    fields: ExtractedFields


@dataclass
class DedupResult:
    """Partition of a batch into unique and duplicate candidates."""
    unique: list[Candidate] = field(default_factory=list)
    duplicates: list[Candidate] = field(default_factory=list)
    reasons: Counter = field(default_factory=Counter)


def external_id(raw: Any) -> str | None:
    """First truthy external identifier of a raw record, as text."""
    if not isinstance(raw, dict):
        return None
    for key in EXTERNAL_ID_FIELDS:
        value = raw.get(key)
        if value:
            return str(value)
    return None


def _metadata_text(key: str):
    return cast(models.DataRecord.metadata_[key].as_string(), String)


async def find_existing_ids(
    session: AsyncSession,
    *,
    project_id: int,
    record_type: models.RecordType,
    ids: set[str],
) -> set[str]:
    """Return the subset of ``ids`` already stored for this project and type."""
    if not ids:
        return set()

    columns = [_metadata_text(key) for key in EXTERNAL_ID_FIELDS]
    query = (
        select(*columns)
        .where(
            models.DataRecord.project_id == project_id,
            models.DataRecord.type == record_type,
            or_(*(column.in_(sorted(ids)) for column in columns)),
        )
    )
    result = await session.execute(query)

    existing: set[str] = set()
    for row in result.all():
        existing.update(value for value in row if value is not None and value in ids)
    return existing


async def partition_duplicates(
    session: AsyncSession,
    candidates: list[Candidate],
    *,
    project_id: int,
    record_type: models.RecordType,
) -> DedupResult:
    """Split a batch into unique and duplicate candidates.

    Records without an external id are always unique. Repeats of an id within
    the batch are duplicates too, since the first occurrence is about to be
    stored.
    """
    result = DedupResult()
    batch_ids = {eid for eid in (external_id(c.raw) for c in candidates) if eid}
    existing = await find_existing_ids(
        session,
        project_id=project_id,
        record_type=record_type,
        ids=batch_ids,
    )

    seen: set[str] = set()
    for candidate in candidates:
        eid = external_id(candidate.raw)
        if eid is None:
            result.unique.append(candidate)
            continue
        if eid in existing or eid in seen:
            result.duplicates.append(candidate)
            result.reasons[DUPLICATE_REASON] += 1
            continue
        seen.add(eid)
        result.unique.append(candidate)

    if result.duplicates:
        logger.info(
            f"Project {project_id} ({record_type.value}): "
            f"{len(result.duplicates)} duplicate(s) in batch of {len(candidates)}"
        )
    return result
