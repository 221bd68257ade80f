"""Similarity engine: cosine ranking with an optional LLM re-rank.

The vector pass scans only ``(id, embedding)`` pairs of same-project,
same-type records and hydrates full rows for the winners. The re-rank pass
asks the model gateway to critically score twice as many candidates and keeps
those above a threshold; it falls back to the vector ranking whenever the
gateway or its answer fails.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol, Sequence

import numpy as np
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ai.gateway import UpstreamGatewayError
from ai.scoring import parse_rerank_response
from be import models
from be.config import settings
from be.errors import InvalidStateError, NotFoundError
from config.prompts import RERANK_CANDIDATE, RERANK_PROMPT, RERANK_SYSTEM_PROMPT

logger = logging.getLogger(__name__)

# Candidate content is truncated in re-rank prompts
RERANK_CONTENT_CHARS = 2000


class Completer(Protocol):
    async def complete(self, prompt: str, system_prompt: str | None = None) -> str: ...


@dataclass
class SimilarRecord:
    """A record and its cosine similarity to the target."""
    record: models.DataRecord
    similarity: float


@dataclass
class RankedMatch:
    """A similar record after the optional LLM re-rank."""
    record: models.DataRecord
    similarity: float
    llm_score: int | None = None
    rationale: str | None = None


@dataclass
class RerankResult:
    """Ranked matches plus whether the LLM pass was applied."""
    target_id: int
    matches: list[RankedMatch]
    reranked: bool


def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 when either has zero magnitude."""
    a = np.asarray(vec_a, dtype=np.float64)
    b = np.asarray(vec_b, dtype=np.float64)
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a, b) / (norm_a * norm_b))


async def load_target(session: AsyncSession, target_id: int):
    """Load the target's id, project, type and embedding.

    Raises:
        NotFoundError: If the record does not exist
        InvalidStateError: If the record has no embedding yet
    """
    result = await session.execute(
        select(
            models.DataRecord.id,
            models.DataRecord.project_id,
            models.DataRecord.type,
            models.DataRecord.embedding,
        ).where(models.DataRecord.id == target_id)
    )
    target = result.one_or_none()
    if target is None:
        raise NotFoundError(f"Record {target_id} not found")
    if target.embedding is None or len(target.embedding) == 0:
        raise InvalidStateError(f"Record {target_id} has no embedding")
    return target


async def find_similar_records(
    session: AsyncSession,
    target_id: int,
    limit: int | None = None,
) -> list[SimilarRecord]:
    """Rank same-project, same-type records by cosine similarity to a target.

    Args:
        session: Database session
        target_id: Record to compare against
        limit: Number of matches to return (default from config)

    Returns:
        SimilarRecord list sorted by similarity DESC (ties by id ASC)

    Raises:
        NotFoundError: If the target does not exist
        InvalidStateError: If the target has no embedding
    """
    limit = limit or settings.similarity.default_limit
    target = await load_target(session, target_id)
    dim = len(target.embedding)

    # Pass 1: id + embedding only
    candidates = await session.execute(
        select(models.DataRecord.id, models.DataRecord.embedding).where(
            models.DataRecord.project_id == target.project_id,
            models.DataRecord.type == target.type,
            models.DataRecord.id != target_id,
            models.DataRecord.embedding.is_not(None),
        )
    )

    scores: list[tuple[int, float]] = []
    for record_id, embedding in candidates.all():
        if embedding is None or len(embedding) != dim:
            continue
        scores.append((record_id, cosine_similarity(target.embedding, embedding)))

    scores.sort(key=lambda item: (-item[1], item[0]))
    top = scores[:limit]
    if not top:
        return []

    # Pass 2: hydrate the winners only
    result = await session.execute(
        select(models.DataRecord).where(models.DataRecord.id.in_([rid for rid, _ in top]))
    )
    by_id = {record.id: record for record in result.scalars().all()}

    matches = [
        SimilarRecord(record=by_id[rid], similarity=score)
        for rid, score in top
        if rid in by_id
    ]
    logger.info(f"Found {len(matches)} similar records for {target_id} (limit={limit})")
    return matches


def build_rerank_prompt(target_content: str, candidates: Sequence[SimilarRecord]) -> str:
    rendered = "\n".join(
        RERANK_CANDIDATE.format(
            record_id=c.record.id,
            content=c.record.content[:RERANK_CONTENT_CHARS],
        )
        for c in candidates
    )
    return RERANK_PROMPT.format(target=target_content[:RERANK_CONTENT_CHARS], candidates=rendered)


def _vector_fallback(target_id: int, candidates: Sequence[SimilarRecord], limit: int) -> RerankResult:
    return RerankResult(
        target_id=target_id,
        matches=[RankedMatch(record=c.record, similarity=c.similarity) for c in candidates[:limit]],
        reranked=False,
    )


def _snapshot(matches: Sequence[RankedMatch]) -> list[dict]:
    return [
        {
            "id": m.record.id,
            "similarity": round(m.similarity, 6),
            "score": m.llm_score,
            "reason": m.rationale,
        }
        for m in matches
    ]


async def rerank_similar_records(
    session: AsyncSession,
    gateway: Completer,
    target_id: int,
    limit: int | None = None,
    *,
    threshold: int | None = None,
) -> RerankResult:
    """Vector search followed by a critical LLM re-rank and filter.

    Fetches ``rerank_multiplier x limit`` vector candidates, has the gateway
    score each 0-100 against the target content, drops scores below the
    threshold, re-sorts by LLM score and truncates to ``limit``. The ranked
    snapshot is cached on the target's ``similarity_analysis``.

    If the gateway call or the response parsing fails, the vector-ranked top
    ``limit`` is returned with ``reranked=False``.
    """
    limit = limit or settings.similarity.default_limit
    threshold = settings.similarity.rerank_threshold if threshold is None else threshold

    candidates = await find_similar_records(
        session,
        target_id,
        limit * settings.similarity.rerank_multiplier,
    )
    if not candidates:
        return RerankResult(target_id=target_id, matches=[], reranked=False)

    target = await session.get(models.DataRecord, target_id)
    prompt = build_rerank_prompt(target.content, candidates)

    try:
        answer = await gateway.complete(prompt, RERANK_SYSTEM_PROMPT)
        verdicts = parse_rerank_response(answer)
    except UpstreamGatewayError as e:
        logger.warning(f"Re-rank call failed for {target_id}, using vector ranking: {e}")
        return _vector_fallback(target_id, candidates, limit)
    except ValueError as e:
        logger.warning(f"Re-rank response unparseable for {target_id}, using vector ranking: {e}")
        return _vector_fallback(target_id, candidates, limit)

    by_id = {c.record.id: c for c in candidates}
    seen: set[int] = set()
    unique = []
    for v in verdicts:
        # First verdict per record wins
        if v.record_id not in seen:
            seen.add(v.record_id)
            unique.append(v)

    ranked = [
        RankedMatch(
            record=by_id[v.record_id].record,
            similarity=by_id[v.record_id].similarity,
            llm_score=v.score,
            rationale=v.reason,
        )
        for v in unique
        if v.record_id in by_id and v.score >= threshold
    ]
    # LLM score first, vector similarity breaks ties
    ranked.sort(key=lambda m: (-m.llm_score, -m.similarity, m.record.id))
    ranked = ranked[:limit]

    target.similarity_analysis = _snapshot(ranked)
    await session.commit()

    logger.info(
        f"Re-ranked {len(candidates)} candidates for {target_id}: "
        f"{len(ranked)} kept at threshold {threshold}"
    )
    return RerankResult(target_id=target_id, matches=ranked, reranked=True)
