"""
Tests for the similarity engine and LLM re-rank.
"""

import json
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from ai.gateway import UpstreamGatewayError
from be import models
from be.errors import InvalidStateError, NotFoundError
from be.pipelines import matching
from be.pipelines.matching import cosine_similarity, find_similar_records, rerank_similar_records


def completer(answer):
    gateway = AsyncMock()
    if isinstance(answer, Exception):
        gateway.complete = AsyncMock(side_effect=answer)
    else:
        gateway.complete = AsyncMock(return_value=answer)
    return gateway


class TestCosineSimilarity:
    def test_identical_direction(self):
        assert cosine_similarity([1.0, 2.0], [2.0, 4.0]) == pytest.approx(1.0)

    def test_orthogonal(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 3.0]) == pytest.approx(0.0)

    def test_zero_magnitude(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0


class TestFindSimilarRecords:
    """Vector ranking, ordering and failure modes."""

    @pytest.mark.asyncio
    async def test_orders_by_score_and_truncates(self, session, project, make_record, monkeypatch):
        # Score by the first component so collinear vectors rank apart
        monkeypatch.setattr(matching, "cosine_similarity", lambda a, b: float(a[0]) * float(b[0]))

        target = await make_record(project.id, "target", embedding=[1.0, 0.0, 0.0])
        high = await make_record(project.id, "high", embedding=[0.9, 0.0, 0.0])
        low = await make_record(project.id, "low", embedding=[0.1, 0.0, 0.0])
        mid = await make_record(project.id, "mid", embedding=[0.5, 0.0, 0.0])

        results = await find_similar_records(session, target.id, limit=2)

        assert [r.record.id for r in results] == [high.id, mid.id]
        assert results[0].similarity == pytest.approx(0.9, rel=1e-6)
        assert results[1].similarity == pytest.approx(0.5, rel=1e-6)
        assert low.id not in {r.record.id for r in results}

    @pytest.mark.asyncio
    async def test_ties_break_by_id(self, session, project, make_record):
        target = await make_record(project.id, "target", embedding=[1.0, 0.0])
        first = await make_record(project.id, "a", embedding=[2.0, 0.0])
        second = await make_record(project.id, "b", embedding=[3.0, 0.0])

        results = await find_similar_records(session, target.id, limit=5)
        assert [r.record.id for r in results] == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_scope_is_project_and_type(self, session, project, make_record):
        other = models.Project(name="Other")
        session.add(other)
        await session.commit()

        target = await make_record(project.id, "target", embedding=[1.0, 0.0])
        same = await make_record(project.id, "same scope", embedding=[1.0, 1.0])
        await make_record(
            project.id, "feedback", embedding=[1.0, 0.0], type=models.RecordType.FEEDBACK
        )
        await make_record(other.id, "other project", embedding=[1.0, 0.0])
        await make_record(project.id, "not embedded yet")

        results = await find_similar_records(session, target.id)
        assert [r.record.id for r in results] == [same.id]

    @pytest.mark.asyncio
    async def test_skips_mismatched_dimensions(self, session, project, make_record):
        target = await make_record(project.id, "target", embedding=[1.0, 0.0, 0.0])
        await make_record(project.id, "wrong model", embedding=[1.0, 0.0, 0.0, 0.0])
        ok = await make_record(project.id, "right model", embedding=[0.0, 1.0, 0.0])

        results = await find_similar_records(session, target.id)
        assert [r.record.id for r in results] == [ok.id]
        assert results[0].similarity == pytest.approx(0.0)

    @pytest.mark.asyncio
    async def test_target_without_embedding(self, session, project, make_record):
        target = await make_record(project.id, "not vectorized")
        await make_record(project.id, "candidate", embedding=[1.0, 0.0])

        with pytest.raises(InvalidStateError):
            await find_similar_records(session, target.id)

    @pytest.mark.asyncio
    async def test_missing_target(self, session, project):
        with pytest.raises(NotFoundError):
            await find_similar_records(session, 9999)


class TestRerankSimilarRecords:
    """LLM re-rank, threshold filter and fallback."""

    @pytest_asyncio.fixture
    async def corpus(self, project, make_record):
        target = await make_record(project.id, "How do I reset my password?", embedding=[1.0, 0.0])
        close = await make_record(project.id, "Password reset steps", embedding=[1.0, 0.1])
        medium = await make_record(project.id, "Account recovery FAQ", embedding=[1.0, 1.0])
        far = await make_record(project.id, "Billing cycle dates", embedding=[0.0, 1.0])
        return target, close, medium, far

    @pytest.mark.asyncio
    async def test_rerank_filters_and_reorders(self, session, session_factory, corpus):
        target, close, medium, far = corpus
        answer = json.dumps([
            {"id": close.id, "score": 40, "reason": "different intent"},
            {"id": medium.id, "score": 92, "reason": "covers the reset flow"},
        ])
        gateway = completer(answer)

        result = await rerank_similar_records(session, gateway, target.id, limit=1)

        assert result.reranked
        assert [m.record.id for m in result.matches] == [medium.id]
        assert result.matches[0].llm_score == 92
        assert result.matches[0].rationale == "covers the reset flow"

        prompt = gateway.complete.await_args.args[0]
        assert f"[id={close.id}]" in prompt
        assert f"[id={medium.id}]" in prompt
        assert f"[id={far.id}]" not in prompt

        async with session_factory() as fresh:
            stored = await fresh.get(models.DataRecord, target.id)
        assert [entry["id"] for entry in stored.similarity_analysis] == [medium.id]

    @pytest.mark.asyncio
    async def test_llm_score_ties_break_by_similarity(self, session, corpus):
        target, close, medium, far = corpus
        answer = json.dumps([
            {"id": medium.id, "score": 80, "reason": "ok"},
            {"id": close.id, "score": 80, "reason": "ok"},
        ])

        result = await rerank_similar_records(session, completer(answer), target.id, limit=2)
        assert [m.record.id for m in result.matches] == [close.id, medium.id]

    @pytest.mark.asyncio
    async def test_repeated_ids_keep_first_verdict(self, session, session_factory, corpus):
        target, close, medium, far = corpus
        answer = json.dumps([
            {"id": close.id, "score": 90, "reason": "same steps"},
            {"id": close.id, "score": 85, "reason": "listed again"},
            {"id": medium.id, "score": 82, "reason": "related"},
        ])

        result = await rerank_similar_records(session, completer(answer), target.id, limit=2)

        assert [m.record.id for m in result.matches] == [close.id, medium.id]
        assert result.matches[0].llm_score == 90
        async with session_factory() as fresh:
            stored = await fresh.get(models.DataRecord, target.id)
        assert [entry["id"] for entry in stored.similarity_analysis] == [close.id, medium.id]

    @pytest.mark.asyncio
    async def test_gateway_failure_falls_back_to_vector_ranking(self, session, corpus):
        target, close, medium, far = corpus
        gateway = completer(UpstreamGatewayError("503 from gateway"))

        result = await rerank_similar_records(session, gateway, target.id, limit=2)

        assert not result.reranked
        assert [m.record.id for m in result.matches] == [close.id, medium.id]
        assert all(m.llm_score is None for m in result.matches)

    @pytest.mark.asyncio
    async def test_unparseable_answer_falls_back(self, session, corpus):
        target, close, medium, far = corpus

        result = await rerank_similar_records(
            session, completer("These all look relevant to me."), target.id, limit=1
        )
        assert not result.reranked
        assert [m.record.id for m in result.matches] == [close.id]
