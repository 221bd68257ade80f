"""
Tests for single-record compare and the bulk alignment job.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from ai.gateway import UpstreamGatewayError
from be import models
from be.errors import NotFoundError, ValidationError
from be.parsers import ParseError
from be.pipelines.alignment import CANCELLED_BY_ADMIN, INTERRUPTED_ERROR, AlignmentJobRunner, compare_record

VERDICT = "ALIGNMENT_SCORE: 80\n\n## Detailed Analysis\n- cites a source"


def completer(**kwargs):
    gateway = AsyncMock()
    gateway.complete = AsyncMock(**kwargs)
    return gateway


async def analytics_job(session_factory, job_id):
    async with session_factory() as session:
        return await session.get(models.AnalyticsJob, job_id)


async def verdicts(session_factory):
    async with session_factory() as session:
        result = await session.execute(
            select(models.DataRecord.id, models.DataRecord.alignment_analysis).order_by(models.DataRecord.id)
        )
        return dict(result.all())


class TestCompareRecord:
    """On-demand alignment of one record."""

    @pytest.mark.asyncio
    async def test_generates_and_caches_verdict(self, session, session_factory, project, make_record):
        record = await make_record(project.id, "Paris is the capital of France [source: atlas]")
        gateway = completer(return_value=VERDICT)

        verdict = await compare_record(session, gateway, record.id)

        assert verdict.alignment_score == 80
        assert verdict.project_name == "Atlas"
        assert not verdict.cached
        prompt, system_prompt = gateway.complete.await_args.args
        assert "Always cite a source." in prompt
        assert "Paris is the capital of France" in prompt
        assert "Project Atlas" in system_prompt

        again = await compare_record(session, gateway, record.id)
        assert again.cached
        assert again.evaluation == VERDICT
        assert gateway.complete.await_count == 1

    @pytest.mark.asyncio
    async def test_force_regenerate(self, session, project, make_record):
        record = await make_record(project.id, "some content", alignment_analysis="ALIGNMENT_SCORE: 10")
        gateway = completer(return_value="ALIGNMENT_SCORE: 4/5")

        verdict = await compare_record(session, gateway, record.id, force_regenerate=True)
        assert verdict.alignment_score == 80
        assert not verdict.cached

    @pytest.mark.asyncio
    async def test_missing_guidelines(self, session, make_record):
        bare = models.Project(name="No Docs")
        session.add(bare)
        await session.commit()
        record = await make_record(bare.id, "content")

        with pytest.raises(ValidationError):
            await compare_record(session, completer(return_value=VERDICT), record.id)

    @pytest.mark.asyncio
    async def test_unreadable_guidelines(self, session, make_record):
        broken = models.Project(name="Broken", guidelines=b"\xff\xfe\x00garbage")
        session.add(broken)
        await session.commit()
        record = await make_record(broken.id, "content")

        with pytest.raises(ParseError):
            await compare_record(session, completer(return_value=VERDICT), record.id)

    @pytest.mark.asyncio
    async def test_missing_record(self, session, project):
        with pytest.raises(NotFoundError):
            await compare_record(session, completer(return_value=VERDICT), 4242)


class TestAlignmentJobRunner:
    """Bulk job lifecycle."""

    @pytest.mark.asyncio
    async def test_scores_every_pending_record(self, session_factory, project, make_record):
        await make_record(project.id, "already graded", alignment_analysis="ALIGNMENT_SCORE: 50")
        for i in range(3):
            await make_record(project.id, f"pending record {i}")
        runner = AlignmentJobRunner(session_factory, completer(return_value=VERDICT))

        job_id = await runner.start(project.id)
        await runner.join()

        job = await analytics_job(session_factory, job_id)
        assert job.status == models.AnalyticsStatus.COMPLETED
        assert (job.total_records, job.processed_count) == (3, 3)
        assert list((await verdicts(session_factory)).values()) == ["ALIGNMENT_SCORE: 50"] + [VERDICT] * 3

    @pytest.mark.asyncio
    async def test_newest_records_first(self, session_factory, project, make_record):
        first = await make_record(project.id, "older record")
        second = await make_record(project.id, "newer record")
        gateway = completer(return_value=VERDICT)
        runner = AlignmentJobRunner(session_factory, gateway)

        await runner.start(project.id)
        await runner.join()

        prompts = [call.args[0] for call in gateway.complete.await_args_list]
        assert second.content in prompts[0]
        assert first.content in prompts[1]

    @pytest.mark.asyncio
    async def test_gateway_failure_skips_record(self, session_factory, project, make_record):
        await make_record(project.id, "first")
        await make_record(project.id, "second")
        gateway = completer(side_effect=[UpstreamGatewayError("rate limited"), VERDICT])
        runner = AlignmentJobRunner(session_factory, gateway)

        job_id = await runner.start(project.id)
        await runner.join()

        job = await analytics_job(session_factory, job_id)
        assert job.status == models.AnalyticsStatus.COMPLETED
        assert job.processed_count == 2
        assert sorted(v is None for v in (await verdicts(session_factory)).values()) == [False, True]

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, session_factory, project, make_record):
        await make_record(project.id, "graded", alignment_analysis=VERDICT)
        runner = AlignmentJobRunner(session_factory, completer(return_value=VERDICT))

        assert await runner.start(project.id) is None

    @pytest.mark.asyncio
    async def test_missing_guidelines_fails_job(self, session_factory, make_record):
        async with session_factory() as session:
            bare = models.Project(name="No Docs")
            session.add(bare)
            await session.commit()
        await make_record(bare.id, "content")
        gateway = completer(return_value=VERDICT)
        runner = AlignmentJobRunner(session_factory, gateway)

        job_id = await runner.start(bare.id)
        await runner.join()

        job = await analytics_job(session_factory, job_id)
        assert job.status == models.AnalyticsStatus.FAILED
        assert "guidelines" in job.error
        gateway.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_single_flight_and_cancel(self, session_factory, project, make_record):
        """A second start returns the active job; cancel is preserved."""
        for i in range(3):
            await make_record(project.id, f"record {i}")
        gate = asyncio.Event()

        async def slow_complete(prompt, system_prompt=None):
            await gate.wait()
            return VERDICT

        gateway = completer(side_effect=slow_complete)
        runner = AlignmentJobRunner(session_factory, gateway)

        job_id = await runner.start(project.id)
        assert await runner.start(project.id) == job_id

        status = await runner.cancel(job_id)
        assert status == models.AnalyticsStatus.CANCELLED
        gate.set()
        await runner.join()

        job = await analytics_job(session_factory, job_id)
        assert job.status == models.AnalyticsStatus.CANCELLED
        assert job.error == CANCELLED_BY_ADMIN
        assert job.processed_count <= 1

    @pytest.mark.asyncio
    async def test_orphaned_active_job_is_failed_and_replaced(self, session_factory, project, make_record):
        """A PROCESSING row left by an earlier process does not block new runs."""
        await make_record(project.id, "needs a verdict")
        async with session_factory() as session:
            stale = models.AnalyticsJob(
                project_id=project.id,
                status=models.AnalyticsStatus.PROCESSING,
                total_records=1,
            )
            session.add(stale)
            await session.commit()
            stale_id = stale.id

        gateway = completer(return_value=VERDICT)
        runner = AlignmentJobRunner(session_factory, gateway)

        job_id = await runner.start(project.id)
        await runner.join()

        assert job_id is not None and job_id != stale_id
        orphan = await analytics_job(session_factory, stale_id)
        assert orphan.status == models.AnalyticsStatus.FAILED
        assert orphan.error == INTERRUPTED_ERROR
        assert (await analytics_job(session_factory, job_id)).status == models.AnalyticsStatus.COMPLETED
        gateway.complete.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_project_locks_are_released(self, session_factory, project, make_record):
        await make_record(project.id, "needs a verdict")
        runner = AlignmentJobRunner(session_factory, completer(return_value=VERDICT))

        await runner.start(project.id)
        await runner.join()

        assert len(runner._locks) == 0

    @pytest.mark.asyncio
    async def test_cancel_unknown_job(self, session_factory):
        runner = AlignmentJobRunner(session_factory, completer(return_value=VERDICT))
        with pytest.raises(NotFoundError):
            await runner.cancel(777)

    @pytest.mark.asyncio
    async def test_list_jobs_newest_first(self, session_factory, project):
        async with session_factory() as session:
            for status in (models.AnalyticsStatus.COMPLETED, models.AnalyticsStatus.FAILED):
                session.add(models.AnalyticsJob(project_id=project.id, status=status))
            await session.commit()
        runner = AlignmentJobRunner(session_factory, completer(return_value=VERDICT))

        jobs = await runner.list_jobs(project.id)
        assert [j.status for j in jobs] == [models.AnalyticsStatus.FAILED, models.AnalyticsStatus.COMPLETED]
