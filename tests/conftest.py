import os

# Configure the app for tests before importing any be.* module.
os.environ.setdefault("DB_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("GATEWAY_BASE_URL", "http://gateway.test/v1")
os.environ.setdefault("VECTORIZE_RETRY_DELAY_SECONDS", "0")
os.environ.setdefault("LOG_FORMAT", "text")

import pytest
import pytest_asyncio

from be import models
from be.config import DatabaseSettings
from be.db import build_engine, build_session_factory


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh SQLite database file per test."""
    engine = build_engine(DatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'hub.db'}"))
    async with engine.begin() as conn:
        await conn.run_sync(models.Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def project(session_factory):
    """Project with a plain-text guidelines document."""
    async with session_factory() as session:
        project = models.Project(
            name="Atlas",
            guidelines=b"1. Always cite a source.\n2. Keep answers under 200 words.",
        )
        session.add(project)
        await session.commit()
        return project


@pytest.fixture
def make_record(session_factory):
    """Factory inserting one DataRecord and returning it."""

    async def _make(
        project_id: int,
        content: str,
        *,
        type: models.RecordType = models.RecordType.TASK,
        embedding: list[float] | None = None,
        metadata: dict | None = None,
        category: models.RecordCategory | None = None,
        alignment_analysis: str | None = None,
    ) -> models.DataRecord:
        async with session_factory() as session:
            record = models.DataRecord(
                project_id=project_id,
                type=type,
                category=category,
                source="test",
                content=content,
                metadata_=metadata or {},
                embedding=embedding,
                alignment_analysis=alignment_analysis,
            )
            session.add(record)
            await session.commit()
            return record

    return _make


@pytest.fixture
def make_ingest_job(session_factory):
    """Factory inserting one IngestJob and returning its id."""

    async def _make(
        project_id: int,
        *,
        status: models.IngestStatus = models.IngestStatus.PROCESSING,
        type: models.RecordType = models.RecordType.TASK,
    ) -> int:
        async with session_factory() as session:
            job = models.IngestJob(project_id=project_id, type=type, status=status)
            session.add(job)
            await session.commit()
            return job.id

    return _make
