"""FastAPI app: ingestion, records, similarity and alignment endpoints.

Long-running work (ingestion, vectorization, bulk alignment) is queued and
reported through job rows; clients poll the status endpoints.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ai.gateway import ModelGateway, UpstreamGatewayError, get_gateway
from . import models
from .admin import ClearTarget, clear_data, database_location
from .config import settings
from .db import AsyncSessionMaker, database_reachable, get_session
from .errors import InvalidStateError, NotFoundError, ValidationError
from .jobs import IngestQueue, PayloadKind
from .logging_config import setup_logging
from .parsers import ParseError
from .pipelines.alignment import AlignmentJobRunner, compare_record
from .pipelines.ingest import IngestOptions
from .pipelines.matching import find_similar_records, rerank_similar_records

logger = logging.getLogger(__name__)


# Pydantic response models
class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str


class StatusResponse(BaseModel):
    """Server and database connectivity."""
    server: bool
    database: bool
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Error response."""
    error: str
    detail: str | None = None


class IngestApiRequest(BaseModel):
    """Ingest from a remote JSON document."""
    url: str = Field(min_length=1)
    project_id: int
    type: models.RecordType
    filter_keywords: list[str] | None = None
    generate_embeddings: bool = False


class IngestAcceptedResponse(BaseModel):
    """Ingest submission response."""
    message: str
    job_id: int


class JobIdRequest(BaseModel):
    job_id: int


class CancelResponse(BaseModel):
    success: bool
    status: str


class IngestJobDTO(BaseModel):
    """Ingest job row."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    project_id: int
    type: models.RecordType
    status: models.IngestStatus
    total_records: int
    saved_count: int
    skipped_count: int
    skipped_details: dict[str, int] | None = None
    error: str | None = None
    created_at: datetime
    updated_at: datetime


class AnalyticsJobDTO(BaseModel):
    """Alignment job row."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    project_id: int
    status: models.AnalyticsStatus
    total_records: int
    processed_count: int
    error: str | None = None
    created_at: datetime
    updated_at: datetime


class RecordDTO(BaseModel):
    """Data record without its embedding."""
    id: int
    project_id: int
    type: models.RecordType
    category: models.RecordCategory | None = None
    source: str
    content: str
    metadata: dict[str, Any] | None = None
    has_embedding: bool
    alignment_analysis: str | None = None
    created_at: datetime


class RecordListResponse(BaseModel):
    records: list[RecordDTO]
    total: int


class SimilarityRequest(BaseModel):
    """Similarity search request."""
    target_id: int
    limit: int | None = Field(default=None, ge=1, le=100)
    rerank: bool = False


class SimilarityMatchDTO(BaseModel):
    record: RecordDTO
    similarity: float
    llm_score: int | None = None
    rationale: str | None = None


class SimilarityResponse(BaseModel):
    target_id: int
    reranked: bool
    results: list[SimilarityMatchDTO]


class CompareRequest(BaseModel):
    record_id: int
    force_regenerate: bool = False


class CompareResponse(BaseModel):
    """Single-record alignment verdict."""
    evaluation: str
    alignment_score: int | None = None
    record_content: str
    project_name: str
    record_type: models.RecordType
    metadata: dict[str, Any] | None = None
    cached: bool


class StartAlignmentRequest(BaseModel):
    project_id: int


class StartAlignmentResponse(BaseModel):
    job_id: int | None = None
    message: str


class AdminInfoResponse(BaseModel):
    """Where the service stores data and which models it calls."""
    database: dict[str, str | None]
    ai: dict[str, str]


class ClearRequest(BaseModel):
    target: ClearTarget


class ClearResponse(BaseModel):
    message: str
    deleted_records: int


def record_dto(record: models.DataRecord) -> RecordDTO:
    return RecordDTO(
        id=record.id,
        project_id=record.project_id,
        type=record.type,
        category=record.category,
        source=record.source,
        content=record.content,
        metadata=record.metadata_,
        has_embedding=record.embedding is not None and len(record.embedding) > 0,
        alignment_analysis=record.alignment_analysis,
        created_at=record.created_at,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown logic."""
    # Startup
    setup_logging()
    gateway = get_gateway()
    app.state.gateway = gateway
    app.state.ingest_queue = IngestQueue(AsyncSessionMaker, gateway)
    app.state.alignment_runner = AlignmentJobRunner(AsyncSessionMaker, gateway)
    app.state.ingest_queue.start()
    logger.info(f"{settings.app_name} v{settings.version} starting up")

    yield

    # Shutdown
    logger.info("Application shutting down")
    await app.state.ingest_queue.stop()
    await app.state.alignment_runner.stop()
    await gateway.aclose()
    get_gateway.cache_clear()


app = FastAPI(
    title=settings.app_name,
    version=settings.version,
    description="Record ingestion, vectorization, similarity search and guideline alignment",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Dependencies
def get_ingest_queue(request: Request) -> IngestQueue:
    return request.app.state.ingest_queue


def get_alignment_runner(request: Request) -> AlignmentJobRunner:
    return request.app.state.alignment_runner


def get_model_gateway(request: Request) -> ModelGateway:
    return request.app.state.gateway


# Exception handlers
def _error(status_code: int, error: str, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, detail=str(exc)).model_dump(),
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request, exc: ValidationError):
    """Handle missing ids or payloads."""
    logger.warning(f"Validation error: {exc}")
    return _error(status.HTTP_400_BAD_REQUEST, "validation_error", exc)


@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc: NotFoundError):
    return _error(status.HTTP_404_NOT_FOUND, "not_found", exc)


@app.exception_handler(InvalidStateError)
async def invalid_state_handler(request, exc: InvalidStateError):
    """Handle requests on entities that are not ready (e.g. no embedding yet)."""
    return _error(status.HTTP_409_CONFLICT, "invalid_state", exc)


@app.exception_handler(ParseError)
async def parse_error_handler(request, exc: ParseError):
    """Handle payload and document parsing errors."""
    logger.error(f"Parse error: {exc}")
    return _error(status.HTTP_400_BAD_REQUEST, "parse_error", exc)


@app.exception_handler(UpstreamGatewayError)
async def gateway_error_handler(request, exc: UpstreamGatewayError):
    """Handle model gateway failures on synchronous calls."""
    logger.error(f"Model gateway error: {exc}")
    return _error(status.HTTP_502_BAD_GATEWAY, "gateway_error", exc)


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok", version=settings.version)


@app.get("/status", response_model=StatusResponse)
async def server_status(session: AsyncSession = Depends(get_session)) -> StatusResponse:
    """Report server liveness and database connectivity."""
    database = await database_reachable(session)
    return StatusResponse(server=True, database=database, timestamp=datetime.now(timezone.utc))


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "app": settings.app_name,
        "version": settings.version,
        "endpoints": {
            "health": "/health",
            "status": "/status",
            "ingest_csv": "/ingest/csv",
            "ingest_api": "/ingest/api",
            "ingest_status": "/ingest/status/{job_id}",
            "records": "/records",
            "similar": "/records/similar",
            "compare": "/analytics/compare",
            "alignment_jobs": "/alignment/jobs",
            "admin_info": "/admin/info",
            "admin_clear": "/admin/clear",
            "docs": "/docs",
        },
    }


# Ingestion
def _keywords(raw: str | None) -> list[str] | None:
    if not raw:
        return None
    keywords = [k.strip() for k in raw.split(",") if k.strip()]
    return keywords or None


@app.post(
    "/ingest/csv",
    response_model=IngestAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def ingest_csv(
    file: UploadFile = File(..., description="CSV file with a header row"),
    project_id: int = Form(...),
    type: models.RecordType = Form(...),
    filter_keywords: str | None = Form(default=None, description="Comma-separated keywords"),
    generate_embeddings: bool = Form(default=False),
    queue: IngestQueue = Depends(get_ingest_queue),
) -> IngestAcceptedResponse:
    """Queue a CSV upload for ingestion."""
    try:
        raw = await file.read()
    finally:
        await file.close()

    try:
        payload = raw.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise ParseError("CSV file must be UTF-8 encoded") from e

    logger.info(f"Received CSV upload {file.filename} ({len(raw)} bytes) for project {project_id}")
    job_id = await queue.submit(
        PayloadKind.CSV,
        payload,
        IngestOptions(
            project_id=project_id,
            source=f"csv:{file.filename}",
            type=type,
            filter_keywords=_keywords(filter_keywords),
            generate_embeddings=generate_embeddings,
        ),
    )
    return IngestAcceptedResponse(message="Ingestion started in the background.", job_id=job_id)


@app.post(
    "/ingest/api",
    response_model=IngestAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def ingest_api(
    request: IngestApiRequest,
    queue: IngestQueue = Depends(get_ingest_queue),
) -> IngestAcceptedResponse:
    """Queue a remote JSON document for ingestion."""
    job_id = await queue.submit(
        PayloadKind.API,
        request.url,
        IngestOptions(
            project_id=request.project_id,
            source=f"api:{request.url}",
            type=request.type,
            filter_keywords=request.filter_keywords,
            generate_embeddings=request.generate_embeddings,
        ),
    )
    return IngestAcceptedResponse(message="Ingestion started in the background.", job_id=job_id)


@app.post("/ingest/cancel", response_model=CancelResponse)
async def cancel_ingest(
    request: JobIdRequest,
    queue: IngestQueue = Depends(get_ingest_queue),
) -> CancelResponse:
    job_status = await queue.cancel(request.job_id)
    return CancelResponse(success=True, status=job_status.value)


@app.get("/ingest/status/{job_id}", response_model=IngestJobDTO)
async def ingest_status(
    job_id: int,
    queue: IngestQueue = Depends(get_ingest_queue),
) -> IngestJobDTO:
    job = await queue.get_status(job_id)
    return IngestJobDTO.model_validate(job)


@app.get("/ingest/jobs", response_model=list[IngestJobDTO])
async def ingest_jobs(
    project_id: int = Query(...),
    queue: IngestQueue = Depends(get_ingest_queue),
) -> list[IngestJobDTO]:
    """Last ingest jobs of a project, newest first."""
    jobs = await queue.list_jobs(project_id)
    return [IngestJobDTO.model_validate(job) for job in jobs]


# Records
@app.get("/records", response_model=RecordListResponse)
async def list_records(
    project_id: int | None = None,
    type: models.RecordType | None = None,
    category: models.RecordCategory | None = None,
    skip: int = Query(default=0, ge=0),
    take: int = Query(default=50, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
) -> RecordListResponse:
    """List records with optional filters, newest first."""
    filters = []
    if project_id is not None:
        filters.append(models.DataRecord.project_id == project_id)
    if type is not None:
        filters.append(models.DataRecord.type == type)
    if category is not None:
        filters.append(models.DataRecord.category == category)

    result = await session.execute(
        select(models.DataRecord)
        .where(*filters)
        .order_by(models.DataRecord.created_at.desc(), models.DataRecord.id.desc())
        .offset(skip)
        .limit(take)
    )
    records = result.scalars().all()

    total = await session.execute(
        select(func.count()).select_from(models.DataRecord).where(*filters)
    )
    return RecordListResponse(records=[record_dto(r) for r in records], total=total.scalar_one())


@app.post("/records/similar", response_model=SimilarityResponse)
async def similar_records(
    request: SimilarityRequest,
    session: AsyncSession = Depends(get_session),
    gateway: ModelGateway = Depends(get_model_gateway),
) -> SimilarityResponse:
    """Find records similar to a target, optionally re-ranked by the LLM."""
    if request.rerank:
        ranked = await rerank_similar_records(session, gateway, request.target_id, request.limit)
        return SimilarityResponse(
            target_id=ranked.target_id,
            reranked=ranked.reranked,
            results=[
                SimilarityMatchDTO(
                    record=record_dto(m.record),
                    similarity=m.similarity,
                    llm_score=m.llm_score,
                    rationale=m.rationale,
                )
                for m in ranked.matches
            ],
        )

    matches = await find_similar_records(session, request.target_id, request.limit)
    return SimilarityResponse(
        target_id=request.target_id,
        reranked=False,
        results=[
            SimilarityMatchDTO(record=record_dto(m.record), similarity=m.similarity)
            for m in matches
        ],
    )


# Alignment
@app.post("/analytics/compare", response_model=CompareResponse)
async def compare(
    request: CompareRequest,
    session: AsyncSession = Depends(get_session),
    gateway: ModelGateway = Depends(get_model_gateway),
) -> CompareResponse:
    """Grade one record against its project's guidelines."""
    verdict = await compare_record(session, gateway, request.record_id, request.force_regenerate)
    return CompareResponse(
        evaluation=verdict.evaluation,
        alignment_score=verdict.alignment_score,
        record_content=verdict.record_content,
        project_name=verdict.project_name,
        record_type=verdict.record_type,
        metadata=verdict.metadata,
        cached=verdict.cached,
    )


@app.post("/alignment/jobs", response_model=StartAlignmentResponse)
async def start_alignment(
    request: StartAlignmentRequest,
    runner: AlignmentJobRunner = Depends(get_alignment_runner),
) -> StartAlignmentResponse:
    job_id = await runner.start(request.project_id)
    if job_id is None:
        return StartAlignmentResponse(job_id=None, message="No records to analyze.")
    return StartAlignmentResponse(job_id=job_id, message="Alignment started in the background.")


@app.get("/alignment/jobs", response_model=list[AnalyticsJobDTO])
async def alignment_jobs(
    project_id: int = Query(...),
    runner: AlignmentJobRunner = Depends(get_alignment_runner),
) -> list[AnalyticsJobDTO]:
    jobs = await runner.list_jobs(project_id)
    return [AnalyticsJobDTO.model_validate(job) for job in jobs]


@app.post("/alignment/jobs/{job_id}/cancel", response_model=CancelResponse)
async def cancel_alignment(
    job_id: int,
    runner: AlignmentJobRunner = Depends(get_alignment_runner),
) -> CancelResponse:
    job_status = await runner.cancel(job_id)
    return CancelResponse(success=True, status=job_status.value)


# Admin
@app.get("/admin/info", response_model=AdminInfoResponse)
async def admin_info(gateway: ModelGateway = Depends(get_model_gateway)) -> AdminInfoResponse:
    return AdminInfoResponse(database=database_location(), ai=gateway.info())


@app.post("/admin/clear", response_model=ClearResponse)
async def admin_clear(
    request: ClearRequest,
    session: AsyncSession = Depends(get_session),
) -> ClearResponse:
    """Delete all records (ALL_DATA) or only the saved project analyses."""
    deleted = await clear_data(session, request.target)
    if request.target is ClearTarget.ALL_DATA:
        message = "All record data and analytics cleared successfully."
    else:
        message = "All saved analytics cleared successfully."
    return ClearResponse(message=message, deleted_records=deleted)
