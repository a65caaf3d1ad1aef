"""
Vector Search API
=================

임베딩된 문서 청크를 코사인 유사도로 검색하고 잡 / 문서 상태를 조회하는 HTTP API.

Endpoints (prefix: /api/vector-search):
  POST   /query                          - 자연어 벡터 검색 (+ 문서/계정/영업기회 enrichment)
  GET    /status/{job_id}                - 임베딩 잡 상태
  GET    /queue-stats                    - 큐 상태 카운트
  POST   /reindex-all                    - 전체 청크 삭제 + 문서 상태 초기화
  GET    /document/{document_id}/chunks  - 문서 청크 목록
  DELETE /document/{document_id}         - 문서 + 청크 삭제
  GET    /health                         - 서비스 상태 확인

Docs: http://localhost:8600/docs (Swagger UI 자동 생성)
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from docembed.common.errors import (
    NotFoundError,
    PipelineError,
    ProviderError,
    StorageError,
    ValidationError,
)
from docembed.services import PipelineServices, create_services

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────
# Request / Response Models (JSON은 camelCase)
# ──────────────────────────────────────────────
class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class QueryRequest(CamelModel):
    query: Optional[str] = None
    top_k: int = Field(10, alias="topK")
    account_id: Optional[int] = Field(None, alias="accountId")
    opportunity_id: Optional[int] = Field(None, alias="opportunityId")
    source_type: Optional[str] = Field(None, alias="sourceType")


class SearchResultModel(CamelModel):
    id: int
    content: str
    similarity: float
    tokens: int
    metadata: dict[str, Any]
    created_at: Optional[datetime] = Field(None, alias="createdAt")
    document: Optional[dict[str, Any]] = None
    account: Optional[dict[str, Any]] = None
    opportunity: Optional[dict[str, Any]] = None


class QueryResponse(BaseModel):
    query: str
    results: list[SearchResultModel]
    count: int


class JobStatusResponse(CamelModel):
    id: str
    state: str
    progress: int
    data: dict[str, Any]
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    attempts_made: int = Field(0, alias="attemptsMade")
    timestamp: int


class QueueStatsResponse(BaseModel):
    waiting: int
    active: int
    completed: int
    failed: int


class ReindexAllResponse(CamelModel):
    message: str
    deleted_chunks: int = Field(alias="deletedChunks")
    note: str


class DocumentSummary(CamelModel):
    id: int
    name: str
    embedding_status: str = Field(alias="embeddingStatus")
    chunk_count: int = Field(alias="chunkCount")
    embedded_at: Optional[datetime] = Field(None, alias="embeddedAt")


class ChunkSummary(CamelModel):
    id: int
    content: str
    metadata: dict[str, Any]
    tokens: int
    created_at: Optional[datetime] = Field(None, alias="createdAt")


class DocumentChunksResponse(BaseModel):
    document: DocumentSummary
    chunks: list[ChunkSummary]


class MessageResponse(BaseModel):
    message: str


class HealthResponse(BaseModel):
    status: str          # "ok" | "degraded"
    redis: str           # "connected" | "error"
    db: str              # "connected" | "error"
    embedder: str        # 모델명


# ──────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────
def get_services(request: Request) -> PipelineServices:
    return request.app.state.services


def parse_document_id(raw: str) -> int:
    try:
        return int(raw)
    except ValueError as e:
        raise ValidationError("Invalid document ID") from e


# ──────────────────────────────────────────────
# Endpoints
# ──────────────────────────────────────────────
router = APIRouter(prefix="/api/vector-search", tags=["Vector Search"])


@router.post("/query", response_model=QueryResponse)
async def query_chunks(
    body: QueryRequest,
    services: PipelineServices = Depends(get_services),
):
    """
    자연어 쿼리로 의미적으로 유사한 청크를 검색합니다.

    - **query**: 검색어 (필수)
    - **topK**: 반환 결과 수 (기본 10, 1~100으로 보정)
    - **accountId / opportunityId / sourceType**: 순위 계산 전 적용되는 필터
    """
    if not body.query or not body.query.strip():
        raise ValidationError("Query is required")

    results = await services.searcher.search(
        body.query,
        top_k=body.top_k,
        account_id=body.account_id,
        opportunity_id=body.opportunity_id,
        source_type=body.source_type,
    )

    return QueryResponse(
        query=body.query,
        results=[
            SearchResultModel(
                id=r.id,
                content=r.content,
                similarity=r.similarity,
                tokens=r.tokens,
                metadata=r.metadata,
                created_at=r.created_at,
                document=r.document,
                account=r.account,
                opportunity=r.opportunity,
            )
            for r in results
        ],
        count=len(results),
    )


@router.get("/status/{job_id}", response_model=JobStatusResponse)
async def job_status(
    job_id: str,
    services: PipelineServices = Depends(get_services),
):
    """임베딩 잡 상태 (state, progress, attemptsMade ...)"""
    status = await services.queue.get_job_status(job_id)
    if status is None:
        raise NotFoundError("Job not found")
    return status


@router.get("/queue-stats", response_model=QueueStatsResponse)
async def queue_stats(services: PipelineServices = Depends(get_services)):
    """대기 / 처리 중 / 완료 / 실패 잡 수"""
    stats = await services.queue.get_queue_stats()
    services.metrics.update_queue_stats(stats)
    return stats


@router.post("/reindex-all", response_model=ReindexAllResponse)
async def reindex_all(services: PipelineServices = Depends(get_services)):
    """모든 청크 삭제 + 모든 문서를 PENDING으로 초기화 (재임베딩 잡은 등록하지 않음)"""
    deleted = await services.store.reindex_all()
    return ReindexAllResponse(
        message="All documents queued for reindexing",
        deleted_chunks=deleted,
        note="Documents need to be re-uploaded or content needs to be re-queued",
    )


@router.get("/document/{document_id}/chunks", response_model=DocumentChunksResponse)
async def document_chunks(
    document_id: str,
    services: PipelineServices = Depends(get_services),
):
    """문서 요약 + 청크 목록 (chunkIndex 순)"""
    doc_id = parse_document_id(document_id)

    document = await services.store.get_document(doc_id)
    if document is None:
        raise NotFoundError("Document not found")

    chunks = await services.searcher.get_document_chunks(doc_id)

    return DocumentChunksResponse(
        document=DocumentSummary(
            id=document.id,
            name=document.name,
            embedding_status=document.embedding_status.value,
            chunk_count=document.chunk_count,
            embedded_at=document.embedded_at,
        ),
        chunks=[
            ChunkSummary(
                id=c.id,
                content=c.content,
                metadata=c.metadata,
                tokens=c.tokens,
                created_at=c.created_at,
            )
            for c in chunks
        ],
    )


@router.delete("/document/{document_id}", response_model=MessageResponse)
async def delete_document(
    document_id: str,
    services: PipelineServices = Depends(get_services),
):
    """문서 삭제 (청크는 cascade 삭제)"""
    doc_id = parse_document_id(document_id)

    if not await services.store.delete_document(doc_id):
        raise NotFoundError("Document not found")

    logger.info(f"Deleted document {doc_id} and its chunks")
    return MessageResponse(message="Document and chunks deleted successfully")


# ──────────────────────────────────────────────
# Exception Handlers
# ──────────────────────────────────────────────
_STATUS_CODES = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (ProviderError, 502),
    (StorageError, 500),
)


async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    status_code = next(
        (code for error_type, code in _STATUS_CODES if isinstance(exc, error_type)),
        500,
    )
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


# ──────────────────────────────────────────────
# FastAPI App
# ──────────────────────────────────────────────
def create_app(services: Optional[PipelineServices] = None) -> FastAPI:
    """
    앱 생성

    Args:
        services: 미리 만든 서비스 컨테이너 (없으면 시작 시 설정으로 생성, 종료 시 해제)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        if owned:
            logger.info("Starting Vector Search API: connecting Redis, DB and embedder")
            app.state.services = await create_services()
        else:
            app.state.services = services
        logger.info("Vector Search API ready")
        yield
        if owned:
            logger.info("Shutting down Vector Search API...")
            await app.state.services.stop()

    app = FastAPI(
        title="Document Embedding Vector Search API",
        description=(
            "문서 청크를 pgvector 코사인 유사도로 검색하고 "
            "임베딩 잡 상태를 조회합니다."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    app.add_exception_handler(PipelineError, pipeline_error_handler)
    app.include_router(router)

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health(request: Request):
        """서비스 상태 및 Redis / DB 연결 확인"""
        return await get_services(request).health()

    return app
