"""
Vector Store - 청크 저장소 인터페이스 / 인메모리 구현
======================================================

레코드 모델:
  - DocumentRecord : 문서 (임베딩 상태 필드만 이 파이프라인이 갱신)
  - ChunkRecord    : 청크 + 임베딩 벡터 (metadata에 chunkIndex, sourceType 포함)
  - SearchResult   : 유사도 검색 결과 (문서 / 계정 / 영업기회 최소 프로젝션 포함)

구현체:
  - PgVectorStore (pgvector_store.py) : 운영용, asyncpg + pgvector
  - InMemoryVectorStore               : 로컬 개발 / 테스트용, brute-force 코사인
"""

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from docembed.common.errors import NotFoundError

logger = logging.getLogger(__name__)


class EmbeddingStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class DocumentRecord:
    """문서 레코드 (account_id는 영업기회에서 파생)"""
    id: int
    name: str
    type: str
    embedding_status: EmbeddingStatus = EmbeddingStatus.PENDING
    chunk_count: int = 0
    embedded_at: Optional[datetime] = None
    opportunity_id: Optional[int] = None
    account_id: Optional[int] = None


@dataclass
class ChunkRecord:
    """청크 레코드"""
    content: str
    embedding: list[float]
    tokens: int
    metadata: dict[str, Any] = field(default_factory=dict)
    document_id: Optional[int] = None
    account_id: Optional[int] = None
    opportunity_id: Optional[int] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    @property
    def chunk_index(self) -> int:
        return int(self.metadata.get('chunkIndex', 0))


@dataclass
class DocumentSource:
    """재색인용 원문 (RETAIN_SOURCE_CONTENT=true일 때만 저장)"""
    document_id: int
    content: str
    source_type: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class SearchResult:
    """유사도 검색 결과 단건"""
    id: int
    content: str
    similarity: float          # 1 - cosine_distance (높을수록 유사)
    tokens: int
    metadata: dict[str, Any]
    created_at: Optional[datetime]
    document: Optional[dict[str, Any]] = None       # {id, name, type}
    account: Optional[dict[str, Any]] = None        # {id, name}
    opportunity: Optional[dict[str, Any]] = None    # {id, name, stage}


def cosine_distance(a: list[float], b: list[float]) -> float:
    """1 - cosine similarity (영벡터는 거리 1)"""
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 1.0
    return 1.0 - dot / (norm_a * norm_b)


class VectorStore(ABC):
    """청크 저장소 인터페이스"""

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    async def __aenter__(self) -> "VectorStore":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    async def ping(self) -> bool:
        return True

    # 문서

    @abstractmethod
    async def get_document(self, document_id: int) -> Optional[DocumentRecord]:
        ...

    @abstractmethod
    async def update_document_status(
        self,
        document_id: int,
        status: EmbeddingStatus,
        chunk_count: Optional[int] = None,
        embedded_at: Optional[datetime] = None,
    ) -> None:
        """상태 갱신 (chunk_count / embedded_at은 None이면 유지)"""

    @abstractmethod
    async def reset_document(self, document_id: int) -> None:
        """PENDING, chunk_count 0, embedded_at NULL로 초기화"""

    @abstractmethod
    async def delete_document(self, document_id: int) -> bool:
        """문서 삭제 (청크는 cascade), 없으면 False"""

    # 청크

    @abstractmethod
    async def insert_chunks(self, chunks: list[ChunkRecord]) -> int:
        ...

    @abstractmethod
    async def replace_document_chunks(self, document_id: int, chunks: list[ChunkRecord]) -> int:
        """문서의 기존 청크 삭제 후 새 청크 삽입 (단일 트랜잭션)"""

    @abstractmethod
    async def replace_job_chunks(self, job_id: str, chunks: list[ChunkRecord]) -> int:
        """metadata.jobId가 같은 기존 청크 삭제 후 삽입 (문서 없는 텍스트 잡 재시도용, 단일 트랜잭션)"""

    @abstractmethod
    async def delete_document_chunks(self, document_id: int) -> int:
        ...

    @abstractmethod
    async def list_document_chunks(self, document_id: int) -> list[ChunkRecord]:
        """chunkIndex 순 정렬"""

    @abstractmethod
    async def count_chunks(self, document_id: Optional[int] = None) -> int:
        ...

    @abstractmethod
    async def reindex_all(self) -> int:
        """모든 청크 삭제 + 모든 문서 상태 초기화, 삭제된 청크 수 반환"""

    # 검색

    @abstractmethod
    async def search(
        self,
        query_embedding: list[float],
        top_k: int,
        account_id: Optional[int] = None,
        opportunity_id: Optional[int] = None,
        source_type: Optional[str] = None,
    ) -> list[SearchResult]:
        """필터 적용 후 코사인 거리 오름차순 top_k (similarity는 반올림 전 값)"""

    # 원문 보존

    @abstractmethod
    async def save_document_source(self, source: DocumentSource) -> None:
        ...

    @abstractmethod
    async def load_document_source(self, document_id: int) -> Optional[DocumentSource]:
        ...


class InMemoryVectorStore(VectorStore):
    """
    프로세스 메모리 저장소

    문서 / 계정 / 영업기회는 add_* 메서드로 직접 등록합니다.
    """

    def __init__(self):
        self.documents: dict[int, DocumentRecord] = {}
        self.accounts: dict[int, dict[str, Any]] = {}
        self.opportunities: dict[int, dict[str, Any]] = {}
        self.chunks: list[ChunkRecord] = []
        self.sources: dict[int, DocumentSource] = {}
        self._next_chunk_id = 1

    # ------------------------------------------------------------------
    # 협력 엔티티 등록
    # ------------------------------------------------------------------

    def add_account(self, account_id: int, name: str) -> None:
        self.accounts[account_id] = {'id': account_id, 'name': name}

    def add_opportunity(
        self,
        opportunity_id: int,
        name: str,
        stage: str,
        account_id: Optional[int] = None,
    ) -> None:
        self.opportunities[opportunity_id] = {
            'id': opportunity_id,
            'name': name,
            'stage': stage,
            'account_id': account_id,
        }

    def add_document(
        self,
        document_id: int,
        name: str,
        type: str,
        opportunity_id: Optional[int] = None,
    ) -> DocumentRecord:
        document = DocumentRecord(id=document_id, name=name, type=type, opportunity_id=opportunity_id)
        self.documents[document_id] = document
        return document

    # ------------------------------------------------------------------
    # 문서
    # ------------------------------------------------------------------

    async def get_document(self, document_id: int) -> Optional[DocumentRecord]:
        document = self.documents.get(document_id)
        if document is None:
            return None

        opportunity = self.opportunities.get(document.opportunity_id) if document.opportunity_id else None
        return replace(
            document,
            account_id=opportunity['account_id'] if opportunity else None,
        )

    def _require_document(self, document_id: int) -> DocumentRecord:
        document = self.documents.get(document_id)
        if document is None:
            raise NotFoundError(f"Document {document_id} not found")
        return document

    async def update_document_status(
        self,
        document_id: int,
        status: EmbeddingStatus,
        chunk_count: Optional[int] = None,
        embedded_at: Optional[datetime] = None,
    ) -> None:
        document = self._require_document(document_id)
        document.embedding_status = EmbeddingStatus(status)
        if chunk_count is not None:
            document.chunk_count = chunk_count
        if embedded_at is not None:
            document.embedded_at = embedded_at

    async def reset_document(self, document_id: int) -> None:
        document = self._require_document(document_id)
        document.embedding_status = EmbeddingStatus.PENDING
        document.chunk_count = 0
        document.embedded_at = None

    async def delete_document(self, document_id: int) -> bool:
        if self.documents.pop(document_id, None) is None:
            return False
        self.chunks = [c for c in self.chunks if c.document_id != document_id]
        self.sources.pop(document_id, None)
        return True

    # ------------------------------------------------------------------
    # 청크
    # ------------------------------------------------------------------

    async def insert_chunks(self, chunks: list[ChunkRecord]) -> int:
        now = datetime.now(timezone.utc)
        for chunk in chunks:
            self.chunks.append(replace(
                chunk,
                id=self._next_chunk_id,
                created_at=chunk.created_at or now,
                metadata=dict(chunk.metadata),
            ))
            self._next_chunk_id += 1
        return len(chunks)

    async def replace_document_chunks(self, document_id: int, chunks: list[ChunkRecord]) -> int:
        await self.delete_document_chunks(document_id)
        return await self.insert_chunks(chunks)

    async def replace_job_chunks(self, job_id: str, chunks: list[ChunkRecord]) -> int:
        self.chunks = [c for c in self.chunks if c.metadata.get('jobId') != job_id]
        return await self.insert_chunks(chunks)

    async def delete_document_chunks(self, document_id: int) -> int:
        before = len(self.chunks)
        self.chunks = [c for c in self.chunks if c.document_id != document_id]
        return before - len(self.chunks)

    async def list_document_chunks(self, document_id: int) -> list[ChunkRecord]:
        chunks = [c for c in self.chunks if c.document_id == document_id]
        return sorted(chunks, key=lambda c: c.chunk_index)

    async def count_chunks(self, document_id: Optional[int] = None) -> int:
        if document_id is None:
            return len(self.chunks)
        return sum(1 for c in self.chunks if c.document_id == document_id)

    async def reindex_all(self) -> int:
        deleted = len(self.chunks)
        self.chunks = []
        for document in self.documents.values():
            document.embedding_status = EmbeddingStatus.PENDING
            document.chunk_count = 0
            document.embedded_at = None
        return deleted

    # ------------------------------------------------------------------
    # 검색
    # ------------------------------------------------------------------

    async def search(
        self,
        query_embedding: list[float],
        top_k: int,
        account_id: Optional[int] = None,
        opportunity_id: Optional[int] = None,
        source_type: Optional[str] = None,
    ) -> list[SearchResult]:
        candidates = [
            c for c in self.chunks
            if (account_id is None or c.account_id == account_id)
            and (opportunity_id is None or c.opportunity_id == opportunity_id)
            and (source_type is None or c.metadata.get('sourceType') == source_type)
        ]

        scored = sorted(
            ((cosine_distance(query_embedding, c.embedding), c) for c in candidates),
            key=lambda pair: pair[0],
        )

        return [self._to_result(chunk, distance) for distance, chunk in scored[:top_k]]

    def _to_result(self, chunk: ChunkRecord, distance: float) -> SearchResult:
        document = self.documents.get(chunk.document_id) if chunk.document_id is not None else None
        account = self.accounts.get(chunk.account_id) if chunk.account_id is not None else None
        opportunity = self.opportunities.get(chunk.opportunity_id) if chunk.opportunity_id is not None else None

        return SearchResult(
            id=chunk.id,
            content=chunk.content,
            similarity=1.0 - distance,
            tokens=chunk.tokens,
            metadata=dict(chunk.metadata),
            created_at=chunk.created_at,
            document={'id': document.id, 'name': document.name, 'type': document.type} if document else None,
            account=dict(account) if account else None,
            opportunity={
                'id': opportunity['id'],
                'name': opportunity['name'],
                'stage': opportunity['stage'],
            } if opportunity else None,
        )

    # ------------------------------------------------------------------
    # 원문 보존
    # ------------------------------------------------------------------

    async def save_document_source(self, source: DocumentSource) -> None:
        self.sources[source.document_id] = source

    async def load_document_source(self, document_id: int) -> Optional[DocumentSource]:
        return self.sources.get(document_id)
