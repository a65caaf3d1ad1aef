"""
RAG Search - 벡터 유사도 검색 인터페이스
=========================================

쿼리 문자열을 임베딩한 뒤 저장소에서 코사인 유사도 순으로 청크를 찾고,
결과에 문서 / 계정 / 영업기회 최소 정보를 붙여 반환합니다.

사용 예시:
    searcher = RAGSearcher(store, embedder)
    results = await searcher.search("renewal pricing terms", top_k=5, account_id=3)
"""

import logging
from dataclasses import replace
from typing import Optional

from docembed.common.errors import ValidationError
from docembed.common.pipeline_config import get_config
from docembed.embedding.embedder import EmbeddingClient
from docembed.storage.vector_store import ChunkRecord, SearchResult, VectorStore

logger = logging.getLogger(__name__)


class RAGSearcher:
    """
    저장소 기반 의미 유사도 검색기

    필터(account / opportunity / sourceType)는 순위 계산 전에 적용됩니다.
    """

    DEFAULT_TOP_K = 10
    SIMILARITY_DECIMALS = 4

    def __init__(
        self,
        store: VectorStore,
        embedder: EmbeddingClient,
        max_top_k: Optional[int] = None,
    ):
        """
        Args:
            store: 벡터 저장소
            embedder: 쿼리 임베딩용 클라이언트
            max_top_k: top_k 상한 (기본: VECTOR_SEARCH_MAX_TOP_K)
        """
        self.store = store
        self.embedder = embedder
        self.max_top_k = max_top_k or get_config().api.max_top_k

    def clamp_top_k(self, top_k: Optional[int]) -> int:
        if top_k is None:
            return self.DEFAULT_TOP_K
        return min(max(int(top_k), 1), self.max_top_k)

    async def search(
        self,
        query: str,
        top_k: Optional[int] = DEFAULT_TOP_K,
        account_id: Optional[int] = None,
        opportunity_id: Optional[int] = None,
        source_type: Optional[str] = None,
    ) -> list[SearchResult]:
        """
        자연어 쿼리로 유사 청크 검색

        Args:
            query: 검색할 자연어 쿼리
            top_k: 반환할 최대 결과 수 (1~max_top_k로 보정)
            account_id: 계정 필터
            opportunity_id: 영업기회 필터
            source_type: 소스 타입 필터 (metadata.sourceType)

        Returns:
            SearchResult 리스트 (유사도 내림차순, similarity는 소수 4자리)

        Raises:
            ValidationError: 빈 쿼리
            ProviderError: 쿼리 임베딩 실패
            StorageError: 저장소 조회 실패
        """
        if not query or not query.strip():
            raise ValidationError("Query is required")

        limit = self.clamp_top_k(top_k)
        query_embedding = await self.embedder.generate_embedding(query)

        results = await self.store.search(
            query_embedding.embedding,
            limit,
            account_id=account_id,
            opportunity_id=opportunity_id,
            source_type=source_type,
        )

        logger.debug(f"Search '{query[:50]}' returned {len(results)} results (top_k={limit})")

        return [
            replace(r, similarity=round(r.similarity, self.SIMILARITY_DECIMALS))
            for r in results
        ]

    async def get_document_chunks(self, document_id: int) -> list[ChunkRecord]:
        """문서의 모든 청크를 chunkIndex 순으로 조회 (문서 내용 확인용)"""
        return await self.store.list_document_chunks(document_id)
