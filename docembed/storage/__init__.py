"""
Storage Module - 청크 / 벡터 저장소
====================================

  - vector_store.py   : 레코드 모델, VectorStore 인터페이스, InMemoryVectorStore
  - pgvector_store.py : PostgreSQL + pgvector 구현 (asyncpg)
"""

from typing import Optional

from docembed.common.errors import ConfigurationError
from docembed.common.pipeline_config import PipelineConfig, get_config

from .vector_store import (
    ChunkRecord,
    DocumentRecord,
    DocumentSource,
    EmbeddingStatus,
    InMemoryVectorStore,
    SearchResult,
    VectorStore,
)


def create_vector_store(config: Optional[PipelineConfig] = None) -> VectorStore:
    """VECTOR_STORE_BACKEND 설정에 따라 저장소 생성 (postgres | memory)"""
    config = config or get_config()
    backend = config.api.vector_store_backend

    if backend == "memory":
        return InMemoryVectorStore()
    if backend == "postgres":
        from .pgvector_store import PgVectorStore
        return PgVectorStore(config.postgres, dimension=config.openai.dimensions)

    raise ConfigurationError(f"Unknown VECTOR_STORE_BACKEND: {backend}")


__all__ = [
    "ChunkRecord",
    "DocumentRecord",
    "DocumentSource",
    "EmbeddingStatus",
    "InMemoryVectorStore",
    "SearchResult",
    "VectorStore",
    "create_vector_store",
]
