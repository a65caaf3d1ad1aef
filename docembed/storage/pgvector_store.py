"""
PgVector Store - PostgreSQL + pgvector 청크 저장소
===================================================

- 비동기 연결 풀 (asyncpg), jsonb ↔ dict 코덱 등록
- 청크 교체는 DELETE + INSERT 단일 트랜잭션 (재시도 시 중복 없음)
  문서 청크는 document_id, 문서 없는 텍스트 청크는 metadata.jobId 기준
- 검색: cosine distance 연산자 (<=>) 오름차순, 인덱스는 DB에 위임
- 시작 시 document_chunks.embedding의 vector(N) 차원과 임베딩 차원 비교
- 문서 삭제 시 청크는 FK ON DELETE CASCADE로 함께 삭제

테이블:
  documents, document_chunks, document_sources (이 파이프라인이 쓰기)
  accounts, opportunities                      (읽기 전용, enrichment용)
"""

import json
import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Optional

import asyncpg
from asyncpg import Pool

from docembed.common.errors import ConfigurationError, NotFoundError, StorageError
from docembed.common.pipeline_config import PostgresConfig, get_config
from docembed.storage.vector_store import (
    ChunkRecord,
    DocumentRecord,
    DocumentSource,
    EmbeddingStatus,
    SearchResult,
    VectorStore,
)

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
    CREATE EXTENSION IF NOT EXISTS vector;

    CREATE TABLE IF NOT EXISTS accounts (
        id      SERIAL PRIMARY KEY,
        name    TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS opportunities (
        id          SERIAL PRIMARY KEY,
        name        TEXT NOT NULL,
        stage       TEXT,
        account_id  INTEGER REFERENCES accounts(id)
    );

    CREATE TABLE IF NOT EXISTS documents (
        id                SERIAL PRIMARY KEY,
        name              TEXT NOT NULL,
        type              TEXT NOT NULL,
        embedding_status  TEXT NOT NULL DEFAULT 'PENDING',
        chunk_count       INTEGER NOT NULL DEFAULT 0,
        embedded_at       TIMESTAMPTZ,
        opportunity_id    INTEGER REFERENCES opportunities(id)
    );

    CREATE TABLE IF NOT EXISTS document_chunks (
        id              SERIAL PRIMARY KEY,
        document_id     INTEGER REFERENCES documents(id) ON DELETE CASCADE,
        account_id      INTEGER,
        opportunity_id  INTEGER,
        content         TEXT NOT NULL,
        embedding       vector({dimension}),
        metadata        JSONB NOT NULL DEFAULT '{{}}'::jsonb,
        tokens          INTEGER NOT NULL DEFAULT 0,
        created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );

    CREATE INDEX IF NOT EXISTS idx_document_chunks_document_id ON document_chunks(document_id);
    CREATE INDEX IF NOT EXISTS idx_document_chunks_account_id ON document_chunks(account_id);
    CREATE INDEX IF NOT EXISTS idx_document_chunks_opportunity_id ON document_chunks(opportunity_id);
    CREATE INDEX IF NOT EXISTS idx_document_chunks_job_id ON document_chunks((metadata->>'jobId'));
    CREATE INDEX IF NOT EXISTS idx_document_chunks_embedding
        ON document_chunks USING hnsw (embedding vector_cosine_ops);

    CREATE TABLE IF NOT EXISTS document_sources (
        document_id  INTEGER PRIMARY KEY REFERENCES documents(id) ON DELETE CASCADE,
        content      TEXT NOT NULL,
        source_type  TEXT NOT NULL,
        metadata     JSONB NOT NULL DEFAULT '{{}}'::jsonb
    );
"""

GET_DOCUMENT_QUERY = """
    SELECT d.id, d.name, d.type, d.embedding_status, d.chunk_count,
           d.embedded_at, d.opportunity_id, o.account_id
    FROM documents d
    LEFT JOIN opportunities o ON d.opportunity_id = o.id
    WHERE d.id = $1
"""

UPDATE_STATUS_QUERY = """
    UPDATE documents
    SET embedding_status = $2,
        chunk_count = COALESCE($3, chunk_count),
        embedded_at = COALESCE($4, embedded_at)
    WHERE id = $1
"""

RESET_DOCUMENT_QUERY = """
    UPDATE documents
    SET embedding_status = 'PENDING', chunk_count = 0, embedded_at = NULL
    WHERE id = $1
"""

INSERT_CHUNK_QUERY = """
    INSERT INTO document_chunks
        (document_id, account_id, opportunity_id, content, embedding, metadata, tokens)
    VALUES ($1, $2, $3, $4, $5::vector, $6, $7)
"""

# 'vector(1536)' 형태로 반환 (차원 없는 컬럼은 'vector')
COLUMN_TYPE_QUERY = """
    SELECT format_type(a.atttypid, a.atttypmod) AS column_type
    FROM pg_attribute a
    WHERE a.attrelid = to_regclass('document_chunks')
      AND a.attname = 'embedding'
      AND NOT a.attisdropped
"""

VECTOR_TYPE_PATTERN = re.compile(r"^vector\((\d+)\)$")

LIST_CHUNKS_QUERY = """
    SELECT id, document_id, account_id, opportunity_id, content, tokens, metadata, created_at
    FROM document_chunks
    WHERE document_id = $1
    ORDER BY (metadata->>'chunkIndex')::int, id
"""

# pgvector <=> 는 cosine distance (낮을수록 유사)
SEARCH_QUERY = """
    SELECT
        c.id, c.content, c.tokens, c.metadata, c.created_at,
        c.embedding <=> $1::vector AS distance,
        d.id AS doc_id, d.name AS doc_name, d.type AS doc_type,
        a.id AS acc_id, a.name AS acc_name,
        o.id AS opp_id, o.name AS opp_name, o.stage AS opp_stage
    FROM document_chunks c
    LEFT JOIN documents d ON c.document_id = d.id
    LEFT JOIN accounts a ON c.account_id = a.id
    LEFT JOIN opportunities o ON c.opportunity_id = o.id
    WHERE {conditions}
    ORDER BY c.embedding <=> $1::vector
    LIMIT $2
"""

UPSERT_SOURCE_QUERY = """
    INSERT INTO document_sources (document_id, content, source_type, metadata)
    VALUES ($1, $2, $3, $4)
    ON CONFLICT (document_id) DO UPDATE SET
        content = EXCLUDED.content,
        source_type = EXCLUDED.source_type,
        metadata = EXCLUDED.metadata
"""


def format_vector(embedding: list[float]) -> str:
    """pgvector text input: '[f1,f2,...]' (str(list)는 공백 포함)"""
    return f"[{','.join(str(x) for x in embedding)}]"


def parse_vector_dimension(column_type: Optional[str]) -> Optional[int]:
    """'vector(1536)' → 1536 (차원 없는 vector / 다른 타입 / 컬럼 없음은 None)"""
    match = VECTOR_TYPE_PATTERN.match(column_type or "")
    return int(match.group(1)) if match else None


def _affected_rows(status: str) -> int:
    """'DELETE 3' / 'UPDATE 1' → 3 / 1"""
    try:
        return int(status.split()[-1])
    except (ValueError, IndexError):
        return 0


async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec(
        'jsonb',
        encoder=json.dumps,
        decoder=json.loads,
        schema='pg_catalog',
    )


class PgVectorStore(VectorStore):
    """
    pgvector 기반 청크 저장소

    사용 예시:
        async with PgVectorStore() as store:
            results = await store.search(query_vector, top_k=10)
    """

    def __init__(
        self,
        config: Optional[PostgresConfig] = None,
        dimension: Optional[int] = None,
    ):
        """
        Args:
            config: PostgreSQL 설정
            dimension: 임베딩 차원 (시작 시 DB 컬럼 차원과 비교)
        """
        self.config = config or get_config().postgres
        self.dimension = dimension or get_config().openai.dimensions
        self._pool: Optional[Pool] = None

        logger.info(
            f"PgVectorStore initialized: "
            f"host={self.config.host}, "
            f"db={self.config.database}"
        )

    async def start(self) -> None:
        """연결 풀 시작 + 벡터 차원 검증"""
        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.config.dsn,
                min_size=self.config.min_connections,
                max_size=self.config.max_connections,
                command_timeout=30,
                init=_init_connection,
            )
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"Failed to create PostgreSQL pool: {e}")
            raise StorageError(f"Failed to connect to PostgreSQL: {e}") from e

        logger.info("PostgreSQL connection pool created")

        await self.verify_dimension()

    async def column_dimension(self) -> Optional[int]:
        """document_chunks.embedding 컬럼의 vector 차원"""
        async with self._acquire() as conn:
            row = await conn.fetchrow(COLUMN_TYPE_QUERY)
        return parse_vector_dimension(row['column_type'] if row else None)

    async def verify_dimension(self) -> None:
        """
        임베딩 차원과 DB 컬럼 차원 비교

        Raises:
            ConfigurationError: 차원 불일치 (삽입이 전부 실패하므로 시작 시점에 중단)
        """
        db_dimension = await self.column_dimension()
        if db_dimension is None:
            logger.warning("Could not determine document_chunks.embedding dimension, skipping check")
            return

        if db_dimension != self.dimension:
            raise ConfigurationError(
                f"Embedding dimension mismatch: model produces {self.dimension}, "
                f"document_chunks.embedding is vector({db_dimension}). "
                f"Set EMBEDDING_DIMENSIONS={db_dimension} or migrate the column."
            )
        logger.info(f"Vector dimension verified: {db_dimension}")

    async def stop(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None
        logger.info("PgVectorStore stopped")

    @asynccontextmanager
    async def _acquire(self) -> AsyncIterator[asyncpg.Connection]:
        """연결 획득 (DB 예외 → StorageError)"""
        if not self._pool:
            raise StorageError("PgVectorStore not started. Call start() first.")

        try:
            async with self._pool.acquire() as conn:
                yield conn
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error(f"PostgreSQL error: {e}", exc_info=True)
            raise StorageError(str(e)) from e

    async def ensure_schema(self) -> None:
        """테이블 / 인덱스 생성 (없을 때만)"""
        async with self._acquire() as conn:
            await conn.execute(SCHEMA_SQL.format(dimension=self.dimension))
        logger.info("Schema ensured")

    async def ping(self) -> bool:
        async with self._acquire() as conn:
            return await conn.fetchval("SELECT 1") == 1

    # ------------------------------------------------------------------
    # 문서
    # ------------------------------------------------------------------

    async def get_document(self, document_id: int) -> Optional[DocumentRecord]:
        async with self._acquire() as conn:
            row = await conn.fetchrow(GET_DOCUMENT_QUERY, document_id)

        if row is None:
            return None

        return DocumentRecord(
            id=row['id'],
            name=row['name'],
            type=row['type'],
            embedding_status=EmbeddingStatus(row['embedding_status']),
            chunk_count=row['chunk_count'],
            embedded_at=row['embedded_at'],
            opportunity_id=row['opportunity_id'],
            account_id=row['account_id'],
        )

    async def update_document_status(
        self,
        document_id: int,
        status: EmbeddingStatus,
        chunk_count: Optional[int] = None,
        embedded_at: Optional[datetime] = None,
    ) -> None:
        async with self._acquire() as conn:
            result = await conn.execute(
                UPDATE_STATUS_QUERY,
                document_id,
                EmbeddingStatus(status).value,
                chunk_count,
                embedded_at,
            )
        if _affected_rows(result) == 0:
            raise NotFoundError(f"Document {document_id} not found")

    async def reset_document(self, document_id: int) -> None:
        async with self._acquire() as conn:
            result = await conn.execute(RESET_DOCUMENT_QUERY, document_id)
        if _affected_rows(result) == 0:
            raise NotFoundError(f"Document {document_id} not found")

    async def delete_document(self, document_id: int) -> bool:
        async with self._acquire() as conn:
            result = await conn.execute("DELETE FROM documents WHERE id = $1", document_id)
        return _affected_rows(result) > 0

    # ------------------------------------------------------------------
    # 청크
    # ------------------------------------------------------------------

    @staticmethod
    def _chunk_args(chunk: ChunkRecord) -> tuple:
        return (
            chunk.document_id,
            chunk.account_id,
            chunk.opportunity_id,
            chunk.content,
            format_vector(chunk.embedding),
            chunk.metadata,
            chunk.tokens,
        )

    async def insert_chunks(self, chunks: list[ChunkRecord]) -> int:
        if not chunks:
            return 0
        async with self._acquire() as conn:
            await conn.executemany(INSERT_CHUNK_QUERY, [self._chunk_args(c) for c in chunks])
        logger.debug(f"Stored {len(chunks)} chunks to document_chunks")
        return len(chunks)

    async def replace_document_chunks(self, document_id: int, chunks: list[ChunkRecord]) -> int:
        async with self._acquire() as conn:
            async with conn.transaction():
                deleted = await conn.execute(
                    "DELETE FROM document_chunks WHERE document_id = $1", document_id
                )
                if chunks:
                    await conn.executemany(INSERT_CHUNK_QUERY, [self._chunk_args(c) for c in chunks])

        logger.debug(
            f"Replaced chunks of document {document_id}: "
            f"deleted={_affected_rows(deleted)}, inserted={len(chunks)}"
        )
        return len(chunks)

    async def replace_job_chunks(self, job_id: str, chunks: list[ChunkRecord]) -> int:
        async with self._acquire() as conn:
            async with conn.transaction():
                deleted = await conn.execute(
                    "DELETE FROM document_chunks WHERE metadata->>'jobId' = $1", job_id
                )
                if chunks:
                    await conn.executemany(INSERT_CHUNK_QUERY, [self._chunk_args(c) for c in chunks])

        if _affected_rows(deleted):
            logger.info(f"Replaced {_affected_rows(deleted)} chunks left by an earlier attempt of job {job_id}")
        return len(chunks)

    async def delete_document_chunks(self, document_id: int) -> int:
        async with self._acquire() as conn:
            result = await conn.execute(
                "DELETE FROM document_chunks WHERE document_id = $1", document_id
            )
        return _affected_rows(result)

    async def list_document_chunks(self, document_id: int) -> list[ChunkRecord]:
        async with self._acquire() as conn:
            rows = await conn.fetch(LIST_CHUNKS_QUERY, document_id)

        # 목록 조회에서는 벡터를 읽지 않음
        return [
            ChunkRecord(
                id=row['id'],
                document_id=row['document_id'],
                account_id=row['account_id'],
                opportunity_id=row['opportunity_id'],
                content=row['content'],
                embedding=[],
                tokens=row['tokens'],
                metadata=row['metadata'] or {},
                created_at=row['created_at'],
            )
            for row in rows
        ]

    async def count_chunks(self, document_id: Optional[int] = None) -> int:
        async with self._acquire() as conn:
            if document_id is None:
                return await conn.fetchval("SELECT COUNT(*) FROM document_chunks")
            return await conn.fetchval(
                "SELECT COUNT(*) FROM document_chunks WHERE document_id = $1", document_id
            )

    async def reindex_all(self) -> int:
        async with self._acquire() as conn:
            async with conn.transaction():
                result = await conn.execute("DELETE FROM document_chunks")
                await conn.execute(
                    "UPDATE documents "
                    "SET embedding_status = 'PENDING', chunk_count = 0, embedded_at = NULL"
                )
        deleted = _affected_rows(result)
        logger.info(f"reindex_all: deleted {deleted} chunks")
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
        conditions = ["c.embedding IS NOT NULL"]
        args: list[Any] = [format_vector(query_embedding), top_k]

        if account_id is not None:
            args.append(account_id)
            conditions.append(f"c.account_id = ${len(args)}")
        if opportunity_id is not None:
            args.append(opportunity_id)
            conditions.append(f"c.opportunity_id = ${len(args)}")
        if source_type is not None:
            args.append(source_type)
            conditions.append(f"c.metadata->>'sourceType' = ${len(args)}")

        query = SEARCH_QUERY.format(conditions=" AND ".join(conditions))

        async with self._acquire() as conn:
            rows = await conn.fetch(query, *args)

        return [
            SearchResult(
                id=row['id'],
                content=row['content'],
                similarity=1.0 - float(row['distance']),
                tokens=row['tokens'],
                metadata=row['metadata'] or {},
                created_at=row['created_at'],
                document={
                    'id': row['doc_id'], 'name': row['doc_name'], 'type': row['doc_type'],
                } if row['doc_id'] is not None else None,
                account={
                    'id': row['acc_id'], 'name': row['acc_name'],
                } if row['acc_id'] is not None else None,
                opportunity={
                    'id': row['opp_id'], 'name': row['opp_name'], 'stage': row['opp_stage'],
                } if row['opp_id'] is not None else None,
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # 원문 보존
    # ------------------------------------------------------------------

    async def save_document_source(self, source: DocumentSource) -> None:
        async with self._acquire() as conn:
            await conn.execute(
                UPSERT_SOURCE_QUERY,
                source.document_id,
                source.content,
                source.source_type,
                source.metadata,
            )

    async def load_document_source(self, document_id: int) -> Optional[DocumentSource]:
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                "SELECT document_id, content, source_type, metadata "
                "FROM document_sources WHERE document_id = $1",
                document_id,
            )
        if row is None:
            return None
        return DocumentSource(
            document_id=row['document_id'],
            content=row['content'],
            source_type=row['source_type'],
            metadata=row['metadata'] or {},
        )
