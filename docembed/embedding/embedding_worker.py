"""
Embedding Worker - 잡 큐 소비 → 청킹 → 임베딩 → 벡터 저장
==========================================================

Redis 잡 큐에서 잡을 꺼내 처리하는 워커 풀입니다.

  - 프로세스당 concurrency개(기본 5) 소비 루프를 동시에 실행
  - 잡 시작은 Redis 슬라이딩 윈도우로 제한 (기본 50개 / 60초, 모든 워커 프로세스 합산)
    제한에 걸린 잡은 버리지 않고 대기 (backpressure)
  - 실패한 잡은 큐의 재시도 정책(3회, 지수 백오프 2s~)에 맡김
  - 처리 중인 잡의 lock은 주기적으로 연장, 죽은 워커의 잡은 lock 만료 후 다른 워커가 회수

잡 처리:
  EMBED_DOCUMENT    : lease → PROCESSING → 청킹 → 배치 임베딩 → 청크 교체 → COMPLETED
  EMBED_TEXT        : 청킹 → 배치 임베딩 → 잡 ID 기준 청크 교체 (문서 상태 없음)
  REINDEX_DOCUMENT  : lease → 청크 삭제 → PENDING 초기화
                      (RETAIN_SOURCE_CONTENT=true면 보존된 원문으로 EMBED_DOCUMENT 재등록)

진행률 체크포인트: 10(청킹) → 30(임베딩 요청) → 70(저장) → 90(상태 갱신) → 100(완료)
"""

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from redis.exceptions import RedisError

from docembed.common.errors import NotFoundError, PipelineError, ValidationError
from docembed.common.pipeline_config import ChunkingConfig, WorkerConfig, get_config
from docembed.embedding.chunker import TextChunk, TextChunker
from docembed.embedding.embedder import BatchEmbeddingResult, EmbeddingClient
from docembed.embedding.stats import EmbeddingStats
from docembed.events.bus import (
    EmbeddingCompleted,
    EmbeddingFailed,
    EmbeddingProgress,
    EmbeddingStarted,
    EventBus,
)
from docembed.managers.document_lease import DocumentLease
from docembed.managers.job_queue import EmbeddingJobQueue
from docembed.managers.jobs import (
    EmbedDocumentPayload,
    EmbedTextPayload,
    Job,
    ReindexDocumentPayload,
)
from docembed.managers.rate_limiter import SlidingWindowRateLimiter
from docembed.monitoring.metrics import EmbeddingMetrics
from docembed.storage.vector_store import (
    ChunkRecord,
    DocumentSource,
    EmbeddingStatus,
    VectorStore,
)

logger = logging.getLogger(__name__)

TABULAR_SOURCE_TYPES = ("csv", "excel")


class EmbeddingWorker:
    """
    임베딩 잡 워커 풀

    사용 예시:
        async with EmbeddingWorker(queue, store, embedder) as worker:
            await worker.run()
    """

    def __init__(
        self,
        queue: EmbeddingJobQueue,
        store: VectorStore,
        embedder: EmbeddingClient,
        chunker: Optional[TextChunker] = None,
        event_bus: Optional[EventBus] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        lease: Optional[DocumentLease] = None,
        metrics: Optional[EmbeddingMetrics] = None,
        config: Optional[WorkerConfig] = None,
        chunking: Optional[ChunkingConfig] = None,
    ):
        """
        Args:
            queue: 잡 큐
            store: 벡터 저장소
            embedder: 임베딩 클라이언트
            chunker: 청커 (없으면 ChunkingConfig 기본값)
            event_bus: 라이프사이클 이벤트 버스
            rate_limiter: 잡 시작 제한 (None이면 제한 없음)
            lease: 문서 lease (None이면 lock 없이 처리)
            metrics: Prometheus 메트릭
            config: 워커 설정
            chunking: 청킹 설정
        """
        pipeline_config = get_config()
        self.config = config or pipeline_config.worker
        self.chunking = chunking or pipeline_config.chunking

        self.queue = queue
        self.store = store
        self.embedder = embedder
        self.chunker = chunker or TextChunker(
            chunk_size=self.chunking.chunk_size,
            chunk_overlap=self.chunking.chunk_overlap,
        )
        self.event_bus = event_bus or EventBus()
        self.rate_limiter = rate_limiter
        self.lease = lease
        self.metrics = metrics or EmbeddingMetrics()

        self._running = False
        self._claimed = 0
        self._sleep = asyncio.sleep
        self.stats = EmbeddingStats()

        logger.info(
            f"EmbeddingWorker initialized: "
            f"concurrency={self.config.concurrency}, "
            f"rate_limit={'off' if rate_limiter is None else f'{rate_limiter.max_jobs}/{rate_limiter.window_ms}ms'}"
        )

    async def start(self) -> None:
        self._running = True
        self._claimed = 0
        self.stats = EmbeddingStats()
        logger.info("EmbeddingWorker started")

    async def stop(self) -> None:
        """새 잡 수신 중단 (처리 중인 잡은 끝까지 처리)"""
        self.request_stop()
        logger.info(f"EmbeddingWorker stopped. {self.stats}")

    def request_stop(self) -> None:
        """소비 루프가 다음 잡을 꺼내지 않도록 표시 (시그널 핸들러에서 호출 가능)"""
        self._running = False

    async def __aenter__(self) -> "EmbeddingWorker":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # 소비 루프
    # ------------------------------------------------------------------

    async def run(self, max_jobs: Optional[int] = None, stop_when_idle: bool = False) -> None:
        """
        concurrency개 소비 루프 실행

        Args:
            max_jobs: 처리할 최대 잡 수 (None이면 무한)
            stop_when_idle: 대기 잡이 없으면 종료 (배치 / 테스트용)
        """
        if not self._running:
            raise RuntimeError("Worker not started. Call start() first.")

        logger.info(
            f"EmbeddingWorker run loop started "
            f"(max_jobs={max_jobs or 'unlimited'})"
        )

        await asyncio.gather(*(
            self._consume_loop(slot, max_jobs, stop_when_idle)
            for slot in range(max(self.config.concurrency, 1))
        ))

        logger.info(f"EmbeddingWorker run loop ended. {self.stats}")

    def _limit_reached(self, max_jobs: Optional[int]) -> bool:
        return max_jobs is not None and self._claimed >= max_jobs

    async def _consume_loop(self, slot: int, max_jobs: Optional[int], stop_when_idle: bool) -> None:
        while self._running and not self._limit_reached(max_jobs):
            try:
                await self.queue.recover_stalled()
                await self.queue.promote_delayed()

                token = await self.rate_limiter.acquire() if self.rate_limiter else None
                job = await self.queue.reserve()

                if job is None:
                    if token is not None:
                        await self.rate_limiter.release(token)
                    await self._refresh_queue_metrics()
                    if stop_when_idle:
                        break
                    await self._sleep(self.config.poll_interval)
                    continue

                self._claimed += 1
                await self.process_job(job)
                await self._refresh_queue_metrics()

            except asyncio.CancelledError:
                logger.info(f"Consumer slot {slot} cancelled")
                raise
            except Exception as e:
                # Redis 장애 등: 루프는 유지하고 잠시 대기
                logger.error(f"Consumer slot {slot} error: {e}", exc_info=True)
                await self._sleep(self.config.poll_interval)

    async def _refresh_queue_metrics(self) -> None:
        self.metrics.update_queue_stats(await self.queue.get_queue_stats())

    @asynccontextmanager
    async def _job_lock(self, job: Job) -> AsyncIterator[None]:
        """처리하는 동안 잡 lock을 주기적으로 연장"""
        task = asyncio.create_task(self._renew_job_lock(job))
        try:
            yield
        finally:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _renew_job_lock(self, job: Job) -> None:
        interval = self.queue.policy.lock_duration_ms / 2000
        while True:
            await asyncio.sleep(interval)
            try:
                if not await self.queue.extend_lock(job):
                    logger.warning(f"Job {job.id} lock was lost, it may be retried by another worker")
                    return
            except RedisError as e:
                logger.warning(f"Job {job.id} lock renewal failed: {e}")

    async def process_job(self, job: Job) -> bool:
        """
        잡 1건 처리 후 큐에 결과 보고

        Returns:
            성공 여부
        """
        self.stats.jobs_started += 1
        logger.info(f"Processing job {job.id} ({job.job_type.value}), attempt {job.attempts_made + 1}/{job.max_attempts}")

        try:
            async with self._job_lock(job):
                result = await self.handle(job)
        except Exception as e:
            logger.error(f"Job {job.id} failed: {e}", exc_info=not isinstance(e, PipelineError))
            retried = await self.queue.fail(job, e)
            if retried:
                self.stats.jobs_retried += 1
                self.metrics.record_job(job.job_type.value, 'retried')
            else:
                self.stats.jobs_failed += 1
                self.metrics.record_job(job.job_type.value, 'failed')
            return False

        if not await self.queue.complete(job, result):
            return False
        self.stats.jobs_completed += 1
        self.metrics.record_job(job.job_type.value, 'completed')
        logger.info(f"Job {job.id} completed successfully")
        return True

    async def handle(self, job: Job) -> dict[str, Any]:
        """잡 종류별 처리 함수로 분기"""
        payload = job.payload
        if isinstance(payload, EmbedDocumentPayload):
            return await self.process_document_embedding(job, payload)
        if isinstance(payload, EmbedTextPayload):
            return await self.process_text_embedding(job, payload)
        if isinstance(payload, ReindexDocumentPayload):
            return await self.process_document_reindex(job, payload)
        raise TypeError(f"Unknown job payload: {type(payload).__name__}")

    # ------------------------------------------------------------------
    # EMBED_DOCUMENT
    # ------------------------------------------------------------------

    async def process_document_embedding(self, job: Job, payload: EmbedDocumentPayload) -> dict[str, Any]:
        document_id = payload.document_id

        async with self._document_lease(document_id):
            document = await self.store.get_document(document_id)
            if document is None:
                raise NotFoundError(f"Document {document_id} not found")

            await self.store.update_document_status(document_id, EmbeddingStatus.PROCESSING)
            await self.event_bus.publish(EmbeddingStarted(
                job_id=job.id, job_type=job.job_type.value, document_id=document_id,
            ))

            try:
                if self.config.retain_source_content:
                    await self.store.save_document_source(DocumentSource(
                        document_id=document_id,
                        content=payload.content,
                        source_type=payload.source_type,
                        metadata=dict(payload.metadata),
                    ))

                chunks = self._chunk_content(payload.content, payload.source_type)
                logger.info(f"Created {len(chunks)} chunks for document {document_id}")
                if not chunks:
                    raise ValidationError("No chunks created from content")
                self.stats.chunks_created += len(chunks)
                await self._progress(job, 10, document_id)

                await self._progress(job, 30, document_id)
                batch = await self._embed_chunks(chunks)

                records = [
                    ChunkRecord(
                        content=chunk.content,
                        embedding=embedding,
                        tokens=chunk.tokens or self.chunker.estimate_tokens(chunk.content),
                        metadata={
                            **payload.metadata,
                            **chunk.metadata,
                            'sourceType': payload.source_type,
                            'chunkIndex': index,
                        },
                        document_id=document_id,
                        account_id=document.account_id,
                        opportunity_id=document.opportunity_id,
                    )
                    for index, (chunk, embedding) in enumerate(self._pair(chunks, batch))
                ]
                await self._store_chunks(records, document_id)
                await self._progress(job, 70, document_id)

                await self.store.update_document_status(
                    document_id,
                    EmbeddingStatus.COMPLETED,
                    chunk_count=len(records),
                    embedded_at=datetime.now(timezone.utc),
                )
                await self._progress(job, 90, document_id)

                await self.event_bus.publish(EmbeddingCompleted(
                    job_id=job.id,
                    job_type=job.job_type.value,
                    document_id=document_id,
                    chunk_count=len(records),
                    total_tokens=batch.total_tokens,
                    cost=batch.costs,
                ))
                await self._progress(job, 100, document_id)

            except Exception as e:
                await self._report_failure(job, e, document_id)
                raise

        return {
            'success': True,
            'documentId': document_id,
            'chunksCreated': len(records),
            'totalTokens': batch.total_tokens,
            'cost': batch.costs,
        }

    # ------------------------------------------------------------------
    # EMBED_TEXT
    # ------------------------------------------------------------------

    async def process_text_embedding(self, job: Job, payload: EmbedTextPayload) -> dict[str, Any]:
        await self.event_bus.publish(EmbeddingStarted(job_id=job.id, job_type=job.job_type.value))

        try:
            chunks = self.chunker.chunk_text(
                payload.content,
                chunk_size=self.chunking.chunk_size,
                chunk_overlap=self.chunking.chunk_overlap,
                preserve_sentences=True,
            )
            if not chunks:
                raise ValidationError("No chunks created from text")
            self.stats.chunks_created += len(chunks)
            await self._progress(job, 10)

            await self._progress(job, 30)
            batch = await self._embed_chunks(chunks)

            records = [
                ChunkRecord(
                    content=chunk.content,
                    embedding=embedding,
                    tokens=chunk.tokens or self.chunker.estimate_tokens(chunk.content),
                    metadata={
                        **payload.metadata,
                        'sourceType': payload.source_type,
                        'chunkIndex': index,
                        'jobId': job.id,
                    },
                    account_id=payload.account_id,
                    opportunity_id=payload.opportunity_id,
                )
                for index, (chunk, embedding) in enumerate(self._pair(chunks, batch))
            ]
            await self._store_chunks(records, job_id=job.id)
            await self._progress(job, 70)
            await self._progress(job, 90)

            await self.event_bus.publish(EmbeddingCompleted(
                job_id=job.id,
                job_type=job.job_type.value,
                chunk_count=len(records),
                total_tokens=batch.total_tokens,
                cost=batch.costs,
            ))
            await self._progress(job, 100)

        except Exception as e:
            await self._report_failure(job, e)
            raise

        return {
            'success': True,
            'chunksCreated': len(records),
            'totalTokens': batch.total_tokens,
            'cost': batch.costs,
        }

    # ------------------------------------------------------------------
    # REINDEX_DOCUMENT
    # ------------------------------------------------------------------

    async def process_document_reindex(self, job: Job, payload: ReindexDocumentPayload) -> dict[str, Any]:
        document_id = payload.document_id
        logger.info(f"Reindexing document {document_id}")

        async with self._document_lease(document_id):
            if await self.store.get_document(document_id) is None:
                raise NotFoundError(f"Document {document_id} not found")

            deleted = await self.store.delete_document_chunks(document_id)
            await self.store.reset_document(document_id)

        result: dict[str, Any] = {
            'success': True,
            'documentId': document_id,
            'deletedChunks': deleted,
            'message': 'Document chunks deleted, ready for re-embedding',
        }

        if self.config.retain_source_content:
            source = await self.store.load_document_source(document_id)
            if source is not None:
                requeued = await self.queue.queue_document_embedding(
                    document_id,
                    source.content,
                    source.source_type,
                    source.metadata,
                )
                result['requeuedJobId'] = requeued
                result['message'] = 'Document chunks deleted, re-embedding queued'

        return result

    # ------------------------------------------------------------------
    # 내부
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _document_lease(self, document_id: int) -> AsyncIterator[None]:
        if self.lease is None:
            yield
            return
        async with self.lease.hold(document_id):
            yield

    def _chunk_content(self, content: Any, source_type: str) -> list[TextChunk]:
        if source_type in TABULAR_SOURCE_TYPES:
            rows = self._parse_rows(content)
            return self.chunker.chunk_csv_data(rows, chunk_size=self.chunking.chunk_size)

        chunks = self.chunker.chunk_text(
            content,
            chunk_size=self.chunking.chunk_size,
            chunk_overlap=self.chunking.chunk_overlap,
            preserve_sentences=True,
        )
        if source_type == "pdf":
            for chunk in chunks:
                chunk.metadata.update(self.chunker.extract_pdf_metadata(chunk.content))
        return chunks

    @staticmethod
    def _parse_rows(content: Any) -> list[dict[str, Any]]:
        """CSV/Excel 원문(JSON 배열 문자열) → 행 리스트"""
        try:
            rows = json.loads(content) if isinstance(content, str) else content
        except json.JSONDecodeError as e:
            raise ValidationError(f"Tabular content is not valid JSON: {e}") from e

        if not isinstance(rows, list) or not all(isinstance(row, dict) for row in rows):
            raise ValidationError("Tabular content must be a JSON array of row objects")
        return rows

    async def _embed_chunks(self, chunks: list[TextChunk]) -> BatchEmbeddingResult:
        started = time.time()
        batch = await self.embedder.generate_embeddings_batch([c.content for c in chunks])
        elapsed = time.time() - started

        self.stats.embed_time_ms += elapsed * 1000
        self.stats.total_tokens += batch.total_tokens
        self.stats.total_cost += batch.costs
        self.metrics.record_embedding(batch.total_tokens, batch.costs, elapsed)

        logger.info(
            f"Generated {len(batch.embeddings)} embeddings "
            f"({batch.total_tokens} tokens, ${batch.costs:.4f} cost)"
        )
        return batch

    @staticmethod
    def _pair(chunks: list[TextChunk], batch: BatchEmbeddingResult) -> list[tuple[TextChunk, list[float]]]:
        """빈 청크는 임베딩에서 제외되므로 indices로 대응"""
        return [(chunks[i], embedding) for i, embedding in zip(batch.indices, batch.embeddings)]

    async def _store_chunks(
        self,
        records: list[ChunkRecord],
        document_id: Optional[int] = None,
        job_id: Optional[str] = None,
    ) -> None:
        """문서 청크는 document_id로, 텍스트 청크는 잡 ID로 교체 (재시도해도 중복 없음)"""
        started = time.time()
        if document_id is None:
            await self.store.replace_job_chunks(job_id, records)
        else:
            await self.store.replace_document_chunks(document_id, records)
        elapsed = time.time() - started

        self.stats.store_time_ms += elapsed * 1000
        self.stats.chunks_stored += len(records)
        self.metrics.record_store(len(records), elapsed)

    async def _progress(self, job: Job, progress: int, document_id: Optional[int] = None) -> None:
        await self.queue.update_progress(job, progress)
        await self.event_bus.publish(EmbeddingProgress(
            job_id=job.id,
            job_type=job.job_type.value,
            document_id=document_id,
            progress=progress,
        ))

    async def _report_failure(self, job: Job, error: Exception, document_id: Optional[int] = None) -> None:
        if document_id is not None:
            try:
                await self.store.update_document_status(document_id, EmbeddingStatus.FAILED)
            except PipelineError as status_error:
                logger.error(f"Could not mark document {document_id} FAILED: {status_error}")

        await self.event_bus.publish(EmbeddingFailed(
            job_id=job.id,
            job_type=job.job_type.value,
            document_id=document_id,
            error=str(error) or type(error).__name__,
        ))

    def get_stats(self) -> dict:
        """현재 통계 반환"""
        stats = self.stats.to_dict()
        stats['model'] = self.embedder.model_name
        stats['concurrency'] = self.config.concurrency
        return stats
