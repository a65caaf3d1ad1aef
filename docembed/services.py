"""
Pipeline Services - 프로세스 단위 의존성 컨테이너
==================================================

API 서버와 워커가 공유하는 클라이언트들을 한 번만 만들어 명시적으로 전달합니다.

  redis      : 잡 큐 / 레이트 리미터 / 문서 lease 공용 연결
  store      : VectorStore (VECTOR_STORE_BACKEND)
  embedder   : EmbeddingClient (OPENAI_API_KEY 없으면 ConfigurationError)
  searcher   : RAGSearcher
  event_bus  : EventBus (+ EMBED_EVENTS_KAFKA=true면 KafkaEventSink)
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from docembed.common.errors import PipelineError
from docembed.common.pipeline_config import PipelineConfig, get_config
from docembed.embedding.embedder import EmbeddingClient
from docembed.embedding.embedding_worker import EmbeddingWorker
from docembed.embedding.rag_search import RAGSearcher
from docembed.events.bus import EventBus
from docembed.events.kafka_sink import KafkaEventSink
from docembed.managers.document_lease import DocumentLease
from docembed.managers.job_queue import EmbeddingJobQueue
from docembed.managers.rate_limiter import SlidingWindowRateLimiter
from docembed.monitoring.metrics import EmbeddingMetrics
from docembed.storage import VectorStore, create_vector_store

logger = logging.getLogger(__name__)


@dataclass
class PipelineServices:
    config: PipelineConfig
    redis: Any
    queue: EmbeddingJobQueue
    store: VectorStore
    embedder: EmbeddingClient
    searcher: RAGSearcher
    event_bus: EventBus
    lease: DocumentLease
    rate_limiter: SlidingWindowRateLimiter
    metrics: EmbeddingMetrics
    kafka_sink: Optional[KafkaEventSink] = None

    async def start(self) -> None:
        await self.store.start()
        if self.kafka_sink is not None:
            await self.kafka_sink.start()
            self.kafka_sink.attach(self.event_bus)

    async def stop(self) -> None:
        if self.kafka_sink is not None:
            await self.kafka_sink.stop()
        await self.store.stop()
        await self.redis.aclose()
        logger.info("Pipeline services stopped")

    def create_worker(self) -> EmbeddingWorker:
        return EmbeddingWorker(
            queue=self.queue,
            store=self.store,
            embedder=self.embedder,
            event_bus=self.event_bus,
            rate_limiter=self.rate_limiter,
            lease=self.lease,
            metrics=self.metrics,
            config=self.config.worker,
            chunking=self.config.chunking,
        )

    async def health(self) -> dict[str, str]:
        """Redis / DB 연결 확인"""
        try:
            await self.redis.ping()
            redis_status = "connected"
        except (RedisError, OSError) as e:
            logger.warning(f"Health check Redis error: {e}")
            redis_status = "error"

        try:
            db_status = "connected" if await self.store.ping() else "error"
        except PipelineError as e:
            logger.warning(f"Health check DB error: {e}")
            db_status = "error"

        overall = "ok" if redis_status == db_status == "connected" else "degraded"
        return {
            'status': overall,
            'redis': redis_status,
            'db': db_status,
            'embedder': self.embedder.model_name,
        }


async def create_services(
    config: Optional[PipelineConfig] = None,
    redis_client: Optional[Any] = None,
    store: Optional[VectorStore] = None,
    embedder: Optional[EmbeddingClient] = None,
    start: bool = True,
) -> PipelineServices:
    """
    설정 기반 서비스 생성 (+ 시작)

    Args:
        config: 파이프라인 설정 (없으면 get_config())
        redis_client: redis.asyncio 호환 클라이언트 (테스트용 주입)
        store: 벡터 저장소 (없으면 VECTOR_STORE_BACKEND로 생성)
        embedder: 임베딩 클라이언트
        start: 저장소 / Kafka 연결까지 시작할지 여부
    """
    config = config or get_config()

    # 자격 증명 누락은 연결 전에 실패
    embedder = embedder or EmbeddingClient(config=config.openai)

    redis_client = redis_client or aioredis.from_url(config.redis.url, decode_responses=True)
    queue = EmbeddingJobQueue(redis_client, queue_name=config.redis.queue_name, queue_config=config.queue)
    store = store or create_vector_store(config)

    services = PipelineServices(
        config=config,
        redis=redis_client,
        queue=queue,
        store=store,
        embedder=embedder,
        searcher=RAGSearcher(store, embedder, max_top_k=config.api.max_top_k),
        event_bus=EventBus(),
        lease=DocumentLease(
            redis_client,
            prefix=f"{queue.prefix}:lease",
            ttl_ms=config.worker.lease_ttl_ms,
        ),
        rate_limiter=SlidingWindowRateLimiter(
            redis_client,
            key=f"{queue.prefix}:limiter",
            max_jobs=config.worker.rate_limit_max,
            window_ms=config.worker.rate_limit_window_ms,
        ),
        metrics=EmbeddingMetrics(),
        kafka_sink=KafkaEventSink(config.kafka) if config.kafka.enabled else None,
    )

    if start:
        await services.start()

    logger.info(
        f"Pipeline services ready: "
        f"store={type(store).__name__}, "
        f"model={embedder.model_name}, "
        f"events_kafka={config.kafka.enabled}"
    )
    return services
