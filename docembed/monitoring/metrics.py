"""
Embedding Metrics - Prometheus 메트릭
======================================

워커 프로세스가 기록하고 EMBED_METRICS_PORT로 노출합니다.
인스턴스마다 별도 CollectorRegistry를 사용합니다.
"""

import logging
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)


class EmbeddingMetrics:
    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self.server_started = False

        # 1. 잡 결과 (job_type, status: completed/retried/failed)
        self.jobs_total = Counter(
            'embedding_jobs_total',
            'Embedding jobs processed by type and outcome',
            ['job_type', 'status'],
            registry=self.registry,
        )

        # 2. 저장된 청크 / 사용 토큰 / 비용
        self.chunks_stored_total = Counter(
            'embedding_chunks_stored_total',
            'Total chunks persisted with embeddings',
            registry=self.registry,
        )
        self.tokens_total = Counter(
            'embedding_tokens_total',
            'Total provider tokens consumed',
            registry=self.registry,
        )
        self.cost_usd_total = Counter(
            'embedding_cost_usd_total',
            'Estimated embedding cost in USD',
            registry=self.registry,
        )

        # 3. 처리 시간 분포
        self.embed_latency = Histogram(
            'embedding_embed_latency_seconds',
            'Time spent in provider embedding calls per job',
            buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
            registry=self.registry,
        )
        self.store_latency = Histogram(
            'embedding_store_latency_seconds',
            'Time spent persisting chunks per job',
            buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
            registry=self.registry,
        )

        # 4. 큐 상태
        self.queue_jobs = Gauge(
            'embedding_queue_jobs',
            'Jobs in the embedding queue by state',
            ['state'],
            registry=self.registry,
        )

    def start_server(self, port: int) -> None:
        """Prometheus Exporter 서버 시작"""
        if self.server_started:
            return
        start_http_server(port, registry=self.registry)
        self.server_started = True
        logger.info(f"Prometheus metrics server started on port {port}")

    def record_job(self, job_type: str, status: str) -> None:
        self.jobs_total.labels(job_type=job_type, status=status).inc()

    def record_embedding(self, tokens: int, cost: float, seconds: float) -> None:
        self.tokens_total.inc(tokens)
        self.cost_usd_total.inc(cost)
        self.embed_latency.observe(seconds)

    def record_store(self, chunks: int, seconds: float) -> None:
        self.chunks_stored_total.inc(chunks)
        self.store_latency.observe(seconds)

    def update_queue_stats(self, stats: dict) -> None:
        for state in ('waiting', 'active', 'completed', 'failed'):
            self.queue_jobs.labels(state=state).set(stats.get(state, 0))

    def get_sample(self, name: str, labels: Optional[dict] = None) -> float:
        """현재 값 조회 (없으면 0)"""
        value = self.registry.get_sample_value(name, labels or {})
        return value or 0.0
