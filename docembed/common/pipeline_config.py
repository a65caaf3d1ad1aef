"""
Pipeline Configuration
=======================

환경변수로 설정 가능한 임베딩 파이프라인 설정들
(OpenAI / Redis 큐 / 워커 / 청킹 / PostgreSQL / Kafka 이벤트 / API)
"""

import os
from dataclasses import dataclass, field
from typing import Optional


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower().strip() in {"1", "true", "yes", "on"}


@dataclass
class OpenAIConfig:
    """임베딩 프로바이더(OpenAI) 설정"""

    api_key: Optional[str] = field(
        default_factory=lambda: os.getenv("OPENAI_API_KEY")
    )
    model: str = field(
        default_factory=lambda: os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
    )
    dimensions: int = field(
        default_factory=lambda: int(os.getenv("EMBEDDING_DIMENSIONS", "1536"))
    )

    # OpenAI는 단일 호출로 최대 2048개 입력 처리 가능
    max_batch_size: int = field(
        default_factory=lambda: int(os.getenv("EMBED_MAX_BATCH_SIZE", "2048"))
    )
    max_tokens_per_request: int = 8191

    # 배치 사이 쓰로틀링 딜레이
    batch_delay_ms: int = field(
        default_factory=lambda: int(os.getenv("EMBED_BATCH_DELAY_MS", "100"))
    )

    # text-embedding-3-small: $0.02 / 1M tokens
    cost_per_million_tokens: float = field(
        default_factory=lambda: float(os.getenv("EMBED_COST_PER_MILLION", "0.02"))
    )


@dataclass
class RedisConfig:
    """Redis 연결 설정 (잡 큐 / 레이트 리미터 / 문서 리스)"""

    url: str = field(
        default_factory=lambda: os.getenv("REDIS_URL", "redis://localhost:6379/0")
    )
    queue_name: str = field(
        default_factory=lambda: os.getenv("EMBED_QUEUE_NAME", "embedding-queue")
    )


@dataclass
class QueueConfig:
    """잡 큐 재시도 / 보존 정책"""

    # Retry
    attempts: int = field(
        default_factory=lambda: int(os.getenv("EMBED_JOB_ATTEMPTS", "3"))
    )
    backoff_ms: int = field(
        default_factory=lambda: int(os.getenv("EMBED_JOB_BACKOFF_MS", "2000"))
    )

    # 처리 중인 잡의 lock (워커가 주기적으로 연장, 만료되면 stalled로 회수)
    lock_duration_ms: int = field(
        default_factory=lambda: int(os.getenv("EMBED_JOB_LOCK_MS", "30000"))
    )

    # Retention
    completed_max_age_sec: int = field(
        default_factory=lambda: int(os.getenv("EMBED_COMPLETED_MAX_AGE", str(24 * 3600)))
    )
    completed_max_count: int = field(
        default_factory=lambda: int(os.getenv("EMBED_COMPLETED_MAX_COUNT", "1000"))
    )
    failed_max_age_sec: int = field(
        default_factory=lambda: int(os.getenv("EMBED_FAILED_MAX_AGE", str(7 * 24 * 3600)))
    )


@dataclass
class WorkerConfig:
    """임베딩 워커 풀 설정"""

    concurrency: int = field(
        default_factory=lambda: int(os.getenv("EMBED_WORKER_CONCURRENCY", "5"))
    )

    # OpenAI 레이트 리밋에 맞춘 잡 시작 제한 (기본: 50개 / 1분)
    rate_limit_max: int = field(
        default_factory=lambda: int(os.getenv("EMBED_RATE_LIMIT_MAX", "50"))
    )
    rate_limit_window_ms: int = field(
        default_factory=lambda: int(os.getenv("EMBED_RATE_LIMIT_WINDOW_MS", "60000"))
    )

    # 문서별 advisory lease TTL
    lease_ttl_ms: int = field(
        default_factory=lambda: int(os.getenv("EMBED_LEASE_TTL_MS", "600000"))
    )

    # 대기 잡이 없을 때 폴링 간격 (초)
    poll_interval: float = field(
        default_factory=lambda: float(os.getenv("EMBED_POLL_INTERVAL", "1.0"))
    )

    # REINDEX 시 재임베딩을 위해 원문을 보존할지 여부
    retain_source_content: bool = field(
        default_factory=lambda: _env_bool("RETAIN_SOURCE_CONTENT", "false")
    )


@dataclass
class ChunkingConfig:
    """청킹 설정 (토큰 단위, 1 token ≈ 4 chars)"""

    chunk_size: int = field(
        default_factory=lambda: int(os.getenv("EMBED_CHUNK_SIZE", "512"))
    )
    chunk_overlap: int = field(
        default_factory=lambda: int(os.getenv("EMBED_CHUNK_OVERLAP", "50"))
    )


@dataclass
class PostgresConfig:
    """PostgreSQL (pgvector) 설정"""

    host: str = field(
        default_factory=lambda: os.getenv("POSTGRES_HOST", "localhost")
    )
    port: int = field(
        default_factory=lambda: int(os.getenv("POSTGRES_PORT", "5432"))
    )
    database: str = field(
        default_factory=lambda: os.getenv("POSTGRES_DB", "docembed")
    )
    user: str = field(
        default_factory=lambda: os.getenv("POSTGRES_USER", "docembed")
    )
    password: str = field(
        default_factory=lambda: os.getenv("POSTGRES_PASSWORD", "docembed")
    )

    # Connection Pool
    min_connections: int = field(
        default_factory=lambda: int(os.getenv("POSTGRES_MIN_CONN", "2"))
    )
    max_connections: int = field(
        default_factory=lambda: int(os.getenv("POSTGRES_MAX_CONN", "10"))
    )

    @property
    def dsn(self) -> str:
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"


@dataclass
class KafkaConfig:
    """라이프사이클 이벤트 Kafka 전송 설정 (선택)"""

    enabled: bool = field(
        default_factory=lambda: _env_bool("EMBED_EVENTS_KAFKA", "false")
    )
    bootstrap_servers: str = field(
        default_factory=lambda: os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")
    )
    events_topic: str = field(
        default_factory=lambda: os.getenv("EMBED_EVENTS_TOPIC", "embedding.events")
    )
    linger_ms: int = field(
        default_factory=lambda: int(os.getenv("KAFKA_PRODUCER_LINGER_MS", "50"))
    )
    acks: str = field(
        default_factory=lambda: os.getenv("KAFKA_PRODUCER_ACKS", "1")
    )


@dataclass
class ApiConfig:
    """검색 API / 저장소 백엔드 / 메트릭 설정"""

    # "postgres" | "memory"
    vector_store_backend: str = field(
        default_factory=lambda: os.getenv("VECTOR_STORE_BACKEND", "postgres").lower()
    )
    max_top_k: int = field(
        default_factory=lambda: int(os.getenv("VECTOR_SEARCH_MAX_TOP_K", "100"))
    )
    metrics_port: int = field(
        default_factory=lambda: int(os.getenv("EMBED_METRICS_PORT", "8001"))
    )


@dataclass
class PipelineConfig:
    """전체 파이프라인 통합 설정"""

    openai: OpenAIConfig = field(default_factory=OpenAIConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    postgres: PostgresConfig = field(default_factory=PostgresConfig)
    kafka: KafkaConfig = field(default_factory=KafkaConfig)
    api: ApiConfig = field(default_factory=ApiConfig)


_config: Optional[PipelineConfig] = None


def get_config() -> PipelineConfig:
    """설정 인스턴스 반환 (첫 호출 시 환경변수에서 생성)"""
    global _config
    if _config is None:
        _config = PipelineConfig()
    return _config


def reset_config() -> None:
    """환경변수 변경 후 설정을 다시 읽도록 캐시 초기화 (테스트용)"""
    global _config
    _config = None
