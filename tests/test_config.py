"""환경변수 기반 설정 / 서비스 조립 테스트."""

import asyncio

import pytest

from docembed.common.errors import ConfigurationError
from docembed.common.pipeline_config import PipelineConfig, get_config, reset_config
from docembed.embedding.embedder import EmbeddingClient
from docembed.embedding.embedding_worker import EmbeddingWorker
from docembed.services import create_services
from docembed.storage import InMemoryVectorStore, create_vector_store

from conftest import FakeOpenAIClient, FakeRedisClient


async def create_services_for(config, embedder=None):
    return await create_services(config, redis_client=FakeRedisClient(), embedder=embedder)


@pytest.fixture(autouse=True)
def fresh_config():
    reset_config()
    yield
    reset_config()


class TestPipelineConfig:

    def test_defaults(self, monkeypatch):
        """기본값: 512/50 청킹, 5 동시 처리, 50 jobs/min, 3회 재시도."""
        for name in ("EMBED_CHUNK_SIZE", "EMBED_WORKER_CONCURRENCY", "EMBED_RATE_LIMIT_MAX",
                     "EMBED_JOB_ATTEMPTS", "RETAIN_SOURCE_CONTENT", "EMBEDDING_DIMENSIONS"):
            monkeypatch.delenv(name, raising=False)

        config = PipelineConfig()

        assert config.chunking.chunk_size == 512
        assert config.chunking.chunk_overlap == 50
        assert config.worker.concurrency == 5
        assert config.worker.rate_limit_max == 50
        assert config.worker.rate_limit_window_ms == 60_000
        assert config.worker.retain_source_content is False
        assert config.queue.attempts == 3
        assert config.queue.backoff_ms == 2000
        assert config.queue.lock_duration_ms == 30_000
        assert config.openai.dimensions == 1536

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("EMBED_WORKER_CONCURRENCY", "10")
        monkeypatch.setenv("RETAIN_SOURCE_CONTENT", "true")
        monkeypatch.setenv("VECTOR_STORE_BACKEND", "MEMORY")
        monkeypatch.setenv("POSTGRES_HOST", "db.internal")

        config = get_config()

        assert config.worker.concurrency == 10
        assert config.worker.retain_source_content is True
        assert config.api.vector_store_backend == "memory"
        assert config.postgres.dsn.startswith("postgresql://")
        assert "@db.internal:" in config.postgres.dsn

    def test_get_config_is_cached_until_reset(self, monkeypatch):
        first = get_config()
        assert get_config() is first

        reset_config()
        assert get_config() is not first


class TestFactories:

    def test_memory_backend(self, pipeline_config):
        assert isinstance(create_vector_store(pipeline_config), InMemoryVectorStore)

    def test_unknown_backend(self, pipeline_config):
        pipeline_config.api.vector_store_backend = "sqlite"

        with pytest.raises(ConfigurationError):
            create_vector_store(pipeline_config)

    def test_services_require_api_key(self, pipeline_config):
        """자격 증명이 없으면 연결 전에 ConfigurationError."""
        pipeline_config.openai.api_key = None

        with pytest.raises(ConfigurationError):
            asyncio.run(create_services_for(pipeline_config))

    def test_services_wire_worker(self, pipeline_config):
        services = asyncio.run(create_services_for(
            pipeline_config,
            embedder=EmbeddingClient(config=pipeline_config.openai, client=FakeOpenAIClient()),
        ))

        worker = services.create_worker()

        assert isinstance(worker, EmbeddingWorker)
        assert worker.lease is services.lease
        assert worker.rate_limiter.max_jobs == pipeline_config.worker.rate_limit_max
        assert services.rate_limiter.key == "embedq:test-queue:limiter"
        assert services.kafka_sink is None

        asyncio.run(services.stop())
        assert services.redis.closed
