#!/usr/bin/env python3
"""
Embedding Runner - 잡 큐 → 청킹 → 임베딩 → pgvector 실행기
============================================================

EmbeddingWorker 풀을 실행하여 Redis 잡 큐의 임베딩 잡을 처리합니다.

Usage:
    # 기본 실행 (동시 처리 5, 50 jobs/min)
    OPENAI_API_KEY=sk-... python runners/embedding_runner.py

    # 동시 처리 수 / 레이트 리밋 조정
    EMBED_WORKER_CONCURRENCY=10 EMBED_RATE_LIMIT_MAX=100 \\
    python runners/embedding_runner.py

    # 연결 테스트
    python runners/embedding_runner.py --test-connection

    # 스키마 생성 (document_chunks, document_sources ...)
    python runners/embedding_runner.py --init-schema

    # 일정 수만 처리 (테스트)
    python runners/embedding_runner.py --max-jobs 100

    # 큐 / 청크 현황
    python runners/embedding_runner.py --stats

    # 검색 데모
    python runners/embedding_runner.py --search "renewal pricing"

    # 전체 청크 삭제 + 문서 상태 초기화
    python runners/embedding_runner.py --reindex-all

환경변수:
    OPENAI_API_KEY              : OpenAI API 키 (필수)
    EMBEDDING_MODEL             : 모델명 (기본: text-embedding-3-small)
    REDIS_URL                   : Redis 주소 (기본: redis://localhost:6379/0)
    EMBED_WORKER_CONCURRENCY    : 동시 처리 잡 수 (기본: 5)
    EMBED_RATE_LIMIT_MAX        : 윈도우당 최대 잡 시작 수 (기본: 50)
    EMBED_METRICS_PORT          : Prometheus 포트 (기본: 8001)
    RETAIN_SOURCE_CONTENT       : REINDEX 시 보존된 원문으로 재임베딩 (기본: false)
    POSTGRES_HOST/PORT/DB       : PostgreSQL 접속 정보
"""

import asyncio
import argparse
import logging
import signal
import sys
import time
from pathlib import Path
from typing import Optional

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from dotenv import load_dotenv
load_dotenv()

from docembed.common.errors import ConfigurationError
from docembed.common.pipeline_config import get_config
from docembed.embedding.embedding_worker import EmbeddingWorker
from docembed.services import PipelineServices, create_services

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
)
logger = logging.getLogger(__name__)


class EmbeddingRunner:
    """EmbeddingWorker 실행기"""

    def __init__(self):
        self.config = get_config()
        self._services: Optional[PipelineServices] = None
        self._worker: Optional[EmbeddingWorker] = None

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._request_shutdown, sig)

    def _request_shutdown(self, signum) -> None:
        logger.info(f"Received signal {signum}, finishing active jobs and shutting down...")
        if self._worker:
            self._worker.request_stop()

    async def run(self, max_jobs: Optional[int] = None, metrics: bool = True) -> None:
        """임베딩 워커 풀 실행"""
        start_time = time.time()
        worker_config = self.config.worker

        logger.info("=" * 60)
        logger.info("Embedding Runner starting")
        logger.info(f"  Redis: {self.config.redis.url} (queue={self.config.redis.queue_name})")
        logger.info(f"  Model: {self.config.openai.model} (dim={self.config.openai.dimensions})")
        logger.info(f"  Concurrency: {worker_config.concurrency}")
        logger.info(f"  Rate limit: {worker_config.rate_limit_max} jobs / {worker_config.rate_limit_window_ms}ms")
        logger.info(f"  Retain source content: {worker_config.retain_source_content}")
        logger.info("=" * 60)

        self._services = await create_services(self.config)
        self._worker = self._services.create_worker()
        self._install_signal_handlers()

        if metrics:
            self._services.metrics.start_server(self.config.api.metrics_port)

        try:
            await self._worker.start()
            await self._worker.run(max_jobs=max_jobs)
        finally:
            stats = self._worker.get_stats()
            elapsed = time.time() - start_time

            logger.info("=" * 60)
            logger.info("Embedding Runner stopped")
            logger.info(f"  Runtime: {elapsed:.1f}s")
            logger.info(f"  Jobs completed: {stats['jobs_completed']:,}")
            logger.info(f"  Jobs retried: {stats['jobs_retried']:,}")
            logger.info(f"  Jobs failed: {stats['jobs_failed']:,}")
            logger.info(f"  Chunks stored: {stats['chunks_stored']:,}")
            logger.info(f"  Tokens: {stats['total_tokens']:,} (${stats['total_cost']:.4f})")
            logger.info(f"  Avg embed time: {stats['avg_embed_ms']:.1f}ms/job")
            logger.info(f"  Avg store time: {stats['avg_store_ms']:.1f}ms/job")
            logger.info("=" * 60)

            await self._worker.stop()
            await self._services.stop()

    async def test_connection(self) -> bool:
        """Redis, PostgreSQL, 임베딩 API 연결 테스트"""
        try:
            services = await create_services(self.config)
        except ConfigurationError as e:
            logger.error(f"Configuration: FAILED - {e}")
            return False
        except Exception as e:
            logger.error(f"Startup: FAILED - {e}")
            return False

        all_ok = True
        try:
            health = await services.health()
            logger.info(f"Redis: {health['redis']}")
            logger.info(f"Vector store: {health['db']}")
            all_ok = health['status'] == 'ok'

            try:
                result = await services.embedder.generate_embedding("test")
                logger.info(
                    f"Embedder: OK (model={services.embedder.model_name}, "
                    f"dim={len(result.embedding)})"
                )
            except Exception as e:
                logger.error(f"Embedder: FAILED - {e}")
                all_ok = False
        finally:
            await services.stop()

        return all_ok

    async def init_schema(self) -> None:
        services = await create_services(self.config)
        try:
            ensure_schema = getattr(services.store, 'ensure_schema', None)
            if ensure_schema is None:
                logger.info(f"{type(services.store).__name__} has no schema to create")
                return
            await ensure_schema()
        finally:
            await services.stop()

    async def show_stats(self) -> None:
        """큐 / 청크 현황 출력"""
        services = await create_services(self.config)
        try:
            queue_stats = await services.queue.get_queue_stats()
            chunk_count = await services.store.count_chunks()

            logger.info("Queue stats:")
            for state, count in queue_stats.items():
                logger.info(f"  {state}: {count:,}")
            logger.info(f"Total chunks: {chunk_count:,}")
        finally:
            await services.stop()

    async def demo_search(self, query: str) -> None:
        """검색 데모"""
        logger.info(f"Searching: '{query}'")
        services = await create_services(self.config)
        try:
            results = await services.searcher.search(query, top_k=3)
            if results:
                logger.info(f"Found {len(results)} results:")
                for i, r in enumerate(results, 1):
                    source = r.document['name'] if r.document else 'text'
                    logger.info(f"  [{i}] {source} similarity={r.similarity:.3f}")
                    logger.info(f"      {r.content[:100]}...")
            else:
                logger.info("No results found")
        finally:
            await services.stop()

    async def reindex_all(self) -> None:
        services = await create_services(self.config)
        try:
            deleted = await services.store.reindex_all()
            logger.info(f"Deleted {deleted:,} chunks, all documents reset to PENDING")
            logger.info("Documents need to be re-uploaded or content needs to be re-queued")
        finally:
            await services.stop()


def parse_args():
    parser = argparse.ArgumentParser(
        description='Embedding Runner: job queue → chunks → pgvector',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument('--max-jobs', type=int, default=None,
                        help='처리할 최대 잡 수')
    parser.add_argument('--test-connection', action='store_true',
                        help='연결 테스트 후 종료')
    parser.add_argument('--init-schema', action='store_true',
                        help='테이블 / 인덱스 생성 후 종료')
    parser.add_argument('--stats', action='store_true',
                        help='큐 / 청크 현황 출력 후 종료')
    parser.add_argument('--search', type=str, default=None,
                        help='검색 쿼리 데모')
    parser.add_argument('--reindex-all', action='store_true',
                        help='전체 청크 삭제 + 문서 상태 초기화 후 종료')
    parser.add_argument('--no-metrics', action='store_true',
                        help='Prometheus exporter 비활성화')
    parser.add_argument('--debug', action='store_true')
    return parser.parse_args()


async def main():
    args = parse_args()

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    runner = EmbeddingRunner()

    if args.test_connection:
        ok = await runner.test_connection()
        sys.exit(0 if ok else 1)

    if args.init_schema:
        await runner.init_schema()
        return

    if args.stats:
        await runner.show_stats()
        return

    if args.search:
        await runner.demo_search(args.search)
        return

    if args.reindex_all:
        await runner.reindex_all()
        return

    await runner.run(max_jobs=args.max_jobs, metrics=not args.no_metrics)


if __name__ == '__main__':
    asyncio.run(main())
