"""
Document Lease - 문서 단위 advisory lock (Redis SET NX PX)
===========================================================

같은 문서에 대한 EMBED_DOCUMENT / REINDEX_DOCUMENT가 동시에
청크를 변경하지 않도록 문서별 lease를 잡습니다.

  - 획득: SET key token NX PX ttl (wait_timeout 동안 폴링)
  - 해제: 저장된 token이 내 것일 때만 삭제 (WATCH + MULTI/EXEC)
  - 연장: 보유 중에는 TTL의 1/3마다 PEXPIRE (긴 임베딩 중 만료 방지)
  - TTL: 워커가 죽어도 lease는 자동 만료
"""

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from redis.exceptions import RedisError, WatchError

from docembed.common.errors import LeaseUnavailableError

logger = logging.getLogger(__name__)


class DocumentLease:
    """문서별 lease 관리자"""

    def __init__(
        self,
        redis_client: Any,
        prefix: str = "embedq:lease",
        ttl_ms: int = 600_000,
        wait_timeout: float = 30.0,
        poll_interval: float = 0.5,
    ):
        """
        Args:
            redis_client: redis.asyncio.Redis
            prefix: lease 키 prefix
            ttl_ms: lease 만료 시간
            wait_timeout: 획득 대기 최대 시간 (초, 0이면 1회만 시도)
            poll_interval: 재시도 간격 (초)
        """
        self.redis = redis_client
        self.prefix = prefix
        self.ttl_ms = ttl_ms
        self.wait_timeout = wait_timeout
        self.poll_interval = poll_interval
        self._sleep = asyncio.sleep

    def _key(self, document_id: int) -> str:
        return f"{self.prefix}:document:{document_id}"

    async def acquire(self, document_id: int) -> str:
        """
        lease 획득

        Returns:
            해제에 필요한 token

        Raises:
            LeaseUnavailableError: wait_timeout 안에 획득 실패
        """
        token = uuid.uuid4().hex
        deadline = time.monotonic() + self.wait_timeout

        while True:
            acquired = await self.redis.set(self._key(document_id), token, nx=True, px=self.ttl_ms)
            if acquired:
                return token
            if time.monotonic() >= deadline:
                raise LeaseUnavailableError(
                    f"Document {document_id} is being processed by another job"
                )
            await self._sleep(self.poll_interval)

    async def release(self, document_id: int, token: str) -> bool:
        """내 token일 때만 lease 삭제 (확인과 삭제 사이에 다른 워커가 끼어들면 다시 확인)"""
        key = self._key(document_id)

        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    if await pipe.get(key) != token:
                        logger.warning(
                            f"Lease for document {document_id} expired or taken over before release"
                        )
                        return False
                    pipe.multi()
                    pipe.delete(key)
                    await pipe.execute()
                    return True
                except WatchError:
                    continue

    async def extend(self, document_id: int, token: str) -> bool:
        """
        내 token일 때만 TTL을 ttl_ms로 갱신

        Returns:
            연장 여부 (이미 만료/인계된 lease면 False)
        """
        key = self._key(document_id)

        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    if await pipe.get(key) != token:
                        return False
                    pipe.multi()
                    pipe.pexpire(key, self.ttl_ms)
                    await pipe.execute()
                    return True
                except WatchError:
                    continue

    async def is_held(self, document_id: int) -> bool:
        return bool(await self.redis.exists(self._key(document_id)))

    @asynccontextmanager
    async def hold(self, document_id: int) -> AsyncIterator[str]:
        """async with lease.hold(document_id): ... (보유 중 TTL 자동 연장, 예외가 나도 해제)"""
        token = await self.acquire(document_id)
        heartbeat = asyncio.create_task(self._keep_alive(document_id, token))
        try:
            yield token
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass
            await self.release(document_id, token)

    async def _keep_alive(self, document_id: int, token: str) -> None:
        # TTL의 1/3마다 연장
        interval = self.ttl_ms / 3000
        while True:
            await asyncio.sleep(interval)
            try:
                if not await self.extend(document_id, token):
                    logger.warning(f"Lease for document {document_id} was lost while held")
                    return
            except RedisError as e:
                logger.warning(f"Lease renewal for document {document_id} failed: {e}")
