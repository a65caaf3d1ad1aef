"""
Sliding Window Rate Limiter - Redis ZSET 기반 잡 시작 제한
==========================================================

여러 워커 프로세스가 같은 Redis 키를 공유하므로 전체 합산으로
window_ms 동안 최대 max_jobs개의 잡만 시작됩니다.

동작:
  1. window 밖의 기록 제거 (ZREMRANGEBYSCORE)
  2. 내 기록 추가 후 개수 확인 (ZADD + ZCARD)
  3. 개수 <= max_jobs → 통과 / 아니면 기록 철회 후 가장 오래된 기록이 만료될 때까지 대기
"""

import asyncio
import logging
import time
import uuid
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

MIN_WAIT_MS = 10


class SlidingWindowRateLimiter:
    """Redis 공유 슬라이딩 윈도우 리미터"""

    def __init__(
        self,
        redis_client: Any,
        key: str,
        max_jobs: int = 50,
        window_ms: int = 60_000,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis_client
        self.key = key
        self.max_jobs = max_jobs
        self.window_ms = window_ms
        self._clock = clock
        self._sleep = asyncio.sleep

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def try_acquire(self) -> tuple[Optional[str], int]:
        """
        슬롯 1개 획득 시도

        Returns:
            (token, 0) 획득 성공
            (None, wait_ms) 실패, wait_ms 후 재시도
        """
        now = self._now_ms()
        await self.redis.zremrangebyscore(self.key, '-inf', now - self.window_ms)

        token = f"{now}-{uuid.uuid4().hex}"
        await self.redis.zadd(self.key, {token: now})
        count = int(await self.redis.zcard(self.key))

        # 동시에 추가된 기록이 있으면 모두 철회될 수 있음 (초과 허용은 없음)
        if count <= self.max_jobs:
            return token, 0

        await self.redis.zrem(self.key, token)

        oldest = await self.redis.zrange(self.key, 0, 0, withscores=True)
        if not oldest:
            return None, MIN_WAIT_MS
        wait_ms = int(oldest[0][1]) + self.window_ms - now
        return None, max(wait_ms, MIN_WAIT_MS)

    async def acquire(self) -> str:
        """슬롯이 생길 때까지 대기 (잡을 버리지 않음)"""
        while True:
            token, wait_ms = await self.try_acquire()
            if token is not None:
                return token
            logger.debug(f"Rate limit reached ({self.max_jobs}/{self.window_ms}ms), waiting {wait_ms}ms")
            await self._sleep(wait_ms / 1000)

    async def release(self, token: str) -> None:
        """사용하지 않은 슬롯 반환 (대기 잡이 없었을 때)"""
        await self.redis.zrem(self.key, token)

    async def current_usage(self) -> int:
        now = self._now_ms()
        await self.redis.zremrangebyscore(self.key, '-inf', now - self.window_ms)
        return int(await self.redis.zcard(self.key))
