"""공용 테스트 fixture: Redis / OpenAI 대체 객체, 테스트 설정."""

import math
import sys
import zlib
from pathlib import Path
from types import SimpleNamespace

import pytest
from redis.exceptions import WatchError

sys.path.insert(0, str(Path(__file__).parent.parent))

from docembed.common.pipeline_config import (
    ApiConfig,
    ChunkingConfig,
    KafkaConfig,
    OpenAIConfig,
    PipelineConfig,
    QueueConfig,
    RedisConfig,
    WorkerConfig,
)

TEST_DIMENSIONS = 8


def _score_bound(value):
    if value in ('-inf', float('-inf')):
        return float('-inf')
    if value in ('+inf', 'inf', float('inf')):
        return float('inf')
    return float(value)


class FakePipeline:
    """
    redis.asyncio Pipeline(transaction=True) 흉내

    WATCH 이후에는 즉시 실행, multi() 이후(또는 WATCH 없이)는 버퍼링 후 execute()에서 실행.
    WATCH한 키가 그 사이 바뀌었으면 execute()가 WatchError를 던집니다.
    """

    def __init__(self, client):
        self.client = client
        self.watched = {}
        self.commands = []
        self.explicit_multi = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.reset()

    async def watch(self, *keys):
        for key in keys:
            self.watched[key] = self.client.versions.get(key, 0)
        return True

    async def unwatch(self):
        self.watched = {}
        return True

    async def reset(self):
        self.watched = {}
        self.commands = []
        self.explicit_multi = False

    def multi(self):
        self.explicit_multi = True

    def __getattr__(self, name):
        method = getattr(self.client, name)
        if self.watched and not self.explicit_multi:
            return method

        def buffered(*args, **kwargs):
            self.commands.append((method, args, kwargs))
            return self

        return buffered

    async def execute(self):
        try:
            # 다른 클라이언트가 WATCH와 EXEC 사이에 끼어드는 상황 재현용
            while self.client.before_exec:
                await self.client.before_exec.pop(0)()
            for key, version in self.watched.items():
                if self.client.versions.get(key, 0) != version:
                    raise WatchError("Watched variable changed.")
            return [await method(*args, **kwargs) for method, args, kwargs in self.commands]
        finally:
            await self.reset()


class FakeRedisClient:
    """redis.asyncio.Redis(decode_responses=True)에서 사용하는 명령만 흉내낸 인메모리 구현"""

    def __init__(self):
        self.strings = {}
        self.hashes = {}
        self.zsets = {}
        self.ttls = {}
        self.versions = {}
        self.before_exec = []
        self.closed = False

    def _touch(self, key):
        self.versions[key] = self.versions.get(key, 0) + 1

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    # keys

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            for store in (self.strings, self.hashes, self.zsets):
                if key in store:
                    del store[key]
                    removed += 1
                    self._touch(key)
            self.ttls.pop(key, None)
        return removed

    async def exists(self, *keys):
        return sum(
            1 for key in keys
            if any(key in store for store in (self.strings, self.hashes, self.zsets))
        )

    async def pexpire(self, key, milliseconds):
        if await self.exists(key) == 0:
            return False
        self.ttls[key] = milliseconds
        self._touch(key)
        return True

    async def ping(self):
        return True

    async def aclose(self):
        self.closed = True

    # strings

    async def incr(self, key):
        value = int(self.strings.get(key, 0)) + 1
        self.strings[key] = str(value)
        self._touch(key)
        return value

    async def set(self, key, value, nx=False, px=None):
        if nx and key in self.strings:
            return None
        self.strings[key] = str(value)
        if px is not None:
            self.ttls[key] = px
        self._touch(key)
        return True

    async def get(self, key):
        return self.strings.get(key)

    # hashes

    async def hset(self, key, field=None, value=None, mapping=None):
        data = self.hashes.setdefault(key, {})
        items = dict(mapping or {})
        if field is not None:
            items[field] = value
        added = sum(1 for f in items if f not in data)
        for f, v in items.items():
            data[f] = str(v)
        self._touch(key)
        return added

    async def hget(self, key, field):
        return self.hashes.get(key, {}).get(field)

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    # sorted sets

    def _sorted(self, key):
        data = self.zsets.get(key, {})
        return sorted(data.items(), key=lambda item: (item[1], item[0]))

    async def zadd(self, key, mapping, xx=False):
        data = self.zsets.setdefault(key, {})
        added = 0
        for member, score in mapping.items():
            member = str(member)
            if member not in data:
                if xx:
                    continue
                added += 1
            data[member] = float(score)
        self._touch(key)
        return added

    async def zrem(self, key, *members):
        data = self.zsets.get(key, {})
        removed = 0
        for member in members:
            if member in data:
                del data[member]
                removed += 1
        if removed:
            self._touch(key)
        return removed

    async def zcard(self, key):
        return len(self.zsets.get(key, {}))

    async def zscore(self, key, member):
        return self.zsets.get(key, {}).get(member)

    async def zrange(self, key, start, end, withscores=False):
        items = self._sorted(key)
        end = len(items) - 1 if end == -1 else end
        selected = items[start:end + 1]
        return selected if withscores else [member for member, _ in selected]

    async def zrangebyscore(self, key, min, max):
        low, high = _score_bound(min), _score_bound(max)
        return [member for member, score in self._sorted(key) if low <= score <= high]

    async def zremrangebyscore(self, key, min, max):
        members = await self.zrangebyscore(key, min, max)
        return await self.zrem(key, *members)


class FakeClock:
    """주입용 시계 (초 단위)"""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def word_vector(text: str, dimensions: int = TEST_DIMENSIONS) -> list[float]:
    """단어 해시 기반 결정적 벡터 (같은 단어를 공유하면 유사)"""
    vector = [0.0] * dimensions
    for word in text.lower().split():
        vector[zlib.crc32(word.strip('.,!?').encode()) % dimensions] += 1.0
    norm = math.sqrt(sum(v * v for v in vector)) or 1.0
    return [v / norm for v in vector]


class FakeEmbeddings:
    def __init__(self, owner):
        self.owner = owner

    async def create(self, model, input, dimensions=None, encoding_format=None):
        owner = self.owner
        owner.calls.append(list(input))

        if owner.failures:
            error = owner.failures.pop(0)
            if error is not None:
                raise error

        dims = owner.dimensions or dimensions
        items = [
            SimpleNamespace(
                index=i,
                embedding=list(owner.vectors.get(text) or word_vector(text, dims)),
            )
            for i, text in enumerate(input)
        ]
        if owner.shuffle:
            items.reverse()

        return SimpleNamespace(
            data=items,
            usage=SimpleNamespace(total_tokens=owner.tokens_per_input * len(input)),
        )


class FakeOpenAIClient:
    """
    AsyncOpenAI 대체

    failures: 호출 순서대로 던질 예외 목록 (None이면 정상 응답)
    shuffle: 배치 응답을 역순으로 반환
    vectors: 텍스트별 고정 벡터
    """

    def __init__(self, dimensions=None, shuffle=False, tokens_per_input=5):
        self.calls = []
        self.failures = []
        self.shuffle = shuffle
        self.vectors = {}
        self.dimensions = dimensions
        self.tokens_per_input = tokens_per_input
        self.embeddings = FakeEmbeddings(self)


class SleepRecorder:
    """asyncio.sleep 대체: 호출 인자 기록 (clock이 있으면 시간을 진행)"""

    def __init__(self, clock: FakeClock = None):
        self.calls = []
        self.clock = clock

    async def __call__(self, seconds):
        self.calls.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)


@pytest.fixture
def fake_redis():
    return FakeRedisClient()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_openai():
    return FakeOpenAIClient()


@pytest.fixture
def pipeline_config():
    return PipelineConfig(
        openai=OpenAIConfig(
            api_key="sk-test",
            model="text-embedding-3-small",
            dimensions=TEST_DIMENSIONS,
            max_batch_size=2048,
            batch_delay_ms=100,
            cost_per_million_tokens=0.02,
        ),
        redis=RedisConfig(url="redis://localhost:6379/15", queue_name="test-queue"),
        queue=QueueConfig(
            attempts=3,
            backoff_ms=2000,
            lock_duration_ms=30_000,
            completed_max_age_sec=24 * 3600,
            completed_max_count=1000,
            failed_max_age_sec=7 * 24 * 3600,
        ),
        worker=WorkerConfig(
            concurrency=2,
            rate_limit_max=50,
            rate_limit_window_ms=60_000,
            lease_ttl_ms=600_000,
            poll_interval=0.01,
            retain_source_content=False,
        ),
        chunking=ChunkingConfig(chunk_size=512, chunk_overlap=50),
        kafka=KafkaConfig(enabled=False),
        api=ApiConfig(vector_store_backend="memory", max_top_k=100, metrics_port=0),
    )
