"""슬라이딩 윈도우 레이트 리미터 / 문서 lease 테스트."""

import asyncio

import pytest

from docembed.common.errors import LeaseUnavailableError
from docembed.managers.document_lease import DocumentLease
from docembed.managers.rate_limiter import SlidingWindowRateLimiter

from conftest import SleepRecorder


class TestSlidingWindowRateLimiter:

    @pytest.mark.asyncio
    async def test_admits_up_to_max_within_window(self, fake_redis, clock):
        """윈도우 안에서는 max_jobs개까지만 통과."""
        limiter = SlidingWindowRateLimiter(fake_redis, "limiter", max_jobs=3, window_ms=60_000, clock=clock)

        tokens = []
        for _ in range(3):
            token, wait_ms = await limiter.try_acquire()
            assert token is not None
            assert wait_ms == 0
            tokens.append(token)
            clock.advance(1.0)

        token, wait_ms = await limiter.try_acquire()

        assert token is None
        # 가장 오래된 기록(3초 전)이 만료될 때까지
        assert wait_ms == 57_000
        assert await limiter.current_usage() == 3

    @pytest.mark.asyncio
    async def test_window_slides(self, fake_redis, clock):
        """윈도우가 지나면 다시 통과."""
        limiter = SlidingWindowRateLimiter(fake_redis, "limiter", max_jobs=2, window_ms=1_000, clock=clock)

        await limiter.try_acquire()
        await limiter.try_acquire()
        assert (await limiter.try_acquire())[0] is None

        clock.advance(1.001)
        token, _ = await limiter.try_acquire()

        assert token is not None
        assert await limiter.current_usage() == 1

    @pytest.mark.asyncio
    async def test_acquire_waits_instead_of_dropping(self, fake_redis, clock):
        """acquire는 슬롯이 생길 때까지 대기 후 반드시 토큰 반환."""
        limiter = SlidingWindowRateLimiter(fake_redis, "limiter", max_jobs=1, window_ms=500, clock=clock)
        limiter._sleep = SleepRecorder(clock)

        await limiter.acquire()
        token = await limiter.acquire()

        assert token is not None
        assert limiter._sleep.calls == [0.5]

    @pytest.mark.asyncio
    async def test_release_returns_slot(self, fake_redis, clock):
        limiter = SlidingWindowRateLimiter(fake_redis, "limiter", max_jobs=1, window_ms=60_000, clock=clock)

        token, _ = await limiter.try_acquire()
        await limiter.release(token)

        assert (await limiter.try_acquire())[0] is not None

    @pytest.mark.asyncio
    async def test_shared_key_limits_all_instances(self, fake_redis, clock):
        """같은 키를 쓰는 리미터들은 합산으로 제한."""
        first = SlidingWindowRateLimiter(fake_redis, "shared", max_jobs=2, clock=clock)
        second = SlidingWindowRateLimiter(fake_redis, "shared", max_jobs=2, clock=clock)

        assert (await first.try_acquire())[0] is not None
        assert (await second.try_acquire())[0] is not None
        assert (await first.try_acquire())[0] is None
        assert (await second.try_acquire())[0] is None


class TestDocumentLease:

    @pytest.mark.asyncio
    async def test_acquire_and_release(self, fake_redis):
        lease = DocumentLease(fake_redis, prefix="test:lease")

        token = await lease.acquire(42)

        assert await lease.is_held(42)
        assert await fake_redis.get("test:lease:document:42") == token
        assert await lease.release(42, token) is True
        assert not await lease.is_held(42)

    @pytest.mark.asyncio
    async def test_second_holder_times_out(self, fake_redis):
        """다른 잡이 lease를 가진 동안에는 LeaseUnavailableError."""
        lease = DocumentLease(fake_redis, prefix="test:lease", wait_timeout=0)

        await lease.acquire(1)

        with pytest.raises(LeaseUnavailableError):
            await lease.acquire(1)
        # 다른 문서는 영향 없음
        assert await lease.acquire(2)

    @pytest.mark.asyncio
    async def test_release_with_foreign_token_keeps_lease(self, fake_redis):
        lease = DocumentLease(fake_redis, prefix="test:lease")
        await lease.acquire(1)

        assert await lease.release(1, "not-mine") is False
        assert await lease.is_held(1)

    @pytest.mark.asyncio
    async def test_hold_releases_on_error(self, fake_redis):
        """컨텍스트 안에서 예외가 나도 lease 해제."""
        lease = DocumentLease(fake_redis, prefix="test:lease")

        with pytest.raises(RuntimeError):
            async with lease.hold(9):
                assert await lease.is_held(9)
                raise RuntimeError("boom")

        assert not await lease.is_held(9)

    @pytest.mark.asyncio
    async def test_release_keeps_lease_taken_over_after_check(self, fake_redis):
        """확인 직후 만료되어 다른 잡이 가져간 lease는 지우지 않음."""
        lease = DocumentLease(fake_redis, prefix="test:lease")
        other = DocumentLease(fake_redis, prefix="test:lease", wait_timeout=0)
        key = "test:lease:document:1"
        token = await lease.acquire(1)
        taken = []

        async def expire_and_take_over():
            await fake_redis.delete(key)
            taken.append(await other.acquire(1))

        fake_redis.before_exec.append(expire_and_take_over)

        assert await lease.release(1, token) is False
        assert await fake_redis.get(key) == taken[0]

    @pytest.mark.asyncio
    async def test_extend_only_for_owner(self, fake_redis):
        lease = DocumentLease(fake_redis, prefix="test:lease", ttl_ms=5_000)
        key = "test:lease:document:1"
        token = await lease.acquire(1)
        assert fake_redis.ttls[key] == 5_000

        fake_redis.ttls[key] = 10
        assert await lease.extend(1, token) is True
        assert fake_redis.ttls[key] == 5_000

        assert await lease.extend(1, "not-mine") is False
        assert await lease.extend(2, token) is False

    @pytest.mark.asyncio
    async def test_hold_renews_ttl_while_held(self, fake_redis):
        """보유 중에는 TTL이 주기적으로 갱신되고, 끝나면 해제."""
        lease = DocumentLease(fake_redis, prefix="test:lease", ttl_ms=30)
        key = "test:lease:document:3"

        async with lease.hold(3):
            fake_redis.ttls[key] = 0
            await asyncio.sleep(0.05)
            assert fake_redis.ttls[key] == 30

        assert not await lease.is_held(3)
