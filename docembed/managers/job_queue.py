"""
Embedding Job Queue - Redis 기반 우선순위 잡 큐
================================================

구성 (키 prefix: embedq:{queue_name}):
  :id          INCR 카운터 (잡 ID 겸 FIFO 순번)
  :job:{id}    잡 해시 (data, state, progress, attempts_made, result, error ...)
  :waiting     ZSET  score = priority * 1e12 + 순번  → 최소 score부터 꺼내 우선순위 + FIFO
  :delayed     ZSET  score = 재시도 가능 시각(ms)      → 백오프 대기 중인 잡
  :active      ZSET  score = lock 만료 시각(ms)        → 워커가 연장, 만료되면 stalled 회수
  :completed   ZSET  score = 완료 시각(ms)            → 24시간 / 최근 1000개 보존
  :failed      ZSET  score = 실패 시각(ms)            → 7일 보존

재시도 정책: 기본 3회, 지수 백오프 2s → 4s → ...
상태 전이: WATCH + MULTI/EXEC 트랜잭션 (도중에 워커가 죽어도 잡이 사라지지 않음)
중복 제거 없음: 같은 작업을 두 번 넣지 않는 것은 호출자 책임
"""

import json
import logging
import time
from typing import Any, Callable, Optional

from redis import asyncio as aioredis
from redis.exceptions import WatchError

from docembed.common.errors import JobStalledError, ValidationError, is_unrecoverable
from docembed.common.pipeline_config import QueueConfig, RedisConfig, get_config
from docembed.managers.jobs import (
    DEFAULT_PRIORITIES,
    DOCUMENT_SOURCE_TYPES,
    EmbedDocumentPayload,
    EmbedTextPayload,
    Job,
    JobPayload,
    JobState,
    JobType,
    ReindexDocumentPayload,
    payload_from_dict,
    payload_to_dict,
)

logger = logging.getLogger(__name__)

# 우선순위 한 단계가 차지하는 순번 공간
PRIORITY_SPAN = 1_000_000_000_000


class EmbeddingJobQueue:
    """Redis 기반 임베딩 잡 큐 (생산자 / 소비자 공용)"""

    def __init__(
        self,
        redis_client: Any,
        queue_name: Optional[str] = None,
        queue_config: Optional[QueueConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            redis_client: redis.asyncio.Redis (decode_responses=True)
            queue_name: 큐 이름 (키 prefix)
            queue_config: 재시도 / 보존 정책
            clock: 현재 시각(초) 함수
        """
        config = get_config()
        self.redis = redis_client
        self.queue_name = queue_name or config.redis.queue_name
        self.policy = queue_config or config.queue
        self._clock = clock

        prefix = f"embedq:{self.queue_name}"
        self.prefix = prefix
        self.id_key = f"{prefix}:id"
        self.waiting_key = f"{prefix}:waiting"
        self.delayed_key = f"{prefix}:delayed"
        self.active_key = f"{prefix}:active"
        self.completed_key = f"{prefix}:completed"
        self.failed_key = f"{prefix}:failed"

    @classmethod
    def from_config(cls, redis_config: Optional[RedisConfig] = None) -> "EmbeddingJobQueue":
        redis_config = redis_config or get_config().redis
        client = aioredis.from_url(redis_config.url, decode_responses=True)
        return cls(client, queue_name=redis_config.queue_name)

    async def close(self) -> None:
        await self.redis.aclose()

    def _job_key(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # ------------------------------------------------------------------
    # 생산자 API
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        job_type: JobType,
        payload: JobPayload,
        priority: Optional[int] = None,
    ) -> str:
        """
        잡 추가 (즉시 반환)

        Returns:
            잡 ID
        """
        if payload.job_type != JobType(job_type):
            raise ValidationError(
                f"Payload {type(payload).__name__} does not match job type {job_type}"
            )

        priority = DEFAULT_PRIORITIES[payload.job_type] if priority is None else priority
        seq = await self.redis.incr(self.id_key)
        job_id = str(seq)
        rank = priority * PRIORITY_SPAN + seq

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._job_key(job_id), mapping={
                'data': json.dumps(payload_to_dict(payload)),
                'priority': priority,
                'rank': rank,
                'max_attempts': self.policy.attempts,
                'state': JobState.WAITING.value,
                'attempts_made': 0,
                'progress': 0,
                'result': '',
                'error': '',
                'timestamp': self._now_ms(),
                'finished_on': '',
            })
            pipe.zadd(self.waiting_key, {job_id: rank})
            await pipe.execute()

        return job_id

    async def queue_document_embedding(
        self,
        document_id: int,
        content: str,
        source_type: str,
        metadata: Optional[dict] = None,
    ) -> str:
        """문서 임베딩 잡 추가"""
        if source_type not in DOCUMENT_SOURCE_TYPES:
            raise ValidationError(
                f"Unsupported source type '{source_type}'. "
                f"Use one of: {', '.join(DOCUMENT_SOURCE_TYPES)}"
            )

        job_id = await self.enqueue(
            JobType.EMBED_DOCUMENT,
            EmbedDocumentPayload(
                document_id=document_id,
                content=content,
                source_type=source_type,
                metadata=metadata or {},
            ),
        )
        logger.info(f"Queued document embedding job {job_id} for document {document_id}")
        return job_id

    async def queue_text_embedding(
        self,
        content: str,
        source_type: str,
        account_id: Optional[int] = None,
        opportunity_id: Optional[int] = None,
        metadata: Optional[dict] = None,
    ) -> str:
        """문서 참조 없는 텍스트 임베딩 잡 추가"""
        job_id = await self.enqueue(
            JobType.EMBED_TEXT,
            EmbedTextPayload(
                content=content,
                source_type=source_type,
                account_id=account_id,
                opportunity_id=opportunity_id,
                metadata=metadata or {},
            ),
        )
        logger.info(f"Queued text embedding job {job_id}")
        return job_id

    async def queue_document_reindex(self, document_id: int) -> str:
        """문서 재색인 잡 추가 (청크 삭제 + PENDING 초기화)"""
        job_id = await self.enqueue(
            JobType.REINDEX_DOCUMENT,
            ReindexDocumentPayload(document_id=document_id),
        )
        logger.info(f"Queued document reindex job {job_id} for document {document_id}")
        return job_id

    # ------------------------------------------------------------------
    # 조회
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Optional[Job]:
        raw = await self.redis.hgetall(self._job_key(job_id))
        if not raw:
            return None
        return self._decode_job(job_id, raw)

    async def get_job_status(self, job_id: str) -> Optional[dict[str, Any]]:
        """
        잡 상태 조회

        Returns:
            {id, state, progress, data, result, error, attemptsMade, timestamp}
            없는 잡이면 None
        """
        job = await self.get_job(job_id)
        return job.to_status() if job else None

    async def get_queue_stats(self) -> dict[str, int]:
        """대기 / 처리 중 / 완료 / 실패 잡 수 (백오프 대기 잡은 waiting에 포함)"""
        waiting = await self.redis.zcard(self.waiting_key)
        delayed = await self.redis.zcard(self.delayed_key)
        active = await self.redis.zcard(self.active_key)
        completed = await self.redis.zcard(self.completed_key)
        failed = await self.redis.zcard(self.failed_key)

        return {
            'waiting': int(waiting) + int(delayed),
            'active': int(active),
            'completed': int(completed),
            'failed': int(failed),
        }

    # ------------------------------------------------------------------
    # 소비자 API
    # ------------------------------------------------------------------

    async def promote_delayed(self) -> int:
        """백오프 시간이 지난 잡을 waiting으로 이동"""
        due = await self.redis.zrangebyscore(self.delayed_key, '-inf', self._now_ms())
        promoted = 0

        for job_id in due:
            if await self._promote(job_id):
                promoted += 1

        if promoted:
            logger.debug(f"Promoted {promoted} delayed jobs")
        return promoted

    async def recover_stalled(self) -> int:
        """
        lock이 만료된 active 잡 회수

        워커가 잡 처리 도중 죽으면 lock이 연장되지 않습니다. 만료된 잡은
        시도 1회 실패로 계산해 fail()과 같은 경로로 재시도 또는 failed 처리합니다.

        Returns:
            회수한 잡 수
        """
        expired = await self.redis.zrangebyscore(self.active_key, '-inf', self._now_ms())
        recovered = 0

        for job_id in expired:
            job = await self.get_job(job_id)
            if job is None:
                await self.redis.zrem(self.active_key, job_id)
                continue

            error = JobStalledError(
                f"Job {job_id} stalled: lock expired after {self.policy.lock_duration_ms}ms"
            )
            # 그 사이 lock이 연장됐거나 다른 워커가 회수했으면 None
            if await self._record_failure(job, error, expired_only=True) is not None:
                recovered += 1

        if recovered:
            logger.warning(f"Recovered {recovered} stalled jobs")
        return recovered

    async def reserve(self) -> Optional[Job]:
        """
        가장 높은 우선순위(동순위는 FIFO)의 대기 잡을 꺼내 active로 표시

        waiting에서 제거와 active 등록(lock 만료 시각)은 한 트랜잭션으로 처리합니다.

        Returns:
            Job 또는 None (대기 잡 없음)
        """
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(self.waiting_key)
                    head = await pipe.zrange(self.waiting_key, 0, 0)
                    if not head:
                        return None

                    job_id = head[0]
                    job_key = self._job_key(job_id)
                    has_data = await pipe.hget(job_key, 'data') is not None

                    pipe.multi()
                    pipe.zrem(self.waiting_key, job_id)
                    if has_data:
                        pipe.zadd(self.active_key, {job_id: self._lock_deadline()})
                        pipe.hset(job_key, 'state', JobState.ACTIVE.value)
                    await pipe.execute()
                except WatchError:
                    continue

                if has_data:
                    break
                # 보존 정책으로 해시가 사라진 잡
                logger.warning(f"Reserved job {job_id} has no data, dropping")

        return await self.get_job(job_id)

    async def extend_lock(self, job: Job) -> bool:
        """
        처리 중인 잡의 lock 연장

        Returns:
            아직 이 큐의 active 잡인지 여부
        """
        await self.redis.zadd(self.active_key, {job.id: self._lock_deadline()}, xx=True)
        return await self.redis.zscore(self.active_key, job.id) is not None

    async def update_progress(self, job: Job, progress: int) -> None:
        job.progress = progress
        await self.redis.hset(self._job_key(job.id), 'progress', progress)

    async def complete(self, job: Job, result: Optional[dict[str, Any]] = None) -> bool:
        """
        잡 완료 처리 + 완료 잡 보존 정책 적용

        Returns:
            완료 기록 여부 (lock 만료로 이미 회수된 잡이면 False)
        """
        now = self._now_ms()
        attempts_made = job.attempts_made + 1
        job_key = self._job_key(job.id)

        def apply(pipe):
            pipe.hset(job_key, mapping={
                'state': JobState.COMPLETED.value,
                'attempts_made': attempts_made,
                'result': json.dumps(result) if result is not None else '',
                'error': '',
                'finished_on': now,
            })
            pipe.zadd(self.completed_key, {job.id: now})

        if not await self._finish_active(job.id, apply):
            logger.warning(f"Job {job.id} lost its lock before completing, result discarded")
            return False

        job.state = JobState.COMPLETED
        job.attempts_made = attempts_made
        job.result = result
        job.finished_on = now

        await self._prune(
            self.completed_key,
            self.policy.completed_max_age_sec,
            self.policy.completed_max_count,
        )
        return True

    async def fail(self, job: Job, error: BaseException) -> bool:
        """
        잡 실패 처리

        남은 시도가 있으면 지수 백오프 후 재시도하도록 delayed에 넣고,
        없거나 재시도 무의미한 예외면 failed로 이동합니다.

        Returns:
            재시도 예약 여부
        """
        retried = await self._record_failure(job, error)
        if retried is None:
            logger.warning(f"Job {job.id} lost its lock before failing, error discarded: {error}")
            return False
        return retried

    async def remove(self, job_id: str) -> bool:
        """
        아직 시작하지 않은 잡 취소

        Returns:
            제거 여부 (active/완료/실패 잡은 제거하지 않음)
        """
        removed = await self.redis.zrem(self.waiting_key, job_id)
        removed += await self.redis.zrem(self.delayed_key, job_id)
        if not removed:
            return False
        await self.redis.delete(self._job_key(job_id))
        logger.info(f"Removed job {job_id} from queue")
        return True

    # ------------------------------------------------------------------
    # 내부
    # ------------------------------------------------------------------

    def _lock_deadline(self) -> int:
        return self._now_ms() + self.policy.lock_duration_ms

    async def _promote(self, job_id: str) -> bool:
        job_key = self._job_key(job_id)

        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(job_key)
                    # 다른 워커가 먼저 옮긴 잡
                    if await pipe.zscore(self.delayed_key, job_id) is None:
                        return False
                    rank = await pipe.hget(job_key, 'rank')

                    pipe.multi()
                    pipe.zrem(self.delayed_key, job_id)
                    if rank is not None:
                        pipe.zadd(self.waiting_key, {job_id: float(rank)})
                        pipe.hset(job_key, 'state', JobState.WAITING.value)
                    await pipe.execute()
                    return rank is not None
                except WatchError:
                    continue

    async def _finish_active(
        self,
        job_id: str,
        apply: Callable[[Any], None],
        expired_only: bool = False,
    ) -> bool:
        """
        active 잡을 다른 상태로 원자적으로 이동

        잡 해시를 WATCH한 채 active 멤버인지 확인하고, active 제거와 apply가
        버퍼링한 명령을 MULTI/EXEC 한 번에 실행합니다. 같은 잡의 다른 전이가
        끼어들면 처음부터 다시 확인합니다.

        Args:
            expired_only: lock 만료 시각이 지난 경우에만 이동 (stalled 회수용)

        Returns:
            이동 여부 (이미 active가 아니면 False)
        """
        job_key = self._job_key(job_id)
        # stalled 회수는 lock 연장(active 점수 갱신)과도 경합
        watched = (job_key, self.active_key) if expired_only else (job_key,)

        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(*watched)
                    deadline = await pipe.zscore(self.active_key, job_id)
                    if deadline is None:
                        return False
                    if expired_only and float(deadline) > self._now_ms():
                        return False

                    pipe.multi()
                    pipe.zrem(self.active_key, job_id)
                    apply(pipe)
                    await pipe.execute()
                    return True
                except WatchError:
                    logger.debug(f"Job {job_id} changed during state transition, retrying")

    async def _record_failure(
        self,
        job: Job,
        error: BaseException,
        expired_only: bool = False,
    ) -> Optional[bool]:
        """
        실패 1회 기록 후 재시도 예약 또는 failed 이동

        Returns:
            재시도 예약 여부, active가 아니어서 아무것도 하지 않았으면 None
        """
        now = self._now_ms()
        attempts_made = job.attempts_made + 1
        message = str(error) or type(error).__name__
        job_key = self._job_key(job.id)

        retry = not is_unrecoverable(error) and attempts_made < job.max_attempts
        delay_ms = self.policy.backoff_ms * (2 ** (attempts_made - 1))

        def apply(pipe):
            if retry:
                pipe.hset(job_key, mapping={
                    'state': JobState.WAITING.value,
                    'attempts_made': attempts_made,
                    'error': message,
                })
                pipe.zadd(self.delayed_key, {job.id: now + delay_ms})
            else:
                pipe.hset(job_key, mapping={
                    'state': JobState.FAILED.value,
                    'attempts_made': attempts_made,
                    'error': message,
                    'finished_on': now,
                })
                pipe.zadd(self.failed_key, {job.id: now})

        if not await self._finish_active(job.id, apply, expired_only=expired_only):
            return None

        job.attempts_made = attempts_made
        job.error = message

        if retry:
            job.state = JobState.WAITING
            logger.info(
                f"Job {job.id} attempt {attempts_made}/{job.max_attempts} failed, "
                f"retrying in {delay_ms}ms"
            )
            return True

        job.state = JobState.FAILED
        job.finished_on = now
        await self._prune(self.failed_key, self.policy.failed_max_age_sec, None)
        return False

    async def _prune(self, key: str, max_age_sec: int, max_count: Optional[int]) -> int:
        """보존 기간/개수를 넘은 잡 삭제"""
        cutoff = self._now_ms() - max_age_sec * 1000
        expired = list(await self.redis.zrangebyscore(key, '-inf', cutoff))

        if max_count is not None:
            total = int(await self.redis.zcard(key))
            excess = total - len(expired) - max_count
            if excess > 0:
                oldest = await self.redis.zrange(key, len(expired), len(expired) + excess - 1)
                expired.extend(oldest)

        for job_id in expired:
            await self.redis.zrem(key, job_id)
            await self.redis.delete(self._job_key(job_id))

        return len(expired)

    @staticmethod
    def _decode_job(job_id: str, raw: dict[str, str]) -> Job:
        result = raw.get('result') or ''
        finished_on = raw.get('finished_on') or ''

        return Job(
            id=job_id,
            payload=payload_from_dict(json.loads(raw['data'])),
            priority=int(raw.get('priority', 0)),
            max_attempts=int(raw.get('max_attempts', 1)),
            state=JobState(raw.get('state', JobState.WAITING.value)),
            attempts_made=int(raw.get('attempts_made', 0)),
            progress=int(raw.get('progress', 0)),
            result=json.loads(result) if result else None,
            error=raw.get('error') or None,
            timestamp=int(raw.get('timestamp', 0)),
            finished_on=int(finished_on) if finished_on else None,
        )
