"""
Managers Module - Redis 기반 잡 큐 / 레이트 리밋 / 문서 lease
==============================================================

  - jobs.py           : 잡 종류, 페이로드, 잡 레코드
  - job_queue.py      : 우선순위 + FIFO 잡 큐 (재시도 / 보존 정책)
  - rate_limiter.py   : 워커 프로세스 공용 슬라이딩 윈도우 리미터
  - document_lease.py : 문서 단위 advisory lock
"""

from .document_lease import DocumentLease
from .job_queue import EmbeddingJobQueue
from .jobs import (
    EmbedDocumentPayload,
    EmbedTextPayload,
    Job,
    JobState,
    JobType,
    ReindexDocumentPayload,
)
from .rate_limiter import SlidingWindowRateLimiter

__all__ = [
    "DocumentLease",
    "EmbeddingJobQueue",
    "EmbedDocumentPayload",
    "EmbedTextPayload",
    "Job",
    "JobState",
    "JobType",
    "ReindexDocumentPayload",
    "SlidingWindowRateLimiter",
]
