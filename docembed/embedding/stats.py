"""Embedding worker statistics model."""

import time
from dataclasses import dataclass, field


@dataclass
class EmbeddingStats:
    """임베딩 워커 통계"""

    jobs_started: int = 0
    jobs_completed: int = 0
    jobs_retried: int = 0
    jobs_failed: int = 0
    chunks_created: int = 0
    chunks_stored: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    embed_time_ms: float = 0.0
    store_time_ms: float = 0.0
    start_time: float = field(default_factory=time.time)

    @property
    def elapsed_sec(self) -> float:
        return time.time() - self.start_time

    @property
    def jps(self) -> float:
        finished = self.jobs_completed + self.jobs_failed
        return finished / self.elapsed_sec if self.elapsed_sec > 0 else 0.0

    def to_dict(self) -> dict:
        finished = max(self.jobs_completed, 1)
        return {
            'jobs_started': self.jobs_started,
            'jobs_completed': self.jobs_completed,
            'jobs_retried': self.jobs_retried,
            'jobs_failed': self.jobs_failed,
            'chunks_created': self.chunks_created,
            'chunks_stored': self.chunks_stored,
            'total_tokens': self.total_tokens,
            'total_cost': round(self.total_cost, 6),
            'avg_embed_ms': round(self.embed_time_ms / finished, 1),
            'avg_store_ms': round(self.store_time_ms / finished, 1),
            'jobs_per_second': round(self.jps, 2),
        }

    def __str__(self) -> str:
        return (
            f"EmbeddingStats("
            f"started={self.jobs_started:,}, "
            f"completed={self.jobs_completed:,}, "
            f"retried={self.jobs_retried:,}, "
            f"failed={self.jobs_failed:,}, "
            f"chunks={self.chunks_stored:,}, "
            f"tokens={self.total_tokens:,}, "
            f"cost=${self.total_cost:.4f})"
        )
