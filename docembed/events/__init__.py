"""
Events Module - 임베딩 라이프사이클 이벤트
==========================================

  - bus.py        : 타입별 이벤트 + 프로세스 내 EventBus
  - kafka_sink.py : 이벤트 Kafka 전달 (선택, EMBED_EVENTS_KAFKA)
"""

from .bus import (
    EmbeddingCompleted,
    EmbeddingEvent,
    EmbeddingFailed,
    EmbeddingProgress,
    EmbeddingStarted,
    EventBus,
)

__all__ = [
    "EmbeddingCompleted",
    "EmbeddingEvent",
    "EmbeddingFailed",
    "EmbeddingProgress",
    "EmbeddingStarted",
    "EventBus",
]
