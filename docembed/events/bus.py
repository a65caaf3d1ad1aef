"""
Event Bus - 임베딩 라이프사이클 이벤트
======================================

이벤트:
  embedding.started    : 잡 처리 시작
  embedding.progress   : 진행률 체크포인트 (10 / 30 / 70 / 90 / 100)
  embedding.completed  : 완료 (chunkCount, totalTokens, cost)
  embedding.failed     : 실패 (error)

구독자는 동기 / 비동기 함수 모두 가능하며, 이벤트 타입으로 필터링할 수 있습니다.
구독자 예외는 로그만 남기고 다른 구독자 / 잡 처리에는 영향을 주지 않습니다.
"""

import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmbeddingEvent:
    job_id: str
    job_type: str
    document_id: Optional[int] = None
    timestamp: float = field(default_factory=time.time)

    name = "embedding.event"

    def payload(self) -> dict[str, Any]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        data = {
            'type': self.name,
            'jobId': self.job_id,
            'jobType': self.job_type,
            'timestamp': self.timestamp,
        }
        if self.document_id is not None:
            data['documentId'] = self.document_id
        data.update(self.payload())
        return data


@dataclass(frozen=True)
class EmbeddingStarted(EmbeddingEvent):
    name = "embedding.started"


@dataclass(frozen=True)
class EmbeddingProgress(EmbeddingEvent):
    progress: int = 0

    name = "embedding.progress"

    def payload(self) -> dict[str, Any]:
        return {'progress': self.progress}


@dataclass(frozen=True)
class EmbeddingCompleted(EmbeddingEvent):
    chunk_count: int = 0
    total_tokens: int = 0
    cost: float = 0.0

    name = "embedding.completed"

    def payload(self) -> dict[str, Any]:
        return {
            'chunkCount': self.chunk_count,
            'totalTokens': self.total_tokens,
            'cost': self.cost,
        }


@dataclass(frozen=True)
class EmbeddingFailed(EmbeddingEvent):
    error: str = ""

    name = "embedding.failed"

    def payload(self) -> dict[str, Any]:
        return {'error': self.error}


EventHandler = Callable[[EmbeddingEvent], Union[None, Awaitable[None]]]


class EventBus:
    """프로세스 내 이벤트 버스"""

    def __init__(self):
        self._subscribers: list[tuple[type, EventHandler]] = []
        self.published = 0

    def subscribe(
        self,
        handler: EventHandler,
        event_type: type = EmbeddingEvent,
    ) -> Callable[[], None]:
        """
        구독 등록

        Args:
            handler: 이벤트를 받을 함수 (async 가능)
            event_type: 받을 이벤트 클래스 (기본: 전체)

        Returns:
            구독 해제 함수
        """
        entry = (event_type, handler)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    async def publish(self, event: EmbeddingEvent) -> None:
        self.published += 1
        logger.debug(f"Event {event.name}: job={event.job_id}")

        for event_type, handler in list(self._subscribers):
            if not isinstance(event, event_type):
                continue
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Event handler error for {event.name}: {e}", exc_info=True)
