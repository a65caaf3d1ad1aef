"""
Kafka Event Sink - 라이프사이클 이벤트 → Kafka 토픽
===================================================

EventBus의 모든 이벤트를 Kafka 토픽으로 전달합니다.
- aiokafka 기반 비동기 전송
- msgpack 직렬화
- 파티션 키: 잡 ID (같은 잡의 이벤트 순서 보장)

환경변수:
  EMBED_EVENTS_KAFKA       : true면 활성화 (기본: false)
  KAFKA_BOOTSTRAP_SERVERS  : 브로커 주소
  EMBED_EVENTS_TOPIC       : 토픽 (기본: embedding.events)
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import msgpack
from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError, KafkaError

from docembed.common.pipeline_config import KafkaConfig, get_config
from docembed.events.bus import EmbeddingEvent, EventBus

logger = logging.getLogger(__name__)


@dataclass
class SinkStats:
    """이벤트 전송 통계"""
    events_sent: int = 0
    events_failed: int = 0
    start_time: float = field(default_factory=time.time)

    def __str__(self) -> str:
        return f"SinkStats(sent={self.events_sent:,}, failed={self.events_failed:,})"


class KafkaEventSink:
    """EventBus 구독자: 이벤트를 Kafka로 전송"""

    def __init__(
        self,
        config: Optional[KafkaConfig] = None,
        producer: Optional[Any] = None,
    ):
        """
        Args:
            config: Kafka 설정
            producer: AIOKafkaProducer 호환 객체 (테스트용 주입)
        """
        self.config = config or get_config().kafka
        self.topic = self.config.events_topic
        self._producer = producer
        self._started = False
        self._unsubscribe: Optional[Callable[[], None]] = None
        self.stats = SinkStats()

    @staticmethod
    def _serialize(value: Any) -> bytes:
        return msgpack.packb(value, use_bin_type=True)

    async def start(self) -> None:
        if self._started:
            return

        if self._producer is None:
            self._producer = AIOKafkaProducer(
                bootstrap_servers=self.config.bootstrap_servers,
                value_serializer=self._serialize,
                key_serializer=lambda k: k.encode('utf-8') if k else None,
                linger_ms=self.config.linger_ms,
                acks=int(self.config.acks) if self.config.acks.isdigit() else self.config.acks,
            )

        try:
            await self._producer.start()
        except KafkaConnectionError as e:
            logger.error(f"Failed to connect to Kafka: {e}")
            raise

        self._started = True
        logger.info(f"KafkaEventSink started: topic={self.topic}")

    async def stop(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

        if self._producer and self._started:
            await self._producer.flush()
            await self._producer.stop()
            self._started = False
            logger.info(f"KafkaEventSink stopped. {self.stats}")

    def attach(self, bus: EventBus) -> None:
        """버스의 모든 이벤트 구독"""
        self._unsubscribe = bus.subscribe(self.handle)

    async def handle(self, event: EmbeddingEvent) -> None:
        if not self._started:
            logger.warning(f"KafkaEventSink not started, dropping {event.name}")
            self.stats.events_failed += 1
            return

        try:
            await self._producer.send_and_wait(
                topic=self.topic,
                value=event.to_dict(),
                key=event.job_id,
            )
            self.stats.events_sent += 1
        except KafkaError as e:
            self.stats.events_failed += 1
            logger.error(f"Kafka error sending {event.name}: {e}")
