"""EventBus / KafkaEventSink 테스트."""

import msgpack
import pytest
from aiokafka.errors import KafkaError

from docembed.common.pipeline_config import KafkaConfig
from docembed.events.bus import (
    EmbeddingCompleted,
    EmbeddingFailed,
    EmbeddingProgress,
    EmbeddingStarted,
    EventBus,
)
from docembed.events.kafka_sink import KafkaEventSink


class FakeProducer:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail
        self.started = False
        self.flushed = False

    async def start(self):
        self.started = True

    async def stop(self):
        self.started = False

    async def flush(self):
        self.flushed = True

    async def send_and_wait(self, topic, value, key=None):
        if self.fail:
            raise KafkaError("broker down")
        self.sent.append((topic, value, key))


class TestEventBus:

    @pytest.mark.asyncio
    async def test_sync_and_async_handlers(self):
        """동기 / 비동기 구독자 모두 호출."""
        bus = EventBus()
        received = []

        async def async_handler(event):
            received.append(("async", event.name))

        bus.subscribe(lambda event: received.append(("sync", event.name)))
        bus.subscribe(async_handler)

        await bus.publish(EmbeddingStarted(job_id="1", job_type="EMBED_TEXT"))

        assert received == [("sync", "embedding.started"), ("async", "embedding.started")]
        assert bus.published == 1

    @pytest.mark.asyncio
    async def test_filter_by_event_type(self):
        bus = EventBus()
        failures = []
        bus.subscribe(failures.append, EmbeddingFailed)

        await bus.publish(EmbeddingProgress(job_id="1", job_type="EMBED_TEXT", progress=30))
        await bus.publish(EmbeddingFailed(job_id="1", job_type="EMBED_TEXT", error="boom"))

        assert [e.error for e in failures] == ["boom"]

    @pytest.mark.asyncio
    async def test_handler_error_does_not_stop_others(self):
        """구독자 예외는 로그만 남기고 다음 구독자 계속 호출."""
        bus = EventBus()
        received = []

        def broken(event):
            raise RuntimeError("handler bug")

        bus.subscribe(broken)
        bus.subscribe(received.append)

        await bus.publish(EmbeddingStarted(job_id="1", job_type="EMBED_TEXT"))

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        received = []
        unsubscribe = bus.subscribe(received.append)

        unsubscribe()
        unsubscribe()
        await bus.publish(EmbeddingStarted(job_id="1", job_type="EMBED_TEXT"))

        assert received == []

    def test_event_dict_shape(self):
        """camelCase 직렬화, documentId는 있을 때만."""
        event = EmbeddingCompleted(
            job_id="7", job_type="EMBED_DOCUMENT", document_id=5,
            chunk_count=3, total_tokens=15, cost=0.0003, timestamp=1.5,
        )

        assert event.to_dict() == {
            "type": "embedding.completed",
            "jobId": "7",
            "jobType": "EMBED_DOCUMENT",
            "timestamp": 1.5,
            "documentId": 5,
            "chunkCount": 3,
            "totalTokens": 15,
            "cost": 0.0003,
        }
        assert "documentId" not in EmbeddingStarted(job_id="1", job_type="EMBED_TEXT").to_dict()


class TestKafkaEventSink:

    @pytest.mark.asyncio
    async def test_forwards_bus_events(self):
        """attach 후 모든 이벤트를 잡 ID 키로 전송."""
        producer = FakeProducer()
        sink = KafkaEventSink(KafkaConfig(enabled=True, events_topic="test.events"), producer=producer)
        bus = EventBus()

        await sink.start()
        sink.attach(bus)
        await bus.publish(EmbeddingStarted(job_id="9", job_type="EMBED_TEXT"))
        await bus.publish(EmbeddingProgress(job_id="9", job_type="EMBED_TEXT", progress=10))

        assert [(topic, value["type"], key) for topic, value, key in producer.sent] == [
            ("test.events", "embedding.started", "9"),
            ("test.events", "embedding.progress", "9"),
        ]
        assert sink.stats.events_sent == 2

        await sink.stop()
        assert producer.flushed
        await bus.publish(EmbeddingStarted(job_id="10", job_type="EMBED_TEXT"))
        assert len(producer.sent) == 2

    @pytest.mark.asyncio
    async def test_send_failure_counted(self):
        sink = KafkaEventSink(KafkaConfig(), producer=FakeProducer(fail=True))
        await sink.start()

        await sink.handle(EmbeddingStarted(job_id="1", job_type="EMBED_TEXT"))

        assert sink.stats.events_sent == 0
        assert sink.stats.events_failed == 1

    @pytest.mark.asyncio
    async def test_not_started_drops_event(self):
        producer = FakeProducer()
        sink = KafkaEventSink(KafkaConfig(), producer=producer)

        await sink.handle(EmbeddingStarted(job_id="1", job_type="EMBED_TEXT"))

        assert producer.sent == []
        assert sink.stats.events_failed == 1

    def test_msgpack_serialization(self):
        event = EmbeddingFailed(job_id="1", job_type="EMBED_TEXT", error="boom", timestamp=2.0)

        packed = KafkaEventSink._serialize(event.to_dict())

        assert msgpack.unpackb(packed, raw=False) == event.to_dict()
