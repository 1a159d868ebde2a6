"""이벤트 발행 테스트. Redis 실패가 스케줄링으로 전파되지 않아야 함."""

import json
from unittest.mock import MagicMock

from app.services.events import (
    CompositeEventEmitter,
    EventKind,
    LoggingEventEmitter,
    RedisEventEmitter,
    ScrapeEvent,
)


def test_redis_emitter_publishes_json() -> None:
    redis_client = MagicMock()
    emitter = RedisEventEmitter(redis_client, channel="test:events")
    emitter.emit(ScrapeEvent(EventKind.COMPLETED, 7, "202610:CS", worker="w1", details={"fetched": 3}))
    redis_client.publish.assert_called_once()
    channel, payload = redis_client.publish.call_args.args
    assert channel == "test:events"
    data = json.loads(payload)
    assert data["kind"] == "completed"
    assert data["job_id"] == 7
    assert data["details"] == {"fetched": 3}


def test_publish_failure_does_not_raise() -> None:
    redis_client = MagicMock()
    redis_client.publish.side_effect = ConnectionError("redis down")
    RedisEventEmitter(redis_client).emit(ScrapeEvent(EventKind.REAPED, 1, "202610:CS"))


def test_redis_emitter_without_client_is_noop() -> None:
    RedisEventEmitter(None).emit(ScrapeEvent(EventKind.CLAIMED, 1, None))


def test_composite_fans_out(caplog) -> None:
    redis_client = MagicMock()
    emitter = CompositeEventEmitter(LoggingEventEmitter(), RedisEventEmitter(redis_client))
    with caplog.at_level("WARNING", logger="app.services.events"):
        emitter.emit(ScrapeEvent(EventKind.TERMINAL, 2, "202610:MATH"))
    assert redis_client.publish.call_count == 1
    assert "kind=terminal" in caplog.text
