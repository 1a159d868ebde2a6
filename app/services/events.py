"""
스크랩 이벤트 발행. claim·완료·실패·terminal·reap 등마다 구조화 이벤트 1건.
코어는 구독자를 모른다: 로그 + (설정 시) Redis pub/sub.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol

from app.core.config import settings
from app.core.redis import create_event_client, publish_event_sync

logger = logging.getLogger(__name__)


class EventKind(StrEnum):
    CLAIMED = "claimed"
    COMPLETED = "completed"
    FAILED = "failed"
    TERMINAL = "terminal"
    REAPED = "reaped"
    RELEASE_LOST = "release_lost"
    PERSISTENCE_FAILED = "persistence_failed"
    TRIGGERED = "triggered"
    RESET = "reset"
    TOGGLED = "toggled"


@dataclass(frozen=True)
class ScrapeEvent:
    kind: EventKind
    job_id: int | None
    target_key: str | None
    worker: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_json(self) -> str:
        data = asdict(self)
        data["kind"] = str(self.kind)
        data["at"] = self.at.isoformat()
        return json.dumps(data, default=str, ensure_ascii=False)


class EventEmitter(Protocol):
    def emit(self, event: ScrapeEvent) -> None: ...


# 운영자 주의가 필요한 이벤트는 WARNING 이상으로 남긴다.
_WARN_KINDS = frozenset(
    {EventKind.REAPED, EventKind.RELEASE_LOST, EventKind.TERMINAL, EventKind.PERSISTENCE_FAILED}
)


class LoggingEventEmitter:
    def emit(self, event: ScrapeEvent) -> None:
        level = logging.WARNING if event.kind in _WARN_KINDS else logging.DEBUG
        if event.kind is EventKind.FAILED and event.details.get("permanent"):
            level = logging.ERROR
        logger.log(
            level,
            "scrape_event kind=%s job_id=%s target=%s worker=%s details=%s",
            event.kind,
            event.job_id,
            event.target_key,
            event.worker,
            event.details,
        )


class RedisEventEmitter:
    """Redis 채널로 JSON 발행. 클라이언트 없으면 no-op."""

    def __init__(self, client: Any = None, channel: str | None = None) -> None:
        self.client = client
        self.channel = channel or settings.scrape_events_channel

    def emit(self, event: ScrapeEvent) -> None:
        publish_event_sync(self.client, self.channel, event.to_json())


class CompositeEventEmitter:
    def __init__(self, *emitters: EventEmitter) -> None:
        self.emitters = emitters

    def emit(self, event: ScrapeEvent) -> None:
        for emitter in self.emitters:
            emitter.emit(event)


def default_emitter() -> EventEmitter:
    """로그 + Redis(설정 시). 프로세스 역할(풀·Celery·API)마다 한 번 생성."""
    client = create_event_client()
    if client is None:
        return LoggingEventEmitter()
    return CompositeEventEmitter(LoggingEventEmitter(), RedisEventEmitter(client))
