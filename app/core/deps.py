"""FastAPI 의존성. 이벤트 발행기·Redis 헬스 클라이언트 등 앱 생명주기 객체 주입."""

from typing import Any

from fastapi import Request

from app.services.events import EventEmitter, LoggingEventEmitter


def get_event_emitter(request: Request) -> EventEmitter:
    """lifespan에서 생성한 이벤트 발행기. 미생성(테스트 등) 시 로그 전용."""
    return getattr(request.app.state, "event_emitter", None) or LoggingEventEmitter()


def get_redis_health_client(request: Request) -> Any:
    """lifespan에서 생성한 헬스 체크용 Redis 비동기 클라이언트. 미설정 시 None."""
    return getattr(request.app.state, "redis_health_client", None)
