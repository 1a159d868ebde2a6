"""Redis 클라이언트. 스크랩 이벤트 pub/sub 발행용(Celery broker와 같은 인스턴스). 구독자는 코어가 알지 못함."""

import logging
from typing import Any

from app.core.config import settings

logger = logging.getLogger(__name__)


def _redis_client_kwargs() -> dict:
    """Redis 공통 옵션. 타임아웃·디코드."""
    return {
        "decode_responses": True,
        "socket_timeout": settings.redis_socket_timeout,
        "socket_connect_timeout": settings.redis_socket_connect_timeout,
    }


def create_event_client() -> Any:
    """
    이벤트 발행용 동기 Redis 클라이언트. redis_url 없으면 None(발행 비활성, 로그만 남김).
    워커 스레드 간 공유: redis-py 클라이언트는 커넥션 풀로 스레드 안전.
    """
    if not settings.redis_url:
        return None
    import redis

    return redis.Redis.from_url(settings.redis_url, **_redis_client_kwargs())


def create_async_health_client() -> Any:
    """헬스 체크용 비동기 Redis 클라이언트. lifespan에서 한 번 생성해 app.state에 보관."""
    if not settings.redis_url:
        return None
    import redis.asyncio as redis_async

    return redis_async.Redis.from_url(settings.redis_url, max_connections=2, **_redis_client_kwargs())


def publish_event_sync(client: Any, channel: str, message: str) -> bool:
    """채널에 메시지 발행. 실패는 경고 로그만(이벤트 유실이 스케줄링을 멈추면 안 됨)."""
    if client is None:
        return False
    try:
        client.publish(channel, message)
        return True
    except Exception as e:
        logger.warning("Event publish failed (channel=%s): %s", channel, e, exc_info=True)
        return False


def create_rate_limit_client() -> Any:
    """
    upstream 호출 예산 공유용 동기 Redis 클라이언트. redis_url 없으면 None(프로세스 내 예산).
    워커 스레드가 공유하므로 커넥션 풀 크기는 풀 크기 + 여유.
    """
    if not settings.redis_url:
        return None
    import redis

    return redis.Redis.from_url(
        settings.redis_url,
        max_connections=settings.worker_pool_size + 2,
        **_redis_client_kwargs(),
    )
