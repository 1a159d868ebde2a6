"""Health check. Job Store(SELECT 1)와 Redis(broker·이벤트 채널) 도달 여부만 본다."""

import asyncio
import logging
from collections.abc import Awaitable
from typing import Any

from fastapi import APIRouter, Depends

from app.core.database import ping_db
from app.core.deps import get_redis_health_client

router = APIRouter(tags=["health"])
logger = logging.getLogger(__name__)

HEALTH_PROBE_TIMEOUT = 2.0


async def _probe(name: str, check: Awaitable[Any]) -> str:
    """check가 timeout 안에 참으로 끝나면 'ok', 아니면 'error'. 예외는 경고 로그만."""
    try:
        ok = await asyncio.wait_for(check, timeout=HEALTH_PROBE_TIMEOUT)
    except Exception as e:
        logger.warning("Health %s check failed: %s", name, e)
        return "error"
    return "ok" if ok is not False else "error"


async def _redis_ping(client: Any) -> bool:
    # Redis 미설정이면 이벤트 발행만 비활성. 헬스에는 영향 없음.
    if client is None:
        return True
    return bool(await client.ping())


@router.get("/health")
async def get_health(redis_client: Any = Depends(get_redis_health_client)) -> dict[str, str]:
    """status: ok | degraded. DB 미초기화도 degraded."""
    db_status, redis_status = await asyncio.gather(
        _probe("db", ping_db()),
        _probe("redis", _redis_ping(redis_client)),
    )
    return {
        "status": "ok" if db_status == redis_status == "ok" else "degraded",
        "db": db_status,
        "redis": redis_status,
    }
