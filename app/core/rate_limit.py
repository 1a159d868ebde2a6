"""
Upstream 호출 예산. burst(순간) + per_second(지속).

REDIS_URL이 있으면 RedisWindowLimiter: Redis sorted set 슬라이딩 윈도우로 워커 풀·Celery 등 모든 프로세스가
upstream 호스트별 예산 하나를 공유한다. 없으면(로컬·테스트) 프로세스 내 TokenBucket.
"""

import logging
import math
import threading
import time
import uuid
from collections.abc import Callable
from typing import Any

import redis

from app.core.config import settings
from app.core.redis import create_rate_limit_client

logger = logging.getLogger(__name__)

# 예산 초과 시 최소 대기. 윈도우 경계에서 바쁜 재시도 방지.
MIN_WAIT_SECONDS = 0.01


class RateBudgetExceeded(Exception):
    """deadline 안에 호출 예산을 얻지 못함(또는 공유 limiter 불가). 호출부에서 transient 실패로 취급."""

    pass


class RateLimiter:
    """try_acquire()만 구현하면 deadline 있는 대기(acquire)는 공통."""

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._clock = clock
        self._sleep = sleep

    def try_acquire(self) -> float:
        """호출 1회 시도. 성공 시 0.0, 실패 시 다시 시도할 때까지 대기 시간(초)."""
        raise NotImplementedError

    def acquire(self, deadline: float | None = None) -> None:
        """예산이 생길 때까지 대기. deadline(clock 기준)을 넘길 대기라면 기다리지 않고 RateBudgetExceeded."""
        while True:
            wait = self.try_acquire()
            if wait == 0.0:
                return
            if deadline is not None and self._clock() + wait > deadline:
                raise RateBudgetExceeded(f"rate budget wait {wait:.2f}s exceeds deadline")
            self._sleep(wait)


class TokenBucket(RateLimiter):
    """
    스레드 안전 토큰 버킷. 한 프로세스 안에서만 유효.
    풀 크기와 무관하게 burst + per_second * 경과시간 이상의 호출을 허용하지 않는다.
    """

    def __init__(
        self,
        burst: int,
        per_second: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if burst < 1 or per_second <= 0:
            raise ValueError("burst must be >= 1 and per_second > 0")
        super().__init__(clock=clock, sleep=sleep)
        self.burst = burst
        self.per_second = per_second
        self._tokens = float(burst)
        self._updated = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.per_second)
        self._updated = now

    def try_acquire(self) -> float:
        with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return 0.0
            return (1.0 - self._tokens) / self.per_second


class RedisWindowLimiter(RateLimiter):
    """
    Redis sorted set 슬라이딩 윈도우. window = burst / per_second 초 안에 최대 burst회.
    즉 순간 burst, 장기 평균 per_second를 넘지 않는다.

    MULTI로 (만료 항목 제거 → 내 항목 추가 → 개수 확인)을 원자 실행하고, 개수가 한도를 넘으면
    내 항목을 되돌린다. 동시에 넘친 쪽은 모두 물러나므로 예산 초과는 없다(경합 시 보수적).
    Redis 오류는 예산 확인 불가로 보고 RateBudgetExceeded(우회해서 호출하지 않음).
    """

    def __init__(
        self,
        client: Any,
        key: str,
        burst: int,
        per_second: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        if burst < 1 or per_second <= 0:
            raise ValueError("burst must be >= 1 and per_second > 0")
        super().__init__(clock=clock, sleep=sleep)
        self.client = client
        self.key = key
        self.limit = burst
        self.window = burst / per_second
        # 프로세스 간 공유 윈도우라 점수는 벽시계(epoch). deadline 계산은 monotonic clock.
        self._wall_clock = wall_clock
        self._ttl = math.ceil(self.window) + 1

    def try_acquire(self) -> float:
        now = self._wall_clock()
        member = f"{now:.6f}:{uuid.uuid4().hex}"
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.zremrangebyscore(self.key, 0, now - self.window)
            pipe.zadd(self.key, {member: now})
            pipe.zcard(self.key)
            pipe.expire(self.key, self._ttl)
            count = pipe.execute()[2]
            if count <= self.limit:
                return 0.0

            pipe = self.client.pipeline(transaction=True)
            pipe.zrem(self.key, member)
            pipe.zrange(self.key, 0, 0, withscores=True)
            oldest = pipe.execute()[1]
        except redis.RedisError as e:
            logger.warning("Shared rate limiter unavailable (key=%s): %s", self.key, e)
            raise RateBudgetExceeded(f"shared rate limiter unavailable: {e}") from e

        if not oldest:
            return MIN_WAIT_SECONDS
        # 가장 오래된 호출이 윈도우 밖으로 나가는 시각까지.
        return max(MIN_WAIT_SECONDS, oldest[0][1] + self.window - now)


def create_rate_limiter(scope: str) -> RateLimiter:
    """
    scope(upstream 호스트)별 limiter. REDIS_URL이 있으면 공유 예산, 없으면 프로세스 내 예산.
    같은 scope를 쓰는 모든 CatalogClient(워커 풀·Celery tick/term sync)가 같은 Redis 키를 씀.
    """
    client = create_rate_limit_client()
    if client is None:
        logger.warning("REDIS_URL not set. Upstream rate budget enforced per process only (scope=%s).", scope)
        return TokenBucket(settings.rate_limit_burst, settings.rate_limit_per_second)
    return RedisWindowLimiter(
        client,
        f"{settings.rate_limit_key_prefix}:{scope}",
        settings.rate_limit_burst,
        settings.rate_limit_per_second,
    )
