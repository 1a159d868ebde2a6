"""
Retry & Backoff 정책. 실패 분류(transient | permanent)와 재스케줄 시각 계산.

transient·permanent 모두 retry_count를 1 올리고 같은 max_retries 상한을 따른다.
permanent는 운영자 확인용 플래그만 추가로 남긴다.
"""

import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum

import requests

from app.core.catalog_http import PermanentResponseError, TransientUpstreamError
from app.core.config import settings


class FailureKind(StrEnum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


@dataclass(frozen=True)
class RetryDecision:
    """실패 1회 처리 결과. terminal=True면 리셋 전까지 claim 제외."""

    retry_count: int
    terminal: bool
    permanent: bool
    next_run_at: datetime
    delay_seconds: float


def classify_failure(exc: BaseException) -> FailureKind:
    """예외 → 실패 종류. 해석 불가 응답만 permanent, 나머지(네트워크·타임아웃·429·미분류)는 transient."""
    if isinstance(exc, PermanentResponseError):
        return FailureKind.PERMANENT
    if isinstance(exc, (TransientUpstreamError, requests.RequestException, TimeoutError, ConnectionError)):
        return FailureKind.TRANSIENT
    return FailureKind.TRANSIENT


def backoff_delay(
    attempt: int,
    *,
    base: float | None = None,
    cap: float | None = None,
    jitter: bool | None = None,
) -> float:
    """
    유한 지수 백오프. delay = min(cap, base * 2^(attempt-1)).
    jitter 시 [delay/2, delay] 균등 분포(동시 재시도 분산, 최소 절반은 보장).

    attempt=1, base=30, cap=1800 -> 30s
    attempt=3, base=30, cap=1800 -> 120s
    attempt=8, base=30, cap=1800 -> 1800s (capped)
    """
    base = settings.backoff_base_seconds if base is None else base
    cap = settings.backoff_max_seconds if cap is None else cap
    jitter = settings.backoff_jitter if jitter is None else jitter
    exponent = max(0, attempt - 1)
    # 2**큰 지수 오버플로 방지: cap을 넘는 순간 중단.
    delay = base
    for _ in range(exponent):
        delay *= 2
        if delay >= cap:
            break
    delay = min(delay, cap)
    if jitter:
        return random.uniform(delay / 2.0, delay)
    return delay


def decide_failure(
    retry_count: int,
    max_retries: int,
    *,
    kind: FailureKind,
    now: datetime,
) -> RetryDecision:
    """실패 1회 반영. retry_count += 1(상한 max_retries), 백오프로 next_run_at 재설정."""
    new_count = min(retry_count + 1, max_retries)
    delay = backoff_delay(new_count)
    return RetryDecision(
        retry_count=new_count,
        terminal=new_count >= max_retries,
        permanent=kind is FailureKind.PERMANENT,
        next_run_at=now + timedelta(seconds=delay),
        delay_seconds=delay,
    )
