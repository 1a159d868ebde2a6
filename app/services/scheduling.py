"""
우선순위·적응형 주기 계산. 순수 함수(DB/HTTP 미의존).

priority = tier 가중치 + recency 가중치 + volatility 가중치 (+ 수동 트리거 시 MAX_PRIORITY).
interval = tier 기본 주기 × (무변경 연속 배수) ÷ (1 + volatility × factor) × (심야 배수).
가중치·주기 상수는 모두 Settings에서 읽는다(실측으로 조정하는 값).
"""

import logging
from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo

from app.core.config import settings
from app.models.scrape_job import KIND_PROFILE_REVIEWS, KIND_SUBJECT
from app.models.term import TIER_ACTIVE, TIER_ARCHIVED

logger = logging.getLogger(__name__)

# 수동 트리거 잡 우선순위. 일반 스케줄 가중치 합은 항상 이보다 작음(config에서 검증).
MAX_PRIORITY = 1_000_000


class ConfigurationSkip(Exception):
    """스케줄링 대상에서 제외(학기 비활성, 알 수 없는 tier, 주기 설정 오류). 재시도 카운트에 포함하지 않음."""

    pass


def classify_tier(end_date: date | None, today: date) -> str:
    """학기 종료일 기준 tier. 종료일이 지났으면 archived, 아니면(미정 포함) active."""
    if end_date is not None and end_date < today:
        return TIER_ARCHIVED
    return TIER_ACTIVE


def offhours_multiplier(now: datetime) -> float:
    """scrape_timezone 기준 심야 시간대면 offhours_multiplier, 아니면 1.0."""
    local_hour = now.astimezone(ZoneInfo(settings.scrape_timezone)).hour
    start, end = settings.offhours_start_hour, settings.offhours_end_hour
    if start == end:
        return 1.0
    if start < end:
        in_window = start <= local_hour < end
    else:
        in_window = local_hour >= start or local_hour < end
    return settings.offhours_multiplier if in_window else 1.0


def quiet_multiplier(consecutive_zero_changes: int) -> float:
    """연속 무변경 횟수만큼 주기 확장. quiet_max_multiplier에서 캡."""
    streak = max(0, consecutive_zero_changes)
    return min(1.0 + streak * settings.quiet_step, settings.quiet_max_multiplier)


def archived_interval(term_end_date: date | None, now: datetime) -> timedelta:
    """archived 기본 주기. 학기 종료 후 오래될수록 archived_widening_days마다 +1배, 최대값 캡."""
    base = settings.archived_base_interval_seconds
    if term_end_date is None:
        return timedelta(seconds=base)
    days_over = max(0, (now.date() - term_end_date).days)
    widened = base * (1.0 + days_over / settings.archived_widening_days)
    return timedelta(seconds=min(widened, settings.archived_max_interval_seconds))


def compute_interval(
    tier: str,
    *,
    volatility: float,
    consecutive_zero_changes: int,
    now: datetime,
    term_end_date: date | None = None,
) -> timedelta:
    """(term, subject) 잡의 다음 실행까지 간격. 알 수 없는 tier·비양수 결과는 ConfigurationSkip."""
    if tier == TIER_ACTIVE:
        seconds = float(settings.active_base_interval_seconds)
        seconds *= quiet_multiplier(consecutive_zero_changes)
        seconds /= 1.0 + max(0.0, min(volatility, 1.0)) * settings.volatility_interval_factor
        seconds *= offhours_multiplier(now)
        seconds = max(seconds, float(settings.min_interval_seconds))
    elif tier == TIER_ARCHIVED:
        seconds = archived_interval(term_end_date, now).total_seconds()
    else:
        raise ConfigurationSkip(f"Unknown term tier: {tier!r}")
    if seconds <= 0:
        raise ConfigurationSkip(f"Non-positive interval for tier {tier!r}: {seconds}")
    return timedelta(seconds=seconds)


def entity_interval(review_count: int) -> timedelta:
    """리뷰 프로필 재수집 간격. 리뷰가 많을수록 자주(0건 ×1, 1~5 ×1/2, 6~20 ×3/14, 그 이상 ×1/14)."""
    base = settings.entity_review_interval_seconds
    if review_count <= 0:
        factor = 1.0
    elif review_count <= 5:
        factor = 0.5
    elif review_count <= 20:
        factor = 3.0 / 14.0
    else:
        factor = 1.0 / 14.0
    return timedelta(seconds=max(base * factor, settings.min_interval_seconds))


def tier_weight(kind: str, tier: str | None) -> int:
    if kind == KIND_PROFILE_REVIEWS:
        return settings.priority_tier_weight_entity
    if tier == TIER_ACTIVE:
        return settings.priority_tier_weight_active
    if tier == TIER_ARCHIVED:
        return settings.priority_tier_weight_archived
    raise ConfigurationSkip(f"Unknown term tier: {tier!r}")


def recency_weight(last_success_at: datetime | None, now: datetime) -> int:
    """마지막 성공 이후 경과 시간 비례. 한 번도 성공 못 했으면 캡 값."""
    cap = settings.priority_recency_cap
    if last_success_at is None:
        return cap
    hours = max(0.0, (now - last_success_at).total_seconds() / 3600.0)
    return int(min(hours * settings.priority_recency_per_hour, cap))


def volatility_weight(volatility: float) -> int:
    return int(round(max(0.0, min(volatility, 1.0)) * settings.priority_volatility_weight))


def compute_priority(
    kind: str,
    tier: str | None,
    *,
    last_success_at: datetime | None,
    volatility: float,
    now: datetime,
    manual_override: bool = False,
) -> int:
    """우선순위 점수(클수록 먼저). 수동 트리거는 MAX_PRIORITY 고정."""
    if manual_override:
        return MAX_PRIORITY
    return (
        tier_weight(kind, tier)
        + recency_weight(last_success_at, now)
        + volatility_weight(volatility)
    )


def update_volatility(previous: float, fetched: int, changed: int) -> float:
    """관측 변경률(changed/fetched)의 EMA. fetched=0이면 변경률 0으로 간주."""
    ratio = 0.0 if fetched <= 0 else min(1.0, max(0, changed) / fetched)
    alpha = settings.volatility_smoothing
    return round(alpha * ratio + (1.0 - alpha) * max(0.0, previous), 6)


def next_run_after_success(
    kind: str,
    tier: str | None,
    *,
    volatility: float,
    consecutive_zero_changes: int,
    fetched: int,
    now: datetime,
    term_end_date: date | None = None,
) -> datetime:
    """성공 완료 시 next_run_at = now + interval(tier, volatility)."""
    if kind == KIND_PROFILE_REVIEWS:
        return now + entity_interval(fetched)
    if kind != KIND_SUBJECT:
        raise ConfigurationSkip(f"Unknown job kind: {kind!r}")
    interval = compute_interval(
        tier or "",
        volatility=volatility,
        consecutive_zero_changes=consecutive_zero_changes,
        now=now,
        term_end_date=term_end_date,
    )
    return now + interval


def utcnow() -> datetime:
    return datetime.now(UTC)
