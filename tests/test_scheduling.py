"""우선순위·적응형 주기 계산 단위 테스트. DB 없이 검증."""

from datetime import UTC, date, datetime, timedelta

import pytest

from app.core.config import settings
from app.models.scrape_job import KIND_PROFILE_REVIEWS, KIND_SUBJECT
from app.services.scheduling import (
    MAX_PRIORITY,
    ConfigurationSkip,
    classify_tier,
    compute_interval,
    compute_priority,
    entity_interval,
    next_run_after_success,
    offhours_multiplier,
    quiet_multiplier,
    update_volatility,
)


def test_classify_tier_by_end_date(now) -> None:
    """종료일이 지난 학기만 archived. 종료일 미정은 active."""
    today = now.date()
    assert classify_tier(today - timedelta(days=1), today) == "archived"
    assert classify_tier(today, today) == "active"
    assert classify_tier(None, today) == "active"


def test_active_interval_strictly_sooner_than_archived(now) -> None:
    """같은 조건이면 active 학기 잡의 다음 실행이 archived보다 항상 먼저."""
    for zero_streak in (0, 5, 100):
        active = next_run_after_success(
            KIND_SUBJECT, "active", volatility=0.0, consecutive_zero_changes=zero_streak, fetched=10, now=now
        )
        archived = next_run_after_success(
            KIND_SUBJECT,
            "archived",
            volatility=0.0,
            consecutive_zero_changes=zero_streak,
            fetched=10,
            now=now,
            term_end_date=now.date(),
        )
        assert active < archived


def test_active_interval_base_and_floor(now) -> None:
    """변경 없음·변동성 0이면 기본 주기, 변동성이 높으면 줄되 min_interval 아래로는 안 내려감."""
    base = compute_interval("active", volatility=0.0, consecutive_zero_changes=0, now=now)
    assert base == timedelta(seconds=settings.active_base_interval_seconds)
    fast = compute_interval("active", volatility=1.0, consecutive_zero_changes=0, now=now)
    assert fast < base
    assert fast >= timedelta(seconds=settings.min_interval_seconds)


def test_quiet_subject_interval_widens_and_caps(now) -> None:
    """연속 무변경이 쌓이면 주기 확장, quiet_max_multiplier에서 멈춤."""
    assert quiet_multiplier(0) == 1.0
    assert quiet_multiplier(2) > quiet_multiplier(1)
    assert quiet_multiplier(10_000) == settings.quiet_max_multiplier
    quiet = compute_interval("active", volatility=0.0, consecutive_zero_changes=4, now=now)
    assert quiet > timedelta(seconds=settings.active_base_interval_seconds)


def test_offhours_widens_interval() -> None:
    """scrape_timezone 기준 새벽(03:00 CDT)에는 심야 배수 적용."""
    night = datetime(2026, 10, 19, 8, 0, tzinfo=UTC)
    day = datetime(2026, 10, 19, 18, 0, tzinfo=UTC)
    assert offhours_multiplier(night) == settings.offhours_multiplier
    assert offhours_multiplier(day) == 1.0
    assert compute_interval("active", volatility=0.0, consecutive_zero_changes=0, now=night) > compute_interval(
        "active", volatility=0.0, consecutive_zero_changes=0, now=day
    )


def test_archived_interval_widens_with_age_and_caps(now) -> None:
    recent = compute_interval(
        "archived", volatility=0.0, consecutive_zero_changes=0, now=now, term_end_date=now.date()
    )
    old = compute_interval(
        "archived",
        volatility=0.0,
        consecutive_zero_changes=0,
        now=now,
        term_end_date=now.date() - timedelta(days=settings.archived_widening_days),
    )
    ancient = compute_interval(
        "archived", volatility=0.0, consecutive_zero_changes=0, now=now, term_end_date=date(1990, 1, 1)
    )
    assert recent == timedelta(seconds=settings.archived_base_interval_seconds)
    assert old == recent * 2
    assert ancient == timedelta(seconds=settings.archived_max_interval_seconds)


def test_unknown_tier_is_configuration_skip(now) -> None:
    with pytest.raises(ConfigurationSkip):
        compute_interval("frozen", volatility=0.0, consecutive_zero_changes=0, now=now)
    with pytest.raises(ConfigurationSkip):
        compute_priority(KIND_SUBJECT, "frozen", last_success_at=None, volatility=0.0, now=now)


def test_entity_interval_follows_review_volume() -> None:
    """리뷰가 많을수록 짧은 주기 (14일 → 7일 → 3일 → 1일)."""
    base = settings.entity_review_interval_seconds
    assert entity_interval(0) == timedelta(seconds=base)
    assert entity_interval(3) == timedelta(seconds=base / 2)
    assert entity_interval(10) == timedelta(seconds=base * 3 / 14)
    assert entity_interval(50) == timedelta(seconds=base / 14)


def test_profile_job_uses_entity_interval(now) -> None:
    run_at = next_run_after_success(
        KIND_PROFILE_REVIEWS, None, volatility=0.0, consecutive_zero_changes=0, fetched=50, now=now
    )
    assert run_at == now + entity_interval(50)


def test_priority_components(now) -> None:
    """active > archived, 오래 안 긁은 쪽·변동성 높은 쪽이 더 높음."""
    fresh = compute_priority(KIND_SUBJECT, "active", last_success_at=now, volatility=0.0, now=now)
    stale = compute_priority(
        KIND_SUBJECT, "active", last_success_at=now - timedelta(hours=10), volatility=0.0, now=now
    )
    volatile = compute_priority(KIND_SUBJECT, "active", last_success_at=now, volatility=1.0, now=now)
    archived = compute_priority(KIND_SUBJECT, "archived", last_success_at=now, volatility=0.0, now=now)
    assert stale > fresh
    assert volatile > fresh
    assert fresh > archived


def test_manual_override_beats_any_scheduled_priority(now) -> None:
    highest_normal = compute_priority(KIND_SUBJECT, "active", last_success_at=None, volatility=1.0, now=now)
    manual = compute_priority(
        KIND_SUBJECT, "archived", last_success_at=now, volatility=0.0, now=now, manual_override=True
    )
    assert manual == MAX_PRIORITY
    assert manual > highest_normal


def test_update_volatility_is_ema() -> None:
    alpha = settings.volatility_smoothing
    assert update_volatility(0.0, 10, 10) == pytest.approx(alpha)
    assert update_volatility(1.0, 10, 0) == pytest.approx(1.0 - alpha)
    # fetched=0이면 변경률 0
    assert update_volatility(0.5, 0, 5) == pytest.approx(0.5 * (1.0 - alpha))
