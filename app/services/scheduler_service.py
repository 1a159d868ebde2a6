"""
스케줄러 tick. 활성 학기의 (term, subject)와 리뷰 프로필마다 잡을 upsert하고 priority 재계산.
next_run_at은 건드리지 않음: due 여부는 마지막 완료/실패 시점에 이미 결정됨.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from app.core.catalog_http import UpstreamError
from app.core.config import settings
from app.models.scrape_job import (
    KIND_PROFILE_REVIEWS,
    KIND_SUBJECT,
    profile_target_key,
    subject_target_key,
)
from app.models.term import TIER_ACTIVE, TIER_ARCHIVED, Term
from app.repositories import scrape_job_repository as jobs
from app.repositories import term_repository as terms
from app.services.catalog_client import CatalogClient
from app.services.scheduling import ConfigurationSkip, classify_tier, compute_priority, utcnow

logger = logging.getLogger(__name__)


@dataclass
class TickSummary:
    upserted: int = 0
    due: int = 0
    skipped: list[str] = field(default_factory=list)
    terms: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "upserted": self.upserted,
            "due": self.due,
            "skipped": list(self.skipped),
            "terms": list(self.terms),
        }


def _subjects_for_term(session: Session, client: CatalogClient | None, term: Term, now: datetime) -> list[str]:
    """active는 매 tick upstream 목록으로 캐시 갱신. archived는 캐시 우선, 비어 있을 때만 upstream."""
    cached = terms.get_cached_subjects(session, term.code)
    if term.tier == TIER_ARCHIVED and cached:
        return [s.code for s in cached]
    if client is None:
        return [s.code for s in cached]
    try:
        fresh = client.list_subjects(term.code)
    except UpstreamError as e:
        # 목록 조회 실패는 이번 tick만 캐시로 진행. 잡 실패로 세지 않음.
        logger.warning("Subject list fetch failed for term=%s, using cache (%d): %s", term.code, len(cached), e)
        return [s.code for s in cached]
    terms.cache_subjects(session, term.code, fresh, now=now)
    return [s["code"] for s in fresh]


def _term_specs(session: Session, term: Term, subjects: list[str], now: datetime) -> list[jobs.JobSpec]:
    tier = term.tier
    # 학기 종료일이 지났는데 동기화 전이면 여기서 먼저 archived로 취급.
    if tier == TIER_ACTIVE and term.end_date is not None:
        tier = classify_tier(term.end_date, now.date())
    keys = [subject_target_key(term.code, s) for s in subjects]
    existing = jobs.get_jobs_by_target(session, KIND_SUBJECT, keys)
    specs = []
    for subject, key in zip(subjects, keys):
        job = existing.get(key)
        priority = compute_priority(
            KIND_SUBJECT,
            tier,
            last_success_at=job.last_success_at if job else None,
            volatility=job.volatility if job else 0.0,
            now=now,
        )
        specs.append(
            jobs.JobSpec(
                kind=KIND_SUBJECT,
                target_key=key,
                priority=priority,
                term_code=term.code,
                subject=subject,
            )
        )
    return specs


def _profile_specs(session: Session, now: datetime) -> list[jobs.JobSpec]:
    profiles = terms.list_review_profiles(session)
    keys = [profile_target_key(p.external_id) for p in profiles]
    existing = jobs.get_jobs_by_target(session, KIND_PROFILE_REVIEWS, keys)
    specs = []
    for profile, key in zip(profiles, keys):
        job = existing.get(key)
        specs.append(
            jobs.JobSpec(
                kind=KIND_PROFILE_REVIEWS,
                target_key=key,
                priority=compute_priority(
                    KIND_PROFILE_REVIEWS,
                    None,
                    last_success_at=job.last_success_at if job else profile.reviews_last_scraped_at,
                    volatility=job.volatility if job else 0.0,
                    now=now,
                ),
                entity_id=profile.external_id,
            )
        )
    return specs


def run_tick(
    session: Session,
    client: CatalogClient | None = None,
    *,
    now: datetime | None = None,
) -> TickSummary:
    """
    tick 1회. 학기 단위로 upsert하며 ConfigurationSkip인 학기는 로그만 남기고 건너뜀(재시도 카운트 무관).
    commit은 호출부(get_sync_session) 담당.
    """
    now = now or utcnow()
    summary = TickSummary()
    for term in terms.get_enabled_terms(session):
        try:
            subjects = _subjects_for_term(session, client, term, now)
            specs = _term_specs(session, term, subjects, now)
        except ConfigurationSkip as e:
            logger.warning("Skipping term=%s from scheduling: %s", term.code, e)
            summary.skipped.append(term.code)
            continue
        summary.upserted += jobs.upsert_jobs(
            session, specs, now=now, max_retries=settings.max_retries_default
        )
        summary.terms.append(term.code)

    try:
        profile_specs = _profile_specs(session, now)
    except ConfigurationSkip as e:
        logger.warning("Skipping review profile schedule: %s", e)
        profile_specs = []
    summary.upserted += jobs.upsert_jobs(
        session, profile_specs, now=now, max_retries=settings.max_retries_default
    )

    session.flush()
    summary.due = jobs.count_due(
        session, now=now, lease_timeout=timedelta(seconds=settings.lease_timeout_seconds)
    )
    logger.info(
        "Scheduler tick: terms=%s upserted=%d due=%d skipped=%s",
        summary.terms,
        summary.upserted,
        summary.due,
        summary.skipped,
    )
    return summary


def sync_terms(session: Session, client: CatalogClient, *, now: datetime | None = None) -> int:
    """upstream 학기 목록 → terms. tier 재분류, scrape_enabled 보존."""
    now = now or utcnow()
    return terms.sync_terms(session, client.list_terms(), now=now)


def trigger(
    session: Session,
    term_code: str,
    subject: str | None = None,
    *,
    now: datetime | None = None,
) -> list[str]:
    """
    수동 트리거. subject=None이면 학기 전체(캐시된 과목 + 기존 잡 과목).
    없는 학기는 LookupError. 반환값은 트리거된 target_key 목록.
    """
    now = now or utcnow()
    term = terms.get_term(session, term_code)
    if term is None:
        raise LookupError(f"Term not found: {term_code}")
    if subject is not None:
        subjects = [subject]
    else:
        subjects = sorted(
            {s.code for s in terms.get_cached_subjects(session, term_code)}
            | set(jobs.subjects_for_term(session, term_code))
        )
    specs = [
        jobs.JobSpec(
            kind=KIND_SUBJECT,
            target_key=subject_target_key(term_code, s),
            priority=0,
            term_code=term_code,
            subject=s,
        )
        for s in subjects
    ]
    jobs.trigger_jobs(session, specs, now=now, max_retries=settings.max_retries_default)
    logger.info("Manual trigger: term=%s subject=%s jobs=%d", term_code, subject or "*", len(specs))
    return [s.target_key for s in specs]


def trigger_profile(session: Session, external_id: str, *, now: datetime | None = None) -> str:
    """리뷰 프로필 1건 수동 트리거."""
    now = now or utcnow()
    if terms.get_review_profile(session, external_id) is None:
        raise LookupError(f"Review profile not found: {external_id}")
    key = profile_target_key(external_id)
    spec = jobs.JobSpec(kind=KIND_PROFILE_REVIEWS, target_key=key, priority=0, entity_id=external_id)
    jobs.trigger_jobs(session, [spec], now=now, max_retries=settings.max_retries_default)
    return key
