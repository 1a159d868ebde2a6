"""ScrapeJob Repository (Job Store). 워커 간 조율의 유일한 지점.

Claim = SELECT ... FOR UPDATE SKIP LOCKED로 후보 1건 선택 + 조건부 UPDATE(lease가 비었거나 만료된 경우만).
행 잠금이 없는 백엔드에서도 조건부 UPDATE의 rowcount가 승자를 결정하므로 같은 행을 두 워커가 동시에 얻지 못함.
모든 시각은 호출부가 넘긴 now(UTC) 기준. DB now()에 의존하지 않음.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, case, func, literal, or_, select, update
from sqlalchemy.orm import Session

from app.models.base import UtcDateTime
from app.models.scrape_job import ScrapeJob
from app.models.term import Term
from app.repositories.dialect import insert_for
from app.services.retry_policy import RetryDecision
from app.services.scheduling import MAX_PRIORITY

logger = logging.getLogger(__name__)

# 경합 패배(ClaimConflict) 후 다음 후보를 시도하는 최대 횟수. 초과 시 이번 폴링은 빈손.
CLAIM_MAX_ATTEMPTS = 5

ERROR_MESSAGE_MAX_LEN = 2000


class ClaimConflict(Exception):
    """다른 워커가 먼저 잠금. 오류가 아님: claim_next가 다음 후보로 넘어감."""

    pass


@dataclass(frozen=True)
class JobSpec:
    """스케줄러 tick/수동 트리거가 upsert할 잡 1건."""

    kind: str
    target_key: str
    priority: int
    term_code: str | None = None
    subject: str | None = None
    entity_id: str | None = None


@dataclass(frozen=True)
class Claim:
    """claim 성공 결과. reclaimed_from이 있으면 만료된 lease를 가져온 것(crash 회수)."""

    job: ScrapeJob
    token: str
    claimed_at: datetime
    reclaimed_from: str | None = None


def _term_enabled_clause() -> Any:
    """소속 학기 scrape_enabled. term 없는 엔티티 잡은 항상 통과."""
    return or_(
        ScrapeJob.term_code.is_(None),
        select(Term.code)
        .where(Term.code == ScrapeJob.term_code, Term.scrape_enabled.is_(True))
        .correlate(ScrapeJob)
        .exists(),
    )


def eligible_clause(now: datetime, lease_timeout: timedelta) -> Any:
    """
    claim 가능 조건. due + 학기 활성 + (미잠금 & retry < max | 만료 lease & retry+1 < max).
    만료 lease 회수는 retry를 1 올리므로, 올린 값이 상한에 닿는 잡은 Reaper가 terminal 처리.
    """
    cutoff = now - lease_timeout
    return and_(
        ScrapeJob.next_run_at <= now,
        _term_enabled_clause(),
        or_(
            and_(ScrapeJob.locked_at.is_(None), ScrapeJob.retry_count < ScrapeJob.max_retries),
            and_(
                ScrapeJob.locked_at <= cutoff,
                ScrapeJob.retry_count + 1 < ScrapeJob.max_retries,
            ),
        ),
    )


def select_candidate(
    session: Session, now: datetime, lease_timeout: timedelta
) -> tuple[int, str | None, datetime | None] | None:
    """최우선 eligible 잡 (id, locked_by, locked_at). priority DESC → next_run_at ASC → id ASC."""
    stmt = (
        select(ScrapeJob.id, ScrapeJob.locked_by, ScrapeJob.locked_at)
        .where(eligible_clause(now, lease_timeout))
        .order_by(ScrapeJob.priority.desc(), ScrapeJob.next_run_at.asc(), ScrapeJob.id.asc())
        .limit(1)
        .with_for_update(skip_locked=True, of=ScrapeJob)
    )
    row = session.execute(stmt).first()
    if row is None:
        return None
    return (row.id, row.locked_by, row.locked_at)


def try_lock(
    session: Session,
    job_id: int,
    token: str,
    now: datetime,
    lease_timeout: timedelta,
) -> ScrapeJob:
    """
    조건부 UPDATE로 lease 획득. 조건(eligible) 재검사 → 패배 시 ClaimConflict.
    만료 lease를 가져오는 경우 retry_count += 1 (crash를 실패 1회로 계산).
    """
    stmt = (
        update(ScrapeJob)
        .where(ScrapeJob.id == job_id, eligible_clause(now, lease_timeout))
        .values(
            locked_at=now,
            locked_by=token,
            last_attempt_at=now,
            retry_count=case(
                (ScrapeJob.locked_at.is_not(None), ScrapeJob.retry_count + 1),
                else_=ScrapeJob.retry_count,
            ),
        )
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    if result.rowcount != 1:
        raise ClaimConflict(f"job {job_id} claimed by another worker")
    job = session.get(ScrapeJob, job_id, populate_existing=True)
    if job is None:
        raise ClaimConflict(f"job {job_id} vanished after lock")
    return job


def claim_next(
    session: Session,
    token: str,
    *,
    now: datetime,
    lease_timeout: timedelta,
    max_attempts: int = CLAIM_MAX_ATTEMPTS,
) -> Claim | None:
    """
    최우선 eligible 잡 1건 claim 후 commit(lease를 fetch 전에 영속화). 없으면 None.
    ClaimConflict는 밖으로 내보내지 않고 다음 후보를 시도.
    """
    for attempt in range(1, max_attempts + 1):
        candidate = select_candidate(session, now, lease_timeout)
        if candidate is None:
            session.rollback()
            return None
        job_id, previous_owner, previous_locked_at = candidate
        try:
            job = try_lock(session, job_id, token, now, lease_timeout)
        except ClaimConflict:
            session.rollback()
            logger.debug("claim conflict on job_id=%s (attempt %d/%d)", job_id, attempt, max_attempts)
            continue
        session.commit()
        reclaimed = previous_owner or ("unknown" if previous_locked_at is not None else None)
        return Claim(job=job, token=token, claimed_at=now, reclaimed_from=reclaimed)
    logger.debug("claim gave up after %d conflicts", max_attempts)
    return None


def _owned_by(job_id: int, token: str) -> Any:
    return and_(
        ScrapeJob.id == job_id,
        ScrapeJob.locked_by == token,
        ScrapeJob.locked_at.is_not(None),
    )


def _utc(value: datetime) -> Any:
    """case() 분기 안의 시각 리터럴. 컬럼과 같은 UTC 처리를 받도록 타입 지정."""
    return literal(value, UtcDateTime())


def _triggered_during_lease() -> Any:
    """lease를 잡은 뒤 수동 트리거가 들어옴. 해제 시 override를 소진하지 않고 즉시 재실행 대상으로 둠."""
    return and_(ScrapeJob.triggered_at.is_not(None), ScrapeJob.triggered_at > ScrapeJob.locked_at)


def _next_retry_count() -> Any:
    """DB의 현재 retry_count + 1 (상한 max_retries). claim 시점 스냅샷을 쓰면 그사이의 리셋을 덮어씀."""
    return case(
        (ScrapeJob.retry_count + 1 >= ScrapeJob.max_retries, ScrapeJob.max_retries),
        else_=ScrapeJob.retry_count + 1,
    )


def release_success(
    session: Session,
    job_id: int,
    token: str,
    *,
    next_run_at: datetime,
    priority: int,
    volatility: float,
    consecutive_zero_changes: int,
    fetched: int,
    now: datetime,
) -> bool:
    """
    성공 후 lease 해제. 소유자(token)일 때만 반영. False면 lease를 잃음(Reaper가 이미 회수).
    성공은 연속 실패를 끊으므로 retry_count·permanent 플래그 초기화, 수동 override 소진.
    실행 중 들어온 트리거는 소진하지 않음: MAX_PRIORITY·next_run_at=triggered_at 유지.
    """
    triggered = _triggered_during_lease()
    stmt = (
        update(ScrapeJob)
        .where(_owned_by(job_id, token))
        .values(
            locked_at=None,
            locked_by=None,
            next_run_at=case((triggered, ScrapeJob.triggered_at), else_=_utc(next_run_at)),
            priority=case((triggered, MAX_PRIORITY), else_=priority),
            manual_override=case((triggered, True), else_=False),
            retry_count=0,
            permanent_failure=False,
            last_error=None,
            last_success_at=now,
            volatility=volatility,
            consecutive_zero_changes=consecutive_zero_changes,
            last_fetched_count=fetched,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount == 1


def release_failure(
    session: Session,
    job_id: int,
    token: str,
    decision: RetryDecision,
    error: str,
    *,
    now: datetime,
    count_failure: bool = True,
) -> int | None:
    """
    실패 후 lease 해제 + retry 정책 반영. 반환값은 반영 후 retry_count, lease를 잃었으면 None.

    retry_count는 DB 값 기준으로 올림(count_failure=False면 유지). permanent 플래그는 한 번 서면
    리셋 전까지 유지. 실행 중 트리거가 들어왔으면 이번 실패는 리셋 이전 실행분이므로 retry·permanent는
    트리거가 만든 값 그대로 두고 트리거 시각에 즉시 재실행.
    """
    triggered = _triggered_during_lease()
    retry_count = _next_retry_count() if count_failure else ScrapeJob.retry_count
    permanent = True if decision.permanent else ScrapeJob.permanent_failure
    stmt = (
        update(ScrapeJob)
        .where(_owned_by(job_id, token))
        .values(
            locked_at=None,
            locked_by=None,
            retry_count=case((triggered, ScrapeJob.retry_count), else_=retry_count),
            next_run_at=case((triggered, ScrapeJob.triggered_at), else_=_utc(decision.next_run_at)),
            permanent_failure=case((triggered, ScrapeJob.permanent_failure), else_=permanent),
            priority=case((triggered, MAX_PRIORITY), else_=ScrapeJob.priority),
            manual_override=case((triggered, True), else_=False),
            last_error=error[:ERROR_MESSAGE_MAX_LEN],
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if session.execute(stmt).rowcount != 1:
        return None
    return session.execute(select(ScrapeJob.retry_count).where(ScrapeJob.id == job_id)).scalar_one()


def find_stale(
    session: Session,
    *,
    now: datetime,
    lease_timeout: timedelta,
    limit: int = 100,
) -> list[ScrapeJob]:
    """만료 lease 잡 목록 (ix_scrape_jobs_locked_at 사용). 다른 Reaper와 겹치지 않게 SKIP LOCKED."""
    cutoff = now - lease_timeout
    stmt = (
        select(ScrapeJob)
        .where(ScrapeJob.locked_at.is_not(None), ScrapeJob.locked_at <= cutoff)
        .order_by(ScrapeJob.locked_at.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    return list(session.execute(stmt).scalars().all())


def reap(
    session: Session,
    job: ScrapeJob,
    decision: RetryDecision,
    *,
    now: datetime,
) -> int | None:
    """
    stale lease 회수: 실패 1회로 처리하고 잠금 해제. 반환값은 반영 후 retry_count.
    조회 후 다른 워커가 이미 재claim했으면(locked_at 변경) None. 만료 중 들어온 트리거는 유지.
    """
    triggered = _triggered_during_lease()
    stmt = (
        update(ScrapeJob)
        .where(
            ScrapeJob.id == job.id,
            ScrapeJob.locked_at == job.locked_at,
        )
        .values(
            locked_at=None,
            locked_by=None,
            retry_count=case((triggered, ScrapeJob.retry_count), else_=_next_retry_count()),
            next_run_at=case((triggered, ScrapeJob.triggered_at), else_=_utc(decision.next_run_at)),
            last_error=f"lease expired (held by {job.locked_by or 'unknown'})",
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if session.execute(stmt).rowcount != 1:
        return None
    return session.execute(select(ScrapeJob.retry_count).where(ScrapeJob.id == job.id)).scalar_one()


def get_jobs_by_target(session: Session, kind: str, target_keys: list[str]) -> dict[str, ScrapeJob]:
    if not target_keys:
        return {}
    rows = session.execute(
        select(ScrapeJob).where(ScrapeJob.kind == kind, ScrapeJob.target_key.in_(target_keys))
    ).scalars()
    return {job.target_key: job for job in rows}


def upsert_jobs(
    session: Session,
    specs: list[JobSpec],
    *,
    now: datetime,
    max_retries: int,
) -> int:
    """
    스케줄러 tick용 upsert. 신규 잡은 즉시 due(next_run_at=now). 기존 잡은 priority만 갱신하며
    next_run_at은 건드리지 않음(완료/실패 시 worker·retry 정책이 결정). 수동 override 중인 잡의 priority는 유지.
    """
    if not specs:
        return 0
    rows = [
        {
            "kind": s.kind,
            "target_key": s.target_key,
            "term_code": s.term_code,
            "subject": s.subject,
            "entity_id": s.entity_id,
            "priority": s.priority,
            "next_run_at": now,
            "max_retries": max_retries,
            "created_at": now,
            "updated_at": now,
        }
        for s in specs
    ]
    base = insert_for(session, ScrapeJob).values(rows)
    stmt = base.on_conflict_do_update(
        index_elements=["kind", "target_key"],
        set_={
            "priority": case(
                (ScrapeJob.manual_override.is_(True), ScrapeJob.priority),
                else_=base.excluded.priority,
            ),
            "updated_at": now,
        },
    )
    session.execute(stmt)
    session.flush()
    return len(rows)


def trigger_jobs(
    session: Session,
    specs: list[JobSpec],
    *,
    now: datetime,
    max_retries: int,
) -> int:
    """
    수동 트리거. 잡을 insert/update해 priority=MAX_PRIORITY, next_run_at=now, manual_override=True.
    retry_count·permanent 플래그도 초기화(terminal 잡의 운영자 리셋 경로). 진행 중 lease는 건드리지 않고
    triggered_at만 남겨 해제 시점에 트리거가 소진되지 않게 함.
    """
    if not specs:
        return 0
    rows = [
        {
            "kind": s.kind,
            "target_key": s.target_key,
            "term_code": s.term_code,
            "subject": s.subject,
            "entity_id": s.entity_id,
            "priority": MAX_PRIORITY,
            "manual_override": True,
            "next_run_at": now,
            "triggered_at": now,
            "max_retries": max_retries,
            "created_at": now,
            "updated_at": now,
        }
        for s in specs
    ]
    base = insert_for(session, ScrapeJob).values(rows)
    stmt = base.on_conflict_do_update(
        index_elements=["kind", "target_key"],
        set_={
            "priority": MAX_PRIORITY,
            "manual_override": True,
            "next_run_at": now,
            "triggered_at": now,
            "retry_count": 0,
            "permanent_failure": False,
            "last_error": None,
            "updated_at": now,
        },
    )
    session.execute(stmt)
    session.flush()
    return len(rows)


def reset_job(session: Session, job_id: int, *, now: datetime) -> ScrapeJob | None:
    """운영자 리셋. retry_count=0, permanent·lease 해제, 즉시 due. 없으면 None."""
    stmt = (
        update(ScrapeJob)
        .where(ScrapeJob.id == job_id)
        .values(
            retry_count=0,
            permanent_failure=False,
            last_error=None,
            locked_at=None,
            locked_by=None,
            next_run_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if session.execute(stmt).rowcount != 1:
        return None
    return session.get(ScrapeJob, job_id, populate_existing=True)


def count_due(
    session: Session,
    *,
    now: datetime,
    lease_timeout: timedelta,
    term_codes: list[str] | None = None,
) -> int:
    """지금 claim 가능한 잡 수."""
    stmt = select(func.count(ScrapeJob.id)).where(eligible_clause(now, lease_timeout))
    if term_codes is not None:
        stmt = stmt.where(ScrapeJob.term_code.in_(term_codes))
    return int(session.execute(stmt).scalar_one())


def queue_summary(session: Session, *, now: datetime, lease_timeout: timedelta) -> dict[str, int]:
    """상태별 잡 수(derive_state와 같은 기준). 운영 대시보드/내부 API용."""
    cutoff = now - lease_timeout
    terminal = ScrapeJob.retry_count >= ScrapeJob.max_retries
    live = ~terminal

    def _sum(cond: Any) -> Any:
        return func.coalesce(func.sum(case((cond, 1), else_=0)), 0)

    stmt = select(
        func.count(ScrapeJob.id).label("total"),
        _sum(terminal).label("terminal_failed"),
        _sum(and_(live, ScrapeJob.locked_at.is_not(None), ScrapeJob.locked_at > cutoff)).label("claimed"),
        _sum(and_(live, ScrapeJob.locked_at.is_not(None), ScrapeJob.locked_at <= cutoff)).label("stale"),
        _sum(and_(live, ScrapeJob.locked_at.is_(None), ScrapeJob.next_run_at <= now)).label("due"),
        _sum(and_(live, ScrapeJob.locked_at.is_(None), ScrapeJob.next_run_at > now)).label("waiting"),
        _sum(ScrapeJob.permanent_failure.is_(True)).label("permanent_flagged"),
        _sum(ScrapeJob.manual_override.is_(True)).label("manual"),
    )
    row = session.execute(stmt).one()
    return {key: int(value or 0) for key, value in row._mapping.items()}


def list_terminal_jobs(session: Session, limit: int = 100) -> list[ScrapeJob]:
    """terminal-failed 잡 (운영자 확인용). permanent 먼저."""
    stmt = (
        select(ScrapeJob)
        .where(ScrapeJob.retry_count >= ScrapeJob.max_retries)
        .order_by(ScrapeJob.permanent_failure.desc(), ScrapeJob.updated_at.desc())
        .limit(limit)
    )
    return list(session.execute(stmt).scalars().all())


def subjects_for_term(session: Session, term_code: str) -> list[str]:
    """학기에 이미 존재하는 subject 잡의 과목 코드."""
    stmt = select(ScrapeJob.subject).where(
        ScrapeJob.term_code == term_code,
        ScrapeJob.subject.is_not(None),
    )
    return [s for s in session.execute(stmt).scalars().all() if s]


def get_job(session: Session, job_id: int) -> ScrapeJob | None:
    return session.get(ScrapeJob, job_id)
