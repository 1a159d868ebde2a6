"""
내부 전용 API (운영자·관리 화면). 보안 키는 Header만 허용(X-Scrape-Trigger-Secret 또는 Authorization: Bearer).
Query 파라미터 시크릿 미지원(Access Log 유출 방지).
쓰기는 워커와 같은 동기 repository를 asyncio.to_thread로 호출(Job Store 조율 로직 단일화).
"""

import asyncio
import logging
import secrets
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import get_db
from app.core.database_sync import get_sync_session, translate_db_error
from app.core.deps import get_event_emitter
from app.models.scrape_job import ScrapeJob
from app.repositories import scrape_job_repository as jobs
from app.repositories import term_repository as terms
from app.repositories.scrape_result_repository import compute_result_stats_sync, get_recent_results
from app.schemas.scrape import (
    ScrapeJobResponse,
    TermResponse,
    TermToggleRequest,
    TriggerRequest,
    TriggerResponse,
)
from app.services import scheduler_service
from app.services.events import EventEmitter, EventKind, ScrapeEvent
from app.services.job_state import derive_state, state_name

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _validate_trigger_secret(
    x_scrape_trigger_secret: str | None = Header(None, alias="X-Scrape-Trigger-Secret"),
    authorization: str | None = Header(None),
) -> None:
    """SCRAPE_TRIGGER_SECRET 검증. Header만 사용(Query 미허용). timing-safe 비교. 실패 시 HTTPException."""
    if not settings.scrape_trigger_secret:
        raise HTTPException(
            status_code=503,
            detail="Internal API not configured (SCRAPE_TRIGGER_SECRET missing)",
        )
    provided = (
        x_scrape_trigger_secret
        or (authorization and authorization.startswith("Bearer ") and authorization[7:].strip())
    ) or ""
    expected = settings.scrape_trigger_secret.get_secret_value()
    if not secrets.compare_digest(provided, expected):
        raise HTTPException(status_code=401, detail="Invalid or missing scrape trigger secret")


router = APIRouter(
    prefix="/internal",
    tags=["internal"],
    dependencies=[Depends(_validate_trigger_secret)],
)


def _lease_timeout() -> timedelta:
    return timedelta(seconds=settings.lease_timeout_seconds)


async def _run_sync(fn: Callable[..., T], *args: Any) -> T:
    """동기 repository 호출을 스레드에서 실행. DB 오류는 DatastoreUnavailableError/PersistenceFailure로 변환."""
    try:
        return await asyncio.to_thread(fn, *args)
    except SQLAlchemyError as e:
        raise translate_db_error(e) from e


def _job_response(job: ScrapeJob, now: datetime) -> ScrapeJobResponse:
    state = state_name(derive_state(job, now, _lease_timeout()))
    return ScrapeJobResponse.model_validate({**_job_columns(job), "state": state})


def _job_columns(job: ScrapeJob) -> dict[str, Any]:
    return {c.key: getattr(job, c.key) for c in ScrapeJob.__table__.columns}


def _trigger_sync(body: TriggerRequest) -> list[str]:
    with get_sync_session() as session:
        return scheduler_service.trigger(session, body.term_code, body.subject)


def _trigger_profile_sync(external_id: str) -> str:
    with get_sync_session() as session:
        return scheduler_service.trigger_profile(session, external_id)


def _toggle_sync(code: str, enabled: bool) -> TermResponse | None:
    with get_sync_session() as session:
        term = terms.set_scrape_enabled(session, code, enabled, now=datetime.now(UTC))
        return TermResponse.model_validate(term) if term else None


def _reset_sync(job_id: int) -> ScrapeJobResponse | None:
    now = datetime.now(UTC)
    with get_sync_session() as session:
        job = jobs.reset_job(session, job_id, now=now)
        return _job_response(job, now) if job else None


def _get_job_sync(job_id: int) -> ScrapeJobResponse | None:
    now = datetime.now(UTC)
    with get_sync_session() as session:
        job = jobs.get_job(session, job_id)
        return _job_response(job, now) if job else None


def _terminal_jobs_sync(limit: int) -> list[ScrapeJobResponse]:
    now = datetime.now(UTC)
    with get_sync_session() as session:
        return [_job_response(j, now) for j in jobs.list_terminal_jobs(session, limit)]


def _stats_sync(hours: int, term_code: str | None) -> dict[str, Any]:
    now = datetime.now(UTC)
    with get_sync_session() as session:
        queue = jobs.queue_summary(session, now=now, lease_timeout=_lease_timeout())
        results = compute_result_stats_sync(session, now - timedelta(hours=hours), term_code)
    return {"queue": queue, "results": results}


def _list_terms_sync() -> list[TermResponse]:
    with get_sync_session() as session:
        return [TermResponse.model_validate(t) for t in terms.list_terms(session)]


@router.post("/scrape/trigger", response_model=TriggerResponse)
async def post_trigger(body: TriggerRequest, emitter: EventEmitter = Depends(get_event_emitter)) -> TriggerResponse:
    """
    수동 트리거. (term, subject) 잡을 MAX_PRIORITY·next_run_at=now로 upsert.
    subject 없으면 학기 전체. terminal 잡도 retry_count 초기화되어 다시 claim 대상.
    """
    try:
        keys = await _run_sync(_trigger_sync, body)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    for key in keys:
        emitter.emit(ScrapeEvent(EventKind.TRIGGERED, None, key, details={"term_code": body.term_code}))
    return TriggerResponse(triggered=len(keys), target_keys=keys)


@router.post("/scrape/profiles/{external_id}/trigger", response_model=TriggerResponse)
async def post_trigger_profile(
    external_id: str,
    emitter: EventEmitter = Depends(get_event_emitter),
) -> TriggerResponse:
    """리뷰 프로필 1건 수동 트리거."""
    try:
        key = await _run_sync(_trigger_profile_sync, external_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    emitter.emit(ScrapeEvent(EventKind.TRIGGERED, None, key))
    return TriggerResponse(triggered=1, target_keys=[key])


@router.get("/terms", response_model=list[TermResponse])
async def get_terms() -> list[TermResponse]:
    return await _run_sync(_list_terms_sync)


@router.patch("/terms/{code}", response_model=TermResponse)
async def patch_term(
    code: str,
    body: TermToggleRequest,
    emitter: EventEmitter = Depends(get_event_emitter),
) -> TermResponse:
    """학기 수집 on/off. 비활성 학기 잡은 삭제하지 않고 claim에서만 제외."""
    term = await _run_sync(_toggle_sync, code, body.scrape_enabled)
    if term is None:
        raise HTTPException(status_code=404, detail=f"Term not found: {code}")
    emitter.emit(
        ScrapeEvent(EventKind.TOGGLED, None, None, details={"term_code": code, "scrape_enabled": body.scrape_enabled})
    )
    return term


@router.get("/jobs/terminal", response_model=list[ScrapeJobResponse])
async def get_terminal_jobs(limit: int = Query(100, ge=1, le=500)) -> list[ScrapeJobResponse]:
    """terminal-failed 잡. permanent 플래그 잡 먼저."""
    return await _run_sync(_terminal_jobs_sync, limit)


@router.get("/jobs/{job_id}", response_model=ScrapeJobResponse)
async def get_job(job_id: int) -> ScrapeJobResponse:
    job = await _run_sync(_get_job_sync, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    return job


@router.post("/jobs/{job_id}/reset", response_model=ScrapeJobResponse)
async def post_reset_job(job_id: int, emitter: EventEmitter = Depends(get_event_emitter)) -> ScrapeJobResponse:
    """운영자 리셋. retry_count=0, permanent 해제, 즉시 due."""
    job = await _run_sync(_reset_sync, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    emitter.emit(ScrapeEvent(EventKind.RESET, job.id, job.target_key))
    return job


@router.get("/scrape-stats")
async def get_scrape_stats(
    hours: int = Query(24, ge=1, le=24 * 30, description="최근 N시간 결과 집계"),
    term_code: str | None = Query(None),
) -> dict:
    """큐 상태별 잡 수 + 기간 내 실행 결과 집계."""
    return await _run_sync(_stats_sync, hours, term_code)


@router.get("/scrape-results")
async def get_scrape_results(
    limit: int = Query(50, ge=1, le=200, description="최근 N건"),
    term_code: str | None = Query(None),
    session: AsyncSession = Depends(get_db),
) -> dict:
    """최근 실행 이력."""
    results = await get_recent_results(session, limit=limit, term_code=term_code)
    return {"results": results, "limit": limit}
