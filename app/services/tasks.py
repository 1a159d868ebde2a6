"""
Celery 주기 태스크 정의 (beat). 동기 DB(psycopg) 세션 사용.
스크랩 잡 자체는 Celery가 아니라 Worker Pool(app.pool)이 claim해서 실행한다.
"""

import logging
from functools import lru_cache

import sentry_sdk
from celery import shared_task

from app.core.catalog_http import TransientUpstreamError
from app.core.config import settings
from app.core.database_sync import get_sync_session
from app.services.catalog_client import CatalogClient
from app.services.events import EventEmitter, default_emitter
from app.services.reaper import reap_stale_leases
from app.services.scheduler_service import run_tick, sync_terms

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def _catalog_client() -> CatalogClient:
    """워커 프로세스당 1개. 목록 조회도 같은 rate limit 예산을 따름."""
    return CatalogClient()


@lru_cache(maxsize=1)
def _emitter() -> EventEmitter:
    return default_emitter()


def _set_task_context(task_id: str | None, task_name: str) -> None:
    """Sentry·로그용 컨텍스트."""
    if not settings.sentry_dsn:
        return
    if task_id:
        sentry_sdk.set_tag("celery.task_id", task_id)
    sentry_sdk.set_tag("scrape_task", task_name)


@shared_task(name="app.services.tasks.scheduler_tick_task", bind=True, ignore_result=False)
def scheduler_tick_task(self) -> dict:
    """스케줄러 tick. 잡 upsert + priority 재계산. 실패 시 다음 beat에서 다시 실행(재시도 없음)."""
    task_id = getattr(self.request, "id", None)
    _set_task_context(task_id, "scheduler_tick")
    with get_sync_session() as session:
        summary = run_tick(session, _catalog_client())
    return summary.as_dict()


@shared_task(name="app.services.tasks.reap_stale_leases_task", bind=True)
def reap_stale_leases_task(self) -> dict:
    """Lease Reaper 1회. 배치가 꽉 찼으면 남은 stale lease는 다음 주기에."""
    task_id = getattr(self.request, "id", None)
    _set_task_context(task_id, "lease_reaper")
    with get_sync_session() as session:
        summary = reap_stale_leases(session, emitter=_emitter())
    return {"scanned": summary.scanned, "reaped": summary.reaped, "terminal": summary.terminal}


@shared_task(
    name="app.services.tasks.sync_terms_task",
    bind=True,
    autoretry_for=(TransientUpstreamError,),
    max_retries=3,
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
)
def sync_terms_task(self) -> dict:
    """
    upstream 학기 목록 동기화. tier 재분류(종료일 경과 → archived).
    네트워크·타임아웃·429·5xx(TransientUpstreamError)는 백오프 재시도, 해석 불가 응답은 즉시 실패.
    """
    task_id = getattr(self.request, "id", None)
    _set_task_context(task_id, "term_sync")
    with get_sync_session() as session:
        count = sync_terms(session, _catalog_client())
    logger.info("Term sync task done: task_id=%s terms=%d", task_id, count)
    return {"terms": count}
