"""
Lease Reaper. 만료된 lease(워커 crash/hang)를 실패 1회로 처리하고 잠금 해제.
워커 풀과 별도 스케줄(Celery beat)로 실행.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

import sentry_sdk
from sqlalchemy.orm import Session

from app.core.config import settings
from app.repositories import scrape_job_repository as jobs
from app.services.events import EventEmitter, EventKind, LoggingEventEmitter, ScrapeEvent
from app.services.retry_policy import FailureKind, decide_failure
from app.services.scheduling import utcnow

logger = logging.getLogger(__name__)

REAP_BATCH_SIZE = 100


@dataclass(frozen=True)
class ReapSummary:
    scanned: int
    reaped: int
    terminal: int


def reap_stale_leases(
    session: Session,
    *,
    now: datetime | None = None,
    lease_timeout: timedelta | None = None,
    emitter: EventEmitter | None = None,
    limit: int = REAP_BATCH_SIZE,
) -> ReapSummary:
    """
    만료 lease를 한 배치 회수. 각 잡은 retry_count += 1 + 백오프 재스케줄(transient 취급).
    상한 도달 시 terminal. 조회와 갱신 사이 다른 워커가 재claim한 잡은 건너뜀.
    commit은 호출부 담당.
    """
    now = now or utcnow()
    lease_timeout = lease_timeout or timedelta(seconds=settings.lease_timeout_seconds)
    emitter = emitter or LoggingEventEmitter()

    stale = jobs.find_stale(session, now=now, lease_timeout=lease_timeout, limit=limit)
    reaped = terminal = 0
    for job in stale:
        previous_owner = job.locked_by
        locked_at = job.locked_at
        decision = decide_failure(job.retry_count, job.max_retries, kind=FailureKind.TRANSIENT, now=now)
        retry_count = jobs.reap(session, job, decision, now=now)
        if retry_count is None:
            logger.debug("Reap skipped job_id=%s (lease changed concurrently)", job.id)
            continue
        reaped += 1
        details = {
            "previous_owner": previous_owner,
            "locked_at": locked_at.isoformat() if locked_at else None,
            "retry_count": retry_count,
            "next_run_at": decision.next_run_at.isoformat(),
        }
        emitter.emit(ScrapeEvent(EventKind.REAPED, job.id, job.target_key, details=details))
        if retry_count >= job.max_retries:
            terminal += 1
            emitter.emit(
                ScrapeEvent(
                    EventKind.TERMINAL,
                    job.id,
                    job.target_key,
                    details={"retry_count": retry_count, "reason": "lease expired"},
                )
            )
        if settings.sentry_dsn:
            sentry_sdk.capture_message(
                f"Reaped stale lease job_id={job.id} target={job.target_key} owner={previous_owner}",
                level="warning",
            )

    if stale:
        logger.info("Reaper: scanned=%d reaped=%d terminal=%d", len(stale), reaped, terminal)
    return ReapSummary(scanned=len(stale), reaped=reaped, terminal=terminal)
