"""
Worker Pool. 고정 크기 스레드 풀, 스레드마다 claim → fetch → apply → result → release 루프.

워커 간 공유 가변 상태 없음(rate limiter 제외): 조율은 Job Store(scrape_jobs)로만.
종료 시 진행 중 잡의 lease를 풀지 않음. 재시작 후 Lease Reaper가 회수.
DB 연결 불가(DatastoreUnavailableError)는 루프 진행 불가로 보고 풀 전체를 멈춰 supervisor 재시작에 맡김.
"""

import logging
import os
import socket
import threading
import time
import uuid
from collections.abc import Callable
from contextlib import AbstractContextManager
from datetime import datetime, timedelta
from typing import Protocol

import sentry_sdk
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.catalog_http import FetchDeadlineExceeded
from app.core.config import settings
from app.core.database_sync import DatastoreUnavailableError, get_sync_session, translate_db_error
from app.models.scrape_job import KIND_PROFILE_REVIEWS, KIND_SUBJECT, ScrapeJob
from app.models.term import Term
from app.repositories import scrape_job_repository as jobs
from app.repositories import term_repository as terms
from app.repositories.scrape_result_repository import insert_result_sync, normalize_counts
from app.services.catalog_client import CatalogClient, Listing
from app.services.events import EventEmitter, EventKind, ScrapeEvent, default_emitter
from app.services.record_applier import ApplyCounts, ContentHashApplier
from app.services.retry_policy import FailureKind, RetryDecision, classify_failure, decide_failure
from app.services.scheduling import (
    ConfigurationSkip,
    compute_priority,
    next_run_after_success,
    update_volatility,
    utcnow,
)

logger = logging.getLogger(__name__)

# 이 시간을 넘긴 claim·잡은 경고 로그(upstream 지연·DB 경합 신호).
SLOW_CLAIM_SECONDS = 1.0
SLOW_JOB_SECONDS = 60.0


class ListingFetcher(Protocol):
    def fetch(self, term: str, subject: str, *, timeout: float) -> Listing: ...

    def fetch_profile_reviews(self, external_id: str, *, timeout: float) -> Listing: ...


class ListingApplier(Protocol):
    def apply(self, session: Session, listing: Listing) -> ApplyCounts: ...


SessionScope = Callable[[], AbstractContextManager[Session]]


def make_worker_token(name: str) -> str:
    """host:pid:name:rand. locked_by에 저장(64자 이내)."""
    host = socket.gethostname()[:24]
    return f"{host}:{os.getpid()}:{name}:{uuid.uuid4().hex[:8]}"[:64]


class ScrapeWorker:
    """워커 1개(스레드 1개)의 실행 루프."""

    def __init__(
        self,
        name: str,
        *,
        fetcher: ListingFetcher,
        applier: ListingApplier,
        emitter: EventEmitter,
        session_scope: SessionScope = get_sync_session,
        stop_event: threading.Event | None = None,
        poll_interval: float | None = None,
        lease_timeout: timedelta | None = None,
        fetch_timeout: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.name = name
        self.token = make_worker_token(name)
        self.fetcher = fetcher
        self.applier = applier
        self.emitter = emitter
        self.session_scope = session_scope
        self.stop_event = stop_event or threading.Event()
        self.poll_interval = settings.poll_interval_seconds if poll_interval is None else poll_interval
        self.lease_timeout = lease_timeout or timedelta(seconds=settings.lease_timeout_seconds)
        self.fetch_timeout = fetch_timeout or settings.fetch_timeout_seconds
        self.clock = clock

    def _emit(self, kind: EventKind, job: ScrapeJob, **details) -> None:
        self.emitter.emit(ScrapeEvent(kind, job.id, job.target_key, worker=self.token, details=details))

    def _persistence_error(self, job: ScrapeJob | None, exc: SQLAlchemyError, stage: str) -> None:
        """
        DB 쓰기 실패 처리. 연결 계층이면 DatastoreUnavailableError로 올려 루프 종료.
        그 외는 잡을 claimed로 남기고(Reaper가 회수) 이벤트만 발행.
        """
        err = translate_db_error(exc)
        if isinstance(err, DatastoreUnavailableError):
            logger.error("[%s] job store unavailable during %s: %s", self.name, stage, exc)
            raise err from exc
        logger.error(
            "[%s] persistence failure during %s job_id=%s: %s",
            self.name,
            stage,
            job.id if job else None,
            exc,
            exc_info=exc,
        )
        if job is not None:
            self._emit(EventKind.PERSISTENCE_FAILED, job, stage=stage, error=str(exc)[:500])
        if settings.sentry_dsn:
            sentry_sdk.capture_exception(exc)

    def claim(self) -> jobs.Claim | None:
        started = time.monotonic()
        try:
            with self.session_scope() as session:
                claim = jobs.claim_next(
                    session, self.token, now=self.clock(), lease_timeout=self.lease_timeout
                )
        except SQLAlchemyError as e:
            self._persistence_error(None, e, "claim")
            return None
        elapsed = time.monotonic() - started
        if elapsed > SLOW_CLAIM_SECONDS:
            logger.warning("[%s] slow claim: %.2fs", self.name, elapsed)
        if claim is not None:
            details = {"priority": claim.job.priority, "retry_count": claim.job.retry_count}
            if claim.reclaimed_from:
                details["reclaimed_from"] = claim.reclaimed_from
            self._emit(EventKind.CLAIMED, claim.job, **details)
        return claim

    def _fetch(self, job: ScrapeJob) -> Listing:
        """잡 종류별 fetch. deadline을 넘긴 응답은 네트워크 실패와 같이 transient."""
        deadline = time.monotonic() + self.fetch_timeout
        if job.kind == KIND_SUBJECT:
            listing = self.fetcher.fetch(job.term_code or "", job.subject or "", timeout=self.fetch_timeout)
        elif job.kind == KIND_PROFILE_REVIEWS:
            listing = self.fetcher.fetch_profile_reviews(job.entity_id or "", timeout=self.fetch_timeout)
        else:
            raise ConfigurationSkip(f"Unknown job kind: {job.kind!r}")
        if time.monotonic() > deadline:
            raise FetchDeadlineExceeded(f"fetch exceeded {self.fetch_timeout}s for {job.target_key}")
        return listing

    def _schedule_after_success(
        self, session: Session, job: ScrapeJob, *, volatility: float, zero_streak: int, fetched: int, now: datetime
    ) -> tuple[datetime, int]:
        term = session.get(Term, job.term_code) if job.term_code else None
        tier = term.tier if term else None
        try:
            next_run_at = next_run_after_success(
                job.kind,
                tier,
                volatility=volatility,
                consecutive_zero_changes=zero_streak,
                fetched=fetched,
                now=now,
                term_end_date=term.end_date if term else None,
            )
            priority = compute_priority(
                job.kind, tier, last_success_at=now, volatility=volatility, now=now
            )
        except ConfigurationSkip as e:
            # 성공한 잡을 실패로 돌리지 않음. 가장 긴 기본 주기로 미루고 다음 tick에서 재평가.
            logger.warning("[%s] job_id=%s interval not computable, deferring: %s", self.name, job.id, e)
            return now + timedelta(seconds=settings.archived_base_interval_seconds), job.priority
        return next_run_at, priority

    def _complete(self, claim: jobs.Claim, listing: Listing, started_at: datetime) -> None:
        job = claim.job
        try:
            with self.session_scope() as session:
                counts = self.applier.apply(session, listing)
                now = self.clock()
                result_counts = normalize_counts(len(listing), counts.created, counts.changed)
                if counts.unchanged != result_counts.unchanged:
                    logger.debug(
                        "[%s] job_id=%s unchanged mismatch applier=%d computed=%d",
                        self.name,
                        job.id,
                        counts.unchanged,
                        result_counts.unchanged,
                    )
                volatility = update_volatility(job.volatility, result_counts.fetched, result_counts.touched)
                zero_streak = 0 if result_counts.touched else job.consecutive_zero_changes + 1
                next_run_at, priority = self._schedule_after_success(
                    session,
                    job,
                    volatility=volatility,
                    zero_streak=zero_streak,
                    fetched=result_counts.fetched,
                    now=now,
                )
                insert_result_sync(
                    session,
                    job,
                    worker_token=self.token,
                    started_at=started_at,
                    completed_at=now,
                    success=True,
                    counts=result_counts,
                    retry_count=job.retry_count,
                )
                released = jobs.release_success(
                    session,
                    job.id,
                    self.token,
                    next_run_at=next_run_at,
                    priority=priority,
                    volatility=volatility,
                    consecutive_zero_changes=zero_streak,
                    fetched=result_counts.fetched,
                    now=now,
                )
                if released and job.term_code:
                    terms.update_last_scraped_at(session, job.term_code, now)
                elif released and job.kind == KIND_PROFILE_REVIEWS and job.entity_id:
                    terms.record_profile_scrape(
                        session, job.entity_id, review_count=result_counts.fetched, when=now
                    )
        except SQLAlchemyError as e:
            self._persistence_error(job, e, "complete")
            return
        except Exception as e:
            # apply 단계 실패(해석 불가 레코드 등): 트랜잭션은 롤백됨, 재시도 정책으로.
            self._fail(claim, e, started_at)
            return

        if not released:
            self._emit(EventKind.RELEASE_LOST, job, stage="complete")
            return
        self._emit(
            EventKind.COMPLETED,
            job,
            fetched=result_counts.fetched,
            created=result_counts.created,
            changed=result_counts.changed,
            unchanged=result_counts.unchanged,
            next_run_at=next_run_at.isoformat(),
            priority=priority,
        )

    def _fail(self, claim: jobs.Claim, exc: Exception, started_at: datetime) -> None:
        job = claim.job
        kind = classify_failure(exc)
        now = self.clock()
        decision = decide_failure(job.retry_count, job.max_retries, kind=kind, now=now)
        try:
            with self.session_scope() as session:
                error = f"{type(exc).__name__}: {exc}"
                retry_count = jobs.release_failure(session, job.id, self.token, decision, error, now=now)
                insert_result_sync(
                    session,
                    job,
                    worker_token=self.token,
                    started_at=started_at,
                    completed_at=now,
                    success=False,
                    permanent=decision.permanent,
                    error_message=error,
                    retry_count=decision.retry_count if retry_count is None else retry_count,
                )
        except SQLAlchemyError as e:
            self._persistence_error(job, e, "fail")
            return

        if retry_count is None:
            self._emit(EventKind.RELEASE_LOST, job, stage="fail")
            return
        self._emit(
            EventKind.FAILED,
            job,
            failure=str(kind),
            permanent=decision.permanent,
            retry_count=retry_count,
            delay_seconds=round(decision.delay_seconds, 1),
            error=str(exc)[:500],
        )
        if retry_count >= job.max_retries:
            self._emit(EventKind.TERMINAL, job, retry_count=retry_count, permanent=decision.permanent)
        if kind is FailureKind.PERMANENT and settings.sentry_dsn:
            sentry_sdk.capture_exception(exc)

    def _skip(self, claim: jobs.Claim, exc: ConfigurationSkip) -> None:
        """스케줄 대상 아님(알 수 없는 kind 등). retry_count는 그대로, 긴 주기로 미루고 lease 해제."""
        job = claim.job
        now = self.clock()
        delay = float(settings.archived_base_interval_seconds)
        decision = RetryDecision(
            retry_count=job.retry_count,
            terminal=False,
            permanent=False,
            next_run_at=now + timedelta(seconds=delay),
            delay_seconds=delay,
        )
        logger.warning("[%s] job_id=%s skipped: %s", self.name, job.id, exc)
        try:
            with self.session_scope() as session:
                released = jobs.release_failure(
                    session, job.id, self.token, decision, str(exc), now=now, count_failure=False
                )
        except SQLAlchemyError as e:
            self._persistence_error(job, e, "skip")
            return
        if released is None:
            self._emit(EventKind.RELEASE_LOST, job, stage="skip")

    def run_once(self) -> bool:
        """잡 1건 처리. claim할 잡이 없으면 False. DatastoreUnavailableError는 전파."""
        claim = self.claim()
        if claim is None:
            return False
        started_at = claim.claimed_at
        started = time.monotonic()
        job = claim.job
        logger.debug("[%s] processing job_id=%s target=%s", self.name, job.id, job.target_key)
        try:
            listing = self._fetch(job)
        except ConfigurationSkip as e:
            self._skip(claim, e)
        except Exception as e:
            self._fail(claim, e, started_at)
        else:
            self._complete(claim, listing, started_at)
        elapsed = time.monotonic() - started
        if elapsed > SLOW_JOB_SECONDS:
            logger.warning("[%s] slow job_id=%s target=%s: %.1fs", self.name, job.id, job.target_key, elapsed)
        return True

    def run(self) -> None:
        logger.info("[%s] worker started token=%s", self.name, self.token)
        try:
            while not self.stop_event.is_set():
                if not self.run_once():
                    self.stop_event.wait(self.poll_interval)
        finally:
            logger.info("[%s] worker stopped", self.name)


class WorkerPool:
    """worker_pool_size개 스레드. fetch client(rate limiter 포함)·applier·emitter는 공유."""

    def __init__(
        self,
        size: int | None = None,
        *,
        fetcher: ListingFetcher | None = None,
        applier: ListingApplier | None = None,
        emitter: EventEmitter | None = None,
        session_scope: SessionScope = get_sync_session,
        poll_interval: float | None = None,
    ) -> None:
        self.size = size or settings.worker_pool_size
        self.fetcher = fetcher or CatalogClient()
        self.applier = applier or ContentHashApplier()
        self.emitter = emitter or default_emitter()
        self.stop_event = threading.Event()
        self.fatal_error: BaseException | None = None
        self.workers = [
            ScrapeWorker(
                f"worker-{i}",
                fetcher=self.fetcher,
                applier=self.applier,
                emitter=self.emitter,
                session_scope=session_scope,
                stop_event=self.stop_event,
                poll_interval=poll_interval,
            )
            for i in range(self.size)
        ]
        self._threads: list[threading.Thread] = []

    def _run_worker(self, worker: ScrapeWorker) -> None:
        try:
            worker.run()
        except DatastoreUnavailableError as e:
            logger.critical("[%s] exiting: %s", worker.name, e)
            self.fatal_error = e
            self.stop_event.set()
        except Exception as e:
            logger.critical("[%s] crashed: %s", worker.name, e, exc_info=True)
            self.fatal_error = e
            self.stop_event.set()
            if settings.sentry_dsn:
                sentry_sdk.capture_exception(e)

    def start(self) -> None:
        for worker in self.workers:
            thread = threading.Thread(target=self._run_worker, args=(worker,), name=worker.name, daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info("Worker pool started: size=%d", self.size)

    def stop(self) -> None:
        """새 claim 중단. 진행 중 잡은 끝나거나 lease 만료로 회수됨."""
        self.stop_event.set()

    def join(self, timeout: float | None = None) -> None:
        for thread in self._threads:
            thread.join(timeout)

    def wait(self) -> int:
        """stop 또는 치명적 오류까지 대기. 종료 코드(0 정상, 1 오류) 반환."""
        while not self.stop_event.wait(1.0):
            pass
        self.join(timeout=settings.fetch_timeout_seconds)
        return 1 if self.fatal_error is not None else 0
