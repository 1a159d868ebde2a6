"""잡 상태의 명시적 태그 타입. {Pending, Claimed(lease), Completed, TerminalFailed}.

DB에는 locked_at/retry_count 등으로 압축 저장되지만, 상태 판정은 derive_state 한 곳에서만 한다.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from app.models.scrape_job import ScrapeJob


@dataclass(frozen=True)
class Pending:
    """claim 대기. due=True면 next_run_at이 지나 지금 claim 가능."""

    next_run_at: datetime
    due: bool
    retry_count: int


@dataclass(frozen=True)
class Claimed:
    """워커가 lease 보유 중. expired=True면 stale claim(누구나 재claim/회수 가능)."""

    locked_at: datetime
    locked_by: str | None
    lease_expires_at: datetime
    expired: bool


@dataclass(frozen=True)
class Completed:
    """직전 시도 성공. next_run_at까지 대기."""

    last_success_at: datetime
    next_run_at: datetime


@dataclass(frozen=True)
class TerminalFailed:
    """retry_count가 max_retries에 도달. 운영자 리셋 전까지 자동 claim 제외."""

    retry_count: int
    permanent: bool
    last_error: str | None


JobState = Pending | Claimed | Completed | TerminalFailed


def derive_state(job: ScrapeJob, now: datetime, lease_timeout: timedelta) -> JobState:
    """컬럼 조합 → 태그 상태. 우선순위: terminal > claimed > completed > pending."""
    if job.retry_count >= job.max_retries:
        return TerminalFailed(
            retry_count=job.retry_count,
            permanent=job.permanent_failure,
            last_error=job.last_error,
        )
    if job.locked_at is not None:
        expires = job.locked_at + lease_timeout
        return Claimed(
            locked_at=job.locked_at,
            locked_by=job.locked_by,
            lease_expires_at=expires,
            expired=expires <= now,
        )
    due = job.next_run_at <= now
    if (
        job.last_success_at is not None
        and job.last_error is None
        and job.retry_count == 0
        and not due
    ):
        return Completed(last_success_at=job.last_success_at, next_run_at=job.next_run_at)
    return Pending(next_run_at=job.next_run_at, due=due, retry_count=job.retry_count)


def state_name(state: JobState) -> str:
    """API/통계 표기용 문자열."""
    if isinstance(state, Claimed):
        return "stale" if state.expired else "claimed"
    if isinstance(state, TerminalFailed):
        return "terminal_failed"
    if isinstance(state, Completed):
        return "completed"
    return "pending"
