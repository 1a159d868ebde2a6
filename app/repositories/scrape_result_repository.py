"""ScrapeJobResult Repository. 잡 실행 이력 기록·조회."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from app.models.scrape_job import ScrapeJob, ScrapeJobResult

ERROR_MESSAGE_MAX_LEN = 2000


@dataclass(frozen=True)
class ResultCounts:
    """결과 행에 기록할 카운트. 모두 0 이상. created·changed는 applier 값 그대로(음수만 0)."""

    fetched: int
    created: int
    changed: int
    unchanged: int

    @property
    def touched(self) -> int:
        """신규 + 변경. 변동성·무변경 연속 횟수 계산용."""
        return self.created + self.changed


def normalize_counts(fetched: int, created: int, changed: int) -> ResultCounts:
    """
    applier가 돌려준 값을 기록용으로 정규화.
    created·changed는 그대로 기록, unchanged = fetched - created - changed. 음수는 0으로 clamp.
    """
    fetched = max(0, fetched)
    created = max(0, created)
    changed = max(0, changed)
    return ResultCounts(
        fetched=fetched,
        created=created,
        changed=changed,
        unchanged=max(0, fetched - created - changed),
    )


def insert_result_sync(
    session: Session,
    job: ScrapeJob,
    *,
    worker_token: str | None,
    started_at: datetime,
    completed_at: datetime,
    success: bool,
    counts: ResultCounts | None = None,
    permanent: bool = False,
    error_message: str | None = None,
    retry_count: int | None = None,
) -> ScrapeJobResult:
    """실행 1건 기록 (동기, 워커용). append-only."""
    counts = counts or ResultCounts(0, 0, 0, 0)
    duration_ms = max(0, int((completed_at - started_at).total_seconds() * 1000))
    row = ScrapeJobResult(
        job_id=job.id,
        kind=job.kind,
        target_key=job.target_key,
        term_code=job.term_code,
        worker_token=worker_token,
        started_at=started_at,
        completed_at=completed_at,
        duration_ms=duration_ms,
        success=success,
        permanent=permanent,
        error_message=error_message[:ERROR_MESSAGE_MAX_LEN] if error_message else None,
        retry_count=max(0, job.retry_count if retry_count is None else retry_count),
        records_fetched=counts.fetched,
        records_created=counts.created,
        records_changed=counts.changed,
        records_unchanged=counts.unchanged,
    )
    session.add(row)
    session.flush()
    return row


def compute_result_stats_sync(
    session: Session,
    since: datetime,
    term_code: str | None = None,
) -> dict[str, Any]:
    """since 이후 집계. 성공/실패 수, 평균 소요시간, 레코드 합계."""
    stmt = select(
        func.count(ScrapeJobResult.id).label("runs"),
        func.coalesce(func.sum(case((ScrapeJobResult.success.is_(True), 1), else_=0)), 0).label("succeeded"),
        func.coalesce(func.sum(case((ScrapeJobResult.permanent.is_(True), 1), else_=0)), 0).label("permanent"),
        func.avg(ScrapeJobResult.duration_ms).label("avg_duration_ms"),
        func.coalesce(func.sum(ScrapeJobResult.records_fetched), 0).label("records_fetched"),
        func.coalesce(func.sum(ScrapeJobResult.records_changed), 0).label("records_changed"),
    ).where(ScrapeJobResult.completed_at >= since)
    if term_code is not None:
        stmt = stmt.where(ScrapeJobResult.term_code == term_code)
    row = session.execute(stmt).one()
    runs = int(row.runs or 0)
    succeeded = int(row.succeeded or 0)
    return {
        "since": since.isoformat(),
        "term_code": term_code,
        "runs": runs,
        "succeeded": succeeded,
        "failed": runs - succeeded,
        "permanent": int(row.permanent or 0),
        "avg_duration_ms": round(float(row.avg_duration_ms), 1) if row.avg_duration_ms is not None else None,
        "records_fetched": int(row.records_fetched or 0),
        "records_changed": int(row.records_changed or 0),
    }


async def get_recent_results(
    session: AsyncSession,
    limit: int = 50,
    term_code: str | None = None,
) -> list[dict[str, Any]]:
    """최근 실행 이력. GET /internal/scrape-results용."""
    stmt = select(ScrapeJobResult).order_by(ScrapeJobResult.completed_at.desc(), ScrapeJobResult.id.desc())
    if term_code is not None:
        stmt = stmt.where(ScrapeJobResult.term_code == term_code)
    result = await session.execute(stmt.limit(limit))
    rows = result.scalars().all()
    return [
        {
            "job_id": r.job_id,
            "target_key": r.target_key,
            "term_code": r.term_code,
            "worker_token": r.worker_token,
            "started_at": r.started_at.isoformat() if r.started_at else None,
            "completed_at": r.completed_at.isoformat() if r.completed_at else None,
            "duration_ms": r.duration_ms,
            "success": r.success,
            "permanent": r.permanent,
            "error_message": r.error_message,
            "retry_count": r.retry_count,
            "records_fetched": r.records_fetched,
            "records_created": r.records_created,
            "records_changed": r.records_changed,
            "records_unchanged": r.records_unchanged,
        }
        for r in rows
    ]
