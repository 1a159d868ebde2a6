"""ScrapeJob(스케줄 가능한 작업 단위) 및 ScrapeJobResult(실행 1회 이력) 모델.

ScrapeJob은 삭제하지 않는다(효과 이력 보존). 학기·잡 삭제는 FK RESTRICT로 막는다.
상태는 컬럼에 압축 저장되고 도메인 상태 해석은 app.services.job_state.derive_state 한 곳에서만 한다.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, UtcDateTime

KIND_SUBJECT = "subject"
KIND_PROFILE_REVIEWS = "profile_reviews"
JOB_KINDS = (KIND_SUBJECT, KIND_PROFILE_REVIEWS)


def subject_target_key(term_code: str, subject: str) -> str:
    """(term, subject) 잡 키. CatalogRecord.scope와 공유."""
    return f"{term_code}:{subject}"


def profile_target_key(external_id: str) -> str:
    return f"profile:{external_id}"


class ScrapeJob(Base):
    __tablename__ = "scrape_jobs"
    __table_args__ = (
        UniqueConstraint("kind", "target_key", name="uq_scrape_jobs_kind_target"),
        CheckConstraint("retry_count >= 0", name="chk_scrape_jobs_retry_nonneg"),
        CheckConstraint("max_retries >= 1", name="chk_scrape_jobs_max_retries_pos"),
        CheckConstraint("retry_count <= max_retries", name="chk_scrape_jobs_retry_ceiling"),
        # Reaper 조회(locked_at < cutoff)용. 잠긴 행만 인덱싱해 테이블이 커져도 스캔 비용 일정.
        Index(
            "ix_scrape_jobs_locked_at",
            "locked_at",
            postgresql_where=text("locked_at IS NOT NULL"),
            sqlite_where=text("locked_at IS NOT NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    target_key: Mapped[str] = mapped_column(String(255), nullable=False)
    term_code: Mapped[str | None] = mapped_column(
        ForeignKey("terms.code", ondelete="RESTRICT"), nullable=True, index=True
    )
    subject: Mapped[str | None] = mapped_column(String(16), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    manual_override: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # 수동 트리거 시각. lease 보유 중 트리거되면(triggered_at > locked_at) 해제 시 override 유지.
    triggered_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    next_run_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False, index=True)

    # Lease: locked_at이 lease timeout보다 젊을 때만 유효한 claim.
    locked_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    locked_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    permanent_failure: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # 적응형 주기/우선순위 입력값
    last_attempt_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    last_success_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    volatility: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    consecutive_zero_changes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_fetched_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        UtcDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        UtcDateTime,
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    @property
    def is_terminal(self) -> bool:
        return self.retry_count >= self.max_retries


# Claim 정렬(priority DESC, next_run_at ASC, id ASC)용.
Index(
    "ix_scrape_jobs_claim_order",
    ScrapeJob.priority.desc(),
    ScrapeJob.next_run_at,
    ScrapeJob.id,
)


class ScrapeJobResult(Base):
    """잡 실행 1회 결과. append-only, 갱신하지 않음. 모든 카운트는 0 이상."""

    __tablename__ = "scrape_job_results"
    __table_args__ = (
        CheckConstraint("duration_ms >= 0", name="chk_results_duration_ms_nonneg"),
        CheckConstraint("retry_count >= 0", name="chk_results_retry_count_nonneg"),
        CheckConstraint("records_fetched >= 0", name="chk_results_fetched_nonneg"),
        CheckConstraint("records_created >= 0", name="chk_results_created_nonneg"),
        CheckConstraint("records_changed >= 0", name="chk_results_changed_nonneg"),
        CheckConstraint("records_unchanged >= 0", name="chk_results_unchanged_nonneg"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        ForeignKey("scrape_jobs.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    target_key: Mapped[str] = mapped_column(String(255), nullable=False)
    term_code: Mapped[str | None] = mapped_column(String(16), nullable=True, index=True)
    worker_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    started_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    completed_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False, index=True)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    permanent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    records_fetched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    records_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    records_changed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    records_unchanged: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
