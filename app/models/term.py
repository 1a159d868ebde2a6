"""Term(학기) 및 학기별 과목 캐시 모델. 외부 동기화가 생성/갱신, 스케줄러는 scrape_enabled만 변경."""

from __future__ import annotations

from datetime import UTC, date, datetime

from sqlalchemy import Boolean, CheckConstraint, Date, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, UtcDateTime

TIER_ACTIVE = "active"
TIER_ARCHIVED = "archived"
TERM_TIERS = (TIER_ACTIVE, TIER_ARCHIVED)


class Term(Base):
    """학기. tier(active | archived)가 기본 재수집 주기를 결정."""

    __tablename__ = "terms"
    __table_args__ = (
        CheckConstraint("tier IN ('active', 'archived')", name="chk_terms_tier"),
    )

    code: Mapped[str] = mapped_column(String(16), primary_key=True)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tier: Mapped[str] = mapped_column(String(16), nullable=False, default=TIER_ACTIVE)
    scrape_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    last_scraped_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UtcDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        UtcDateTime,
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    subjects: Mapped[list["TermSubject"]] = relationship("TermSubject", back_populates="term")


class TermSubject(Base):
    """학기별 과목 목록 캐시. archived 학기는 캐시가 있으면 upstream 호출 생략."""

    __tablename__ = "term_subjects"

    term_code: Mapped[str] = mapped_column(
        ForeignKey("terms.code", ondelete="CASCADE"), primary_key=True
    )
    code: Mapped[str] = mapped_column(String(16), primary_key=True)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cached_at: Mapped[datetime] = mapped_column(
        UtcDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )

    term: Mapped["Term"] = relationship("Term", back_populates="subjects")
