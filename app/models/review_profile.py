"""ReviewProfile(외부 리뷰 프로필) 모델. Secondary schedule의 엔티티 단위."""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, UtcDateTime


class ReviewProfile(Base):
    """외부 프로필 1건. review_count는 리뷰 재수집 주기 산정에 사용."""

    __tablename__ = "review_profiles"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    external_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False, index=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    review_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reviews_last_scraped_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UtcDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )
