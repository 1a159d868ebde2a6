"""CatalogRecord 모델. upstream 레코드(섹션·리뷰) 원본 + content_hash로 변경 감지."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, JsonType, UtcDateTime


class CatalogRecord(Base):
    __tablename__ = "catalog_records"
    __table_args__ = (
        UniqueConstraint("scope", "external_id", name="uq_catalog_record_scope_external"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    # scope: "{term}:{subject}" 또는 "profile:{external_id}". 잡의 target_key와 동일.
    scope: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UtcDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        UtcDateTime,
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
