"""lease reaper partial index and non-negative result counts

Revision ID: 002
Revises: 001
Create Date: 2026-10-19

Reaper 조회(locked_at < cutoff)는 잠긴 행만 보므로 partial index.
결과 카운트는 음수 저장 불가(clamp 누락 시 INSERT 실패로 드러남).
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "002"
down_revision: Union[str, Sequence[str], None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

RESULT_CHECKS = (
    ("chk_results_duration_ms_nonneg", "duration_ms >= 0"),
    ("chk_results_retry_count_nonneg", "retry_count >= 0"),
    ("chk_results_fetched_nonneg", "records_fetched >= 0"),
    ("chk_results_created_nonneg", "records_created >= 0"),
    ("chk_results_changed_nonneg", "records_changed >= 0"),
    ("chk_results_unchanged_nonneg", "records_unchanged >= 0"),
)


def upgrade() -> None:
    op.create_index(
        "ix_scrape_jobs_locked_at",
        "scrape_jobs",
        ["locked_at"],
        unique=False,
        postgresql_where=sa.text("locked_at IS NOT NULL"),
    )
    for name, condition in RESULT_CHECKS:
        op.create_check_constraint(name, "scrape_job_results", condition)


def downgrade() -> None:
    for name, _ in reversed(RESULT_CHECKS):
        op.drop_constraint(name, "scrape_job_results", type_="check")
    op.drop_index("ix_scrape_jobs_locked_at", table_name="scrape_jobs")
