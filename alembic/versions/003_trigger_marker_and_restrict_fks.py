"""manual trigger marker and RESTRICT foreign keys

Revision ID: 003
Revises: 002
Create Date: 2026-10-19

triggered_at: lease 보유 중 들어온 수동 트리거를 해제 시점까지 보존.
scrape_jobs·scrape_job_results는 이력 보존 대상이므로 부모 삭제 시 CASCADE 대신 RESTRICT.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "003"
down_revision: Union[str, Sequence[str], None] = "002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# 001에서 이름 없이 만든 FK는 PostgreSQL 기본 이름(<table>_<column>_fkey)을 가짐.
FOREIGN_KEYS = (
    ("scrape_jobs_term_code_fkey", "scrape_jobs", "terms", ["term_code"], ["code"]),
    ("scrape_job_results_job_id_fkey", "scrape_job_results", "scrape_jobs", ["job_id"], ["id"]),
)


def _replace_foreign_keys(ondelete: str) -> None:
    for name, source, referent, local_cols, remote_cols in FOREIGN_KEYS:
        op.drop_constraint(name, source, type_="foreignkey")
        op.create_foreign_key(name, source, referent, local_cols, remote_cols, ondelete=ondelete)


def upgrade() -> None:
    op.add_column("scrape_jobs", sa.Column("triggered_at", sa.DateTime(timezone=True), nullable=True))
    _replace_foreign_keys("RESTRICT")


def downgrade() -> None:
    _replace_foreign_keys("CASCADE")
    op.drop_column("scrape_jobs", "triggered_at")
