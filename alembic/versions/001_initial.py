"""initial schema: terms, term_subjects, review_profiles, catalog_records, scrape_jobs, scrape_job_results

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "terms",
        sa.Column("code", sa.String(16), nullable=False),
        sa.Column("description", sa.String(255), nullable=True),
        sa.Column("tier", sa.String(16), nullable=False, server_default="active"),
        sa.Column("scrape_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("last_scraped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("tier IN ('active', 'archived')", name="chk_terms_tier"),
        sa.PrimaryKeyConstraint("code"),
    )

    op.create_table(
        "term_subjects",
        sa.Column("term_code", sa.String(16), nullable=False),
        sa.Column("code", sa.String(16), nullable=False),
        sa.Column("description", sa.String(255), nullable=True),
        sa.Column("cached_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["term_code"], ["terms.code"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("term_code", "code"),
    )

    op.create_table(
        "review_profiles",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("external_id", sa.String(128), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=True),
        sa.Column("review_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reviews_last_scraped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_review_profiles_external_id", "review_profiles", ["external_id"], unique=True)

    op.create_table(
        "catalog_records",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("scope", sa.String(255), nullable=False),
        sa.Column("external_id", sa.String(255), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("content_hash", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("scope", "external_id", name="uq_catalog_record_scope_external"),
    )
    op.create_index("ix_catalog_records_scope", "catalog_records", ["scope"], unique=False)

    op.create_table(
        "scrape_jobs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("target_key", sa.String(255), nullable=False),
        sa.Column("term_code", sa.String(16), nullable=True),
        sa.Column("subject", sa.String(16), nullable=True),
        sa.Column("entity_id", sa.String(128), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("manual_override", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_by", sa.String(64), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("permanent_failure", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("volatility", sa.Float(), nullable=False, server_default="0"),
        sa.Column("consecutive_zero_changes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_fetched_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["term_code"], ["terms.code"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("kind", "target_key", name="uq_scrape_jobs_kind_target"),
        sa.CheckConstraint("retry_count >= 0", name="chk_scrape_jobs_retry_nonneg"),
        sa.CheckConstraint("max_retries >= 1", name="chk_scrape_jobs_max_retries_pos"),
        sa.CheckConstraint("retry_count <= max_retries", name="chk_scrape_jobs_retry_ceiling"),
    )
    op.create_index("ix_scrape_jobs_term_code", "scrape_jobs", ["term_code"], unique=False)
    op.create_index("ix_scrape_jobs_next_run_at", "scrape_jobs", ["next_run_at"], unique=False)
    # claim 정렬: priority DESC, next_run_at ASC, id ASC
    op.create_index(
        "ix_scrape_jobs_claim_order",
        "scrape_jobs",
        [sa.text("priority DESC"), "next_run_at", "id"],
        unique=False,
    )

    op.create_table(
        "scrape_job_results",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("job_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("target_key", sa.String(255), nullable=False),
        sa.Column("term_code", sa.String(16), nullable=True),
        sa.Column("worker_token", sa.String(64), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("permanent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("records_fetched", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("records_created", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("records_changed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("records_unchanged", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["job_id"], ["scrape_jobs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_scrape_job_results_job_id", "scrape_job_results", ["job_id"], unique=False)
    op.create_index("ix_scrape_job_results_term_code", "scrape_job_results", ["term_code"], unique=False)
    op.create_index("ix_scrape_job_results_completed_at", "scrape_job_results", ["completed_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_scrape_job_results_completed_at", table_name="scrape_job_results")
    op.drop_index("ix_scrape_job_results_term_code", table_name="scrape_job_results")
    op.drop_index("ix_scrape_job_results_job_id", table_name="scrape_job_results")
    op.drop_table("scrape_job_results")
    op.drop_index("ix_scrape_jobs_claim_order", table_name="scrape_jobs")
    op.drop_index("ix_scrape_jobs_next_run_at", table_name="scrape_jobs")
    op.drop_index("ix_scrape_jobs_term_code", table_name="scrape_jobs")
    op.drop_table("scrape_jobs")
    op.drop_index("ix_catalog_records_scope", table_name="catalog_records")
    op.drop_table("catalog_records")
    op.drop_index("ix_review_profiles_external_id", table_name="review_profiles")
    op.drop_table("review_profiles")
    op.drop_table("term_subjects")
    op.drop_table("terms")
