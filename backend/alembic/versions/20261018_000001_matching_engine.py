"""Create grant catalog, duplicate groups, matching and batch job tables.

Revision ID: 0001_matching_engine
Revises:
Create Date: 2026-10-18
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID

revision: str = "0001_matching_engine"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id_column() -> sa.Column:
    return sa.Column(
        "id",
        UUID(),
        server_default=sa.text("gen_random_uuid()"),
        primary_key=True,
    )


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    # --- project_groups ---
    op.create_table(
        "project_groups",
        _id_column(),
        sa.Column("normalized_name", sa.Text(), nullable=False),
        sa.Column("project_year", sa.Integer(), nullable=True),
        sa.Column("canonical_project_id", UUID(), nullable=False),
        sa.Column("merge_confidence", sa.Float(), server_default="1.0", nullable=False),
        sa.Column("review_status", sa.Text(), server_default="pending_review", nullable=False),
        sa.Column("source_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("fingerprint", sa.Text(), nullable=True),
        sa.Column("canonical_locked", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("merged_data", JSONB(), server_default="{}", nullable=True),
        sa.Column("reviewed_by", sa.Text(), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "review_status IN ('pending_review','auto','confirmed','rejected')",
            name="project_groups_review_status_check",
        ),
        sa.CheckConstraint(
            "merge_confidence >= 0 AND merge_confidence <= 1",
            name="project_groups_merge_confidence_check",
        ),
    )
    op.create_index("ix_project_groups_key", "project_groups", ["normalized_name", "project_year"])
    op.create_index("ix_project_groups_review_status", "project_groups", ["review_status"])

    # --- support_projects ---
    op.create_table(
        "support_projects",
        _id_column(),
        sa.Column("external_id", sa.Text(), nullable=True),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("organization", sa.Text(), nullable=True),
        sa.Column("category", sa.Text(), nullable=True),
        sa.Column("sub_category", sa.Text(), nullable=True),
        sa.Column("region", sa.Text(), nullable=True),
        sa.Column("sub_region", sa.Text(), nullable=True),
        sa.Column("target", sa.Text(), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("eligibility", sa.Text(), nullable=True),
        sa.Column("application_process", sa.Text(), nullable=True),
        sa.Column("evaluation_criteria", sa.Text(), nullable=True),
        sa.Column("detail_url", sa.Text(), nullable=True),
        sa.Column("attachment_urls", ARRAY(sa.Text()), server_default="{}", nullable=True),
        # Funding window
        sa.Column("amount_min", sa.BigInteger(), nullable=True),
        sa.Column("amount_max", sa.BigInteger(), nullable=True),
        sa.Column("deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_permanent", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("status", sa.Text(), server_default="active", nullable=False),
        # Deduplication
        sa.Column("normalized_name", sa.Text(), nullable=True),
        sa.Column("project_year", sa.Integer(), nullable=True),
        sa.Column(
            "group_id",
            UUID(),
            sa.ForeignKey("project_groups.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("is_canonical", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("needs_embedding", sa.Boolean(), server_default="true", nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_support_projects_group_key",
        "support_projects",
        ["normalized_name", "project_year"],
    )
    op.create_index("ix_support_projects_group_id", "support_projects", ["group_id"])
    op.create_index(
        "ix_support_projects_needs_embedding",
        "support_projects",
        ["needs_embedding"],
        postgresql_where=sa.text("needs_embedding AND deleted_at IS NULL"),
    )

    # --- companies ---
    op.create_table(
        "companies",
        _id_column(),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("business_category", sa.Text(), nullable=True),
        sa.Column("main_business", sa.Text(), nullable=True),
        sa.Column("business_items", ARRAY(sa.Text()), server_default="{}", nullable=True),
        sa.Column("introduction", sa.Text(), nullable=True),
        sa.Column("vision", sa.Text(), nullable=True),
        sa.Column("mission", sa.Text(), nullable=True),
        sa.Column("company_type", sa.Text(), nullable=True),
        sa.Column("is_venture", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("is_innobiz", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("is_mainbiz", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "company_members",
        sa.Column(
            "company_id",
            UUID(),
            sa.ForeignKey("companies.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("user_id", UUID(), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "matching_preferences",
        _id_column(),
        sa.Column(
            "company_id",
            UUID(),
            sa.ForeignKey("companies.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("categories", ARRAY(sa.Text()), server_default="{}", nullable=False),
        sa.Column("min_amount", sa.BigInteger(), nullable=True),
        sa.Column("max_amount", sa.BigInteger(), nullable=True),
        sa.Column("regions", ARRAY(sa.Text()), nullable=True),
        sa.Column("exclude_keywords", ARRAY(sa.Text()), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index(
        "ix_matching_preferences_company",
        "matching_preferences",
        ["company_id", "created_at"],
    )

    # --- matching_results (append-only) ---
    op.create_table(
        "matching_results",
        _id_column(),
        sa.Column("company_id", UUID(), nullable=False),
        sa.Column("user_id", UUID(), nullable=True),
        sa.Column("project_id", UUID(), nullable=False),
        sa.Column("total_score", sa.Integer(), nullable=False),
        sa.Column("category_score", sa.Integer(), nullable=True),
        sa.Column("region_score", sa.Integer(), nullable=True),
        sa.Column("amount_score", sa.Integer(), nullable=True),
        sa.Column("semantic_score", sa.Integer(), nullable=True),
        sa.Column("industry_score", sa.Integer(), nullable=True),
        sa.Column("eligibility_score", sa.Integer(), nullable=True),
        sa.Column("confidence", sa.Text(), nullable=False),
        sa.Column("match_reasons", ARRAY(sa.Text()), server_default="{}", nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.CheckConstraint(
            "total_score >= 0 AND total_score <= 100",
            name="matching_results_total_score_check",
        ),
    )
    op.create_index(
        "ix_matching_results_company_created",
        "matching_results",
        ["company_id", "created_at"],
    )

    # --- document_embeddings ---
    op.create_table(
        "document_embeddings",
        _id_column(),
        sa.Column("source_type", sa.Text(), nullable=False),
        sa.Column("source_id", sa.Text(), nullable=False),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("metadata", JSONB(), server_default="{}", nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("source_type", "source_id", name="uq_document_embeddings_source"),
    )
    op.execute("ALTER TABLE document_embeddings ADD COLUMN embedding vector(1536)")

    # --- batch_jobs ---
    op.create_table(
        "batch_jobs",
        _id_column(),
        sa.Column("job_type", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), server_default="queued", nullable=False),
        sa.Column("params", JSONB(), server_default="{}", nullable=True),
        sa.Column("requested_by", sa.Text(), nullable=True),
        sa.Column("queued_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("processed", sa.Integer(), server_default="0", nullable=False),
        sa.Column("success_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("error_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("skipped_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("error_details", JSONB(), server_default="[]", nullable=True),
        sa.Column("result_summary", JSONB(), server_default="{}", nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('queued','processing','completed','failed')",
            name="batch_jobs_status_check",
        ),
    )
    op.create_index("ix_batch_jobs_type_created", "batch_jobs", ["job_type", "created_at"])


def downgrade() -> None:
    op.drop_table("batch_jobs")
    op.drop_table("document_embeddings")
    op.drop_table("matching_results")
    op.drop_table("matching_preferences")
    op.drop_table("company_members")
    op.drop_table("companies")
    op.drop_table("support_projects")
    op.drop_table("project_groups")
