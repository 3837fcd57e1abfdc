"""GrantProgram ORM model.

The ``support_projects`` table holds every grant announcement produced by
ingestion.  Rows are never physically deleted; ``deleted_at`` marks a soft
delete.  Three groups of columns are written by this engine:

- normalized_name / project_year : the clustering key (grouper)
- group_id / is_canonical        : duplicate-group membership (grouper, review)
- needs_embedding                : cleared by the embedding backfill
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import ARRAY, UUID
from sqlalchemy.orm import Mapped, mapped_column

from grantmatch.models.db.base import Base, TimestampMixin

__all__ = ["GrantProgram", "PROGRAM_ACTIVE", "PROGRAM_CLOSED"]

PROGRAM_ACTIVE = "active"
PROGRAM_CLOSED = "closed"


class GrantProgram(TimestampMixin, Base):
    __tablename__ = "support_projects"
    __table_args__ = (
        Index("ix_support_projects_group_key", "normalized_name", "project_year"),
        Index("ix_support_projects_group_id", "group_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    external_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # ── Announcement ─────────────────────────────────────────────────────
    name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    organization: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sub_category: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    region: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sub_region: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    target: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    eligibility: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    application_process: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    evaluation_criteria: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    detail_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attachment_urls: Mapped[Optional[list[str]]] = mapped_column(
        ARRAY(Text), server_default="{}", nullable=True
    )

    # ── Funding window ───────────────────────────────────────────────────
    amount_min: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    amount_max: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    deadline: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    is_permanent: Mapped[bool] = mapped_column(
        Boolean, server_default="false", nullable=False, default=False
    )
    status: Mapped[str] = mapped_column(
        Text, server_default=PROGRAM_ACTIVE, nullable=False, default=PROGRAM_ACTIVE
    )

    # ── Deduplication ────────────────────────────────────────────────────
    normalized_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    project_year: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    group_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("project_groups.id", ondelete="SET NULL"),
        nullable=True,
    )
    is_canonical: Mapped[bool] = mapped_column(
        Boolean, server_default="false", nullable=False, default=False
    )

    # ── Embedding pipeline ───────────────────────────────────────────────
    needs_embedding: Mapped[bool] = mapped_column(
        Boolean, server_default="true", nullable=False, default=True
    )

    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    @property
    def is_live(self) -> bool:
        return self.deleted_at is None
