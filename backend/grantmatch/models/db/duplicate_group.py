"""DuplicateGroup ORM model.

Maps to ``project_groups``.  A group owns the *grouping* of near-duplicate
announcements, never the programs themselves: members point at the group via
``support_projects.group_id`` and can be detached without being deleted.

Invariants maintained by the repository layer:

- exactly one member has ``is_canonical = true`` and it is
  ``canonical_project_id``
- ``source_count`` equals the number of live member programs
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, Text, text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from grantmatch.models.db.base import Base, TimestampMixin

__all__ = [
    "DuplicateGroup",
    "PENDING_REVIEW",
    "AUTO",
    "CONFIRMED",
    "REJECTED",
    "REVIEW_STATUSES",
    "REVIEWER_STATUSES",
]

PENDING_REVIEW = "pending_review"
AUTO = "auto"
CONFIRMED = "confirmed"
REJECTED = "rejected"

REVIEW_STATUSES = (PENDING_REVIEW, AUTO, CONFIRMED, REJECTED)
# ``auto`` is assigned by the grouper only.
REVIEWER_STATUSES = (PENDING_REVIEW, CONFIRMED, REJECTED)


class DuplicateGroup(TimestampMixin, Base):
    __tablename__ = "project_groups"
    __table_args__ = (
        Index("ix_project_groups_key", "normalized_name", "project_year"),
        Index("ix_project_groups_review_status", "review_status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    normalized_name: Mapped[str] = mapped_column(Text, nullable=False)
    project_year: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    canonical_project_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False
    )
    merge_confidence: Mapped[float] = mapped_column(
        Float, server_default="1.0", nullable=False
    )
    review_status: Mapped[str] = mapped_column(
        Text, server_default=PENDING_REVIEW, nullable=False
    )
    source_count: Mapped[int] = mapped_column(
        Integer, server_default="0", nullable=False
    )

    # sha256 over the material fields of the member set
    fingerprint: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    canonical_locked: Mapped[bool] = mapped_column(
        Boolean, server_default="false", nullable=False, default=False
    )
    merged_data: Mapped[Optional[dict]] = mapped_column(
        JSONB, server_default="{}", nullable=True
    )

    reviewed_by: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
