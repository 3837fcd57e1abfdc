"""BatchJob ORM model.

Status table for background batch work (``queued`` -> ``processing`` ->
``completed`` | ``failed``).  The HTTP layer inserts the row and returns; the
job supervisor fills in the outcome.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Integer, Text, func, text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from grantmatch.models.db.base import Base

__all__ = [
    "BatchJob",
    "JOB_QUEUED",
    "JOB_PROCESSING",
    "JOB_COMPLETED",
    "JOB_FAILED",
]

JOB_QUEUED = "queued"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"


class BatchJob(Base):
    __tablename__ = "batch_jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    job_type: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        Text, server_default=JOB_QUEUED, nullable=False
    )
    params: Mapped[Optional[dict]] = mapped_column(
        JSONB, server_default="{}", nullable=True
    )
    requested_by: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Outcome
    queued_count: Mapped[int] = mapped_column(Integer, server_default="0", nullable=False)
    processed: Mapped[int] = mapped_column(Integer, server_default="0", nullable=False)
    success_count: Mapped[int] = mapped_column(Integer, server_default="0", nullable=False)
    error_count: Mapped[int] = mapped_column(Integer, server_default="0", nullable=False)
    skipped_count: Mapped[int] = mapped_column(Integer, server_default="0", nullable=False)
    error_details: Mapped[Optional[list]] = mapped_column(
        JSONB, server_default="[]", nullable=True
    )
    result_summary: Mapped[Optional[dict]] = mapped_column(
        JSONB, server_default="{}", nullable=True
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=True
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
