"""MatchingResult ORM model.

Rows are append-only: every refresh inserts a fresh set so history can be
charted, and readers surface the newest ``created_at`` per company.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, Text, func, text
from sqlalchemy.dialects.postgresql import ARRAY, UUID
from sqlalchemy.orm import Mapped, mapped_column

from grantmatch.models.db.base import Base

__all__ = ["MatchingResult"]


class MatchingResult(Base):
    __tablename__ = "matching_results"
    __table_args__ = (
        Index("ix_matching_results_company_created", "company_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    company_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )
    project_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    total_score: Mapped[int] = mapped_column(Integer, nullable=False)
    category_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    region_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    amount_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    semantic_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    industry_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    eligibility_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    confidence: Mapped[str] = mapped_column(Text, nullable=False)
    match_reasons: Mapped[list[str]] = mapped_column(
        ARRAY(Text), server_default="{}", nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
