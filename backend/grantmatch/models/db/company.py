"""Company-side ORM models consumed by the match scorer.

Tables
------
- companies             (profile text, company type and certifications)
- company_members       (a refresh needs at least one member to attribute results to)
- matching_preferences  (append-only; the newest row is the active preference)
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Text, func, text
from sqlalchemy.dialects.postgresql import ARRAY, UUID
from sqlalchemy.orm import Mapped, mapped_column

from grantmatch.models.db.base import Base

__all__ = ["Company", "CompanyMember", "CompanyMatchPreference"]


class Company(Base):
    __tablename__ = "companies"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    business_category: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    main_business: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    business_items: Mapped[Optional[list[str]]] = mapped_column(
        ARRAY(Text), server_default="{}", nullable=True
    )
    introduction: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    vision: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    mission: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    company_type: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_venture: Mapped[bool] = mapped_column(Boolean, server_default="false", nullable=False)
    is_innobiz: Mapped[bool] = mapped_column(Boolean, server_default="false", nullable=False)
    is_mainbiz: Mapped[bool] = mapped_column(Boolean, server_default="false", nullable=False)
    created_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=True
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class CompanyMember(Base):
    __tablename__ = "company_members"

    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("companies.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=True
    )


class CompanyMatchPreference(Base):
    __tablename__ = "matching_preferences"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
    )
    categories: Mapped[list[str]] = mapped_column(
        ARRAY(Text), server_default="{}", nullable=False
    )
    min_amount: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    max_amount: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    regions: Mapped[Optional[list[str]]] = mapped_column(ARRAY(Text), nullable=True)
    exclude_keywords: Mapped[Optional[list[str]]] = mapped_column(
        ARRAY(Text), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
