"""DocumentEmbedding ORM model.

One vector per ``(source_type, source_id)``.  ``source_type`` is one of
``support_project`` or ``company``.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Column, DateTime, Text, UniqueConstraint, func, text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.types import NullType
from sqlalchemy.orm import Mapped, mapped_column

from grantmatch.models.db.base import Base

__all__ = ["DocumentEmbedding"]


class DocumentEmbedding(Base):
    __tablename__ = "document_embeddings"
    __table_args__ = (
        UniqueConstraint("source_type", "source_id", name="uq_document_embeddings_source"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    source_type: Mapped[str] = mapped_column(Text, nullable=False)
    source_id: Mapped[str] = mapped_column(Text, nullable=False)
    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # pgvector VECTOR(1536): use old-style Column(NullType) because
    # SQLAlchemy 2.0 Mapped[] cannot resolve pgvector types.
    embedding = Column("embedding", NullType(), nullable=True)
    metadata_: Mapped[Optional[dict]] = mapped_column(
        "metadata", JSONB, server_default="{}", nullable=True
    )
    created_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=True
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=True
    )
