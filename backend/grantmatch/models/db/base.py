"""Declarative base re-export and the shared timestamp columns."""

from datetime import datetime

from sqlalchemy import DateTime, func
from sqlalchemy.orm import Mapped, mapped_column

from grantmatch.database import Base

__all__ = ["Base", "TimestampMixin"]


class TimestampMixin:
    """``created_at`` / ``updated_at`` maintained by the database.

    ``onupdate`` bumps ``updated_at`` on ORM updates.  Writes that must not
    move it (engine bookkeeping on catalog rows) set it to itself.
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
