"""SQLAlchemy 2.0 ORM models for GrantMatch.

Import all models here so Alembic can discover them via::

    from grantmatch.models.db import Base  # noqa: F401

Every model must be imported at module level to register with the
``DeclarativeBase`` metadata.
"""

from grantmatch.models.db.base import Base, TimestampMixin  # noqa: F401

from grantmatch.models.db.duplicate_group import DuplicateGroup  # noqa: F401
from grantmatch.models.db.grant_program import GrantProgram  # noqa: F401
from grantmatch.models.db.company import (  # noqa: F401
    Company,
    CompanyMatchPreference,
    CompanyMember,
)
from grantmatch.models.db.matching_result import MatchingResult  # noqa: F401
from grantmatch.models.db.embedding import DocumentEmbedding  # noqa: F401
from grantmatch.models.db.batch_job import BatchJob  # noqa: F401
