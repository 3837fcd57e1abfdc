"""Repository interfaces and their SQLAlchemy implementations."""

from grantmatch.repositories.base import (  # noqa: F401
    BatchJobRepository,
    CompanyRefreshTarget,
    CompanyRepository,
    DuplicateGroupRepository,
    EmbeddingRepository,
    GrantProgramRepository,
    GroupKey,
    MatchingResultRepository,
    Repositories,
    RepositoryScope,
)
