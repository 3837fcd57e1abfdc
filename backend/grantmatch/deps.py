"""Shared dependencies for the GrantMatch API routers.

Centralises the worker-credential check, the repository bundle for the
current request, and accessors for the objects ``create_app`` stores on
``app.state`` (config, embedder, repository scope, job supervisor), so
routers never import ``main``.
"""

import logging
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from grantmatch.config import EngineConfig
from grantmatch.database import get_db
from grantmatch.embedding_store import Embedder
from grantmatch.repositories.base import Repositories, RepositoryScope
from grantmatch.repositories.sql import sql_repositories
from grantmatch.security import log_security_event
from grantmatch.worker import JobSupervisor

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# HTTPBearer security scheme
# ---------------------------------------------------------------------------
security = HTTPBearer(auto_error=False)


# ---------------------------------------------------------------------------
# app.state accessors
# ---------------------------------------------------------------------------


def get_config(request: Request) -> EngineConfig:
    return request.app.state.config


def get_embedder(request: Request) -> Embedder:
    return request.app.state.embedder


def get_scope(request: Request) -> RepositoryScope:
    return request.app.state.scope


def get_supervisor(request: Request) -> JobSupervisor:
    return request.app.state.supervisor


async def get_repositories(db: AsyncSession = Depends(get_db)) -> Repositories:
    """Repositories bound to the request session (committed by ``get_db``)."""
    return sql_repositories(db)


# ---------------------------------------------------------------------------
# Authentication dependency
# ---------------------------------------------------------------------------


async def require_worker_token(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    config: EngineConfig = Depends(get_config),
) -> str:
    """Check the shared-secret bearer credential for batch endpoints.

    Missing configuration fails closed: with no ``WORKER_API_KEY`` every call
    is rejected.
    """
    expected = config.worker_api_key
    token = credentials.credentials if credentials is not None else ""

    if not expected:
        log_security_event("worker_key_not_configured", request)
    elif not token:
        log_security_event("auth_missing_token", request)
    elif secrets.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        return "worker"
    else:
        log_security_event("auth_invalid_token", request)

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid authentication credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


def _safe_error(operation: str, e: Exception) -> str:
    """Log the full exception and return a message without internal details."""
    logger.exception("Error during %s", operation)
    return f"{operation} failed. Please try again or contact support."
