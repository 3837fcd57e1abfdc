"""Health-check router."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from grantmatch import database
from grantmatch.openai_provider import is_configured

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(request: Request):
    """Liveness plus which backing services are configured."""
    supervisor = request.app.state.supervisor
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "services": {
            "database": "configured" if database.engine is not None else "not_configured",
            "embeddings": "available" if is_configured() else "unavailable",
        },
        "activeJobs": supervisor.active_jobs,
    }
