"""
GrantMatch API - deduplication and matching engine for grant programs.

Serves the batch triggers (embedding backfill, matching refresh, regrouping),
matching stats and the duplicate-group review endpoints.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from grantmatch.config import EngineConfig
from grantmatch.embedding_store import Embedder
from grantmatch.openai_provider import generate_embedding
from grantmatch.repositories.base import RepositoryScope
from grantmatch.repositories.sql import sql_scope
from grantmatch.routers import (
    duplicate_groups,
    embeddings,
    grouping,
    health,
    jobs,
    matching,
)
from grantmatch.security import setup_security
from grantmatch.worker import JobSupervisor

# Load environment variables from .env file
load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _allowed_origins() -> list:
    raw = os.getenv("ALLOWED_ORIGINS", "")
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def create_app(
    config: Optional[EngineConfig] = None,
    *,
    embedder: Optional[Embedder] = None,
    scope: Optional[RepositoryScope] = None,
    supervisor: Optional[JobSupervisor] = None,
) -> FastAPI:
    """Build the API with its engine collaborators stored on ``app.state``."""
    config = config or EngineConfig.from_env()
    scope = scope or sql_scope
    supervisor = supervisor or JobSupervisor(
        scope, max_concurrent_jobs=config.max_concurrent_jobs
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not config.worker_api_key:
            logger.warning("WORKER_API_KEY not set; batch endpoints will reject every call")
        logger.info("GrantMatch API started")
        yield
        await supervisor.shutdown()
        logger.info("GrantMatch API shutdown complete")

    app = FastAPI(
        title="GrantMatch API",
        description="Grant program deduplication and company matching engine",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.embedder = embedder or generate_embedding
    app.state.scope = scope
    app.state.supervisor = supervisor

    if origins := _allowed_origins():
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "PATCH", "DELETE"],
            allow_headers=["Authorization", "Content-Type"],
        )

    # After CORS so the security middleware wraps it.
    setup_security(app)

    app.include_router(health.router)
    app.include_router(embeddings.router)
    app.include_router(matching.router)
    app.include_router(grouping.router)
    app.include_router(jobs.router)
    app.include_router(duplicate_groups.router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
