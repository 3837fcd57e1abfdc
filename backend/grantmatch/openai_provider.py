"""
OpenAI embedding backend for GrantMatch.

Supports both Azure OpenAI and the standard OpenAI API.  The client is built
lazily on the first embedding call so the web app, the tests and the CLI
scripts can import this module without credentials; the first call fails with
:class:`EmbeddingError` when nothing is configured.

Environment Variables:
- AZURE_OPENAI_ENDPOINT / AZURE_OPENAI_KEY: Azure OpenAI (preferred when set)
- AZURE_OPENAI_EMBEDDING_API_VERSION: API version for embeddings (default: 2023-05-15)
- AZURE_OPENAI_DEPLOYMENT_EMBEDDING: embedding deployment (default: text-embedding-ada-002)
- OPENAI_API_KEY: standard OpenAI fallback
- OPENAI_EMBEDDING_MODEL: model for the standard API (default: text-embedding-ada-002)

Usage:
    from grantmatch.openai_provider import generate_embedding

    store = EmbeddingStore(repos.embeddings, generate_embedding)
"""

import logging
import os
from typing import List, Optional, Tuple, Union

from dotenv import load_dotenv
from openai import AsyncAzureOpenAI, AsyncOpenAI

from grantmatch.embedding_store import MAX_EMBEDDING_CHARS, EmbeddingError

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_MODEL = "text-embedding-ada-002"

_client: Optional[Union[AsyncOpenAI, AsyncAzureOpenAI]] = None
_model: str = DEFAULT_EMBEDDING_MODEL


# =============================================================================
# Client Initialization
# =============================================================================


def _create_client() -> Tuple[Union[AsyncOpenAI, AsyncAzureOpenAI], str]:
    azure_endpoint = os.getenv("AZURE_OPENAI_ENDPOINT")
    azure_key = os.getenv("AZURE_OPENAI_KEY") or os.getenv("AZURE_OPENAI_API_KEY")
    openai_key = os.getenv("OPENAI_API_KEY")

    if azure_endpoint and azure_key:
        logger.info(f"Using Azure OpenAI embeddings at {azure_endpoint}")
        client = AsyncAzureOpenAI(
            azure_endpoint=azure_endpoint,
            api_key=azure_key,
            api_version=os.getenv("AZURE_OPENAI_EMBEDDING_API_VERSION", "2023-05-15"),
        )
        return client, os.getenv(
            "AZURE_OPENAI_DEPLOYMENT_EMBEDDING", DEFAULT_EMBEDDING_MODEL
        )

    if openai_key:
        logger.info("Using standard OpenAI embeddings")
        return AsyncOpenAI(api_key=openai_key), os.getenv(
            "OPENAI_EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL
        )

    raise EmbeddingError(
        "No OpenAI credentials found. Set OPENAI_API_KEY or "
        "AZURE_OPENAI_ENDPOINT + AZURE_OPENAI_KEY"
    )


def _get_client() -> Tuple[Union[AsyncOpenAI, AsyncAzureOpenAI], str]:
    global _client, _model
    if _client is None:
        _client, _model = _create_client()
    return _client, _model


def is_configured() -> bool:
    """True when credentials for either backend are present."""
    return bool(
        (os.getenv("AZURE_OPENAI_ENDPOINT") and (os.getenv("AZURE_OPENAI_KEY") or os.getenv("AZURE_OPENAI_API_KEY")))
        or os.getenv("OPENAI_API_KEY")
    )


# =============================================================================
# Embedding generation
# =============================================================================


async def generate_embedding(text: str) -> List[float]:
    """Generate a 1536-dim embedding for *text*."""
    client, model = _get_client()
    truncated = text[:MAX_EMBEDDING_CHARS]
    response = await client.embeddings.create(model=model, input=truncated)
    return response.data[0].embedding


__all__ = ["generate_embedding", "is_configured", "DEFAULT_EMBEDDING_MODEL"]
