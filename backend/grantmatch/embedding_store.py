"""
Embedding store: one vector per ``(source_type, source_id)``.

The store turns text into a vector through an injected async embedder (the
OpenAI backend in production, a deterministic function in tests) and writes
it through an :class:`EmbeddingRepository`.  Writing is idempotent: upserting
the same id again replaces the vector and metadata instead of adding a row.

Usage:
    from grantmatch.embedding_store import EmbeddingStore

    store = EmbeddingStore(repos.embeddings, embedder)
    await store.upsert("support_project", str(program.id), text, {"name": program.name})
    coverage = await store.count_by_source_type("support_project")
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import numpy as np

from grantmatch.repositories.base import EmbeddingRepository

logger = logging.getLogger(__name__)

Embedder = Callable[[str], Awaitable[List[float]]]

MAX_EMBEDDING_CHARS = 8000


class EmbeddingError(Exception):
    """Raised when a vector cannot be produced or stored."""


class EmptyContentError(EmbeddingError):
    """The text to embed is empty; retrying will not help."""


def cosine_similarity(first: List[float], second: List[float]) -> float:
    a = np.asarray(first, dtype=float)
    b = np.asarray(second, dtype=float)
    denominator = float(np.linalg.norm(a) * np.linalg.norm(b))
    if denominator == 0.0:
        return 0.0
    return float(np.dot(a, b) / denominator)


class EmbeddingStore:
    def __init__(self, repository: EmbeddingRepository, embedder: Embedder) -> None:
        self._repository = repository
        self._embedder = embedder

    async def embed_text(self, text: Optional[str]) -> List[float]:
        """Return the vector for *text* without storing it."""
        if text is None or not text.strip():
            raise EmptyContentError("No content to embed")
        truncated = text[:MAX_EMBEDDING_CHARS]
        try:
            vector = await self._embedder(truncated)
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"embedding backend failed: {type(e).__name__}: {e}") from e
        if not vector:
            raise EmbeddingError("embedding backend returned an empty vector")
        return list(vector)

    async def upsert(
        self,
        source_type: str,
        source_id: str,
        text: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> List[float]:
        """Embed *text* and store it for the source, replacing any previous vector.

        Raises:
            EmptyContentError: *text* is empty or whitespace.
            EmbeddingError: the backend failed.
        """
        vector = await self.embed_text(text)
        await self._repository.upsert(
            source_type,
            source_id,
            text[:MAX_EMBEDDING_CHARS],
            vector,
            metadata or {},
        )
        logger.debug(f"Stored {source_type} embedding for {source_id} ({len(vector)} dims)")
        return vector

    async def count_by_source_type(self, source_type: str) -> int:
        return await self._repository.count_by_source_type(source_type)

    async def get_vectors(
        self, source_type: str, source_ids: Iterable[str]
    ) -> Dict[str, List[float]]:
        return await self._repository.get_vectors(source_type, source_ids)

    async def similarity(
        self, source_type: str, query: List[float], source_ids: Iterable[str]
    ) -> Dict[str, float]:
        return await self._repository.similarity(source_type, query, source_ids)
