"""Embeddings for conversation summaries stored as agent memories.

Optional: without EMBEDDING_API_KEY no provider is built and memories are
stored without a vector. Failures never propagate; ``embed`` returns None
and the caller stores the memory anyway.
"""

from __future__ import annotations

import logging

import httpx

from flotilla.config import Settings

logger = logging.getLogger(__name__)

# Summaries are short; anything longer is cut before it reaches the API
MAX_INPUT_CHARS = 8000


class EmbeddingProvider:
    def __init__(
        self,
        api_key: str,
        model: str,
        dimensions: int,
        base_url: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.model = model
        self.dimensions = dimensions
        self._http = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=httpx.Timeout(30.0, connect=10.0),
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> EmbeddingProvider | None:
        if not settings.embedding_api_key:
            logger.info("No embedding API key, memories will be stored without vectors")
            return None
        return cls(
            api_key=settings.embedding_api_key,
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            base_url=settings.embedding_base_url,
        )

    async def embed(self, text: str) -> list[float] | None:
        """Vector for ``text``, or None if the API call fails or returns junk."""
        text = text.strip()[:MAX_INPUT_CHARS]
        if not text:
            return None
        try:
            response = await self._http.post(
                "/embeddings",
                json={"model": self.model, "input": text, "dimensions": self.dimensions},
            )
            response.raise_for_status()
            vector = response.json()["data"][0]["embedding"]
        except (httpx.HTTPError, KeyError, IndexError, ValueError) as e:
            logger.warning("Embedding request failed (%s): %s", self.model, e)
            return None

        if len(vector) != self.dimensions:
            logger.warning("Embedding has %d dimensions, expected %d", len(vector), self.dimensions)
            return None
        return vector

    async def close(self) -> None:
        await self._http.aclose()
