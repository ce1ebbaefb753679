"""Vectors for the retrieval index.

Every indexed resource is reduced to one text fragment (see textualize) and
embedded with the OpenAI embeddings endpoint. Query text goes through the
same model so fragment and query vectors share a space.
"""

import logging
from collections.abc import Iterator
from typing import Any, NamedTuple

from openai import AsyncOpenAI

from app.config import settings
from app.services.textualize import resource_to_text

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "text-embedding-3-small"

# Vector width of DEFAULT_MODEL
EMBEDDING_DIMENSION = 1536

# Fragments per embeddings request
MAX_BATCH_SIZE = 100

# Fragments longer than this are cut before embedding (model input limit)
MAX_FRAGMENT_CHARS = 8000


class EmbeddedFragment(NamedTuple):
    """One indexed resource: the resource, its fragment text and its vector."""

    resource: dict[str, Any]
    text: str
    vector: list[float]


def _batches(texts: list[str], size: int) -> Iterator[list[str]]:
    for start in range(0, len(texts), size):
        yield texts[start : start + size]


class EmbeddingService:
    """Embeds resource fragments and query text for one index model.

    Tests inject a mock ``AsyncOpenAI`` client; otherwise one is built from
    ``settings.openai_api_key``.
    """

    def __init__(self, client: AsyncOpenAI | None = None, model: str | None = None):
        self._client = client if client is not None else AsyncOpenAI(api_key=settings.openai_api_key)
        self._model = model or settings.embedding_model or DEFAULT_MODEL

    @property
    def model(self) -> str:
        return self._model

    async def close(self) -> None:
        await self._client.close()

    async def embed_texts(self, texts: list[str], batch_size: int = MAX_BATCH_SIZE) -> list[list[float]]:
        """Vectors for texts, in input order, one request per batch.

        Raises:
            ValueError: If texts is empty.
            openai.APIError: Client failures propagate; the index manager
                decides whether to fall back.
        """
        if not texts:
            raise ValueError("texts list cannot be empty")

        vectors: list[list[float]] = []
        for batch in _batches([t[:MAX_FRAGMENT_CHARS] for t in texts], batch_size):
            response = await self._client.embeddings.create(model=self._model, input=batch)
            vectors.extend(item.embedding for item in response.data)

        logger.debug(f"Embedded {len(texts)} fragments with {self._model}")
        return vectors

    async def embed_text(self, text: str) -> list[float]:
        """Vector for a single query text."""
        return (await self.embed_texts([text]))[0]

    async def embed_resources(
        self, resources: list[dict[str, Any]], batch_size: int = MAX_BATCH_SIZE
    ) -> list[EmbeddedFragment]:
        """Fragment and embed resources for an index build.

        Resources whose fragment is empty (no resourceType) are left out, and
        no request is made when nothing remains.
        """
        fragments = [(r, text) for r in resources if (text := resource_to_text(r))]
        if not fragments:
            return []

        vectors = await self.embed_texts([text for _, text in fragments], batch_size=batch_size)
        return [EmbeddedFragment(r, text, vector) for (r, text), vector in zip(fragments, vectors)]
