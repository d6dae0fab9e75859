"""Client wrapper for OpenAI-compatible embeddings endpoints."""

from __future__ import annotations

import logging
from typing import Dict, List, Protocol, Sequence

import requests

from note_core.errors import EmbeddingUnavailable
from .config import EmbeddingConfig

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    """Anything that maps text to a fixed-size numeric vector."""

    def embed_documents(self, texts: Sequence[str]) -> List[List[float]]: ...

    def embed_query(self, text: str) -> List[float]: ...


class EmbeddingClient:
    """Map text to fixed-size vectors through a remote embeddings endpoint."""

    def __init__(self, config: EmbeddingConfig) -> None:
        if not config.is_configured:
            raise EmbeddingUnavailable(details={"endpoint": config.endpoint})
        self.config = config

    @property
    def provider(self) -> str:
        return f"{self.config.model}@{self.config.endpoint}"

    def embed_documents(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed texts in batches, preserving input order."""
        vectors: List[List[float]] = []
        batch_size = max(1, self.config.batch_size)
        for start in range(0, len(texts), batch_size):
            batch = list(texts[start : start + batch_size])
            logger.debug("Embedding batch %d-%d of %d", start, start + len(batch), len(texts))
            vectors.extend(self._embed_batch(batch))
        return vectors

    def embed_query(self, text: str) -> List[float]:
        vectors = self._embed_batch([text])
        if not vectors:
            raise EmbeddingUnavailable("Embedding service returned no vectors for the query")
        return vectors[0]

    def _embed_batch(self, batch: List[str]) -> List[List[float]]:
        payload: Dict[str, object] = {"model": self.config.model, "input": batch}
        if self.config.model_kwargs:
            payload.update(self.config.model_kwargs)

        try:
            response = requests.post(
                self.config.endpoint,
                json=payload,
                headers=self._headers(),
                timeout=self.config.request_timeout,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.error("Embedding request to %s failed: %s", self.config.endpoint, exc)
            raise EmbeddingUnavailable(details={"error": str(exc)}) from exc

        items = sorted(data.get("data") or [], key=lambda item: item.get("index", 0))
        vectors = [list(item.get("embedding") or []) for item in items]
        if len(vectors) != len(batch):
            raise EmbeddingUnavailable(
                "Embedding service returned an unexpected number of vectors",
                details={"expected": len(batch), "received": len(vectors)},
            )
        return vectors

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers
