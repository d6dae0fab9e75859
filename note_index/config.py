"""Configuration objects for the note index."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional


@dataclass
class EmbeddingConfig:
    """Embedding endpoint connection details."""

    endpoint: str = "https://api.openai.com/v1/embeddings"
    model: str = "text-embedding-3-small"
    api_key: Optional[str] = None
    batch_size: int = 32
    request_timeout: int = 60
    model_kwargs: Dict[str, object] = field(default_factory=dict)

    @property
    def is_configured(self) -> bool:
        """Local endpoints run without a key; hosted ones need one."""
        if not self.endpoint:
            return False
        if self.api_key:
            return True
        return self.endpoint.startswith(("http://localhost", "http://127.0.0.1"))


@dataclass
class IndexConfig:
    """Runtime controls for building and querying note indexes."""

    store_dir: str = "./.note_index"
    chunk_size: int = 1000
    chunk_overlap: int = 0
    top_k: int = 4
    ttl_days: int = 0
    query_expansion: int = 3
