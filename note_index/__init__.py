"""Helpers for building, caching and querying per-note vector indexes."""

from .cache import VectorIndexCache, content_hash
from .config import EmbeddingConfig, IndexConfig
from .embedding_client import Embedder, EmbeddingClient
from .retriever import FaissRetriever, MultiQueryRetriever, RetrievedChunk
from .store import FileVectorStore, InMemoryVectorStore, VectorIndexEntry

__all__ = [
    "Embedder",
    "EmbeddingClient",
    "EmbeddingConfig",
    "FaissRetriever",
    "FileVectorStore",
    "IndexConfig",
    "InMemoryVectorStore",
    "MultiQueryRetriever",
    "RetrievedChunk",
    "VectorIndexCache",
    "VectorIndexEntry",
    "content_hash",
]
