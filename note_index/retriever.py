"""Similarity retrieval over cached note indexes.

:class:`FaissRetriever` rehydrates an in-memory FAISS index straight from a
persisted :class:`~note_index.store.VectorIndexEntry`, so a cache hit never
re-embeds the document. :class:`MultiQueryRetriever` layers query expansion
on top: the chat model proposes alternative phrasings of the question, each
phrasing is searched, and the results are merged. Expansion only affects
what is read; nothing persisted is touched.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import faiss  # type: ignore
import numpy as np
from fastapi.concurrency import run_in_threadpool

from note_core.errors import ChatEngineError, EmbeddingUnavailable
from .embedding_client import Embedder
from .store import VectorIndexEntry

logger = logging.getLogger(__name__)

_LIST_MARKER = re.compile(r"^\s*(?:[-*]|\d+[.)])\s*")

MULTI_QUERY_PROMPT = (
    "You are an AI language model assistant. Your task is to generate {count} different versions "
    "of the given user question to retrieve relevant documents from a vector database. By "
    "generating multiple perspectives on the user question, your goal is to help the user overcome "
    "some of the limitations of distance-based similarity search.\n\n"
    "Provide these alternative questions separated by newlines between XML tags. For example:\n\n"
    "<questions>\nQuestion 1\nQuestion 2\nQuestion 3\n</questions>\n\n"
    "Original question: {question}"
)


@dataclass
class RetrievedChunk:
    text: str
    score: float
    index: int

    def as_dict(self) -> Dict[str, Any]:
        return {"id": self.index, "score": self.score, "text": self.text}


class Retriever(Protocol):
    async def aretrieve(self, query: str) -> List[RetrievedChunk]: ...


class CompletionModel(Protocol):
    async def complete(self, messages: List[Dict[str, str]], params: Any = None) -> str: ...


class FaissRetriever:
    """Cosine-similarity search over one document's chunks."""

    def __init__(self, entry: VectorIndexEntry, embedder: Embedder, *, top_k: int = 4) -> None:
        if top_k <= 0:
            raise ValueError("top_k must be a positive integer")
        self.content_hash = entry.content_hash
        self.embedder = embedder
        self.top_k = top_k
        self._chunks = list(entry.chunks)
        self._index: Optional[Any] = None

        if self._chunks:
            vectors = np.ascontiguousarray(entry.vectors, dtype="float32").copy()
            faiss.normalize_L2(vectors)
            self._index = faiss.IndexFlatIP(vectors.shape[1])
            self._index.add(vectors)
        logger.debug("Rehydrated retriever for %s with %d chunk(s)", self.content_hash, len(self._chunks))

    @property
    def size(self) -> int:
        return len(self._chunks)

    def search(self, query: str, top_k: Optional[int] = None) -> List[RetrievedChunk]:
        """Embed a query and return the nearest chunks, best first."""
        if not query or not query.strip():
            raise ValueError("Query text must not be empty")
        if self._index is None:
            return []

        embed_start = time.perf_counter()
        embedding = self.embedder.embed_query(query)
        logger.debug("Query embedded in %.2f seconds", time.perf_counter() - embed_start)
        if not embedding:
            raise EmbeddingUnavailable("Embedding service returned no vectors for the query")

        vector = np.array(embedding, dtype="float32").reshape(1, -1)
        if vector.shape[1] != self._index.d:
            raise EmbeddingUnavailable(
                f"Embedding dimension {vector.shape[1]} does not match index dimension {self._index.d}"
            )
        faiss.normalize_L2(vector)

        search_k = min(top_k or self.top_k, self._index.ntotal)
        scores, ids = self._index.search(vector, search_k)

        results: List[RetrievedChunk] = []
        for idx, score in zip(ids[0], scores[0]):
            if idx < 0:
                continue
            results.append(RetrievedChunk(text=self._chunks[idx], score=float(score), index=int(idx)))
        logger.debug("Search returned %d result(s)", len(results))
        return results

    async def aretrieve(self, query: str) -> List[RetrievedChunk]:
        return await run_in_threadpool(self.search, query)


class MultiQueryRetriever:
    """Query expansion over a base retriever."""

    def __init__(
        self,
        llm: CompletionModel,
        retriever: Retriever,
        *,
        query_count: int = 3,
        include_original: bool = True,
    ) -> None:
        self.llm = llm
        self.retriever = retriever
        self.query_count = query_count
        self.include_original = include_original

    @property
    def content_hash(self) -> Optional[str]:
        return getattr(self.retriever, "content_hash", None)

    async def generate_queries(self, question: str) -> List[str]:
        prompt = MULTI_QUERY_PROMPT.format(count=self.query_count, question=question)
        try:
            text = await self.llm.complete([{"role": "user", "content": prompt}])
        except ChatEngineError as exc:
            logger.warning("Query expansion failed, searching with the original question only: %s", exc)
            return []
        return parse_query_lines(text)[: self.query_count]

    async def aretrieve(self, query: str) -> List[RetrievedChunk]:
        queries = await self.generate_queries(query)
        if self.include_original or not queries:
            queries = [query] + [q for q in queries if q != query]
        logger.debug("Multi-query retrieval with %d query variant(s)", len(queries))

        merged: List[RetrievedChunk] = []
        seen = set()
        for variant in queries:
            for chunk in await self.retriever.aretrieve(variant):
                key = (chunk.index, chunk.text)
                if key in seen:
                    continue
                seen.add(key)
                merged.append(chunk)
        return merged


def parse_query_lines(text: str) -> List[str]:
    """Pull one query per line out of a model reply, tolerating list markers."""
    body = text or ""
    if "<questions>" in body:
        body = body.split("<questions>", 1)[1].split("</questions>", 1)[0]
    queries = []
    for line in body.splitlines():
        cleaned = _LIST_MARKER.sub("", line).strip()
        if cleaned:
            queries.append(cleaned)
    return queries
