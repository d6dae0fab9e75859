"""Content-hash keyed cache of note vector indexes.

A note's full text is hashed; the digest keys a persisted
:class:`~note_index.store.VectorIndexEntry`. Identical text is always a cache
hit and never re-embedded, any edit produces a new digest and a fresh build.
Lookups and builds for the same digest are de-duplicated as one unit: a
second caller awaits the work already in flight, including its store read,
instead of repeating the embedding work.

Persistence is best effort. When the store cannot be read the entry is
rebuilt from source; when it cannot be written the freshly built entry is
kept in memory for the rest of the session and the failure is reported
through ``on_persistence_error``.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional

from fastapi.concurrency import run_in_threadpool
from langchain_text_splitters import RecursiveCharacterTextSplitter, TextSplitter

from note_core.errors import NoDocumentContent, PersistenceError
from .config import IndexConfig
from .embedding_client import Embedder
from .retriever import FaissRetriever
from .store import VectorIndexEntry, VectorStorePersistence

logger = logging.getLogger(__name__)


def content_hash(text: str) -> str:
    """Return the SHA-256 hex digest of ``text``."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class VectorIndexCache:
    """Build, persist and rehydrate per-document similarity indexes."""

    def __init__(
        self,
        store: VectorStorePersistence,
        *,
        config: Optional[IndexConfig] = None,
        splitter: Optional[TextSplitter] = None,
        on_persistence_error: Optional[Callable[[PersistenceError], None]] = None,
    ) -> None:
        self.store = store
        self.config = config or IndexConfig()
        self.splitter = splitter or RecursiveCharacterTextSplitter(
            chunk_size=self.config.chunk_size, chunk_overlap=self.config.chunk_overlap
        )
        self.on_persistence_error = on_persistence_error
        self._session_entries: Dict[str, VectorIndexEntry] = {}
        self._pending: Dict[str, "asyncio.Future[VectorIndexEntry]"] = {}

    hash = staticmethod(content_hash)

    async def lookup(self, key: str) -> Optional[VectorIndexEntry]:
        """Return the cached entry for ``key``; read failures count as a miss."""
        try:
            entry = await run_in_threadpool(self.store.load, key)
        except PersistenceError as exc:
            logger.warning("Index cache read failed for %s, falling back to rebuild: %s", key, exc)
            entry = None

        if entry is None:
            entry = self._session_entries.get(key)
        if entry is not None and entry.is_expired(self.config.ttl_days):
            logger.info("Cached index %s is older than %d day(s), discarding", key, self.config.ttl_days)
            await self._discard(key)
            return None
        return entry

    async def build(self, document_text: str, embedder: Embedder) -> VectorIndexEntry:
        """Return the index for ``document_text``, embedding it only on a miss.

        The cache read and the build it may trigger run as one unit per
        digest, so an overlapping caller never starts a second embedding.
        """
        key = self._require_hash(document_text)
        return await self._run_once(key, lambda: self._lookup_or_build(key, document_text, embedder))

    async def force_rebuild(self, document_text: str, embedder: Embedder) -> VectorIndexEntry:
        """Re-embed and overwrite the entry even when one is cached."""
        key = self._require_hash(document_text)
        logger.info("Forced rebuild requested for document hash %s", key)
        return await self._run_once(key, lambda: self._build(key, document_text, embedder))

    def rebuild_retriever(
        self, entry: VectorIndexEntry, embedder: Embedder, *, top_k: Optional[int] = None
    ) -> FaissRetriever:
        """Rehydrate a retriever from persisted vectors without re-embedding."""
        return FaissRetriever(entry, embedder, top_k=top_k or self.config.top_k)

    async def keys(self) -> List[str]:
        persisted = await run_in_threadpool(self.store.keys)
        return sorted(set(persisted) | set(self._session_entries))

    async def remove(self, key: str) -> None:
        logger.info("Removing cached index %s", key)
        await self._discard(key)

    def _require_hash(self, document_text: str) -> str:
        if not document_text or not document_text.strip():
            raise NoDocumentContent()
        return content_hash(document_text)

    async def _run_once(
        self, key: str, work: Callable[[], Awaitable[VectorIndexEntry]]
    ) -> VectorIndexEntry:
        pending = self._pending.get(key)
        if pending is not None:
            logger.info("Index work for %s already in flight, awaiting it", key)
            return await asyncio.shield(pending)

        task = asyncio.ensure_future(work())
        self._pending[key] = task
        task.add_done_callback(lambda done: self._forget(key, done))
        return await asyncio.shield(task)

    def _forget(self, key: str, task: "asyncio.Future[VectorIndexEntry]") -> None:
        if self._pending.get(key) is task:
            del self._pending[key]

    async def _lookup_or_build(self, key: str, document_text: str, embedder: Embedder) -> VectorIndexEntry:
        entry = await self.lookup(key)
        if entry is not None:
            logger.info("Index cache hit for document hash %s", key)
            return entry
        return await self._build(key, document_text, embedder)

    async def _build(self, key: str, document_text: str, embedder: Embedder) -> VectorIndexEntry:
        start_time = time.perf_counter()
        logger.info("Creating vector index for document hash %s", key)
        entry = await run_in_threadpool(self._embed, key, document_text, embedder)
        self._session_entries[key] = entry

        try:
            await run_in_threadpool(self.store.save, entry)
        except PersistenceError as exc:
            logger.error("Index %s kept in memory only, persisting failed: %s", key, exc)
            if self.on_persistence_error is not None:
                self.on_persistence_error(exc)
        else:
            self._session_entries.pop(key, None)

        logger.info(
            "Vector index %s created with %d chunk(s) in %.2f seconds",
            key,
            len(entry.chunks),
            time.perf_counter() - start_time,
        )
        return entry

    def _embed(self, key: str, document_text: str, embedder: Embedder) -> VectorIndexEntry:
        chunks = self.splitter.split_text(document_text)
        embeddings = embedder.embed_documents(chunks) if chunks else []
        return VectorIndexEntry.from_embeddings(key, chunks, embeddings)

    async def _discard(self, key: str) -> None:
        self._session_entries.pop(key, None)
        try:
            await run_in_threadpool(self.store.delete, key)
        except PersistenceError as exc:
            logger.warning("Failed to delete expired index %s: %s", key, exc)
