import asyncio
import json
import time

import numpy as np
import pytest

from note_core.errors import NoDocumentContent, PersistenceError
from note_index.cache import VectorIndexCache, content_hash
from note_index.config import IndexConfig
from note_index.retriever import FaissRetriever, MultiQueryRetriever, parse_query_lines
from note_index.store import FileVectorStore, InMemoryVectorStore, VectorIndexEntry

from .conftest import FakeBackend, FakeEmbedder

NOTE = "Apples are red.\n\nBananas are yellow.\n\nCherries are dark red and sweet."


class FailingStore(InMemoryVectorStore):
    def save(self, entry):
        raise PersistenceError("disk full")


class SlowFirstReadStore(InMemoryVectorStore):
    """The first read sees an empty store and returns late."""

    def __init__(self, delay: float) -> None:
        super().__init__()
        self.delay = delay
        self.reads = 0

    def load(self, key):
        self.reads += 1
        entry = super().load(key)
        if self.reads == 1:
            time.sleep(self.delay)
        return entry


def test_content_hash_is_stable_and_sensitive():
    assert content_hash(NOTE) == content_hash(NOTE)
    assert content_hash(NOTE) != content_hash(NOTE + " ")
    assert len(content_hash(NOTE)) == 64


@pytest.mark.asyncio
async def test_long_notes_are_split_within_chunk_size(vector_store, embedder):
    text = " ".join(f"word{i}" for i in range(200))
    cache = VectorIndexCache(vector_store, config=IndexConfig(chunk_size=50))

    entry = await cache.build(text, embedder)

    assert len(entry.chunks) > 1
    assert all(len(chunk) <= 50 for chunk in entry.chunks)
    assert " ".join(entry.chunks).split() == text.split()


@pytest.mark.asyncio
async def test_splitting_prefers_paragraph_boundaries(index_cache, embedder):
    entry = await index_cache.build(NOTE, embedder)

    assert entry.chunks[0] == "Apples are red."
    assert entry.chunks[1] == "Bananas are yellow."
    assert embedder.embedded_texts == entry.chunks


def test_file_store_round_trip(tmp_path):
    store = FileVectorStore(str(tmp_path))
    entry = VectorIndexEntry.from_embeddings("abc123", ["one", "two"], [[1.0, 0.0], [0.0, 1.0]])
    store.save(entry)

    loaded = store.load("abc123")
    assert loaded.chunks == ["one", "two"]
    np.testing.assert_allclose(loaded.vectors, entry.vectors)
    assert store.keys() == ["abc123"]
    assert not list((tmp_path / "abc123").glob(".*.tmp"))

    store.delete("abc123")
    assert store.load("abc123") is None


def test_file_store_detects_inconsistent_key(tmp_path):
    store = FileVectorStore(str(tmp_path))
    store.save(VectorIndexEntry.from_embeddings("abc", ["x"], [[1.0]]))
    metadata_path = tmp_path / "abc" / "metadata.json"
    metadata = json.loads(metadata_path.read_text())
    metadata["content_hash"] = "other"
    metadata_path.write_text(json.dumps(metadata))

    with pytest.raises(PersistenceError):
        store.load("abc")


def test_file_store_rejects_path_like_keys(tmp_path):
    with pytest.raises(PersistenceError):
        FileVectorStore(str(tmp_path)).load("../escape")


@pytest.mark.asyncio
async def test_cache_hit_does_not_re_embed(index_cache, embedder):
    first = await index_cache.build(NOTE, embedder)
    second = await index_cache.build(NOTE, embedder)

    assert embedder.document_calls == 1
    assert second.content_hash == first.content_hash == content_hash(NOTE)


@pytest.mark.asyncio
async def test_concurrent_builds_for_same_note_are_deduplicated(index_cache):
    embedder = FakeEmbedder(delay=0.05)
    results = await asyncio.gather(index_cache.build(NOTE, embedder), index_cache.build(NOTE, embedder))

    assert embedder.document_calls == 1
    assert results[0] is results[1]
    assert not index_cache._pending


@pytest.mark.asyncio
async def test_build_started_during_a_slow_cache_read_is_not_repeated(embedder):
    cache = VectorIndexCache(SlowFirstReadStore(delay=0.3))

    first = asyncio.ensure_future(cache.build(NOTE, embedder))
    await asyncio.sleep(0.05)
    second = await cache.build(NOTE, embedder)

    assert await first is second
    assert embedder.document_calls == 1


@pytest.mark.asyncio
async def test_force_rebuild_re_embeds(index_cache, embedder):
    await index_cache.build(NOTE, embedder)
    await index_cache.force_rebuild(NOTE, embedder)
    assert embedder.document_calls == 2


@pytest.mark.asyncio
async def test_empty_document_is_rejected(index_cache, embedder):
    with pytest.raises(NoDocumentContent):
        await index_cache.build("   ", embedder)
    assert embedder.document_calls == 0


@pytest.mark.asyncio
async def test_persistence_failure_keeps_entry_for_session(embedder):
    failures = []
    cache = VectorIndexCache(FailingStore(), on_persistence_error=failures.append)

    entry = await cache.build(NOTE, embedder)
    again = await cache.build(NOTE, embedder)

    assert len(failures) == 1
    assert again is entry
    assert embedder.document_calls == 1
    assert await cache.keys() == [entry.content_hash]


@pytest.mark.asyncio
async def test_expired_entries_are_rebuilt(vector_store, embedder):
    cache = VectorIndexCache(vector_store, config=IndexConfig(ttl_days=1))
    entry = await cache.build(NOTE, embedder)
    entry.created_at = time.time() - 2 * 24 * 60 * 60

    assert await cache.lookup(entry.content_hash) is None
    await cache.build(NOTE, embedder)
    assert embedder.document_calls == 2


@pytest.mark.asyncio
async def test_remove_drops_entry(index_cache, embedder):
    entry = await index_cache.build(NOTE, embedder)
    await index_cache.remove(entry.content_hash)
    assert await index_cache.keys() == []


@pytest.mark.asyncio
async def test_retriever_rebuilt_from_cache_finds_nearest_chunk(index_cache, embedder):
    entry = await index_cache.build(NOTE, embedder)
    retriever = index_cache.rebuild_retriever(entry, embedder, top_k=1)

    results = await retriever.aretrieve("bananas yellow")

    assert embedder.document_calls == 1
    assert [chunk.text for chunk in results] == ["Bananas are yellow."]


def test_retriever_on_empty_entry_returns_nothing(embedder):
    entry = VectorIndexEntry.from_embeddings("empty", [], [])
    assert FaissRetriever(entry, embedder).search("anything") == []


@pytest.mark.asyncio
async def test_multi_query_merges_variants_without_duplicates(index_cache, embedder):
    entry = await index_cache.build(NOTE, embedder)
    base = index_cache.rebuild_retriever(entry, embedder, top_k=1)
    llm = FakeBackend(completion="<questions>\n1. apples red\n2. cherries sweet\n</questions>")
    retriever = MultiQueryRetriever(llm, base, query_count=3)

    results = await retriever.aretrieve("apples")

    assert embedder.queries == ["apples", "apples red", "cherries sweet"]
    texts = [chunk.text for chunk in results]
    assert len(texts) == len(set(texts))
    assert "Apples are red." in texts
    assert retriever.content_hash == entry.content_hash


def test_parse_query_lines_strips_list_markers():
    reply = "Sure:\n<questions>\n- first one\n2) second one\n\n</questions>"
    assert parse_query_lines(reply) == ["first one", "second one"]
