import asyncio

import pytest

from chat_engine.backends import BackendRegistry
from chat_engine.chain_manager import ChainManager, ChainState, SetChainOptions
from chat_engine.chains import ChainType, DirectChatChain, RetrievalQAChain
from note_core.errors import EmbeddingUnavailable, NoBackendConfigured, NoDocumentContent
from note_index.retriever import FaissRetriever, MultiQueryRetriever

from .conftest import FakeBackend

NOTE = "Apples are red.\n\nBananas are yellow.\n\nCherries are dark red and sweet."


@pytest.mark.asyncio
async def test_direct_chain_is_reused_unless_forced(manager, memory):
    first = await manager.set_chain(ChainType.LLM_CHAIN)
    again = await manager.set_chain("llm_chain")

    assert again is first
    assert manager.version == 1
    assert manager.state is ChainState.DIRECT_CHAT

    memory.append("q", "a")
    forced = await manager.set_chain(ChainType.LLM_CHAIN, SetChainOptions(force_new_creation=True))

    assert forced is not first
    assert manager.version == 2
    assert len(memory) == 0


@pytest.mark.asyncio
async def test_retrieval_without_content_keeps_previous_strategy(manager):
    direct = await manager.set_chain(ChainType.LLM_CHAIN)

    with pytest.raises(NoDocumentContent):
        await manager.set_chain(ChainType.RETRIEVAL_QA_CHAIN, SetChainOptions(document_text=""))

    assert manager.current is direct
    assert manager.state is ChainState.DIRECT_CHAT
    assert manager.version == 1


@pytest.mark.asyncio
async def test_retrieval_builds_then_reuses_cached_index(manager, memory, embedder):
    await manager.set_chain(ChainType.LLM_CHAIN)
    memory.append("q", "a")

    built = await manager.set_chain(ChainType.RETRIEVAL_QA_CHAIN, SetChainOptions(document_text=NOTE))

    assert isinstance(built, RetrievalQAChain)
    assert isinstance(built.retriever, MultiQueryRetriever)
    assert built.query_expansion
    assert embedder.document_calls == 1
    assert len(memory) == 0
    assert manager.state is ChainState.RETRIEVAL_QA

    await manager.set_chain(ChainType.LLM_CHAIN)
    cached = await manager.set_chain(ChainType.RETRIEVAL_QA_CHAIN, SetChainOptions(document_text=NOTE))

    assert isinstance(cached.retriever, FaissRetriever)
    assert not cached.query_expansion
    assert cached.content_hash == built.content_hash
    assert embedder.document_calls == 1


@pytest.mark.asyncio
async def test_identical_concurrent_requests_build_once(manager, embedder):
    options = SetChainOptions(document_text=NOTE)
    first, second = await asyncio.gather(
        manager.set_chain(ChainType.RETRIEVAL_QA_CHAIN, options),
        manager.set_chain(ChainType.RETRIEVAL_QA_CHAIN, options),
    )

    assert first is second
    assert manager.version == 1
    assert embedder.document_calls == 1


@pytest.mark.asyncio
async def test_embedding_failure_leaves_state_untouched(registry, memory, prompts, index_cache):
    def unavailable():
        raise EmbeddingUnavailable()

    manager = ChainManager(registry, memory, prompts, index_cache, unavailable)
    direct = await manager.set_chain(ChainType.LLM_CHAIN)

    with pytest.raises(EmbeddingUnavailable):
        await manager.set_chain(ChainType.RETRIEVAL_QA_CHAIN, SetChainOptions(document_text=NOTE))

    assert manager.current is direct
    assert manager.chain_type is ChainType.LLM_CHAIN


@pytest.mark.asyncio
async def test_set_chain_without_model_fails(memory, prompts, index_cache, embedder):
    manager = ChainManager(BackendRegistry(), memory, prompts, index_cache, lambda: embedder)

    with pytest.raises(NoBackendConfigured):
        await manager.set_chain(ChainType.LLM_CHAIN)
    assert manager.state is ChainState.UNINITIALIZED


@pytest.mark.asyncio
async def test_switch_model_rebinds_current_strategy(manager, registry):
    other = FakeBackend("Other")
    registry.register("Other", other)
    await manager.set_chain(ChainType.LLM_CHAIN)

    chain = await manager.switch_model("Other")

    assert isinstance(chain, DirectChatChain)
    assert chain.backend is other
    assert registry.active.display_name == "Other"


@pytest.mark.asyncio
async def test_failed_rebuild_restores_previous_model(registry, memory, prompts, index_cache, embedder):
    available = {"ok": True}

    def factory():
        if not available["ok"]:
            raise EmbeddingUnavailable()
        return embedder

    manager = ChainManager(registry, memory, prompts, index_cache, factory)
    registry.register("Other", FakeBackend("Other"))
    current = await manager.set_chain(ChainType.RETRIEVAL_QA_CHAIN, SetChainOptions(document_text=NOTE))

    available["ok"] = False
    with pytest.raises(EmbeddingUnavailable):
        await manager.switch_model("Other")

    assert registry.active.display_name == "Fake"
    assert manager.current is current


@pytest.mark.asyncio
async def test_switch_model_without_remembered_note_falls_back_to_direct_chat(
    registry, memory, prompts, index_cache, embedder
):
    manager = ChainManager(
        registry, memory, prompts, index_cache, lambda: embedder, default_chain_type=ChainType.RETRIEVAL_QA_CHAIN
    )
    other = FakeBackend("Other")
    registry.register("Other", other)

    chain = await manager.switch_model("Other")

    assert isinstance(chain, DirectChatChain)
    assert chain.backend is other
    assert manager.state is ChainState.DIRECT_CHAT
    assert registry.active.display_name == "Other"
    assert embedder.document_calls == 0


@pytest.mark.asyncio
async def test_ensure_chain_builds_default_strategy(manager):
    chain = await manager.ensure_chain()

    assert isinstance(chain, DirectChatChain)
    assert manager.current is chain


@pytest.mark.asyncio
async def test_rebuild_index_re_embeds_and_rebinds_retrieval(manager, embedder):
    await manager.set_chain(ChainType.RETRIEVAL_QA_CHAIN, SetChainOptions(document_text=NOTE))
    version = manager.version

    entry = await manager.rebuild_index(NOTE)

    assert embedder.document_calls == 2
    assert manager.version == version + 1
    assert manager.current.content_hash == entry.content_hash
    assert manager.describe()["state"] == "retrieval_qa"


@pytest.mark.asyncio
async def test_rebuild_index_rejects_empty_note(manager):
    with pytest.raises(NoDocumentContent):
        await manager.rebuild_index("")
