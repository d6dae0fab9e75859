"""Strategy selection: which pipeline answers the next message.

The manager is a small state machine over ``UNINITIALIZED``, ``DIRECT_CHAT``
and ``RETRIEVAL_QA``. It owns exactly one current pipeline and swaps the
reference atomically on every rebuild; the ``version`` counter goes up with
each swap. Rebuilds are serialized by a lock, and an identical rebuild
request arriving while one is in flight waits for and returns the first
result instead of building twice. Any failure leaves the previous pipeline
and state in place.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Hashable, Optional, Tuple, Union

from note_core.errors import ChatEngineError, NoBackendConfigured, NoDocumentContent
from note_index.cache import VectorIndexCache
from note_index.embedding_client import Embedder
from note_index.retriever import MultiQueryRetriever
from note_index.store import VectorIndexEntry
from .backends import ActiveModel, BackendRegistry
from .chains import Chain, ChainType, DirectChatChain, RetrievalQAChain
from .memory import MemoryWindow
from .prompts import ChatPrompt, PromptAssembler

logger = logging.getLogger(__name__)


class ChainState(str, Enum):
    UNINITIALIZED = "uninitialized"
    DIRECT_CHAT = "direct_chat"
    RETRIEVAL_QA = "retrieval_qa"


_STATE_FOR_TYPE = {
    ChainType.LLM_CHAIN: ChainState.DIRECT_CHAT,
    ChainType.RETRIEVAL_QA_CHAIN: ChainState.RETRIEVAL_QA,
}


@dataclass(frozen=True)
class SetChainOptions:
    force_new_creation: bool = False
    document_text: Optional[str] = None
    prompt: Optional[ChatPrompt] = None


class ChainManager:
    """Build, rebuild and hand out the current pipeline."""

    def __init__(
        self,
        registry: BackendRegistry,
        memory: MemoryWindow,
        prompts: PromptAssembler,
        index_cache: VectorIndexCache,
        embedder_factory: Callable[[], Embedder],
        *,
        default_chain_type: ChainType = ChainType.LLM_CHAIN,
        query_expansion: int = 3,
    ) -> None:
        self.registry = registry
        self.memory = memory
        self.prompts = prompts
        self.index_cache = index_cache
        self.embedder_factory = embedder_factory
        self.query_expansion = query_expansion
        self._current: Optional[Chain] = None
        self._chain_type = default_chain_type
        self._options = SetChainOptions()
        self._version = 0
        self._lock = asyncio.Lock()
        self._pending: Dict[Hashable, "asyncio.Future[Chain]"] = {}

    @property
    def current(self) -> Optional[Chain]:
        return self._current

    @property
    def version(self) -> int:
        return self._version

    @property
    def chain_type(self) -> ChainType:
        """The active strategy, or the one that will be built first."""
        return self._chain_type

    @property
    def options(self) -> SetChainOptions:
        return self._options

    @property
    def state(self) -> ChainState:
        if self._current is None:
            return ChainState.UNINITIALIZED
        return _STATE_FOR_TYPE[self._current.chain_type]

    async def set_chain(
        self, chain_type: Union[str, ChainType], options: Optional[SetChainOptions] = None
    ) -> Chain:
        """Build (or reuse) the pipeline for ``chain_type`` and make it current."""
        chain_type = ChainType.parse(chain_type)
        options = options or SetChainOptions()
        if chain_type is ChainType.RETRIEVAL_QA_CHAIN and not (options.document_text or "").strip():
            logger.error("Cannot switch to %s: no note content provided", chain_type.value)
            raise NoDocumentContent()

        key = self._request_key(chain_type, options)
        pending = self._pending.get(key)
        if pending is not None:
            logger.debug("Chain rebuild for %s already in flight, awaiting it", chain_type.value)
            return await asyncio.shield(pending)

        task = asyncio.ensure_future(self._set_chain_locked(chain_type, options))
        self._pending[key] = task
        task.add_done_callback(lambda done: self._forget(key, done))
        return await asyncio.shield(task)

    async def switch_model(self, display_name: str) -> Chain:
        """Select a new model and rebind the active strategy to it.

        The registry switch and the rebuild succeed or fail together: if the
        rebuild fails the previous model is restored.
        """
        previous = self.registry.active
        self.registry.switch(display_name)
        options = dataclasses.replace(self._options, force_new_creation=True)
        try:
            return await self.set_chain(self._resume_chain_type(), options)
        except ChatEngineError:
            logger.error("Rebuilding the chain for model %s failed, restoring previous model", display_name)
            self.registry.restore(previous)
            raise

    async def ensure_chain(self) -> Chain:
        """Return the current pipeline, rebuilding it from the last-known options if needed."""
        chain = self._current
        active = self.registry.active
        if (
            isinstance(chain, (DirectChatChain, RetrievalQAChain))
            and chain.chain_type is self._chain_type
            and active is not None
            and chain.backend is active.backend
        ):
            return chain
        logger.error("Chain is not initialized properly, re-initializing chain: %s", self._chain_type.value)
        return await self.set_chain(
            self._resume_chain_type(), dataclasses.replace(self._options, force_new_creation=False)
        )

    async def rebuild_index(self, document_text: str) -> VectorIndexEntry:
        """Re-embed a note even if it is cached, then rebind retrieval to it."""
        if not document_text or not document_text.strip():
            raise NoDocumentContent()
        embedder = self.embedder_factory()
        entry = await self.index_cache.force_rebuild(document_text, embedder)
        if self.state is ChainState.RETRIEVAL_QA:
            await self.set_chain(ChainType.RETRIEVAL_QA_CHAIN, SetChainOptions(document_text=document_text))
        return entry

    def describe(self) -> Dict[str, object]:
        active = self.registry.active
        chain = self._current
        return {
            "state": self.state.value,
            "chain_type": self._chain_type.value,
            "version": self._version,
            "model": active.model if active else None,
            "model_display_name": active.display_name if active else None,
            "content_hash": getattr(chain, "content_hash", None),
        }

    async def _set_chain_locked(self, chain_type: ChainType, options: SetChainOptions) -> Chain:
        async with self._lock:
            active = self._require_backend()
            if chain_type is ChainType.LLM_CHAIN:
                chain: Chain = self._select_direct(active, options)
            else:
                chain = await self._select_retrieval(active, options)
            self._swap(chain, options)
            return chain

    def _select_direct(self, active: ActiveModel, options: SetChainOptions) -> Chain:
        prompt = options.prompt or self.prompts.chat_prompt()
        current = self._current
        if (
            not options.force_new_creation
            and isinstance(current, DirectChatChain)
            and current.backend is active.backend
            and current.prompt == prompt
        ):
            logger.debug("Reusing existing direct chat chain (version %d)", self._version)
            return current
        return DirectChatChain(backend=active.backend, memory=self.memory, prompt=prompt)

    async def _select_retrieval(self, active: ActiveModel, options: SetChainOptions) -> Chain:
        document_text = options.document_text or ""
        content_hash = self.index_cache.hash(document_text)
        embedder = self.embedder_factory()
        prompt = options.prompt or self.prompts.chat_prompt()

        entry = await self.index_cache.lookup(content_hash)
        if entry is not None:
            retriever = self.index_cache.rebuild_retriever(entry, embedder)
            logger.info("Existing vector store for document hash: %s", content_hash)
            return RetrievalQAChain(
                backend=active.backend,
                memory=self.memory,
                prompt=prompt,
                retriever=retriever,
                content_hash=content_hash,
            )

        entry = await self.index_cache.build(document_text, embedder)
        base = self.index_cache.rebuild_retriever(entry, embedder)
        retriever = MultiQueryRetriever(active.backend, base, query_count=self.query_expansion)
        logger.info(
            "New conversational retrieval QA chain with multi-query retriever created for document hash: %s",
            content_hash,
        )
        return RetrievalQAChain(
            backend=active.backend,
            memory=self.memory,
            prompt=prompt,
            retriever=retriever,
            content_hash=content_hash,
            query_expansion=True,
        )

    def _swap(self, chain: Chain, options: SetChainOptions) -> None:
        if chain is self._current:
            return
        previous_state = self.state
        new_state = _STATE_FOR_TYPE[chain.chain_type]
        if options.force_new_creation or previous_state not in (ChainState.UNINITIALIZED, new_state):
            self.memory.clear()
        self._current = chain
        self._chain_type = chain.chain_type
        self._options = dataclasses.replace(options, force_new_creation=False)
        self._version += 1
        logger.info("Set chain: %s (version %d)", chain.chain_type.value, self._version)

    def _resume_chain_type(self) -> ChainType:
        """The strategy to rebuild; retrieval without a remembered note falls back to direct chat."""
        if self._chain_type is ChainType.RETRIEVAL_QA_CHAIN and not (self._options.document_text or "").strip():
            logger.warning(
                "No note remembered for %s, rebuilding as %s", self._chain_type.value, ChainType.LLM_CHAIN.value
            )
            return ChainType.LLM_CHAIN
        return self._chain_type

    def _require_backend(self) -> ActiveModel:
        active = self.registry.active
        if active is None:
            logger.error("setChain failed: no chat model set")
            raise NoBackendConfigured()
        return active

    def _request_key(self, chain_type: ChainType, options: SetChainOptions) -> Tuple[Hashable, ...]:
        active = self.registry.active
        document_hash = self.index_cache.hash(options.document_text) if options.document_text else None
        return (
            chain_type,
            active.display_name if active else None,
            id(active.backend) if active else None,
            document_hash,
            options.force_new_creation,
            options.prompt,
        )

    def _forget(self, key: Hashable, task: "asyncio.Future[Chain]") -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
