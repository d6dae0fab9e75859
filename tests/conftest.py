import asyncio
import string
import time
from typing import Dict, List, Optional, Sequence

import pytest

from chat_engine.backends import BackendRegistry
from chat_engine.chain_manager import ChainManager
from chat_engine.config import ChatConfig, GenerationParams
from chat_engine.llm_client import ChatBackend
from chat_engine.memory import MemoryWindow
from chat_engine.notifier import Notifier
from chat_engine.prompts import PromptAssembler
from chat_engine.runner import ChainRunner
from note_index.cache import VectorIndexCache
from note_index.config import IndexConfig
from note_index.store import InMemoryVectorStore


class FakeBackend(ChatBackend):
    """Scripted chat model: each stream call plays the next reply's deltas."""

    def __init__(
        self,
        display_name: str = "Fake",
        model: str = "fake-model",
        replies: Optional[List[List[str]]] = None,
        completion: str = "",
        error: Optional[Exception] = None,
        gate: Optional[asyncio.Event] = None,
    ) -> None:
        super().__init__(display_name, model)
        self.replies = replies or [["Hi", " there"]]
        self.completion = completion
        self.error = error
        self.gate = gate
        self.calls: List[List[Dict[str, str]]] = []
        self.params: List[Optional[GenerationParams]] = []
        self.complete_calls: List[List[Dict[str, str]]] = []

    async def stream(self, messages, params=None):
        self.calls.append(messages)
        self.params.append(params)
        deltas = self.replies[min(len(self.calls), len(self.replies)) - 1]
        for position, delta in enumerate(deltas):
            yield delta
            if self.gate is not None and position == 0:
                await self.gate.wait()
        if self.error is not None:
            raise self.error

    async def complete(self, messages, params=None):
        self.complete_calls.append(messages)
        return self.completion


class FakeEmbedder:
    """Letter-frequency vectors; counts how many texts it embedded."""

    dimension = len(string.ascii_lowercase) + 1

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.document_calls = 0
        self.embedded_texts: List[str] = []
        self.queries: List[str] = []

    def _vector(self, text: str) -> List[float]:
        lowered = text.lower()
        return [float(lowered.count(letter)) for letter in string.ascii_lowercase] + [1.0]

    def embed_documents(self, texts: Sequence[str]) -> List[List[float]]:
        self.document_calls += 1
        if self.delay:
            time.sleep(self.delay)
        self.embedded_texts.extend(texts)
        return [self._vector(text) for text in texts]

    def embed_query(self, text: str) -> List[float]:
        self.queries.append(text)
        return self._vector(text)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def vector_store():
    return InMemoryVectorStore()


@pytest.fixture
def index_cache(vector_store):
    return VectorIndexCache(vector_store, config=IndexConfig(chunk_size=20))


@pytest.fixture
def registry(backend):
    registry = BackendRegistry(backends={"Fake": backend})
    registry.switch("Fake")
    return registry


@pytest.fixture
def memory():
    return MemoryWindow(6)


@pytest.fixture
def prompts():
    return PromptAssembler("You are a helpful note assistant.")


@pytest.fixture
def manager(registry, memory, prompts, index_cache, embedder):
    return ChainManager(registry, memory, prompts, index_cache, lambda: embedder)


@pytest.fixture
def notifier():
    return Notifier()


@pytest.fixture
def runner(manager, notifier):
    return ChainRunner(manager, notifier, default_params=GenerationParams())


@pytest.fixture
def chat_config(tmp_path):
    config = ChatConfig(default_model_display_name="Fake")
    config.index.store_dir = str(tmp_path / "index")
    return config
