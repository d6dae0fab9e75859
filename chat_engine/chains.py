"""Executable pipelines for the two conversation modes.

Each pipeline is an immutable value tagged with its :class:`ChainType`.
Rebuilding produces a new value; a run that captured the old one keeps
streaming against it undisturbed.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, ClassVar, Dict, List, Optional, Union

from note_index.retriever import Retriever
from .config import GenerationParams
from .llm_client import ChatBackend
from .memory import MemoryWindow
from .prompts import ChatPrompt, condense_question_messages, qa_messages

logger = logging.getLogger(__name__)


class ChainType(str, Enum):
    LLM_CHAIN = "llm_chain"
    RETRIEVAL_QA_CHAIN = "retrieval_qa"

    @classmethod
    def parse(cls, value: Union[str, "ChainType"]) -> "ChainType":
        if isinstance(value, ChainType):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown chain type: {value}") from None


@dataclass(frozen=True, eq=False)
class DirectChatChain:
    """Prompt with memory straight into the chat model."""

    backend: ChatBackend
    memory: MemoryWindow
    prompt: ChatPrompt

    chain_type: ClassVar[ChainType] = ChainType.LLM_CHAIN

    def build_messages(self, user_input: str) -> List[Dict[str, str]]:
        return self.prompt.format(self.memory.load(), user_input)

    async def stream(self, user_input: str, params: Optional[GenerationParams] = None) -> AsyncIterator[str]:
        async for delta in self.backend.stream(self.build_messages(user_input), params):
            yield delta

    def with_prompt(self, prompt: ChatPrompt) -> "DirectChatChain":
        return dataclasses.replace(self, prompt=prompt)


@dataclass(frozen=True, eq=False)
class RetrievalQAChain:
    """Conversational retrieval QA over one indexed note.

    Follow-up questions are first condensed into a standalone question using
    the memory window, then answered from the retrieved chunks.
    """

    backend: ChatBackend
    memory: MemoryWindow
    prompt: ChatPrompt
    retriever: Retriever
    content_hash: str
    query_expansion: bool = False

    chain_type: ClassVar[ChainType] = ChainType.RETRIEVAL_QA_CHAIN

    async def standalone_question(self, user_input: str, params: Optional[GenerationParams] = None) -> str:
        history = self.memory.load()
        if not history:
            return user_input
        condensed = await self.backend.complete(condense_question_messages(history, user_input), params)
        condensed = condensed.strip()
        logger.debug("Condensed follow-up question into: %s", condensed)
        return condensed or user_input

    async def stream(self, user_input: str, params: Optional[GenerationParams] = None) -> AsyncIterator[str]:
        question = await self.standalone_question(user_input, params)
        chunks = await self.retriever.aretrieve(question)
        logger.debug("Retrieved %d chunk(s) from index %s", len(chunks), self.content_hash)
        messages = qa_messages(self.prompt, [chunk.text for chunk in chunks], question)
        async for delta in self.backend.stream(messages, params):
            yield delta

    def with_prompt(self, prompt: ChatPrompt) -> "RetrievalQAChain":
        return dataclasses.replace(self, prompt=prompt)


Chain = Union[DirectChatChain, RetrievalQAChain]
