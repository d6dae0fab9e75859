"""Chat orchestration for conversations about notes.

This package wires chat-completions capable models with a sliding-window
memory, a direct-chat or retrieval-QA pipeline over a single note, one-shot
editing commands and history replay. The primary entry points are
``chat_engine.api.create_app`` for running the HTTP service and
``chat_engine.service.ChatService`` / ``ChatSession`` for embedding the chat
engine directly into Python code.
"""

from .chains import ChainType
from .config import ChatConfig, ChatLLMConfig, GenerationParams, ProviderSettings
from .messages import Message, Sender
from .runner import CancellationToken, RunResult
from .service import ChatService, ChatSession

__all__ = [
    "CancellationToken",
    "ChainType",
    "ChatConfig",
    "ChatLLMConfig",
    "ChatService",
    "ChatSession",
    "GenerationParams",
    "Message",
    "ProviderSettings",
    "RunResult",
    "Sender",
]
