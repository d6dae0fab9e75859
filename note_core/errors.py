"""Error taxonomy shared by the chat engine and the note index.

Every error carries a ``user_message`` that is safe to show in the chat panel
and an optional ``details`` payload kept for diagnostics.
"""

from __future__ import annotations

from typing import Any, Optional


class ChatEngineError(Exception):
    """Base class for all orchestration errors."""

    default_message = "Something went wrong."

    def __init__(self, user_message: Optional[str] = None, *, details: Any = None) -> None:
        self.user_message = user_message or self.default_message
        self.details = details
        super().__init__(self.user_message)


# Configuration: the user must fix settings.
class ConfigurationError(ChatEngineError):
    default_message = "The assistant is not configured. Please check your settings."


class NoBackendConfigured(ConfigurationError):
    default_message = "No chat model is configured. Please select a model and add its API key in settings."


class UnconfiguredBackend(ConfigurationError):
    default_message = "The selected model has no API key or endpoint configured."


class BackendNotConfigured(ConfigurationError):
    default_message = (
        "Chat model is not initialized properly, check your API key in settings "
        "and make sure you have API access."
    )


class EmbeddingUnavailable(ConfigurationError):
    default_message = (
        "Failed to create vector store, embedding API is not set correctly, please check your settings."
    )


# Content: the user must supply valid input.
class ContentError(ChatEngineError):
    default_message = "The request could not be processed."


class NoDocumentContent(ContentError):
    default_message = "No note content provided."


class MessageNotFound(ContentError):
    default_message = "The message could not be found in this conversation."


class NoUserMessageToReplay(ContentError):
    default_message = "There is no user message left to regenerate a response for."


class UnknownCommand(ContentError):
    default_message = "Unknown command."


class SessionNotFound(ContentError):
    default_message = "No chat session found for this id."


# Provider: transient, no automatic retry.
class ProviderError(ChatEngineError):
    default_message = "The model provider returned an error."

    def __init__(
        self,
        user_message: Optional[str] = None,
        *,
        code: Optional[str] = None,
        payload: Any = None,
    ) -> None:
        self.code = code
        self.payload = payload
        super().__init__(user_message, details=payload)


class ModelNotFound(ProviderError):
    default_message = (
        "You do not have access to this model or the model does not exist, "
        "please check with your API provider."
    )


class PersistenceError(ChatEngineError):
    default_message = "The note index cache could not be read or written."


class ConcurrencyViolation(ChatEngineError):
    default_message = "Another response is still being generated. Stop it before trying again."
