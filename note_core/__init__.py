"""Shared error taxonomy and logging setup."""

from .errors import (
    BackendNotConfigured,
    ChatEngineError,
    ConcurrencyViolation,
    ConfigurationError,
    ContentError,
    EmbeddingUnavailable,
    MessageNotFound,
    ModelNotFound,
    NoBackendConfigured,
    NoDocumentContent,
    NoUserMessageToReplay,
    PersistenceError,
    ProviderError,
    SessionNotFound,
    UnconfiguredBackend,
    UnknownCommand,
)
from .utils import setup_logging

__all__ = [
    "BackendNotConfigured",
    "ChatEngineError",
    "ConcurrencyViolation",
    "ConfigurationError",
    "ContentError",
    "EmbeddingUnavailable",
    "MessageNotFound",
    "ModelNotFound",
    "NoBackendConfigured",
    "NoDocumentContent",
    "NoUserMessageToReplay",
    "PersistenceError",
    "ProviderError",
    "SessionNotFound",
    "UnconfiguredBackend",
    "UnknownCommand",
    "setup_logging",
]
