"""Configuration objects for the chat engine."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from note_index.config import EmbeddingConfig, IndexConfig

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_MESSAGE = (
    "You are a helpful assistant built into a note-taking app. Answer clearly and concisely, "
    "use Markdown where it helps, and when the user asks about their notes rely on the note "
    "content you are given rather than guessing."
)


@dataclass
class ChatLLMConfig:
    """Resolved connection details for one chat-completions endpoint."""

    endpoint: str = "https://api.openai.com/v1/chat/completions"
    model: str = "gpt-4o"
    api_key: Optional[str] = None
    request_timeout: int = 60
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class GenerationParams:
    """Sampling parameters sent with every completion request."""

    temperature: float = 0.7
    max_tokens: int = 1000
    extra: Dict[str, object] = field(default_factory=dict)

    def as_payload(self) -> Dict[str, object]:
        payload: Dict[str, object] = dict(self.extra)
        payload.update(temperature=self.temperature, max_tokens=self.max_tokens)
        return payload

    def with_temperature(self, temperature: Optional[float]) -> "GenerationParams":
        if temperature is None:
            return self
        return GenerationParams(temperature=temperature, max_tokens=self.max_tokens, extra=dict(self.extra))


@dataclass
class ProviderSettings:
    """Already-decrypted credentials and endpoints for every model provider."""

    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    azure_openai_api_key: str = ""
    azure_openai_api_instance_name: str = ""
    azure_openai_api_deployment_name: str = ""
    azure_openai_api_version: str = "2024-02-01"
    openrouter_api_key: str = ""
    openrouter_model: str = "openai/gpt-4o-mini"
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "llama3"
    lm_studio_base_url: str = "http://localhost:1234/v1"
    request_timeout: int = 60


@dataclass
class ChatConfig:
    """Runtime controls for chat behaviour."""

    providers: ProviderSettings = field(default_factory=ProviderSettings)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    index: IndexConfig = field(default_factory=IndexConfig)
    default_model_display_name: str = "GPT-4o"
    chain_type: str = "llm_chain"
    temperature: float = 0.7
    max_tokens: int = 1000
    context_turns: int = 3
    system_message: str = DEFAULT_SYSTEM_MESSAGE
    notes_dir: str = ""
    debug: bool = False
    model_kwargs: Dict[str, object] = field(default_factory=dict)

    @property
    def memory_window_pairs(self) -> int:
        return max(1, self.context_turns * 2)

    def generation_params(self) -> GenerationParams:
        return GenerationParams(
            temperature=self.temperature, max_tokens=self.max_tokens, extra=dict(self.model_kwargs)
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ChatConfig":
        """Build a config from host settings, coercing stringly-typed numbers.

        Host settings often store numbers as strings; values that cannot be
        coerced fall back to the defaults instead of failing.
        """
        defaults = cls()
        kwargs: Dict[str, Any] = {}
        for name, caster in (("temperature", float), ("max_tokens", int), ("context_turns", int)):
            if name in data:
                kwargs[name] = _coerce(data[name], caster, getattr(defaults, name), name)
        for name in ("default_model_display_name", "chain_type", "system_message", "notes_dir"):
            if data.get(name):
                kwargs[name] = str(data[name])
        if "debug" in data:
            kwargs["debug"] = _as_bool(data["debug"])
        if isinstance(data.get("model_kwargs"), Mapping):
            kwargs["model_kwargs"] = dict(data["model_kwargs"])

        kwargs["providers"] = _sub_config(ProviderSettings, data.get("providers"))
        kwargs["embedding"] = _sub_config(EmbeddingConfig, data.get("embedding"))
        kwargs["index"] = _sub_config(IndexConfig, data.get("index"))
        return cls(**kwargs)

    @classmethod
    def from_file(cls, path: str) -> "ChatConfig":
        with Path(path).open("r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Settings file {path} must contain a JSON object")
        return cls.from_dict(data)


def _coerce(value: Any, caster, default: Any, name: str) -> Any:
    try:
        return caster(value)
    except (TypeError, ValueError):
        logger.warning("Invalid value %r for %s, using default %r", value, name, default)
        return default


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _sub_config(cls, data: Any):
    instance = cls()
    if not isinstance(data, Mapping):
        return instance
    for item in fields(cls):
        if item.name not in data:
            continue
        default = getattr(instance, item.name)
        value = data[item.name]
        if isinstance(default, bool):
            value = _as_bool(value)
        elif isinstance(default, (int, float)):
            value = _coerce(value, type(default), default, f"{cls.__name__}.{item.name}")
        setattr(instance, item.name, value)
    return instance
