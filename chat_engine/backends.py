"""Model backend registry.

Maps the model names shown in the model picker to concrete backends and
keeps the active ``(model, display_name)`` pair. The pair is stored as one
frozen descriptor and replaced wholesale, so readers never observe a model
name from one selection next to a display name from another.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional

from note_core.errors import BackendNotConfigured, NoBackendConfigured, UnconfiguredBackend
from .config import ChatLLMConfig, ProviderSettings
from .llm_client import ChatBackend, ChatLLMClient

logger = logging.getLogger(__name__)

OPENROUTER_ENDPOINT = "https://openrouter.ai/api/v1/chat/completions"
LM_STUDIO_MODEL = "check_model_in_lm_studio_ui"


class Provider(str, Enum):
    OPENAI = "openai"
    AZURE_OPENAI = "azure_openai"
    OPENROUTER = "openrouter"
    OLLAMA = "ollama"
    LM_STUDIO = "lm_studio"


@dataclass(frozen=True)
class ModelOption:
    display_name: str
    model: str
    provider: Provider


DEFAULT_MODELS = (
    ModelOption("GPT-4o", "gpt-4o", Provider.OPENAI),
    ModelOption("GPT-4o mini", "gpt-4o-mini", Provider.OPENAI),
    ModelOption("GPT-4 TURBO", "gpt-4-turbo", Provider.OPENAI),
    ModelOption("GPT-3.5", "gpt-3.5-turbo", Provider.OPENAI),
    ModelOption("AZURE OPENAI", "azure_openai", Provider.AZURE_OPENAI),
    ModelOption("OPENROUTER.AI", "openrouter", Provider.OPENROUTER),
    ModelOption("OLLAMA (LOCAL)", "ollama", Provider.OLLAMA),
    ModelOption("LM STUDIO (LOCAL)", LM_STUDIO_MODEL, Provider.LM_STUDIO),
)


@dataclass(frozen=True)
class ActiveModel:
    model: str
    display_name: str
    backend: ChatBackend


class BackendRegistry:
    """Resolve display names into backends and track the active one."""

    def __init__(
        self,
        providers: Optional[ProviderSettings] = None,
        *,
        models: Iterable[ModelOption] = DEFAULT_MODELS,
        backends: Optional[Dict[str, ChatBackend]] = None,
    ) -> None:
        self.providers = providers or ProviderSettings()
        self._options: Dict[str, ModelOption] = {option.display_name: option for option in models}
        self._prebuilt: Dict[str, ChatBackend] = dict(backends or {})
        self._active: Optional[ActiveModel] = None

    @property
    def display_names(self) -> List[str]:
        return list(self._options) + [name for name in self._prebuilt if name not in self._options]

    @property
    def active(self) -> Optional[ActiveModel]:
        return self._active

    def require_active(self) -> ActiveModel:
        if self._active is None:
            raise BackendNotConfigured()
        return self._active

    def register(self, display_name: str, backend: ChatBackend) -> None:
        """Make a ready-made backend selectable under ``display_name``."""
        self._prebuilt[display_name] = backend

    def resolve(self, display_name: str) -> ChatBackend:
        prebuilt = self._prebuilt.get(display_name)
        if prebuilt is not None:
            return prebuilt
        option = self._options.get(display_name)
        if option is None:
            raise NoBackendConfigured(f"Unknown model '{display_name}'.")
        config = self._connection(option)
        return ChatLLMClient(display_name, config)

    def switch(self, display_name: str) -> ActiveModel:
        """Resolve then replace the active descriptor; failures keep the old one."""
        backend = self.resolve(display_name)
        self._active = ActiveModel(model=backend.model, display_name=display_name, backend=backend)
        logger.info("Setting model to %s: %s", display_name, backend.model)
        return self._active

    def restore(self, previous: Optional[ActiveModel]) -> None:
        self._active = previous
        if previous is not None:
            logger.info("Restored model %s", previous.display_name)

    def count_tokens(self, text: str) -> int:
        return self.require_active().backend.count_tokens(text)

    def _connection(self, option: ModelOption) -> ChatLLMConfig:
        p = self.providers
        timeout = p.request_timeout
        if option.provider is Provider.OPENAI:
            _require(p.openai_api_key, option, "OpenAI API key")
            return ChatLLMConfig(
                endpoint=f"{p.openai_base_url.rstrip('/')}/chat/completions",
                model=option.model,
                api_key=p.openai_api_key,
                request_timeout=timeout,
            )
        if option.provider is Provider.AZURE_OPENAI:
            _require(p.azure_openai_api_key, option, "Azure OpenAI API key")
            _require(p.azure_openai_api_instance_name, option, "Azure OpenAI instance name")
            _require(p.azure_openai_api_deployment_name, option, "Azure OpenAI deployment name")
            endpoint = (
                f"https://{p.azure_openai_api_instance_name}.openai.azure.com/openai/deployments/"
                f"{p.azure_openai_api_deployment_name}/chat/completions?api-version={p.azure_openai_api_version}"
            )
            return ChatLLMConfig(
                endpoint=endpoint,
                model=p.azure_openai_api_deployment_name,
                request_timeout=timeout,
                headers={"api-key": p.azure_openai_api_key},
            )
        if option.provider is Provider.OPENROUTER:
            _require(p.openrouter_api_key, option, "OpenRouter API key")
            _require(p.openrouter_model, option, "OpenRouter model")
            return ChatLLMConfig(
                endpoint=OPENROUTER_ENDPOINT,
                model=p.openrouter_model,
                api_key=p.openrouter_api_key,
                request_timeout=timeout,
            )
        if option.provider is Provider.OLLAMA:
            _require(p.ollama_base_url, option, "Ollama base URL")
            _require(p.ollama_model, option, "Ollama model")
            return ChatLLMConfig(
                endpoint=f"{p.ollama_base_url.rstrip('/')}/v1/chat/completions",
                model=p.ollama_model,
                request_timeout=timeout,
            )
        _require(p.lm_studio_base_url, option, "LM Studio base URL")
        return ChatLLMConfig(
            endpoint=f"{p.lm_studio_base_url.rstrip('/')}/chat/completions",
            model=LM_STUDIO_MODEL,
            request_timeout=timeout,
        )


def _require(value: str, option: ModelOption, what: str) -> None:
    if not value:
        raise UnconfiguredBackend(
            f"{what} is not set for {option.display_name}. Please add it in settings.",
            details={"display_name": option.display_name, "provider": option.provider.value},
        )
