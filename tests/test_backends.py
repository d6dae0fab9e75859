import json

import pytest
import requests

from chat_engine.backends import BackendRegistry
from chat_engine.config import ChatLLMConfig, GenerationParams, ProviderSettings
from chat_engine.llm_client import ChatLLMClient
from note_core.errors import (
    BackendNotConfigured,
    NoBackendConfigured,
    ProviderError,
    UnconfiguredBackend,
)

from .conftest import FakeBackend


class FakeResponse:
    def __init__(self, lines=None, status_code=200, body=None):
        self._lines = lines or []
        self.status_code = status_code
        self._body = body
        self.text = json.dumps(body) if body is not None else ""
        self.closed = False

    def iter_lines(self):
        for line in self._lines:
            yield line.encode("utf-8")

    def json(self):
        if self._body is None:
            raise ValueError("no body")
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.closed = True
        return False


def _sse(*contents):
    lines = [f"data: {json.dumps({'choices': [{'delta': {'content': c}}]})}" for c in contents]
    return lines + ["", "data: [DONE]"]


def test_registry_requires_active_model():
    registry = BackendRegistry()
    with pytest.raises(BackendNotConfigured):
        registry.require_active()


def test_unknown_display_name_is_rejected():
    registry = BackendRegistry()
    with pytest.raises(NoBackendConfigured):
        registry.switch("Nope")


def test_missing_openai_key_keeps_previous_model():
    fake = FakeBackend()
    registry = BackendRegistry(ProviderSettings(), backends={"Fake": fake})
    registry.switch("Fake")

    with pytest.raises(UnconfiguredBackend):
        registry.switch("GPT-4o")

    assert registry.active.display_name == "Fake"
    assert registry.active.backend is fake


def test_switch_resolves_openai_backend():
    registry = BackendRegistry(ProviderSettings(openai_api_key="sk-test"))
    active = registry.switch("GPT-4o mini")

    assert active.model == "gpt-4o-mini"
    assert active.display_name == "GPT-4o mini"
    assert active.backend.config.endpoint == "https://api.openai.com/v1/chat/completions"


def test_azure_backend_uses_deployment_endpoint():
    providers = ProviderSettings(
        azure_openai_api_key="key",
        azure_openai_api_instance_name="inst",
        azure_openai_api_deployment_name="dep",
    )
    backend = BackendRegistry(providers).resolve("AZURE OPENAI")

    assert backend.config.endpoint.startswith("https://inst.openai.azure.com/openai/deployments/dep/")
    assert backend.config.headers == {"api-key": "key"}


def test_restore_puts_back_previous_descriptor():
    first, second = FakeBackend("A"), FakeBackend("B")
    registry = BackendRegistry(backends={"A": first, "B": second})
    previous = registry.switch("A")
    registry.switch("B")
    registry.restore(previous)

    assert registry.active is previous


def test_prebuilt_backends_are_listed():
    registry = BackendRegistry(backends={"Fake": FakeBackend()})
    assert "Fake" in registry.display_names
    assert "GPT-4o" in registry.display_names


@pytest.mark.asyncio
async def test_client_streams_sse_deltas(monkeypatch):
    captured = {}

    def fake_post(url, json=None, headers=None, stream=False, timeout=None):
        captured.update(url=url, json=json, headers=headers, stream=stream)
        return FakeResponse(_sse("Hel", "lo"))

    monkeypatch.setattr(requests, "post", fake_post)
    client = ChatLLMClient("GPT", ChatLLMConfig(endpoint="http://llm/v1/chat/completions", model="m", api_key="k"))

    deltas = [d async for d in client.stream([{"role": "user", "content": "hi"}], GenerationParams(temperature=0.1))]

    assert deltas == ["Hel", "lo"]
    assert captured["stream"] is True
    assert captured["json"]["temperature"] == 0.1
    assert captured["json"]["model"] == "m"
    assert captured["headers"]["Authorization"] == "Bearer k"


@pytest.mark.asyncio
async def test_client_raises_provider_error_with_code(monkeypatch):
    body = {"error": {"code": "model_not_found", "message": "no such model"}}
    monkeypatch.setattr(requests, "post", lambda *a, **k: FakeResponse(status_code=404, body=body))
    client = ChatLLMClient("GPT", ChatLLMConfig(endpoint="http://llm", model="missing"))

    with pytest.raises(ProviderError) as info:
        async for _ in client.stream([{"role": "user", "content": "hi"}]):
            pass

    assert info.value.code == "model_not_found"
    assert info.value.payload == body


@pytest.mark.asyncio
async def test_client_complete_returns_message_content(monkeypatch):
    body = {"choices": [{"message": {"content": "full answer"}}]}
    monkeypatch.setattr(requests, "post", lambda *a, **k: FakeResponse(body=body))
    client = ChatLLMClient("GPT", ChatLLMConfig(endpoint="http://llm", model="m"))

    assert await client.complete([{"role": "user", "content": "hi"}]) == "full answer"


def test_generation_params_merge_extra_kwargs():
    params = GenerationParams(temperature=0.5, max_tokens=10, extra={"top_p": 0.9})
    assert params.as_payload() == {"top_p": 0.9, "temperature": 0.5, "max_tokens": 10}
    assert params.with_temperature(None) is params
    assert params.with_temperature(0.2).as_payload()["temperature"] == 0.2
