"""Chat model backends speaking the chat-completions wire format."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional

import requests
from fastapi.concurrency import iterate_in_threadpool, run_in_threadpool

from note_core.errors import ProviderError
from .config import ChatLLMConfig, GenerationParams

logger = logging.getLogger(__name__)


class ChatBackend(ABC):
    """Capability interface: ordered messages in, text deltas out."""

    def __init__(self, display_name: str, model: str) -> None:
        self.display_name = display_name
        self.model = model

    @abstractmethod
    def stream(
        self, messages: List[Dict[str, str]], params: Optional[GenerationParams] = None
    ) -> AsyncIterator[str]:
        """Yield response deltas in arrival order."""

    @abstractmethod
    async def complete(
        self, messages: List[Dict[str, str]], params: Optional[GenerationParams] = None
    ) -> str:
        """Return a full, non-streamed completion."""

    def count_tokens(self, text: str) -> int:
        """Very rough token estimation (4 chars ~ 1 token)."""
        if not text:
            return 0
        return max(1, len(text) // 4)

    def describe(self) -> Dict[str, str]:
        return {"display_name": self.display_name, "model": self.model}


class ChatLLMClient(ChatBackend):
    """Thin wrapper around a chat-completions endpoint with streaming support.

    ``requests`` is blocking, so both calls are moved onto the threadpool; the
    streaming response is consumed one line per hop and closed as soon as the
    caller stops iterating.
    """

    def __init__(self, display_name: str, config: ChatLLMConfig) -> None:
        super().__init__(display_name, config.model)
        self.config = config

    async def stream(
        self, messages: List[Dict[str, str]], params: Optional[GenerationParams] = None
    ) -> AsyncIterator[str]:
        iterator = self._iter_stream(messages, params)
        try:
            async for token in iterate_in_threadpool(iterator):
                yield token
        finally:
            iterator.close()

    async def complete(
        self, messages: List[Dict[str, str]], params: Optional[GenerationParams] = None
    ) -> str:
        return await run_in_threadpool(self._complete, messages, params)

    def _iter_stream(
        self, messages: List[Dict[str, str]], params: Optional[GenerationParams]
    ) -> Iterator[str]:
        payload = self._payload(messages, params, stream=True)
        logger.info("Streaming chat completion to %s using model %s", self.config.endpoint, self.config.model)
        try:
            response = requests.post(
                self.config.endpoint,
                json=payload,
                headers=self._headers(),
                stream=True,
                timeout=self.config.request_timeout,
            )
        except requests.RequestException as exc:
            raise ProviderError(f"Model request failed: {exc}", code="connection_error", payload=str(exc)) from exc

        with response:
            if response.status_code >= 400:
                raise error_from_response(response)
            for raw_line in response.iter_lines():
                if not raw_line:
                    continue
                line = raw_line.decode("utf-8").strip()
                if line.startswith("data:"):
                    line = line[5:].strip()
                if not line or line == "[DONE]":
                    continue

                try:
                    chunk = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("Skipping non-JSON stream line: %s", line)
                    continue

                if isinstance(chunk, dict) and chunk.get("error"):
                    raise _error_from_payload(chunk, response.status_code)
                token = self._extract_delta(chunk)
                if token:
                    yield token

    def _complete(self, messages: List[Dict[str, str]], params: Optional[GenerationParams]) -> str:
        payload = self._payload(messages, params, stream=False)
        logger.debug("Requesting non-streaming completion for %d message(s)", len(messages))
        try:
            response = requests.post(
                self.config.endpoint,
                json=payload,
                headers=self._headers(),
                timeout=self.config.request_timeout,
            )
        except requests.RequestException as exc:
            raise ProviderError(f"Model request failed: {exc}", code="connection_error", payload=str(exc)) from exc
        if response.status_code >= 400:
            raise error_from_response(response)
        data = response.json()
        choice = (data.get("choices") or [{}])[0]
        message = choice.get("message") or {}
        return message.get("content", "") or ""

    def _payload(
        self, messages: List[Dict[str, str]], params: Optional[GenerationParams], *, stream: bool
    ) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "model": self.config.model,
            "messages": messages,
            "stream": stream,
        }
        if params is not None:
            payload.update(params.as_payload())
        return payload

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        headers.update(self.config.headers)
        return headers

    @staticmethod
    def _extract_delta(payload: Any) -> str:
        if not isinstance(payload, dict):
            return ""
        choices = payload.get("choices") or []
        if not choices:
            return ""
        delta = choices[0].get("delta") or {}
        content = delta.get("content") or ""
        return str(content)


def error_from_response(response: requests.Response) -> ProviderError:
    """Turn an HTTP error response into a ProviderError keeping the raw body."""
    try:
        data = response.json()
    except ValueError:
        data = {"status": response.status_code, "body": response.text}
    return _error_from_payload(data, response.status_code)


def _error_from_payload(data: Any, status: int) -> ProviderError:
    error = data.get("error") if isinstance(data, dict) else None
    code: Optional[str] = None
    if isinstance(error, dict):
        code = error.get("code") or error.get("type")
    if not code:
        code = str(status)
    logger.debug("Provider returned error status=%s code=%s", status, code)
    return ProviderError(f"Model request failed: {code}", code=str(code), payload=data)
