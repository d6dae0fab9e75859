"""Streaming execution of one conversational turn."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional

from note_core.errors import ChatEngineError, ModelNotFound, ProviderError
from .chain_manager import ChainManager
from .chains import Chain, RetrievalQAChain
from .config import GenerationParams
from .messages import Message, Sender
from .notifier import Notifier

logger = logging.getLogger(__name__)

MODEL_NOT_FOUND_CODES = frozenset({"model_not_found", "DeploymentNotFound"})

UpdateCallback = Callable[[str], None]
MessageCallback = Callable[[Message], None]


class CancellationToken:
    """Cooperative stop signal checked between streamed deltas."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class RunResult:
    text: str = ""
    message: Optional[Message] = None
    cancelled: bool = False
    error: Optional[ChatEngineError] = None

    @property
    def completed(self) -> bool:
        return self.message is not None


class ChainRunner:
    """Drive the current pipeline for one user message.

    The pipeline is captured once when the run starts; a rebuild that lands
    while deltas are still arriving only affects the next run.
    """

    def __init__(self, manager: ChainManager, notifier: Notifier, *, default_params: GenerationParams) -> None:
        self.manager = manager
        self.notifier = notifier
        self.default_params = default_params

    async def stream(
        self,
        chain: Chain,
        user_input: str,
        token: CancellationToken,
        params: Optional[GenerationParams] = None,
    ) -> AsyncIterator[str]:
        deltas = chain.stream(user_input, params or self.default_params)
        try:
            async for delta in deltas:
                if token.cancelled:
                    logger.info("Generation stopped by user")
                    break
                yield delta
        finally:
            await deltas.aclose()

    async def run(
        self,
        user_message: Message,
        *,
        token: Optional[CancellationToken] = None,
        on_update: Optional[UpdateCallback] = None,
        on_message: Optional[MessageCallback] = None,
        debug: bool = False,
        params: Optional[GenerationParams] = None,
        ignore_system_message: bool = False,
    ) -> RunResult:
        """Stream a reply to ``user_message``.

        Configuration errors are raised before anything is streamed. Provider
        errors are classified, reported once through the notifier and returned
        on the result; nothing is committed for a failed or cancelled turn.
        """
        token = token or CancellationToken()
        params = params or self.default_params
        self.manager.registry.require_active()
        chain = await self.manager.ensure_chain()
        if ignore_system_message:
            chain = chain.with_prompt(self.manager.prompts.suppressed())
        if debug:
            self._log_debug_info(chain, params)

        result = RunResult()
        try:
            async for delta in self.stream(chain, user_message.text, token, params):
                result.text += delta
                if on_update is not None:
                    on_update(result.text)
        except ProviderError as exc:
            result.error = self._classify(exc)
        except ChatEngineError as exc:
            result.error = exc
        except Exception as exc:
            logger.exception("Unexpected failure while streaming a response")
            result.error = ProviderError(f"Model request failed: {exc}", payload=repr(exc))

        result.cancelled = token.cancelled
        if result.error is not None:
            logger.error(
                "Model request failed (code=%s): %s",
                getattr(result.error, "code", None),
                getattr(result.error, "details", None),
            )
            self.notifier.notify(result.error.user_message)
            return result
        if result.cancelled or not result.text:
            logger.debug("Turn not committed (cancelled=%s, length=%d)", result.cancelled, len(result.text))
            return result

        chain.memory.append(user_message.text, result.text)
        result.message = Message(text=result.text, sender=Sender.AI, visible=True, in_chain=True)
        if on_message is not None:
            on_message(result.message)
        return result

    def _classify(self, exc: ProviderError) -> ProviderError:
        if isinstance(exc, ModelNotFound):
            return exc
        if exc.code in MODEL_NOT_FOUND_CODES:
            return ModelNotFound(code=exc.code, payload=exc.payload)
        return exc

    def _log_debug_info(self, chain: Chain, params: GenerationParams) -> None:
        active = self.manager.registry.active
        logger.info(
            "Debug info: model=%s display_name=%s chain=%s temperature=%s max_tokens=%s "
            "system_prompt=%r context_pairs=%d",
            active.model if active else None,
            active.display_name if active else None,
            chain.chain_type.value,
            params.temperature,
            params.max_tokens,
            chain.prompt.system_message,
            len(chain.memory),
        )
        if isinstance(chain, RetrievalQAChain):
            logger.info(
                "Debug info: retrieval index=%s query_expansion=%s", chain.content_hash, chain.query_expansion
            )
