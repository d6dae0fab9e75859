"""Editing a past message and replaying the conversation from there."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Iterable, Optional

from note_core.errors import ConcurrencyViolation, NoUserMessageToReplay
from .memory import MemoryWindow
from .messages import ConversationLog, Message
from .runner import RunResult

logger = logging.getLogger(__name__)

RunTurn = Callable[[Message], Awaitable[RunResult]]


def replay_into_memory(messages: Iterable[Message], memory: MemoryWindow) -> Optional[Message]:
    """Feed completed turns back into ``memory``.

    Each in-chain user message is paired with the in-chain assistant message
    that follows it. Returns the trailing in-chain user message, which has no
    answer yet, or ``None`` when the last in-chain message is an answer.
    """
    waiting: Optional[Message] = None
    for message in messages:
        if not message.in_chain:
            continue
        if message.is_user:
            waiting = message
        elif waiting is not None:
            memory.append(waiting.text, message.text)
            waiting = None
    return waiting


class HistoryReplayController:
    def __init__(
        self,
        log: ConversationLog,
        memory: MemoryWindow,
        run_turn: RunTurn,
        is_busy: Callable[[], bool] = lambda: False,
    ) -> None:
        self.log = log
        self.memory = memory
        self.run_turn = run_turn
        self.is_busy = is_busy

    async def edit_message(self, message_id: str, new_text: str) -> Optional[RunResult]:
        """Replace a message, rebuild memory from the kept history and regenerate.

        Returns the regenerated turn, or ``None`` when the edit leaves an
        assistant message at the end and there is nothing to answer.
        """
        if self.is_busy():
            raise ConcurrencyViolation(details={"message_id": message_id})
        index = self.log.index_of(message_id)
        original = self.log.messages[index]
        edited = Message(text=new_text, sender=original.sender, visible=True, in_chain=True)

        kept = self.log.truncate(index)
        self.log.clear()
        self.memory.clear()
        for message in kept + (edited,):
            self.log.add(message)
        pending = replay_into_memory(self.log.messages, self.memory)
        logger.info("Replayed %d message(s) after editing message %s", len(self.log), message_id)

        if pending is None:
            if not any(message.is_user and message.in_chain for message in self.log):
                raise NoUserMessageToReplay(details={"message_id": message_id})
            logger.debug("Edited message is not followed by a user turn, nothing to regenerate")
            return None
        return await self.run_turn(pending)
