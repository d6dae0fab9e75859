"""Sliding-window conversational memory."""

from __future__ import annotations

import logging
from collections import deque
from typing import Deque, Dict, List, Tuple

logger = logging.getLogger(__name__)

Turn = Tuple[str, str]


class MemoryWindow:
    """Most recent ``(input, output)`` turn pairs, oldest evicted first.

    Only the streaming runner (after a completed turn) and the history
    replay (after a reset) write to it.
    """

    def __init__(self, max_pairs: int) -> None:
        if max_pairs < 1:
            raise ValueError("max_pairs must be at least 1")
        self.max_pairs = max_pairs
        self._turns: Deque[Turn] = deque(maxlen=max_pairs)

    def load(self) -> Tuple[Turn, ...]:
        return tuple(self._turns)

    def append(self, user_input: str, output: str) -> None:
        self._turns.append((user_input, output))

    def clear(self) -> None:
        logger.debug("Clearing chat memory (%d turn(s))", len(self._turns))
        self._turns.clear()

    def as_messages(self) -> List[Dict[str, str]]:
        messages: List[Dict[str, str]] = []
        for user_input, output in self._turns:
            messages.append({"role": "user", "content": user_input})
            messages.append({"role": "assistant", "content": output})
        return messages

    def __len__(self) -> int:
        return len(self._turns)
