"""User-facing notices.

Anything the chat panel should pop up goes through a :class:`Notifier`, which
also writes the matching log record. The HTTP layer drains pending notices
after each request.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import List

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass(frozen=True)
class Notice:
    level: str
    text: str
    created_at: float = field(default_factory=time.time)

    def as_dict(self) -> dict:
        return {"level": self.level, "text": self.text, "created_at": self.created_at}


class Notifier:
    def __init__(self, max_pending: int = 100) -> None:
        self.max_pending = max_pending
        self._pending: List[Notice] = []

    def notify(self, text: str, level: str = "error") -> Notice:
        notice = Notice(level=level, text=text)
        logger.log(_LOG_LEVELS.get(level, logging.INFO), "Notice: %s", text)
        self._pending.append(notice)
        if len(self._pending) > self.max_pending:
            del self._pending[: len(self._pending) - self.max_pending]
        return notice

    def pending(self) -> List[Notice]:
        return list(self._pending)

    def drain(self) -> List[Notice]:
        notices, self._pending = self._pending, []
        return notices
