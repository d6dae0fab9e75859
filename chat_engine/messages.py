"""Conversation messages and the ordered log that owns them."""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Tuple

from note_core.errors import MessageNotFound

logger = logging.getLogger(__name__)


class Sender(str, Enum):
    USER = "user"
    AI = "assistant"


def generate_message_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class Message:
    """One chat entry.

    ``visible`` controls display; ``in_chain`` controls whether the message
    takes part in memory and replay.
    """

    text: str
    sender: Sender
    visible: bool = True
    in_chain: bool = True
    id: str = field(default_factory=generate_message_id)

    @property
    def is_user(self) -> bool:
        return self.sender is Sender.USER

    def as_dict(self) -> Dict[str, object]:
        payload = asdict(self)
        payload["sender"] = self.sender.value
        return payload


class ConversationLog:
    """Source of truth for the conversation; memory only holds a derived copy."""

    def __init__(self) -> None:
        self._messages: List[Message] = []

    def add(self, message: Message) -> Message:
        self._messages.append(message)
        logger.debug(
            "Adding %s message %s (visible=%s, in_chain=%s)",
            message.sender.value,
            message.id,
            message.visible,
            message.in_chain,
        )
        return message

    def index_of(self, message_id: str) -> int:
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                return index
        raise MessageNotFound(details={"message_id": message_id})

    def truncate(self, index: int) -> Tuple[Message, ...]:
        """Drop everything from ``index`` onwards and return what was kept."""
        self._messages = self._messages[:index]
        return tuple(self._messages)

    def clear(self) -> None:
        self._messages = []

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    def visible(self) -> List[Message]:
        return [message for message in self._messages if message.visible]

    def to_markdown(self) -> str:
        """Render the visible conversation for saving as a note."""
        return "\n\n".join(f"**{message.sender.value}**: {message.text}" for message in self.visible())

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))
