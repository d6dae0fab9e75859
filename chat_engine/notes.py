"""Note selection, tag extraction and note context for chat messages."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict, dataclass, field
from pathlib import Path, PurePosixPath
from typing import Iterable, List, Optional, Protocol, Sequence, Tuple

import yaml

from .messages import Message, Sender

logger = logging.getLogger(__name__)

# A tag must contain at least one letter; "#123" is not a tag.
INLINE_TAG_PATTERN = re.compile(r"#([\w\-]*[^\W\d_][\w\-]*)\b")
FRONTMATTER_DELIMITER = "---"


class NoteStore(Protocol):
    """Read access to the host's notes, addressed by vault-relative paths."""

    def markdown_paths(self) -> List[str]:
        ...

    def read(self, path: str) -> str:
        ...


class DirectoryNoteStore:
    """Notes stored as ``*.md`` files under a directory."""

    def __init__(self, root: str) -> None:
        self.root = Path(root)

    def markdown_paths(self) -> List[str]:
        if not self.root.is_dir():
            return []
        return sorted(path.relative_to(self.root).as_posix() for path in self.root.rglob("*.md"))

    def read(self, path: str) -> str:
        return (self.root / path).read_text(encoding="utf-8")


@dataclass(frozen=True)
class ContextNote:
    path: str
    content: str
    tags: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ChatContext:
    notes: Tuple[ContextNote, ...] = field(default_factory=tuple)

    @property
    def is_empty(self) -> bool:
        return not self.notes

    def combine(self, other: "ChatContext") -> "ChatContext":
        """Append ``other``'s notes, skipping paths already present."""
        seen = {note.path for note in self.notes}
        merged = list(self.notes)
        for note in other.notes:
            if note.path not in seen:
                merged.append(note)
                seen.add(note.path)
        return ChatContext(tuple(merged))


EMPTY_CHAT_CONTEXT = ChatContext()


def convert_to_prompt(context: ChatContext, user_message: str) -> Tuple[Message, Message]:
    """Split a message sent with note context into what is shown and what is sent.

    The first message is displayed but stays out of the model history; the
    second carries the note context, is hidden, and is the one the model sees.
    """
    if context.is_empty:
        sent = user_message
    else:
        payload = json.dumps({"additional_notes": [asdict(note) for note in context.notes]}, ensure_ascii=False)
        sent = f"Here is additional helpful context from notes:\n```\n{payload}\n```\n\n{user_message}"
    shown = Message(text=user_message, sender=Sender.USER, visible=True, in_chain=False)
    hidden = Message(text=sent, sender=Sender.USER, visible=False, in_chain=True)
    return shown, hidden


def is_folder_match(file_path: str, folder: str) -> bool:
    """True if any path segment equals ``folder``, ignoring case."""
    segments = [segment.lower() for segment in file_path.split("/")]
    return folder.lower() in segments


def note_path_from_variable(name: str) -> str:
    """``[[My Note]]`` becomes ``My Note.md``; anything else is a folder path."""
    name = name.strip()
    if name.startswith("[[") and name.endswith("]]"):
        return f"{name[2:-2].strip()}.md"
    return name


def notes_from_path(store: NoteStore, path: str) -> List[str]:
    paths = store.markdown_paths()
    if path == "/":
        return paths
    if not path:
        return []
    last_segment = path.split("/")[-1].lower()
    return [
        note
        for note in paths
        if is_folder_match(note, last_segment) or PurePosixPath(note).stem.lower() == last_segment
    ]


def notes_from_reference(store: NoteStore, reference: str) -> List[str]:
    """A ``[[Note]]`` link selects notes by file name; anything else goes through :func:`notes_from_path`."""
    target = note_path_from_variable(reference)
    if target == reference.strip():
        return notes_from_path(store, target)
    name = PurePosixPath(target).name.lower()
    return [path for path in store.markdown_paths() if PurePosixPath(path).name.lower() == name]


def _frontmatter_tags(content: str) -> List[str]:
    if not content.startswith(FRONTMATTER_DELIMITER):
        return []
    end = content.find(FRONTMATTER_DELIMITER, len(FRONTMATTER_DELIMITER))
    if end == -1:
        return []
    try:
        properties = yaml.safe_load(content[len(FRONTMATTER_DELIMITER):end]) or {}
    except yaml.YAMLError:
        logger.warning("Ignoring unparsable frontmatter")
        return []
    if not isinstance(properties, dict):
        return []
    tags = properties.get("tags") or []
    if isinstance(tags, str):
        tags = [part for part in re.split(r"[,\s]+", tags) if part]
    if not isinstance(tags, list):
        tags = [tags]
    return [str(tag) for tag in tags if tag is not None]


def _clean_tag(tag: str) -> str:
    return tag.lstrip("#").strip().lower()


def tags_from_content(content: str) -> List[str]:
    """Frontmatter ``tags`` followed by inline ``#tags``, lowercased and without ``#``."""
    raw = _frontmatter_tags(content) + [match.group(1) for match in INLINE_TAG_PATTERN.finditer(content)]
    tags: List[str] = []
    for tag in raw:
        cleaned = _clean_tag(tag)
        if cleaned and cleaned not in tags:
            tags.append(cleaned)
    return tags


def notes_from_tags(store: NoteStore, tags: Sequence[str], paths: Optional[Iterable[str]] = None) -> List[str]:
    """Notes carrying any of ``tags``; searches ``paths`` if given, else every note."""
    wanted = {_clean_tag(tag) for tag in tags if _clean_tag(tag)}
    if not wanted:
        return []
    candidates = list(paths) if paths else store.markdown_paths()
    matched = []
    for path in candidates:
        if wanted.intersection(tags_from_content(store.read(path))):
            matched.append(path)
    return matched


def load_context_notes(store: NoteStore, paths: Iterable[str]) -> ChatContext:
    notes = []
    for path in paths:
        content = store.read(path)
        if content:
            notes.append(ContextNote(path=path, content=content, tags=tuple(tags_from_content(content))))
    return EMPTY_CHAT_CONTEXT.combine(ChatContext(tuple(notes)))
