"""Key-value persistence for vector index entries keyed by content hash."""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence

import numpy as np

from note_core.errors import PersistenceError

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass(eq=False)
class VectorIndexEntry:
    """Chunks of one document and their embedding vectors."""

    content_hash: str
    chunks: List[str]
    vectors: np.ndarray
    created_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        self.vectors = np.asarray(self.vectors, dtype="float32")
        if self.vectors.size == 0 and not self.chunks:
            self.vectors = self.vectors.reshape(0, 0)
        if self.vectors.ndim != 2 or self.vectors.shape[0] != len(self.chunks):
            raise ValueError(
                f"Entry {self.content_hash} has {len(self.chunks)} chunk(s) but vectors of shape {self.vectors.shape}"
            )

    @property
    def dimension(self) -> int:
        return int(self.vectors.shape[1]) if self.vectors.ndim == 2 else 0

    def is_expired(self, ttl_days: int, now: Optional[float] = None) -> bool:
        if ttl_days <= 0:
            return False
        now = time.time() if now is None else now
        return now - self.created_at > ttl_days * 24 * 60 * 60

    @classmethod
    def from_embeddings(
        cls, content_hash: str, chunks: Sequence[str], embeddings: Sequence[Sequence[float]]
    ) -> "VectorIndexEntry":
        return cls(content_hash=content_hash, chunks=list(chunks), vectors=np.array(embeddings, dtype="float32"))


class VectorStorePersistence(Protocol):
    """Storage capability for index entries."""

    def load(self, key: str) -> Optional[VectorIndexEntry]: ...

    def save(self, entry: VectorIndexEntry) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self) -> List[str]: ...


class InMemoryVectorStore:
    """Process-local store, used for tests and as a session-only fallback."""

    def __init__(self) -> None:
        self._entries: Dict[str, VectorIndexEntry] = {}
        self._lock = threading.Lock()

    def load(self, key: str) -> Optional[VectorIndexEntry]:
        with self._lock:
            return self._entries.get(key)

    def save(self, entry: VectorIndexEntry) -> None:
        with self._lock:
            self._entries[entry.content_hash] = entry

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._entries)


class FileVectorStore:
    """Persist each entry as ``<root>/<hash>/metadata.json`` plus ``vectors.npy``.

    Writes go through temporary files and ``os.replace`` so a crash never
    leaves a half-written metadata file behind; the metadata file is written
    last and its presence marks the entry as complete.
    """

    METADATA_FILE = "metadata.json"
    VECTORS_FILE = "vectors.npy"

    def __init__(self, root: str) -> None:
        self.root = Path(root)
        self._lock = threading.Lock()

    def load(self, key: str) -> Optional[VectorIndexEntry]:
        entry_dir = self._entry_dir(key)
        metadata_path = entry_dir / self.METADATA_FILE
        vectors_path = entry_dir / self.VECTORS_FILE
        if not metadata_path.exists():
            return None

        try:
            with metadata_path.open("r", encoding="utf-8") as f:
                metadata = json.load(f)
            vectors = np.load(vectors_path, allow_pickle=False)
            entry = VectorIndexEntry(
                content_hash=metadata["content_hash"],
                chunks=list(metadata["chunks"]),
                vectors=vectors,
                created_at=float(metadata.get("created_at", 0.0)),
            )
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise PersistenceError(
                f"Failed to read cached index {key}", details={"path": str(entry_dir), "error": str(exc)}
            ) from exc

        if entry.content_hash != key:
            raise PersistenceError(
                f"Cached index {key} is keyed inconsistently", details={"stored_hash": entry.content_hash}
            )
        logger.debug("Loaded cached index %s with %d chunk(s)", key, len(entry.chunks))
        return entry

    def save(self, entry: VectorIndexEntry) -> None:
        entry_dir = self._entry_dir(entry.content_hash)
        metadata = {
            "content_hash": entry.content_hash,
            "created_at": entry.created_at,
            "dimension": entry.dimension,
            "chunks": entry.chunks,
        }
        with self._lock:
            try:
                entry_dir.mkdir(parents=True, exist_ok=True)
                vectors_tmp = entry_dir / f".{self.VECTORS_FILE}.tmp"
                with vectors_tmp.open("wb") as f:
                    np.save(f, entry.vectors, allow_pickle=False)
                os.replace(vectors_tmp, entry_dir / self.VECTORS_FILE)

                metadata_tmp = entry_dir / f".{self.METADATA_FILE}.tmp"
                with metadata_tmp.open("w", encoding="utf-8") as f:
                    json.dump(metadata, f, ensure_ascii=False)
                os.replace(metadata_tmp, entry_dir / self.METADATA_FILE)
            except OSError as exc:
                raise PersistenceError(
                    f"Failed to write cached index {entry.content_hash}",
                    details={"path": str(entry_dir), "error": str(exc)},
                ) from exc
        logger.info("Persisted index %s (%d chunk(s)) to %s", entry.content_hash, len(entry.chunks), entry_dir)

    def delete(self, key: str) -> None:
        entry_dir = self._entry_dir(key)
        with self._lock:
            try:
                shutil.rmtree(entry_dir)
            except FileNotFoundError:
                return
            except OSError as exc:
                raise PersistenceError(
                    f"Failed to delete cached index {key}", details={"path": str(entry_dir), "error": str(exc)}
                ) from exc
        logger.info("Deleted cached index %s", key)

    def keys(self) -> List[str]:
        if not self.root.exists():
            return []
        return sorted(
            child.name for child in self.root.iterdir() if (child / self.METADATA_FILE).exists()
        )

    def _entry_dir(self, key: str) -> Path:
        if not key or not _KEY_PATTERN.match(key):
            raise PersistenceError(f"Invalid index key {key!r}")
        return self.root / key
