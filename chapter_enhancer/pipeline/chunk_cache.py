"""
Chunk result cache.

Lets a re-run of the same chapter skip chunks that were already processed.
Entries are keyed by (cache_key, mode, chunk index) and only match when the
chunk's original text is unchanged, so editing the source invalidates them.

Two implementations:
- InMemoryChunkCache: process-local, the pipeline default
- DirectoryChunkCache: one JSON file per cache key under a directory
"""

import hashlib
import json
import threading
from abc import ABC, abstractmethod
from pathlib import Path

from ..logging_config import debug_log, warning


def _digest(text: str) -> str:
    return hashlib.sha256(text.encode('utf-8')).hexdigest()


class ChunkCache(ABC):
    """Interface used by the chunk scheduler."""

    @abstractmethod
    def get(self, cache_key: str, mode: str, chunk_index: int, original_text: str) -> str | None:
        """Return the cached output for an unchanged chunk, or None."""

    @abstractmethod
    def put(self, cache_key: str, mode: str, chunk_index: int, original_text: str, generated_text: str) -> None:
        """Store the output for a chunk."""


class InMemoryChunkCache(ChunkCache):
    def __init__(self):
        self._entries: dict[tuple[str, str, int], tuple[str, str]] = {}
        self._lock = threading.Lock()

    def get(self, cache_key, mode, chunk_index, original_text):
        with self._lock:
            entry = self._entries.get((cache_key, mode, chunk_index))
        if entry and entry[0] == _digest(original_text):
            return entry[1]
        return None

    def put(self, cache_key, mode, chunk_index, original_text, generated_text):
        with self._lock:
            self._entries[(cache_key, mode, chunk_index)] = (_digest(original_text), generated_text)


class DirectoryChunkCache(ChunkCache):
    """
    Stores each cache key as <directory>/<sha256(cache_key)>.json.

    File layout:
        {"<mode>:<index>": {"original_sha256": "...", "text": "..."}}
    """

    def __init__(self, directory: Path | str):
        self.directory = Path(directory)
        self._lock = threading.Lock()

    def _path_for(self, cache_key: str) -> Path:
        return self.directory / f"{_digest(cache_key)}.json"

    def _load(self, path: Path) -> dict:
        if not path.exists():
            return {}
        try:
            with open(path, encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            warning(f"[CACHE] Ignoring unreadable cache file {path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, cache_key, mode, chunk_index, original_text):
        with self._lock:
            entry = self._load(self._path_for(cache_key)).get(f"{mode}:{chunk_index}")
        if entry and entry.get("original_sha256") == _digest(original_text):
            return entry.get("text")
        return None

    def put(self, cache_key, mode, chunk_index, original_text, generated_text):
        path = self._path_for(cache_key)
        with self._lock:
            data = self._load(path)
            data[f"{mode}:{chunk_index}"] = {
                "original_sha256": _digest(original_text),
                "text": generated_text,
            }
            try:
                self.directory.mkdir(parents=True, exist_ok=True)
                with open(path, 'w', encoding='utf-8') as f:
                    json.dump(data, f, ensure_ascii=False)
            except OSError as e:
                warning(f"[CACHE] Could not write cache file {path}: {e}")
                return
        debug_log(f"[CACHE] Stored {mode} chunk {chunk_index} for key {cache_key[:40]}")
