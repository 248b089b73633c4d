from __future__ import annotations

import json
import logging
import threading
from collections import OrderedDict
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional

from .cache import atomic_write_text, hash_dict
from .errors import CacheWriteFailure
from .events import now_utc_iso

logger = logging.getLogger(__name__)

RESULTS_FILENAME = "results.json"


def result_cache_key(source_identity: str, signature: dict[str, Any]) -> str:
    return hash_dict({"source": source_identity, "op": signature}).value


@dataclass(frozen=True)
class ResultCacheEntry:
    key: str
    url: str
    created_at: str
    source: str = ""


@dataclass
class ResultCacheStats:
    entries: int
    hits: int
    misses: int
    evictions: int
    max_entries: int


class ResultCache:
    """Maps (source identity, operation signature) to a derived asset URL.

    Bounded LRU: a lookup refreshes recency and the least recently used entry
    is evicted once ``max_entries`` is exceeded (0 disables the bound). When a
    ``path`` is given the cache is loaded from it on construction and
    rewritten after every mutation.
    """

    def __init__(self, path: Optional[Path] = None, max_entries: int = 1000):
        self.path = path
        self.max_entries = max_entries
        self._entries: OrderedDict[str, ResultCacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        if path is not None:
            self._load(path)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def lookup(self, source_identity: str, signature: dict[str, Any]) -> Optional[str]:
        key = result_cache_key(source_identity, signature)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            self._entries.move_to_end(key)
            self._hits += 1
            return entry.url

    def store(self, source_identity: str, signature: dict[str, Any], url: str) -> ResultCacheEntry:
        key = result_cache_key(source_identity, signature)
        entry = ResultCacheEntry(key=key, url=url, created_at=now_utc_iso(), source=source_identity)
        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            self._evict_locked()
            self._persist_locked()
        return entry

    def invalidate(self, source_identity: str) -> int:
        """Drop every entry derived from the given source."""
        with self._lock:
            stale = [k for k, e in self._entries.items() if e.source == source_identity]
            for k in stale:
                del self._entries[k]
            if stale:
                self._persist_locked()
        return len(stale)

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._persist_locked()
        return count

    def stats(self) -> ResultCacheStats:
        with self._lock:
            return ResultCacheStats(
                entries=len(self._entries),
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                max_entries=self.max_entries,
            )

    def _evict_locked(self) -> None:
        if self.max_entries <= 0:
            return
        while len(self._entries) > self.max_entries:
            key, _ = self._entries.popitem(last=False)
            self._evictions += 1
            logger.debug("Evicted result cache entry %s", key[:12])

    def _persist_locked(self) -> None:
        # Caller holds self._lock, so writes land in mutation order.
        if self.path is None:
            return
        snapshot = [asdict(e) for e in self._entries.values()]
        try:
            self._write(snapshot)
        except CacheWriteFailure as e:
            logger.warning("%s", e)

    def _write(self, snapshot: list[dict[str, Any]]) -> None:
        try:
            atomic_write_text(self.path, json.dumps({"entries": snapshot}, indent=2))
        except OSError as e:
            raise CacheWriteFailure(f"Could not persist result cache to {self.path}: {e}") from e

    def _load(self, path: Path) -> None:
        if not path.exists():
            return
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            entries = [ResultCacheEntry(**raw) for raw in data.get("entries", [])]
        except (OSError, ValueError, TypeError) as e:
            logger.warning("Ignoring unreadable result cache %s: %s", path, e)
            return
        for entry in entries:
            self._entries[entry.key] = entry
        self._evict_locked()
