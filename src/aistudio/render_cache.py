from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .cache import sha256_text, stable_json
from .errors import CacheWriteFailure
from .events import EventLog, now_utc_iso, read_sidecar, sidecar_path, write_sidecar

logger = logging.getLogger(__name__)

COMPOSITE_SUFFIX = ".jpg"


def canonical_key(template_id: str, slot_map: Mapping[str, str], theme_id: str) -> str:
    """Deterministic key for a composite; independent of slot insertion order."""
    return sha256_text(stable_json([template_id, sorted(slot_map.items()), theme_id]))


@dataclass(frozen=True)
class CacheLookup:
    hit: bool
    path: Optional[Path] = None
    key: Optional[str] = None


@dataclass(frozen=True)
class RenderCacheEntry:
    key: str
    path: Path
    created_at: str
    size_bytes: int
    draft_id: Optional[str] = None
    theme_id: Optional[str] = None


class RenderCache:
    """On-disk cache of rendered template composites.

    Draft entries live at ``drafts/<draft_id>/<theme_id>.jpg`` so a draft can be
    dropped wholesale; global entries at ``global/<key>.jpg`` serve any draft
    with the same template, slot images and theme. Each composite has a JSON
    sidecar recording its key.
    """

    def __init__(self, root: Path, reporter: Optional[EventLog] = None):
        self.root = root
        self.reporter = reporter

    @property
    def drafts_dir(self) -> Path:
        return self.root / "drafts"

    @property
    def global_dir(self) -> Path:
        return self.root / "global"

    def draft_path(self, draft_id: str, theme_id: str) -> Path:
        return self.drafts_dir / draft_id / f"{theme_id}{COMPOSITE_SUFFIX}"

    def global_path(self, key: str) -> Path:
        return self.global_dir / f"{key}{COMPOSITE_SUFFIX}"

    def lookup_draft(self, draft_id: str, theme_id: str, key: Optional[str] = None) -> CacheLookup:
        """Hit when the draft has a composite for the theme.

        With ``key`` given, the stored composite must also match it.
        """
        path = self.draft_path(draft_id, theme_id)
        if not path.exists():
            return CacheLookup(hit=False, key=key)
        meta = read_sidecar(path) or {}
        stored_key = meta.get("key")
        if key is not None and stored_key != key:
            return CacheLookup(hit=False, key=key)
        return CacheLookup(hit=True, path=path, key=stored_key)

    def lookup(self, key: str) -> CacheLookup:
        path = self.global_path(key)
        if path.exists():
            return CacheLookup(hit=True, path=path, key=key)
        return CacheLookup(hit=False, key=key)

    def save(
        self,
        draft_id: str,
        theme_id: str,
        key: str,
        source_path: Path,
        meta: Optional[dict] = None,
    ) -> CacheLookup:
        dest = self.draft_path(draft_id, theme_id)
        payload = {"key": key, "draft_id": draft_id, "theme_id": theme_id, **(meta or {})}
        return self._write(dest, key, source_path, payload)

    def save_global(self, key: str, source_path: Path, meta: Optional[dict] = None) -> CacheLookup:
        payload = {"key": key, **(meta or {})}
        return self._write(self.global_path(key), key, source_path, payload)

    def invalidate(self, draft_id: str) -> int:
        """Delete every theme composite cached for the draft."""
        draft_dir = self.drafts_dir / draft_id
        if not draft_dir.exists():
            return 0
        count = len(list(draft_dir.glob(f"*{COMPOSITE_SUFFIX}")))
        shutil.rmtree(draft_dir, ignore_errors=True)
        logger.info("Invalidated %d cached composite(s) for draft %s", count, draft_id)
        return count

    def invalidate_key(self, key: str) -> bool:
        path = self.global_path(key)
        if not path.exists():
            return False
        path.unlink()
        sidecar_path(path).unlink(missing_ok=True)
        return True

    def invalidate_template(self, template_id: str) -> int:
        """Drop every composite, draft or global, rendered from the template."""
        removed = 0
        for path in self._all_composites():
            meta = read_sidecar(path) or {}
            if meta.get("template_id") == template_id:
                path.unlink(missing_ok=True)
                sidecar_path(path).unlink(missing_ok=True)
                removed += 1
        return removed

    def entries(self, draft_id: str) -> list[RenderCacheEntry]:
        draft_dir = self.drafts_dir / draft_id
        if not draft_dir.exists():
            return []
        out = []
        for path in sorted(draft_dir.glob(f"*{COMPOSITE_SUFFIX}")):
            meta = read_sidecar(path) or {}
            out.append(
                RenderCacheEntry(
                    key=meta.get("key", ""),
                    path=path,
                    created_at=meta.get("created_at", ""),
                    size_bytes=path.stat().st_size,
                    draft_id=draft_id,
                    theme_id=path.stem,
                )
            )
        return out

    def draft_stats(self, draft_id: str) -> tuple[int, int]:
        """(number of cached themes, total bytes) for the draft."""
        entries = self.entries(draft_id)
        return len(entries), sum(e.size_bytes for e in entries)

    def global_count(self) -> int:
        if not self.global_dir.exists():
            return 0
        return len(list(self.global_dir.glob(f"*{COMPOSITE_SUFFIX}")))

    def clear(self) -> None:
        shutil.rmtree(self.drafts_dir, ignore_errors=True)
        shutil.rmtree(self.global_dir, ignore_errors=True)

    def _all_composites(self) -> list[Path]:
        paths: list[Path] = []
        if self.drafts_dir.exists():
            paths.extend(self.drafts_dir.glob(f"*/*{COMPOSITE_SUFFIX}"))
        if self.global_dir.exists():
            paths.extend(self.global_dir.glob(f"*{COMPOSITE_SUFFIX}"))
        return paths

    def _write(self, dest: Path, key: str, source_path: Path, payload: dict) -> CacheLookup:
        try:
            self._copy(dest, source_path, payload)
        except CacheWriteFailure as e:
            self._report(e, key=key, dest=dest)
            return CacheLookup(hit=False, path=source_path, key=key)
        return CacheLookup(hit=True, path=dest, key=key)

    def _copy(self, dest: Path, source_path: Path, payload: dict) -> None:
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source_path, dest)
            write_sidecar(
                dest,
                {**payload, "created_at": now_utc_iso(), "size_bytes": dest.stat().st_size},
            )
        except OSError as e:
            raise CacheWriteFailure(f"Could not write composite {dest}: {e}") from e

    def _report(self, error: CacheWriteFailure, *, key: str, dest: Path) -> None:
        logger.warning("%s", error)
        if self.reporter is not None:
            self.reporter.record("render_cache_write_failed", key=key, path=str(dest), error=str(error))
