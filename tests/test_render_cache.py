from __future__ import annotations

from pathlib import Path

from conftest import write_image

from aistudio.events import EventLog
from aistudio.render_cache import RenderCache, canonical_key


def composite(tmp_path: Path, name: str = "composite.jpg") -> Path:
    return write_image(tmp_path / "src" / name, size=(32, 32), fmt="JPEG")


class TestRenderCacheDraftEntries:
    def test_save_then_lookup_draft(self, tmp_path: Path) -> None:
        cache = RenderCache(tmp_path / "renders")
        key = canonical_key("tpl", {"hero": "imgA"}, "default")
        saved = cache.save("d1", "default", key, composite(tmp_path))
        assert saved.hit
        found = cache.lookup_draft("d1", "default")
        assert found.hit
        assert found.path == saved.path
        assert found.key == key

    def test_lookup_draft_with_stale_key_misses(self, tmp_path: Path) -> None:
        cache = RenderCache(tmp_path / "renders")
        old = canonical_key("tpl", {"hero": "imgA"}, "default")
        new = canonical_key("tpl", {"hero": "imgC"}, "default")
        cache.save("d1", "default", old, composite(tmp_path))
        assert not cache.lookup_draft("d1", "default", key=new).hit

    def test_invalidate_misses_every_theme(self, tmp_path: Path) -> None:
        cache = RenderCache(tmp_path / "renders")
        src = composite(tmp_path)
        for theme in ("default", "dark", "light"):
            cache.save("d1", theme, canonical_key("tpl", {"hero": "imgA"}, theme), src)
        assert cache.invalidate("d1") == 3
        for theme in ("default", "dark", "light"):
            assert not cache.lookup_draft("d1", theme).hit

    def test_invalidate_leaves_other_drafts(self, tmp_path: Path) -> None:
        cache = RenderCache(tmp_path / "renders")
        src = composite(tmp_path)
        cache.save("d1", "default", "k1", src)
        cache.save("d2", "default", "k2", src)
        cache.invalidate("d1")
        assert cache.lookup_draft("d2", "default").hit

    def test_scenario_slot_change_then_invalidate(self, tmp_path: Path) -> None:
        cache = RenderCache(tmp_path / "renders")
        slots = {"hero": "imgA", "logo": "imgB"}
        saved = cache.save("d1", "default", canonical_key("tpl", slots, "default"), composite(tmp_path))
        assert cache.lookup_draft("d1", "default").path == saved.path

        slots["hero"] = "imgC"
        cache.invalidate("d1")
        assert not cache.lookup_draft("d1", "default").hit

    def test_draft_stats(self, tmp_path: Path) -> None:
        cache = RenderCache(tmp_path / "renders")
        src = composite(tmp_path)
        cache.save("d1", "a", "k1", src)
        cache.save("d1", "b", "k2", src)
        themes, total = cache.draft_stats("d1")
        assert themes == 2
        assert total == 2 * src.stat().st_size


class TestRenderCacheGlobalEntries:
    def test_global_lookup(self, tmp_path: Path) -> None:
        cache = RenderCache(tmp_path / "renders")
        key = canonical_key("tpl", {"a": "x"}, "t")
        assert not cache.lookup(key).hit
        cache.save_global(key, composite(tmp_path))
        assert cache.lookup(key).hit
        assert cache.global_count() == 1

    def test_invalidate_key(self, tmp_path: Path) -> None:
        cache = RenderCache(tmp_path / "renders")
        cache.save_global("k", composite(tmp_path))
        assert cache.invalidate_key("k")
        assert not cache.lookup("k").hit
        assert not cache.invalidate_key("k")

    def test_invalidate_template(self, tmp_path: Path) -> None:
        cache = RenderCache(tmp_path / "renders")
        src = composite(tmp_path)
        cache.save_global("k1", src, meta={"template_id": "tpl"})
        cache.save("d1", "default", "k1", src, meta={"template_id": "tpl"})
        cache.save_global("k2", src, meta={"template_id": "other"})
        assert cache.invalidate_template("tpl") == 2
        assert cache.lookup("k2").hit
        assert not cache.lookup("k1").hit

    def test_clear(self, tmp_path: Path) -> None:
        cache = RenderCache(tmp_path / "renders")
        src = composite(tmp_path)
        cache.save_global("k", src)
        cache.save("d1", "default", "k", src)
        cache.clear()
        assert cache.global_count() == 0
        assert not cache.lookup_draft("d1", "default").hit


class TestRenderCacheWriteFailure:
    def test_failure_is_reported_not_raised(self, tmp_path: Path) -> None:
        root = tmp_path / "renders"
        root.mkdir()
        (root / "drafts").write_text("not a directory", encoding="utf-8")
        log = EventLog(tmp_path / "events.jsonl")
        cache = RenderCache(root, reporter=log)
        src = composite(tmp_path)

        result = cache.save("d1", "default", "k", src)

        assert not result.hit
        assert result.path == src
        (event,) = log.read()
        assert event["event"] == "render_cache_write_failed"
        assert event["key"] == "k"
