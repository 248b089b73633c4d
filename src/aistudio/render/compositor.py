from __future__ import annotations

import logging
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from PIL import Image, ImageOps, UnidentifiedImageError

from ..render_cache import RenderCache, canonical_key
from ..schema import Draft, SlotBox, TemplateSpec, Theme

if TYPE_CHECKING:
    from PIL.Image import Image as PILImage

logger = logging.getLogger(__name__)

JPEG_QUALITY = 92


class CompositorError(Exception):
    pass


class MissingAssetError(CompositorError):
    def __init__(self, slot_id: str, identity: str, path: Optional[Path]):
        self.slot_id = slot_id
        self.identity = identity
        self.path = path
        where = f" (expected at {path})" if path else ""
        super().__init__(f"Missing image for slot {slot_id}: {identity}{where}")


def _hex_to_rgb(value: str) -> tuple[int, int, int]:
    value = value.lstrip("#")
    return int(value[0:2], 16), int(value[2:4], 16), int(value[4:6], 16)


class Compositor:
    def __init__(self, template: TemplateSpec):
        self.template = template
        self._image_cache: dict[Path, PILImage] = {}

    @property
    def resolution(self) -> tuple[int, int]:
        return self.template.canvas

    def render(self, theme: Theme, slot_paths: dict[str, Path]) -> "PILImage":
        canvas = Image.new("RGB", self.resolution, _hex_to_rgb(theme.background))
        for box in self.template.slots:
            path = slot_paths.get(box.id)
            if path is None:
                continue
            img = self._load(box.id, path)
            self._paste(canvas, img, box)
        return canvas

    def _load(self, slot_id: str, path: Path) -> "PILImage":
        if path in self._image_cache:
            return self._image_cache[path]
        if not path.exists():
            raise MissingAssetError(slot_id, path.name, path)
        try:
            with Image.open(path) as opened:
                img = opened.convert("RGBA")
        except (UnidentifiedImageError, OSError) as e:
            raise CompositorError(f"Unreadable image for slot {slot_id}: {path}") from e
        self._image_cache[path] = img
        return img

    def _box_pixels(self, box: SlotBox) -> tuple[int, int, int, int]:
        w, h = self.resolution
        return int(box.x * w), int(box.y * h), max(1, int(box.w * w)), max(1, int(box.h * h))

    def _paste(self, canvas: "PILImage", img: "PILImage", box: SlotBox) -> None:
        left, top, bw, bh = self._box_pixels(box)
        if box.fit == "contain":
            fitted = ImageOps.contain(img, (bw, bh), Image.Resampling.LANCZOS)
            left += (bw - fitted.width) // 2
            top += (bh - fitted.height) // 2
        else:
            fitted = ImageOps.fit(img, (bw, bh), Image.Resampling.LANCZOS)
        canvas.paste(fitted, (left, top), fitted)


@dataclass(frozen=True)
class RenderOutcome:
    path: Path
    key: str
    from_cache: bool
    persisted: bool


def resolve_slot_paths(draft: Draft, base_dir: Path) -> dict[str, Path]:
    paths: dict[str, Path] = {}
    for slot_id, identity in draft.slots.items():
        raw = draft.images.get(identity)
        if raw is None:
            raise MissingAssetError(slot_id, identity, None)
        p = Path(raw)
        paths[slot_id] = p if p.is_absolute() else base_dir / p
    return paths


def render_draft(
    draft: Draft,
    template: TemplateSpec,
    cache: RenderCache,
    theme_id: Optional[str] = None,
    base_dir: Optional[Path] = None,
) -> RenderOutcome:
    """Render a draft composite, serving it from the render cache when possible.

    Order: the draft's own entry, then the global entry for the same key, then a
    fresh render saved under both.
    """
    theme_id = theme_id or draft.theme_id
    theme = template.theme(theme_id)
    key = canonical_key(template.id, draft.slots, theme_id)

    found = cache.lookup_draft(draft.id, theme_id, key=key)
    if found.hit:
        return RenderOutcome(path=found.path, key=key, from_cache=True, persisted=True)

    shared = cache.lookup(key)
    if shared.hit:
        saved = cache.save(draft.id, theme_id, key, shared.path, meta={"template_id": template.id})
        return RenderOutcome(path=saved.path, key=key, from_cache=True, persisted=saved.hit)

    slot_paths = resolve_slot_paths(draft, base_dir or Path.cwd())
    image = Compositor(template).render(theme, slot_paths)
    tmp_dir = Path(tempfile.mkdtemp(prefix="aistudio-render-"))
    keep = False
    try:
        rendered = tmp_dir / f"{key}.jpg"
        image.save(rendered, format="JPEG", quality=JPEG_QUALITY)
        logger.info("Rendered %s/%s (%s)", draft.id, theme_id, key[:12])

        meta = {"template_id": template.id, "slot_map": dict(draft.slots)}
        cache.save_global(key, rendered, meta=meta)
        saved = cache.save(draft.id, theme_id, key, rendered, meta=meta)
        # An unpersisted render is served from the scratch file.
        keep = not saved.hit
    finally:
        if not keep:
            shutil.rmtree(tmp_dir, ignore_errors=True)
    return RenderOutcome(path=saved.path, key=key, from_cache=False, persisted=saved.hit)
