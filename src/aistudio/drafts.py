from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional, TypeVar

import yaml
from pydantic import BaseModel, ValidationError

from .render_cache import RenderCache, canonical_key
from .schema import Draft, TemplateSpec

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class DraftError(Exception):
    def __init__(self, message: str, path: Optional[Path] = None):
        self.path = path
        super().__init__(f"{path}: {message}" if path else message)


def _load_yaml_model(model_cls: type[M], path: Path) -> M:
    try:
        data: Any = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise DraftError(f"Could not read YAML: {e}", path) from e
    if not isinstance(data, dict):
        raise DraftError("YAML root must be a mapping", path)
    try:
        return model_cls.model_validate(data)
    except ValidationError as e:
        raise DraftError(f"Invalid {model_cls.__name__}: {e}", path) from e


def load_template(path: Path) -> TemplateSpec:
    return _load_yaml_model(TemplateSpec, path)


def load_draft(path: Path) -> Draft:
    return _load_yaml_model(Draft, path)


def draft_key(draft: Draft, theme_id: Optional[str] = None) -> str:
    return canonical_key(draft.template_id, draft.slots, theme_id or draft.theme_id)


class DraftStore:
    """YAML-backed drafts, one file per draft under ``root``.

    Slot mutations go through here so the render cache never serves a
    composite built from a stale slot image.
    """

    def __init__(self, root: Path, render_cache: RenderCache):
        self.root = root
        self.render_cache = render_cache

    def path_for(self, draft_id: str) -> Path:
        return self.root / f"{draft_id}.yaml"

    def load(self, draft_id: str) -> Draft:
        return load_draft(self.path_for(draft_id))

    def save(self, draft: Draft) -> Path:
        path = self.path_for(draft.id)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = draft.model_dump(mode="json")
        path.write_text(yaml.safe_dump(data, sort_keys=False, allow_unicode=True), encoding="utf-8")
        return path

    def set_slot_image(
        self,
        draft: Draft,
        slot_id: str,
        identity: str,
        image_path: Optional[Path] = None,
    ) -> Draft:
        """Point a slot at a new image and drop the draft's cached composites."""
        if draft.slots.get(slot_id) == identity:
            return draft
        draft.slots[slot_id] = identity
        if image_path is not None:
            draft.images[identity] = str(image_path)
        removed = self.render_cache.invalidate(draft.id)
        logger.debug("Slot %s of %s changed; dropped %d composite(s)", slot_id, draft.id, removed)
        self.save(draft)
        return draft

    def set_theme(self, draft: Draft, theme_id: str) -> Draft:
        draft.theme_id = theme_id
        self.save(draft)
        return draft
