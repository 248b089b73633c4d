from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, model_validator

HEX_PATTERN = r"^#[0-9A-Fa-f]{6}$"


class SlotBox(BaseModel):
    """Placement of a slot on the canvas, as fractions of canvas size."""

    id: str
    x: float = Field(ge=0.0, le=1.0)
    y: float = Field(ge=0.0, le=1.0)
    w: float = Field(gt=0.0, le=1.0)
    h: float = Field(gt=0.0, le=1.0)
    fit: str = Field(default="cover", pattern=r"^(cover|contain)$")


class Theme(BaseModel):
    id: str
    background: str = Field(default="#FFFFFF", pattern=HEX_PATTERN)
    accent: Optional[str] = Field(default=None, pattern=HEX_PATTERN)


class TemplateSpec(BaseModel):
    id: str
    canvas: tuple[int, int] = (1080, 1080)
    slots: list[SlotBox] = Field(min_length=1)
    themes: list[Theme] = Field(default_factory=lambda: [Theme(id="default")])

    @model_validator(mode="after")
    def check_unique_ids(self) -> "TemplateSpec":
        slot_ids = [s.id for s in self.slots]
        if len(slot_ids) != len(set(slot_ids)):
            raise ValueError(f"Duplicate slot ids in template {self.id}")
        theme_ids = [t.id for t in self.themes]
        if len(theme_ids) != len(set(theme_ids)):
            raise ValueError(f"Duplicate theme ids in template {self.id}")
        return self

    def slot(self, slot_id: str) -> SlotBox:
        for s in self.slots:
            if s.id == slot_id:
                return s
        raise KeyError(slot_id)

    def theme(self, theme_id: str) -> Theme:
        for t in self.themes:
            if t.id == theme_id:
                return t
        raise KeyError(theme_id)


class Draft(BaseModel):
    """A user's in-progress composition.

    ``slots`` maps slot id to image identity; ``images`` maps identity to the
    file holding that image (relative paths resolve against the draft file).
    """

    id: str
    template_id: str
    theme_id: str = "default"
    slots: dict[str, str] = Field(default_factory=dict)
    images: dict[str, str] = Field(default_factory=dict)
