from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from PIL import Image, UnidentifiedImageError

from .cache import file_sha256
from .errors import FormatError, UnsupportedInputError

HEX_COLOR = re.compile(r"^#[0-9A-Fa-f]{6}$")


@dataclass(frozen=True)
class SourceAsset:
    identity: str
    width: int
    height: int
    location: str

    @property
    def is_remote(self) -> bool:
        return self.location.startswith(("http://", "https://"))

    @property
    def longest_edge(self) -> int:
        return max(self.width, self.height)

    @classmethod
    def from_file(cls, path: Path) -> "SourceAsset":
        """Build an asset from a local image; identity is the content hash."""
        try:
            with Image.open(path) as img:
                width, height = img.size
        except FileNotFoundError as e:
            raise FormatError(f"Source image not found: {path}") from e
        except (UnidentifiedImageError, OSError) as e:
            raise FormatError(f"Unsupported image format: {path}") from e
        return cls(
            identity=file_sha256(path),
            width=width,
            height=height,
            location=str(path),
        )


class OperationKind(str, Enum):
    ENHANCE = "enhance"
    REMOVE_BACKGROUND = "remove-background"
    REPLACE_BACKGROUND_SOLID = "replace-background-solid"
    REPLACE_BACKGROUND_GRADIENT = "replace-background-gradient"
    REPLACE_BACKGROUND_PROMPT = "replace-background-prompt"

    @property
    def is_mask_style(self) -> bool:
        return self in MASK_KINDS


MASK_KINDS = frozenset(
    {
        OperationKind.REMOVE_BACKGROUND,
        OperationKind.REPLACE_BACKGROUND_SOLID,
        OperationKind.REPLACE_BACKGROUND_GRADIENT,
    }
)

GRADIENT_DIRECTIONS = ("vertical", "horizontal", "diagonal")

# Names shown for the solid backdrop presets.
COLOR_NAMES = {
    "FFFFFF": "pure white",
    "FAFAFA": "off-white",
    "F5F5F5": "light gray",
    "E5E5E5": "soft gray",
    "CCCCCC": "medium gray",
    "808080": "gray",
    "333333": "dark gray",
    "000000": "pure black",
    "FDF5E6": "cream",
    "FFE4E1": "blush pink",
    "FFDAB9": "peach",
    "FFC0CB": "pink",
    "FF69B4": "hot pink",
    "DC143C": "crimson",
    "FF0000": "red",
    "FF7F50": "coral",
    "FFA500": "orange",
    "FFD700": "gold",
    "FFFF00": "yellow",
    "228B22": "forest green",
    "008000": "green",
    "9DC183": "sage green",
    "40E0D0": "turquoise",
    "87CEEB": "sky blue",
    "ADD8E6": "light blue",
    "0000FF": "blue",
    "191970": "midnight blue",
    "4B0082": "indigo",
    "EE82EE": "violet",
    "FF00FF": "magenta",
    "E6E6FA": "lavender",
}


def color_name(hex_color: str) -> str:
    key = hex_color.lstrip("#").upper()
    return COLOR_NAMES.get(key, f"#{key} color")


@dataclass(frozen=True)
class GradientSpec:
    colors: tuple[str, ...]
    direction: str = "vertical"

    def validate(self) -> None:
        if len(self.colors) < 2:
            raise UnsupportedInputError("A gradient needs at least two colors")
        for c in self.colors:
            if not HEX_COLOR.match(c):
                raise UnsupportedInputError(f"Invalid gradient color: {c!r}")
        if self.direction not in GRADIENT_DIRECTIONS:
            raise UnsupportedInputError(
                f"Unknown gradient direction: {self.direction!r}. "
                f"Expected one of {list(GRADIENT_DIRECTIONS)}"
            )

    def to_dict(self) -> dict[str, Any]:
        return {"colors": [c.upper() for c in self.colors], "direction": self.direction}


@dataclass(frozen=True)
class Operation:
    kind: OperationKind
    color: Optional[str] = None
    gradient: Optional[GradientSpec] = None
    prompt: Optional[str] = None

    def __post_init__(self) -> None:
        if self.kind is OperationKind.REPLACE_BACKGROUND_SOLID:
            if not self.color or not HEX_COLOR.match(self.color):
                raise UnsupportedInputError(
                    f"Solid background needs a #RRGGBB color, got {self.color!r}"
                )
        elif self.kind is OperationKind.REPLACE_BACKGROUND_GRADIENT:
            if self.gradient is None:
                raise UnsupportedInputError("Gradient background needs a gradient spec")
            self.gradient.validate()
        elif self.kind is OperationKind.REPLACE_BACKGROUND_PROMPT:
            if not self.prompt or not self.prompt.strip():
                raise UnsupportedInputError("Prompt background needs a non-empty prompt")

    def signature(self) -> dict[str, Any]:
        """Cache-relevant identity of this operation.

        Mask-style kinds share one signature: the subject mask depends only on
        the source, so color and gradient never reach the key. Prompt kinds
        carry the prompt verbatim.
        """
        if self.kind.is_mask_style:
            return {"kind": "mask"}
        if self.kind is OperationKind.REPLACE_BACKGROUND_PROMPT:
            return {"kind": self.kind.value, "prompt": self.prompt}
        return {"kind": self.kind.value}

    def provider_kind(self) -> OperationKind:
        """Kind actually sent to the provider (mask kinds all run removal)."""
        if self.kind.is_mask_style:
            return OperationKind.REMOVE_BACKGROUND
        return self.kind

    def display_metadata(self) -> Optional[dict[str, Any]]:
        """Session-only presentation state. Never part of a cache key or value."""
        if self.kind is OperationKind.REPLACE_BACKGROUND_SOLID:
            return {"type": "solid", "color": self.color.upper(), "name": color_name(self.color)}
        if self.kind is OperationKind.REPLACE_BACKGROUND_GRADIENT:
            return {"type": "gradient", **self.gradient.to_dict()}
        if self.kind is OperationKind.REMOVE_BACKGROUND:
            return {"type": "transparent"}
        if self.kind is OperationKind.REPLACE_BACKGROUND_PROMPT:
            return {"type": "prompt", "prompt": self.prompt}
        return None
