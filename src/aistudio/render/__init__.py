from .compositor import (
    Compositor,
    CompositorError,
    MissingAssetError,
    RenderOutcome,
    render_draft,
    resolve_slot_paths,
)

__all__ = [
    "Compositor",
    "CompositorError",
    "MissingAssetError",
    "RenderOutcome",
    "render_draft",
    "resolve_slot_paths",
]
