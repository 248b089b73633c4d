from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from jinja2 import (
    BaseLoader,
    ChoiceLoader,
    DictLoader,
    Environment,
    FileSystemLoader,
    StrictUndefined,
    TemplateNotFound,
    UndefinedError,
)

from .models import Operation, OperationKind

BUILTIN_TEMPLATES = {
    "enhance.j2": (
        "enhance image resolution and sharpness only, preserve original colors exactly, "
        "maintain color accuracy, professional photography quality, crisp focus, "
        "reduce pixelation, reduce blur, high definition clarity"
    ),
    "enhance_negative.j2": (
        "blurry, low resolution, pixelated, compression artifacts, noisy, grainy, "
        "color shift, color cast, oversaturated, desaturated, overprocessed, "
        "skin smoothing, airbrushed, stylized, filters applied"
    ),
    "background_change.j2": (
        "{{ prompt | trim }}"
        "{% if style %}, {{ style }}{% endif %}"
    ),
    "background_change_negative.j2": (
        "distracting elements, patterns, text, low quality, blurry"
    ),
}


class PromptResolutionError(Exception):
    """Raised when a prompt template cannot be resolved."""

    pass


@dataclass(frozen=True)
class ResolvedPrompt:
    template_name: str
    params: dict[str, Any]
    resolved_text: str


@dataclass(frozen=True)
class ProviderPrompt:
    prompt: str
    negative_prompt: str


class PromptResolver:
    """Renders provider prompts from built-in templates.

    A templates directory, when given, takes precedence so prompts can be
    tuned without a release.
    """

    def __init__(self, templates_dir: Optional[Path] = None):
        self.templates_dir = templates_dir
        loaders: list[BaseLoader] = []
        if templates_dir is not None:
            loaders.append(FileSystemLoader(str(templates_dir)))
        loaders.append(DictLoader(BUILTIN_TEMPLATES))
        self.env = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def render(self, template_name: str, params: dict[str, Any]) -> str:
        try:
            tpl = self.env.get_template(template_name)
            return tpl.render(**params).strip()
        except TemplateNotFound as e:
            raise PromptResolutionError(f"Template '{template_name}' not found") from e
        except UndefinedError as e:
            raise PromptResolutionError(
                f"Undefined variable in template '{template_name}': {e}"
            ) from e

    def resolve(self, template_name: str, params: dict[str, Any]) -> ResolvedPrompt:
        return ResolvedPrompt(
            template_name=template_name,
            params=params,
            resolved_text=self.render(template_name, params),
        )

    def for_operation(self, operation: Operation, style: str = "") -> Optional[ProviderPrompt]:
        """Prompt pair sent to the provider, or None for kinds that take no prompt."""
        if operation.kind is OperationKind.ENHANCE:
            return ProviderPrompt(
                prompt=self.render("enhance.j2", {}),
                negative_prompt=self.render("enhance_negative.j2", {}),
            )
        if operation.kind is OperationKind.REPLACE_BACKGROUND_PROMPT:
            return ProviderPrompt(
                prompt=self.render("background_change.j2", {"prompt": operation.prompt, "style": style}),
                negative_prompt=self.render("background_change_negative.j2", {}),
            )
        return None

