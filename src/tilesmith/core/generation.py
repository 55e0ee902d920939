"""Generation request preparation and the image API client.

:func:`prepare_generation` runs every check that must pass before a paid image
call is made:

1. overlay defaults and validate params against the template schema
2. resolve the theme (``themeKey`` / ``themeText``) for themed templates
3. resolve source ids into sanitized labels
4. validate the generation settings (square ``WxH`` size, known format)
5. build the deduplication cache key
6. render tile title, description and tags

The prompt itself is assembled by the API layer from the returned
``safe_input``.
"""

from __future__ import annotations

import base64
import logging
import re
from dataclasses import dataclass, field
from typing import Any

import httpx

from .cache_key import build_generation_cache_key
from .config import TilesmithConfig
from .errors import GenerationError
from .prompt_input import resolve_prompt_input
from .providers import ProviderRegistry
from .sources import PromptSource
from .templates import Template, apply_defaults, derive_params, render_template_text, validate_params

logger = logging.getLogger(__name__)

ALLOWED_OUTPUT_FORMATS = ("webp", "png", "jpg")
_SIZE_RE = re.compile(r"^(\d+)x(\d+)$")


@dataclass(frozen=True)
class GenerationSettings:
    model: str
    size: str
    output_format: str
    background: str


@dataclass(frozen=True)
class ThemeSelection:
    used: bool = False
    text: str = ""
    label: str = ""


@dataclass
class PreparedGeneration:
    """Everything needed to look up or create a tile."""

    template: Template
    params: dict[str, Any]
    safe_input: dict[str, Any]
    labels: dict[str, str]
    settings: GenerationSettings
    cache_key: str
    title: str
    description: str
    tags: list[str] = field(default_factory=list)


def resolve_settings(template: Template, settings: TilesmithConfig) -> GenerationSettings:
    """Template overrides first, configured defaults second."""
    return GenerationSettings(
        model=template.model or settings.image_model,
        size=template.size or settings.image_size,
        output_format=template.output_format or settings.image_output_format,
        background=template.background or settings.image_background,
    )


def validate_settings(settings: GenerationSettings) -> None:
    """Raise :class:`GenerationError` for a non-square size or unknown format."""
    match = _SIZE_RE.match(settings.size)
    if match is None:
        raise GenerationError("Invalid size")
    if match.group(1) != match.group(2):
        raise GenerationError("Size must be square")
    if settings.output_format not in ALLOWED_OUTPUT_FORMATS:
        raise GenerationError("Invalid output format")


def resolve_theme(template: Template, params: dict[str, Any]) -> ThemeSelection:
    """Pick the theme text for themed templates.

    Free text wins over the key.  Templates without ``themeOptions``, or
    requests without theme params, are not themed.

    Raises:
        GenerationError: If the template is themed but no theme text results.
    """
    if not template.theme_options or ("themeKey" not in params and "themeText" not in params):
        return ThemeSelection()
    theme_key = str(params.get("themeKey") or "")
    theme_input = str(params.get("themeText") or "").strip()
    text = theme_input or template.theme_options.get(theme_key, "")
    if not text:
        raise GenerationError("Invalid theme")
    return ThemeSelection(used=True, text=text, label=theme_input or theme_key)


def render_tile_metadata(
    template: Template,
    params: dict[str, Any],
    safe_input: dict[str, Any],
    theme_label: str,
) -> tuple[str, str, list[str]]:
    """Render title, description and tags for a new tile."""
    context = {**safe_input, **derive_params(safe_input), "themeLabel": theme_label}
    fallback_theme = str(params.get("theme") or theme_label or "AI")

    if template.title_template:
        title = render_template_text(template.title_template, context)
    else:
        title = f"{template.name} - {fallback_theme}"
    if template.description_template:
        description = render_template_text(template.description_template, context)
    else:
        description = template.description or "AI generated seamless tile"
    if template.tags:
        tags = [render_template_text(tag, context) for tag in template.tags]
        tags = [tag for tag in tags if tag.strip()]
    else:
        tags = [fallback_theme.lower()]
    return title.strip(), description.strip(), tags


async def prepare_generation(
    template: Template,
    source: PromptSource | None,
    raw_params: dict[str, Any] | None,
    registry: ProviderRegistry,
    settings: TilesmithConfig,
) -> PreparedGeneration:
    """Validate a generation request and compute its cache key.

    Raises:
        ParamsValidationError: Params do not match the template schema.
        PromptResolutionError: A source id cannot be turned into a safe label.
        GenerationError: Invalid theme, size or output format.
    """
    params = validate_params(template, apply_defaults(raw_params, template.defaults))
    theme = resolve_theme(template, params)

    safe_input = dict(params)
    if theme.used:
        safe_input["themeDescription"] = theme.text

    labels: dict[str, str] = {}
    if source is not None:
        safe_input, labels = await resolve_prompt_input(template, source, safe_input, registry)

    generation_settings = resolve_settings(template, settings)
    validate_settings(generation_settings)

    cache_key = build_generation_cache_key(
        template.id,
        generation_settings.model,
        generation_settings.size,
        generation_settings.output_format,
        generation_settings.background,
        params,
        theme_text=theme.text if theme.used else None,
    )
    title, description, tags = render_tile_metadata(template, params, safe_input, theme.label)
    logger.info(f"Prepared generation for {template.id} (cache key {cache_key[:12]})")

    return PreparedGeneration(
        template=template,
        params=params,
        safe_input=safe_input,
        labels=labels,
        settings=generation_settings,
        cache_key=cache_key,
        title=title,
        description=description,
        tags=tags,
    )


# ---------------------------------------------------------------------------
# Image API client.
# ---------------------------------------------------------------------------


class OpenAIImageClient:
    """Minimal client for the OpenAI image generation endpoint.

    Args:
        client: Shared async HTTP client.
        api_key: Bearer token.
        url: Image generation endpoint.
        timeout: Request timeout in seconds.  Image generation is slow, so the
            caller usually passes a larger value than for lookups.
    """

    def __init__(self, client: httpx.AsyncClient, api_key: str, url: str, timeout: float = 120.0) -> None:
        self.client = client
        self.api_key = api_key
        self.url = url
        self.timeout = timeout

    async def generate(self, prompt: str, settings: GenerationSettings) -> bytes:
        """Generate one image and return its decoded bytes.

        Raises:
            GenerationError: (502) On any upstream failure or empty result.
        """
        if not self.api_key:
            raise GenerationError("Image generation is not configured", status_code=502)
        payload = {
            "model": settings.model,
            "prompt": prompt,
            "size": settings.size,
            "output_format": settings.output_format,
            "background": settings.background,
            "n": 1,
        }
        try:
            response = await self.client.post(
                self.url,
                json=payload,
                headers={"authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            logger.warning(f"Image generation request failed: {e}")
            raise GenerationError("Image generation request failed", status_code=502) from e

        if not response.is_success:
            logger.warning(f"Image generation returned {response.status_code}: {response.text[:500]}")
            raise GenerationError("Image generation request failed", status_code=502)

        try:
            b64 = response.json()["data"][0]["b64_json"]
            return base64.b64decode(b64, validate=True)
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.warning(f"Image generation returned no usable image: {e}")
            raise GenerationError("No image returned", status_code=502) from e
