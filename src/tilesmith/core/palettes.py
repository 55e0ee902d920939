"""Colour palette suggestions for templates with a colour module.

A palette is a background colour plus 3-5 "crayon" colours.  Suggestions come
from an external colour engine seeded with a colour derived from the user's
current choice (a theme, a city, or an explicit hex seed):

- ``thecolorapi`` — scheme API (``mode`` / ``count`` from the strategy)
- ``colormind`` — generative API returning an RGB matrix

Engine failures are absorbed.  When no engine palette survives clamping, a
small hand-authored fallback set is returned instead, so callers always get at
least one palette.

All colours leaving this module are uppercase 6-digit hex with a leading
``#``::

    >>> normalize_hex("#abc")
    '#AABBCC'
    >>> dedupe_colors(["#AABBCC", "#aabbcc", "#112233"])
    ['#AABBCC', '#112233']
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any

import httpx
from PIL import ImageColor
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .cache import CacheBase
from .sources import ColorStrategy

logger = logging.getLogger(__name__)

_HEX6_RE = re.compile(r"^#[0-9a-fA-F]{6}$")
_HEX3_RE = re.compile(r"^#[0-9a-fA-F]{3}$")

PASTEL_BLEND = 0.7
LIGHT_BLEND = 0.5
DEFAULT_MODE = "analogic"
DEFAULT_COUNT = 5
DEFAULT_ENGINE = "thecolorapi"


class PaletteSuggestion(BaseModel):
    """One suggested palette."""

    model_config = ConfigDict(populate_by_name=True)

    background_color: str = Field(alias="backgroundColor")
    crayon_colors: list[str] = Field(alias="crayonColors")
    name: str | None = None
    meta: dict[str, Any] | None = None

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


@dataclass(frozen=True)
class PaletteLimits:
    palettes: int = 6
    min_colors: int = 3
    max_colors: int = 5


FALLBACK_PALETTES = [
    PaletteSuggestion(
        background_color="#FFF7E6",
        crayon_colors=["#FF6B6B", "#FFD93D", "#6BCB77"],
        name="Pastel",
    ),
    PaletteSuggestion(
        background_color="#F5F1FF",
        crayon_colors=["#7C83FD", "#96BAFF", "#7DEDFF"],
        name="Cool",
    ),
    PaletteSuggestion(
        background_color="#FFF2F2",
        crayon_colors=["#FFB5E8", "#FF9CEE", "#A79AFF"],
        name="Candy",
    ),
]


# ---------------------------------------------------------------------------
# Colour helpers.
# ---------------------------------------------------------------------------


def is_hex_color(value: str) -> bool:
    """True for ``#RRGGBB`` (either case)."""
    return bool(_HEX6_RE.match(value))


def normalize_hex(value: str) -> str:
    """Trim, expand 3-digit shorthand, and uppercase.  Idempotent."""
    hex_value = value.strip()
    if _HEX3_RE.match(hex_value):
        hex_value = "#" + "".join(ch * 2 for ch in hex_value[1:])
    return hex_value.upper()


def dedupe_colors(colors: list[str]) -> list[str]:
    """Normalize, drop invalid colours and case-insensitive duplicates, keep order."""
    seen: set[str] = set()
    result: list[str] = []
    for color in colors:
        hex_value = normalize_hex(color)
        if not is_hex_color(hex_value) or hex_value in seen:
            continue
        seen.add(hex_value)
        result.append(hex_value)
    return result


def clamp_palette(
    palette: PaletteSuggestion, min_colors: int = 3, max_colors: int = 5
) -> PaletteSuggestion | None:
    """Bound a palette to ``[min_colors, max_colors]`` crayon colours.

    Returns:
        A normalized copy, or ``None`` when fewer than *min_colors* distinct
        valid colours remain.  Short palettes are discarded, never padded.
    """
    colors = dedupe_colors(palette.crayon_colors)[:max_colors]
    if len(colors) < min_colors:
        return None
    return PaletteSuggestion(
        background_color=normalize_hex(palette.background_color),
        crayon_colors=colors,
        name=palette.name,
        meta=palette.meta,
    )


def seed_to_hex(seed: str) -> str:
    """Derive a stable colour from any string."""
    digest = hashlib.sha256(seed.encode("utf-8")).hexdigest()
    return f"#{digest[:6].upper()}"


def lighten(hex_value: str, amount: float = 0.65) -> str:
    """Blend a colour towards white by *amount* (0 = unchanged, 1 = white)."""
    r, g, b = ImageColor.getrgb(normalize_hex(hex_value))[:3]
    mixed = (round(c + (255 - c) * amount) for c in (r, g, b))
    return "#{:02X}{:02X}{:02X}".format(*mixed)


def rgb_to_hex(rgb: list[int]) -> str:
    return "#" + "".join(f"{max(0, min(255, int(value))):02X}" for value in rgb[:3])


def is_rgb_triple(value: Any) -> bool:
    """True for a list whose first three items are finite numbers."""
    if not isinstance(value, list) or len(value) < 3:
        return False
    return all(
        isinstance(channel, (int, float)) and not isinstance(channel, bool) and math.isfinite(channel)
        for channel in value[:3]
    )


def background_for(colors: list[str], fallback: str, policy: str) -> str:
    base = colors[0] if colors else fallback
    if policy == "pastel":
        return lighten(base, PASTEL_BLEND)
    if policy == "light":
        return lighten(base, LIGHT_BLEND)
    return base


# ---------------------------------------------------------------------------
# Service.
# ---------------------------------------------------------------------------


class PaletteService:
    """Palette suggestions with caching and a fallback set.

    Args:
        client: Shared async HTTP client.
        cache: Palette cache, or ``None``.
        thecolorapi_url: Scheme endpoint of The Color API.
        colormind_url: Colormind API endpoint.
        timeout: Per-request timeout in seconds.
    """

    engines = ("thecolorapi", "colormind")

    def __init__(
        self,
        client: httpx.AsyncClient,
        cache: CacheBase | None = None,
        thecolorapi_url: str = "https://www.thecolorapi.com/scheme",
        colormind_url: str = "http://colormind.io/api/",
        timeout: float = 8.0,
    ) -> None:
        self.client = client
        self.cache = cache
        self.thecolorapi_url = thecolorapi_url
        self.colormind_url = colormind_url
        self.timeout = timeout

    async def _request_json(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            response = await self.client.request(method, url, timeout=self.timeout, **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"Colour engine request to {url} failed: {e}")
            return None
        if not response.is_success:
            logger.warning(f"Colour engine {url} returned {response.status_code}")
            return None
        try:
            return response.json()
        except ValueError:
            logger.warning(f"Colour engine {url} returned invalid JSON")
            return None

    async def thecolorapi_scheme(
        self, seed_hex: str, mode: str = DEFAULT_MODE, count: int = DEFAULT_COUNT
    ) -> list[str] | None:
        data = await self._request_json(
            "GET",
            self.thecolorapi_url,
            params={"hex": seed_hex.lstrip("#"), "mode": mode, "count": str(count)},
        )
        items = data.get("colors") if isinstance(data, dict) else None
        if not isinstance(items, list):
            return None
        colors = [
            item["hex"]["value"]
            for item in items
            if isinstance(item, dict)
            and isinstance(item.get("hex"), dict)
            and isinstance(item["hex"].get("value"), str)
            and item["hex"]["value"]
        ]
        return colors or None

    async def colormind_palette(self) -> list[str] | None:
        data = await self._request_json("POST", self.colormind_url, json={"model": "default"})
        rows = data.get("result") if isinstance(data, dict) else None
        if not isinstance(rows, list):
            return None
        colors = [rgb_to_hex(rgb) for rgb in rows if is_rgb_triple(rgb)]
        return colors or None

    async def _engine_colors(
        self, engine: str, seed_hex: str, strategy: ColorStrategy | None
    ) -> list[str] | None:
        if engine == "thecolorapi":
            mode = (strategy.mode if strategy else None) or DEFAULT_MODE
            count = (strategy.count if strategy else None) or DEFAULT_COUNT
            return await self.thecolorapi_scheme(seed_hex, mode, count)
        if engine == "colormind":
            return await self.colormind_palette()
        logger.warning(f"Unknown colour engine {engine}, using fallback palettes")
        return None

    async def _read_cached(self, key: str) -> list[dict[str, Any]] | None:
        cached = await self.cache.get(key)
        if not cached:
            return None
        try:
            return [PaletteSuggestion.model_validate(item).to_json_dict() for item in json.loads(cached)]
        except (ValueError, ValidationError):
            logger.warning(f"Discarding unreadable cache entry {key}")
            return None

    async def suggest_palettes(
        self,
        template_id: str,
        engine: str,
        seed: str,
        limits: PaletteLimits | None = None,
        strategy: ColorStrategy | None = None,
        cache_ttl_seconds: int | None = None,
    ) -> dict[str, Any]:
        """Suggest palettes for a template.

        Args:
            template_id: Template the palettes are for (part of the cache key).
            engine: ``thecolorapi`` or ``colormind``; anything else falls back.
            seed: Hex colour or arbitrary string (hashed to a colour).
            limits: Palette count and colour-count bounds.
            strategy: Optional colour strategy (mode, count, background policy).
            cache_ttl_seconds: Cache lifetime; falsy disables caching.

        Returns:
            ``{"palettes": [...], "cache": {"hit": bool, "ttlSeconds": int | None}}``
        """
        limits = limits or PaletteLimits()
        use_cache = self.cache is not None and bool(cache_ttl_seconds)
        strategy_id = strategy.id if strategy else "default"
        cache_key = f"palettes:{template_id}:{engine}:{strategy_id}:{seed}"

        if use_cache:
            cached = await self._read_cached(cache_key)
            if cached is not None:
                logger.debug(f"Palette cache hit: {cache_key}")
                return {"palettes": cached, "cache": {"hit": True, "ttlSeconds": cache_ttl_seconds}}

        seed_hex = normalize_hex(seed) if is_hex_color(normalize_hex(seed)) else seed_to_hex(seed)
        policy = (strategy.background_policy if strategy else None) or "pastel"

        palettes: list[PaletteSuggestion] = []
        colors = await self._engine_colors(engine, seed_hex, strategy)
        if colors:
            base = dedupe_colors(colors)
            palette = clamp_palette(
                PaletteSuggestion(
                    background_color=background_for(base, seed_hex, policy),
                    crayon_colors=base,
                    meta={"engine": engine, "strategy": strategy.id if strategy else None},
                ),
                limits.min_colors,
                limits.max_colors,
            )
            if palette is not None:
                palettes.append(palette)

        if not palettes:
            for fallback in FALLBACK_PALETTES:
                palette = clamp_palette(fallback, limits.min_colors, limits.max_colors)
                if palette is not None:
                    palettes.append(palette)
                if len(palettes) >= limits.palettes:
                    break

        result = [palette.to_json_dict() for palette in palettes[: limits.palettes]]
        if use_cache:
            await self.cache.set(cache_key, json.dumps(result), cache_ttl_seconds)
        return {"palettes": result, "cache": {"hit": False, "ttlSeconds": cache_ttl_seconds}}
