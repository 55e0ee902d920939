"""Content-addressed keys for generated tiles.

Two generation requests that mean the same thing must hash to the same key, so
an existing tile is reused instead of paying for a second image.  Before
hashing, parameter values are normalized:

- ``themeText`` (and the resolved theme text): lowercase, diacritics
  stripped, non-alphanumerics collapsed to single spaces
- hex colours: 3-digit expanded to 6-digit, lowercase
- lists made only of hex colours: each normalized, then sorted

The key is the SHA-256 of the canonical JSON of the template id, generation
settings, and normalized params.  Sanitized prompt labels are not part of the
key; only the schema-validated values are.
"""

from __future__ import annotations

import hashlib
import json
import re
import unicodedata
from typing import Any

HEX_COLOR_RE = re.compile(r"^#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6})$")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")

THEME_TEXT_KEY = "themeText"


def normalize_text(value: str) -> str:
    """Lowercase, strip diacritics, and collapse everything else to spaces.

    >>> normalize_text("  Fête  de la Musique! ")
    'fete de la musique'
    """
    decomposed = unicodedata.normalize("NFD", value.lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _NON_ALNUM_RE.sub(" ", stripped).strip()


def normalize_hex_lower(value: str) -> str:
    """Expand ``#abc`` to ``#aabbcc`` and lowercase."""
    hex_value = value.strip().lower()
    if len(hex_value) == 4:
        return "#" + "".join(ch * 2 for ch in hex_value[1:])
    return hex_value


def _is_hex(value: Any) -> bool:
    return isinstance(value, str) and bool(HEX_COLOR_RE.match(value.strip()))


def normalize_cache_params(params: dict[str, Any], theme_text: str | None = None) -> dict[str, Any]:
    """Return a copy of *params* with every normalization rule applied.

    Args:
        params: Schema-validated parameter values.
        theme_text: Resolved theme text, stored under ``themeText`` when the
            template uses themes.
    """
    normalized: dict[str, Any] = {}
    for key, value in params.items():
        if key == THEME_TEXT_KEY and isinstance(value, str):
            normalized[key] = normalize_text(value)
        elif _is_hex(value):
            normalized[key] = normalize_hex_lower(value)
        elif isinstance(value, list) and value and all(_is_hex(item) for item in value):
            normalized[key] = sorted(normalize_hex_lower(item) for item in value)
        else:
            normalized[key] = value
    if theme_text is not None:
        normalized[THEME_TEXT_KEY] = normalize_text(theme_text)
    return normalized


def build_generation_cache_key(
    template_id: str,
    model: str,
    size: str,
    output_format: str,
    background: str,
    params: dict[str, Any],
    theme_text: str | None = None,
) -> str:
    """Hash a generation request into its deduplication key.

    Returns:
        Hex SHA-256 digest.
    """
    payload = {
        "templateId": template_id,
        "model": model,
        "size": size,
        "output_format": output_format,
        "background": background,
        "params": normalize_cache_params(params, theme_text),
    }
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()
