"""Final prompt compilation for seamless tile generation.

The prompt sent to the image API has three parts, separated by newlines::

    [Fixed: seamless tile boilerplate]
    [Template promptTemplate]
    INPUT_JSON={...sanitized parameters...}

Template prompt text never contains placeholders.  Every user-influenced value
travels in the trailing ``INPUT_JSON`` block, and only after label
sanitization, so parameter values cannot rewrite the instructions.
"""

from __future__ import annotations

import json
from typing import Any

# ---------------------------------------------------------------------------
# Fixed boilerplate.
# Seamlessness is a property of every tile, so it is not left to templates.
# ---------------------------------------------------------------------------

_SEAMLESS_BOILERPLATE = (
    "You must generate a true seamless tile. Edges must match perfectly on all sides. "
    "No borders, no seams, repeatable pattern. Square format. "
    "No logos, no watermarks, no signatures. "
    "No text unless explicitly required by the theme."
)


def build_prompt(prompt_template: str, safe_input: dict[str, Any]) -> str:
    """Compile the full prompt.

    Args:
        prompt_template: The template's fixed prompt text.
        safe_input: Sanitized parameters from prompt input resolution.

    Returns:
        The prompt string.
    """
    parts = [_SEAMLESS_BOILERPLATE]
    stripped = prompt_template.strip()
    if stripped:
        parts.append(stripped)
    parts.append(f"INPUT_JSON={json.dumps(safe_input, ensure_ascii=False)}")
    return "\n".join(parts)
