"""Turn validated parameter values into the text that reaches the prompt.

Submitted values for source-declared parameters are opaque ids (``"Q90"``).
Before generation each id is replaced by its sanitized label, taken from the
source's static option lists or from the configured entity resolver.

Any failure here aborts the generation attempt.  Raw ids or unsanitized
external text never reach the prompt:

- a dynamic id with no ``entityResolver`` raises :class:`MissingResolverError`
- a label that is missing or sanitizes to nothing raises
  :class:`LabelResolutionError`
"""

from __future__ import annotations

import logging
from typing import Any

from .errors import LabelResolutionError, MissingResolverError
from .providers import ProviderRegistry, ResolvedLabel
from .sources import PromptSource, build_static_label_map, sanitize_label
from .templates import Template

logger = logging.getLogger(__name__)

MAX_KEYWORDS = 8


async def _resolve_with_provider(
    source: PromptSource, ids: list[str], registry: ProviderRegistry
) -> dict[str, ResolvedLabel]:
    if not ids or source.entity_resolver is None:
        return {}
    provider_name = source.entity_resolver.provider
    if not registry.supports(provider_name, "resolve"):
        logger.warning(f"Entity resolver {provider_name} for source {source.id} cannot resolve ids")
        return {}
    return await registry.get(provider_name).resolve(ids, source)


async def resolve_prompt_input(
    template: Template,
    source: PromptSource | None,
    params: dict[str, Any],
    registry: ProviderRegistry,
) -> tuple[dict[str, Any], dict[str, str]]:
    """Resolve ids to sanitized labels for prompt injection.

    Args:
        template: Template the parameters belong to.
        source: The template's prompt source; ``None`` passes params through.
        params: Schema-validated parameter values.
        registry: Provider adapters used for the entity resolver.

    Returns:
        ``(safe_input, labels)``.  ``safe_input`` is *params* with every
        resolved label written under the parameter's ``labelKey`` (or its own
        name) plus optional keyword lists; ``labels`` maps parameter names to
        their sanitized labels.

    Raises:
        MissingResolverError: A dynamic id needs resolution but the source
            has no entity resolver.
        LabelResolutionError: A label is missing or empty after sanitization.
    """
    if source is None:
        return dict(params), {}

    static_labels = build_static_label_map(source)
    id_by_param: dict[str, str] = {}
    ids_to_resolve: list[str] = []
    for param_name in source.param_providers:
        if param_name not in template.params_schema:
            continue
        value = params.get(param_name)
        if not isinstance(value, str) or not value:
            continue
        id_by_param[param_name] = value
        if value not in static_labels:
            ids_to_resolve.append(value)

    if ids_to_resolve and source.entity_resolver is None:
        first = next(name for name, value in id_by_param.items() if value in ids_to_resolve)
        raise MissingResolverError(f"Missing resolver for source labels ({first})", param=first)

    resolved_by_id: dict[str, ResolvedLabel] = {
        option_id: ResolvedLabel(label=label) for option_id, label in static_labels.items()
    }
    resolved_by_id.update(await _resolve_with_provider(source, ids_to_resolve, registry))

    safe_input = dict(params)
    labels: dict[str, str] = {}
    for param_name, option_id in id_by_param.items():
        resolved = resolved_by_id.get(option_id)
        if resolved is None or not resolved.label:
            raise LabelResolutionError(f"Missing label for {param_name}", param=param_name)
        sanitized = sanitize_label(resolved.label, source.sanitization)
        if not sanitized:
            raise LabelResolutionError(f"Invalid label for {param_name}", param=param_name)

        provider = source.param_providers[param_name]
        safe_input[provider.label_key or param_name] = sanitized
        if provider.keywords_key and resolved.keywords:
            keywords = [sanitize_label(keyword, source.sanitization) for keyword in resolved.keywords]
            keywords = [keyword for keyword in keywords if keyword][:MAX_KEYWORDS]
            if keywords:
                safe_input[provider.keywords_key] = ", ".join(keywords)
        labels[param_name] = sanitized

    return safe_input, labels
