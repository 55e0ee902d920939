"""Option resolution: the selectable choices for every template parameter.

The result always starts from a baseline derived from the template alone
(enum values, or the defaults).  When the template has a prompt source, every
parameter the source declares replaces its baseline entry:

- ``static`` lists are normalized in place, no cache involved
- ``search`` / ``dependent`` lists go through the provider registry and the
  option cache

Option cache keys hash the provider name, the full parameter provider
definition and all request parameters::

    prompt-sources:options:<source id>:<param>:<sha256>

Caching only applies when the source sets ``cache.ttlSeconds`` and a cache is
available.  Non-empty results are written through on a miss.  Empty provider
results are the one exception to write-through: they are never written, so a
transient upstream failure (or a malformed upstream body) does not pin an
empty list for the whole TTL, and the next request asks the provider again.

Resolution never raises for provider failures or malformed upstream data; an
affected parameter simply has no options.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any

from .cache import CacheBase
from .providers import OptionContext, ProviderRegistry
from .sources import (
    AnyParamProvider,
    DependentParamProvider,
    PromptSource,
    PromptSourceOption,
    SearchParamProvider,
    StaticParamProvider,
    normalize_options,
    provider_name_for,
)
from .templates import StringParamSchema, Template

logger = logging.getLogger(__name__)

OptionMap = dict[str, list[PromptSourceOption]]


def canonical_json(value: Any) -> str:
    """Serialise with sorted keys and no whitespace (stable across runs)."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def hash_input(value: Any) -> str:
    return hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()


def _self_labelled(values: list[str]) -> list[PromptSourceOption]:
    return [PromptSourceOption(id=value, label=value) for value in values]


def build_static_options_from_template(template: Template) -> OptionMap:
    """Baseline options from the template schema.

    Enum values become self-labelled options.  Parameters without an enum fall
    back to their default value(s); parameters with neither are omitted.
    """
    options: OptionMap = {}
    defaults = template.defaults or {}
    for name, schema in template.params_schema.items():
        enum = schema.enum if isinstance(schema, StringParamSchema) else schema.items.enum
        if enum:
            options[name] = _self_labelled(enum)
            continue
        fallback = defaults.get(name)
        if isinstance(fallback, str):
            options[name] = _self_labelled([fallback])
        elif isinstance(fallback, list):
            options[name] = _self_labelled([str(value) for value in fallback])
    return options


def options_cache_key(source: PromptSource, param_name: str, key_input: dict[str, Any]) -> str:
    return f"prompt-sources:options:{source.id}:{param_name}:{hash_input(key_input)}"


async def _read_cached(cache: CacheBase, key: str) -> list[PromptSourceOption] | None:
    cached = await cache.get(key)
    if not cached:
        return None
    try:
        return [PromptSourceOption.model_validate(item) for item in json.loads(cached)]
    except ValueError:
        logger.warning(f"Discarding unreadable cache entry {key}")
        return None


async def _fetch_dynamic(
    provider_name: str,
    param: SearchParamProvider | DependentParamProvider,
    context: OptionContext,
    registry: ProviderRegistry,
) -> list[PromptSourceOption]:
    adapter = registry.get(provider_name)
    if adapter is None:
        logger.warning(f"Prompt source {context.source.id} references unknown provider {provider_name}")
        return []

    if isinstance(param, SearchParamProvider):
        if not registry.supports(provider_name, "search"):
            return []
        return await adapter.search(param, context)

    if not registry.supports(provider_name, "dependent"):
        return []
    if not all(context.request_params.get(key) for key in param.depends_on):
        return []
    return await adapter.dependent(param, context)


async def get_param_options(
    param_name: str,
    param: AnyParamProvider,
    context: OptionContext,
    registry: ProviderRegistry,
    cache: CacheBase | None = None,
) -> tuple[list[PromptSourceOption], bool]:
    """Resolve the options of one source-declared parameter.

    Returns:
        ``(options, cache_hit)``
    """
    source = context.source
    if isinstance(param, StaticParamProvider):
        return normalize_options(param.options, source.sanitization), False

    provider_name = provider_name_for(source, param)
    key_input = {
        "providerName": provider_name,
        "param": param.model_dump(mode="json", by_alias=True, exclude_none=True),
        "request": context.request_params,
    }
    ttl = source.options_ttl_seconds
    cache_key = options_cache_key(source, param_name, key_input)
    use_cache = cache is not None and ttl > 0

    if use_cache:
        cached = await _read_cached(cache, cache_key)
        if cached is not None:
            logger.debug(f"Option cache hit: {cache_key}")
            return cached, True

    options = await _fetch_dynamic(provider_name, param, context, registry)
    normalized = normalize_options(options, source.sanitization, param.limit)
    if use_cache and normalized:
        payload = json.dumps([option.model_dump() for option in normalized])
        await cache.set(cache_key, payload, ttl)
    return normalized, False


async def resolve_prompt_options(
    template: Template,
    source: PromptSource | None,
    request_params: dict[str, str] | None,
    registry: ProviderRegistry,
    cache: CacheBase | None = None,
) -> dict[str, Any]:
    """Build the selectable options for every parameter of a template.

    Args:
        template: Template whose parameters are being filled in.
        source: The template's prompt source, if any.
        request_params: Values chosen so far (search text, parent selections).
        registry: Provider adapters.
        cache: Option cache, or ``None`` to always query providers.

    Returns:
        ``{"templateId", "options", "source", "cache"}`` where ``options`` maps
        parameter names to lists of :class:`PromptSourceOption`.  ``source``
        and ``cache`` are ``None`` when the template has no source.
    """
    options = build_static_options_from_template(template)
    if source is None:
        return {"templateId": template.id, "options": options, "source": None, "cache": None}

    context = OptionContext(template=template, source=source, request_params=dict(request_params or {}))
    cache_hit = False
    for param_name, param in source.param_providers.items():
        if param_name not in template.params_schema:
            continue
        resolved, hit = await get_param_options(param_name, param, context, registry, cache)
        options[param_name] = resolved
        cache_hit = cache_hit or hit

    return {
        "templateId": template.id,
        "options": options,
        "source": {"provider": source.provider, "version": source.version},
        "cache": {"hit": cache_hit, "ttlSeconds": source.options_ttl_seconds or None},
    }
