"""Provider adapters for prompt sources.

Available Adapters
------------------
- **static**: resolves ids from the source's own static option lists
- **wikidata**: entity search, SPARQL dependent lists, and label resolution
"""

import httpx

from ..config import TilesmithConfig
from .base import OptionContext, ProviderAdapter, ProviderRegistry, ResolvedLabel
from .static import StaticProvider
from .wikidata import WikidataProvider, render_sparql


def build_provider_registry(client: httpx.AsyncClient, settings: TilesmithConfig) -> ProviderRegistry:
    """Create the registry with every built-in adapter.

    Args:
        client: Shared HTTP client used by network-backed adapters.
        settings: Application configuration (endpoints, timeout, user agent).

    Returns:
        A populated :class:`ProviderRegistry`.
    """
    registry = ProviderRegistry()
    registry.register(StaticProvider())
    registry.register(
        WikidataProvider(
            client,
            api_url=settings.wikidata_api_url,
            sparql_url=settings.wikidata_sparql_url,
            user_agent=settings.http_user_agent,
            timeout=settings.http_timeout_seconds,
            log_queries=not settings.is_production,
        )
    )
    return registry


__all__ = [
    "OptionContext",
    "ProviderAdapter",
    "ProviderRegistry",
    "ResolvedLabel",
    "StaticProvider",
    "WikidataProvider",
    "build_provider_registry",
    "render_sparql",
]
