"""Base class and registry for prompt source provider adapters.

A provider adapter is a named, stateless bundle of up to three operations
against one data source:

- ``search(param, context)`` — free-text entity search
- ``dependent(param, context)`` — options that depend on earlier choices
- ``resolve(ids, source)`` — turn chosen ids back into labels and keywords

Adapters declare which operations they implement in ``capabilities``.  Callers
dispatch through :meth:`ProviderRegistry.supports` rather than probing for
attributes, so a source that points a ``search`` parameter at a resolve-only
adapter degrades to an empty option list instead of failing.

Registry Pattern
----------------
The registry is populated once at application startup by
:func:`tilesmith.core.providers.build_provider_registry`, which receives the
shared HTTP client and configuration.  Nothing is registered at import time.

    >>> registry = build_provider_registry(http_client, config)
    >>> registry.list_available()
    ['static', 'wikidata']
    >>> registry.supports("static", "search")
    False
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from ..sources import (
        DependentParamProvider,
        PromptSource,
        PromptSourceOption,
        SearchParamProvider,
    )
    from ..templates import Template

logger = logging.getLogger(__name__)

Operation = Literal["search", "dependent", "resolve"]


@dataclass(frozen=True)
class ResolvedLabel:
    """Label (and optional alias keywords) for one resolved id."""

    label: str
    keywords: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class OptionContext:
    """Inputs available to ``search`` and ``dependent`` operations."""

    template: Template
    source: PromptSource
    request_params: dict[str, str]


class ProviderAdapter:
    """Base class for provider adapters.

    Subclasses set ``name`` and ``capabilities`` and override the matching
    coroutine methods.  Operations report upstream failures by returning an
    empty result; they never raise for network errors.

    Attributes
    ----------
    name : str
        Registry key referenced by prompt sources
    description : str
        Short human-readable description
    capabilities : frozenset[str]
        Subset of ``{"search", "dependent", "resolve"}``
    """

    name: str = "base"
    description: str = "Base provider adapter"
    capabilities: frozenset[str] = frozenset()

    async def search(
        self, param: SearchParamProvider, context: OptionContext
    ) -> list[PromptSourceOption]:
        raise NotImplementedError(f"{self.name} does not support search")

    async def dependent(
        self, param: DependentParamProvider, context: OptionContext
    ) -> list[PromptSourceOption]:
        raise NotImplementedError(f"{self.name} does not support dependent queries")

    async def resolve(self, ids: list[str], source: PromptSource) -> dict[str, ResolvedLabel]:
        raise NotImplementedError(f"{self.name} does not support id resolution")

    def get_info(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "capabilities": sorted(self.capabilities),
        }


class ProviderRegistry:
    """Registry mapping adapter names to adapter instances.

    Names are unique: registering a second adapter under an existing name is a
    programming error and raises ``ValueError``.
    """

    def __init__(self) -> None:
        self._adapters: dict[str, ProviderAdapter] = {}

    def register(self, adapter: ProviderAdapter) -> None:
        """Register an adapter instance.

        Raises:
            ValueError: If the name is already taken.
        """
        if adapter.name in self._adapters:
            raise ValueError(f"Provider adapter '{adapter.name}' is already registered")
        self._adapters[adapter.name] = adapter
        logger.info(f"Registered provider adapter: {adapter.name}")

    def get(self, name: str) -> ProviderAdapter | None:
        return self._adapters.get(name)

    def supports(self, name: str, operation: Operation) -> bool:
        """Return True if adapter *name* exists and implements *operation*."""
        adapter = self._adapters.get(name)
        return adapter is not None and operation in adapter.capabilities

    def list_available(self) -> list[str]:
        return list(self._adapters.keys())

    def get_adapter_info(self, name: str) -> dict[str, Any] | None:
        adapter = self._adapters.get(name)
        return adapter.get_info() if adapter else None
