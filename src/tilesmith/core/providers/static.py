"""Static provider: labels come from the source's own option lists."""

from __future__ import annotations

from ..sources import PromptSource, build_static_label_map
from .base import ProviderAdapter, ResolvedLabel


class StaticProvider(ProviderAdapter):
    """Resolve ids against the ``static`` parameter providers of a source.

    Static options are served directly by the option resolver, so this
    adapter only implements ``resolve``.  Ids without a labelled static option
    are left out of the result.
    """

    name = "static"
    description = "Labels from static option lists in the prompt source"
    capabilities = frozenset({"resolve"})

    async def resolve(self, ids: list[str], source: PromptSource) -> dict[str, ResolvedLabel]:
        labels = build_static_label_map(source)
        return {i: ResolvedLabel(label=labels[i]) for i in ids if i in labels}
