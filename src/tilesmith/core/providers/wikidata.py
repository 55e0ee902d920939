"""Wikidata provider adapter.

Implements all three provider operations against the public Wikidata
endpoints:

- **search** — ``wbsearchentities`` on the MediaWiki API, driven by one request
  parameter (``searchParam``, default ``q``)
- **dependent** — a SPARQL query template from the parameter's ``query.sparql``
  with ``{{key}}`` placeholders filled from the already-chosen parameters and
  ``{{limit}}`` from the parameter limit
- **resolve** — ``wbgetentities`` for labels and aliases in the languages
  configured on the source's ``entityResolver.config``
  (``labelLangs`` / ``aliasLangs``, both default ``["en"]``)

Every request is best effort.  Transport errors, non-2xx responses and
unparseable bodies are logged and produce an empty result, and nothing is
retried.  Items of an unexpected shape inside a 200 body are skipped.

SPARQL Rendering
----------------
Substituted values are escaped for use inside a double-quoted SPARQL string
literal.  Placeholders with no matching (non-empty) request value render as the
empty string, so rendering never fails::

    >>> render_sparql('SELECT ?id WHERE { ?id wdt:P17 wd:{{countryId}} } LIMIT {{limit}}',
    ...               {"countryId": "Q142"}, 20)
    'SELECT ?id WHERE { ?id wdt:P17 wd:Q142 } LIMIT 20'
"""

from __future__ import annotations

import logging
import re
from typing import Any

import httpx

from ..sources import DependentParamProvider, PromptSource, PromptSourceOption, SearchParamProvider
from .base import OptionContext, ProviderAdapter, ResolvedLabel

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_LIMIT = 10
DEFAULT_DEPENDENT_LIMIT = 20
RESOLVE_BATCH_SIZE = 50

_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")


def _escape_literal(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def render_sparql(template: str, params: dict[str, str], limit: int) -> str:
    """Fill a SPARQL query template from request parameters.

    Args:
        template: Query text with ``{{key}}`` and ``{{limit}}`` placeholders.
        params: Current request parameters.
        limit: Value for ``{{limit}}``.

    Returns:
        The rendered query; unknown or empty placeholders become ``""``.
    """

    def replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key == "limit":
            return str(limit)
        value = params.get(key)
        if not value:
            return ""
        return _escape_literal(str(value))

    return _PLACEHOLDER_RE.sub(replace, template)


def _string_value(node: Any) -> str:
    """``node["value"]`` when *node* is a dict holding a string there, else ``""``."""
    if isinstance(node, dict) and isinstance(node.get("value"), str):
        return node["value"]
    return ""


def dedupe_by_label(options: list[PromptSourceOption]) -> list[PromptSourceOption]:
    """Drop options whose trimmed, case-folded label was already seen.

    First occurrence wins and order is preserved.  Options with an empty label
    are always kept.
    """
    seen: set[str] = set()
    result: list[PromptSourceOption] = []
    for option in options:
        key = (option.label or "").strip().lower()
        if not key:
            result.append(option)
            continue
        if key in seen:
            continue
        seen.add(key)
        result.append(option)
    return result


class WikidataProvider(ProviderAdapter):
    """Entity search, SPARQL lookups, and label resolution against Wikidata.

    Args:
        client: Shared async HTTP client.
        api_url: MediaWiki API endpoint.
        sparql_url: SPARQL query endpoint.
        user_agent: User agent required by the Wikidata query service.
        timeout: Per-request timeout in seconds.
        log_queries: Log rendered SPARQL queries at DEBUG (development only).
    """

    name = "wikidata"
    description = "Wikidata entity search, SPARQL dependent lists, and label resolution"
    capabilities = frozenset({"search", "dependent", "resolve"})

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_url: str = "https://www.wikidata.org/w/api.php",
        sparql_url: str = "https://query.wikidata.org/sparql",
        user_agent: str = "tilesmith",
        timeout: float = 8.0,
        log_queries: bool = False,
    ) -> None:
        self.client = client
        self.api_url = api_url
        self.sparql_url = sparql_url
        self.user_agent = user_agent
        self.timeout = timeout
        self.log_queries = log_queries

    async def _get_json(
        self, url: str, params: dict[str, str], headers: dict[str, str] | None = None
    ) -> dict[str, Any] | None:
        request_headers = {"user-agent": self.user_agent, **(headers or {})}
        try:
            response = await self.client.get(
                url, params=params, headers=request_headers, timeout=self.timeout
            )
        except httpx.HTTPError as e:
            logger.warning(f"Wikidata request to {url} failed: {e}")
            return None
        if not response.is_success:
            logger.warning(
                f"Wikidata request to {url} returned {response.status_code}: {response.text[:500]}"
            )
            return None
        try:
            data = response.json()
        except ValueError:
            logger.warning(f"Wikidata response from {url} is not JSON")
            return None
        return data if isinstance(data, dict) else None

    async def search(
        self, param: SearchParamProvider, context: OptionContext
    ) -> list[PromptSourceOption]:
        search_param = param.search_param or "q"
        query = context.request_params.get(search_param) or ""
        if not query:
            return []
        limit = param.limit or DEFAULT_SEARCH_LIMIT
        language = str((param.query or {}).get("language") or "en")
        data = await self._get_json(
            self.api_url,
            {
                "action": "wbsearchentities",
                "search": query,
                "language": language,
                "format": "json",
                "limit": str(limit),
                "type": "item",
            },
        )
        items = data.get("search") if data is not None else None
        if not isinstance(items, list):
            return []
        options: list[PromptSourceOption] = []
        for item in items:
            if not isinstance(item, dict) or not isinstance(item.get("id"), str) or not item["id"]:
                continue
            label = item.get("label")
            options.append(PromptSourceOption(id=item["id"], label=label if isinstance(label, str) else None))
        return options

    async def dependent(
        self, param: DependentParamProvider, context: OptionContext
    ) -> list[PromptSourceOption]:
        sparql = (param.query or {}).get("sparql")
        if not sparql or not isinstance(sparql, str):
            return []
        rendered = render_sparql(sparql, context.request_params, param.limit or DEFAULT_DEPENDENT_LIMIT)
        if self.log_queries:
            logger.debug(f"SPARQL query: {rendered}")
        data = await self._get_json(
            self.sparql_url,
            {"format": "json", "query": rendered},
            headers={"accept": "application/sparql-results+json"},
        )
        if data is None:
            return []

        results = data.get("results")
        bindings = results.get("bindings") if isinstance(results, dict) else None
        if not isinstance(bindings, list):
            return []
        options: list[PromptSourceOption] = []
        for binding in bindings:
            if not isinstance(binding, dict):
                continue
            entity_id = _string_value(binding.get("id")).rsplit("/", 1)[-1]
            if not entity_id:
                continue
            options.append(PromptSourceOption(id=entity_id, label=_string_value(binding.get("label"))))
        return dedupe_by_label(options)

    async def resolve(self, ids: list[str], source: PromptSource) -> dict[str, ResolvedLabel]:
        if not ids:
            return {}
        resolver_config = (source.entity_resolver.config if source.entity_resolver else None) or {}
        label_langs = [str(lang) for lang in resolver_config.get("labelLangs") or ["en"]]
        alias_langs = [str(lang) for lang in resolver_config.get("aliasLangs") or ["en"]]
        languages = list(dict.fromkeys([*label_langs, *alias_langs]))

        unique_ids = list(dict.fromkeys(ids))
        resolved: dict[str, ResolvedLabel] = {}
        for start in range(0, len(unique_ids), RESOLVE_BATCH_SIZE):
            batch = unique_ids[start : start + RESOLVE_BATCH_SIZE]
            data = await self._get_json(
                self.api_url,
                {
                    "action": "wbgetentities",
                    "ids": "|".join(batch),
                    "format": "json",
                    "props": "labels|aliases",
                    "languages": "|".join(languages),
                },
            )
            if data is None:
                continue
            entities = data.get("entities")
            if not isinstance(entities, dict):
                continue
            for entity_id in batch:
                entity = entities.get(entity_id)
                if not isinstance(entity, dict):
                    continue
                entry = self._entry_from_entity(entity, label_langs, alias_langs)
                if entry is not None:
                    resolved[entity_id] = entry
        return resolved

    @staticmethod
    def _entry_from_entity(
        entity: dict[str, Any], label_langs: list[str], alias_langs: list[str]
    ) -> ResolvedLabel | None:
        labels = entity.get("labels")
        if not isinstance(labels, dict):
            return None
        candidates = [_string_value(labels.get(lang)) for lang in label_langs]
        candidates += [_string_value(item) for item in labels.values()]
        label = next((value for value in candidates if value), "")
        if not label:
            return None

        aliases = entity.get("aliases")
        if not isinstance(aliases, dict):
            aliases = {}
        keywords = [
            _string_value(alias)
            for lang in alias_langs
            if isinstance(aliases.get(lang), list)
            for alias in aliases[lang]
            if _string_value(alias)
        ]
        return ResolvedLabel(label=label, keywords=keywords)
