"""Tests for tilesmith.core.providers — registry, static and Wikidata adapters.

The Wikidata adapter is exercised through ``httpx.MockTransport`` via the
``fake_wikidata`` fixture, so no network access happens.
"""

from __future__ import annotations

import httpx
import pytest

from tilesmith.core.providers import (
    OptionContext,
    ProviderAdapter,
    ProviderRegistry,
    ResolvedLabel,
    StaticProvider,
    WikidataProvider,
    build_provider_registry,
    render_sparql,
)
from tilesmith.core.providers.wikidata import dedupe_by_label
from tilesmith.core.sources import PromptSourceOption

# ---------------------------------------------------------------------------
# Registry.
# ---------------------------------------------------------------------------


class TestProviderRegistry:
    """Capability-checked adapter lookup."""

    def test_register_and_get(self):
        registry = ProviderRegistry()
        adapter = StaticProvider()
        registry.register(adapter)
        assert registry.get("static") is adapter
        assert registry.list_available() == ["static"]

    def test_duplicate_name_rejected(self):
        registry = ProviderRegistry()
        registry.register(StaticProvider())
        with pytest.raises(ValueError, match="already registered"):
            registry.register(StaticProvider())

    @pytest.mark.asyncio
    async def test_supports_checks_capabilities(self, registry):
        assert registry.supports("static", "resolve")
        assert not registry.supports("static", "search")
        assert registry.supports("wikidata", "dependent")
        assert not registry.supports("unknown", "resolve")

    @pytest.mark.asyncio
    async def test_adapter_info(self, registry):
        info = registry.get_adapter_info("static")
        assert info["name"] == "static"
        assert info["capabilities"] == ["resolve"]
        assert registry.get_adapter_info("missing") is None

    @pytest.mark.asyncio
    async def test_base_adapter_operations_not_implemented(self, static_city_source):
        with pytest.raises(NotImplementedError):
            await ProviderAdapter().resolve(["Q1"], static_city_source)

    @pytest.mark.asyncio
    async def test_build_provider_registry(self, http_client, test_config):
        registry = build_provider_registry(http_client, test_config)
        assert sorted(registry.list_available()) == ["static", "wikidata"]


class TestStaticProvider:
    @pytest.mark.asyncio
    async def test_resolves_known_ids_only(self, static_city_source):
        resolved = await StaticProvider().resolve(["Q90", "Q999"], static_city_source)
        assert resolved == {"Q90": ResolvedLabel(label="Paris")}


# ---------------------------------------------------------------------------
# Wikidata.
# ---------------------------------------------------------------------------


class TestRenderSparql:
    def test_fills_params_and_limit(self):
        query = render_sparql("wd:{{countryId}} LIMIT {{limit}}", {"countryId": "Q142"}, 20)
        assert query == "wd:Q142 LIMIT 20"

    def test_escapes_quotes_and_backslashes(self):
        query = render_sparql('"{{q}}"', {"q": 'a"b\\c'}, 5)
        assert query == '"a\\"b\\\\c"'

    def test_missing_placeholders_render_empty(self):
        assert render_sparql("[{{missing}}]", {}, 5) == "[]"


class TestDedupeByLabel:
    def test_case_and_whitespace_insensitive(self):
        options = [
            PromptSourceOption(id="Q90", label="Paris"),
            PromptSourceOption(id="Q99", label=" paris "),
            PromptSourceOption(id="Q1", label=""),
            PromptSourceOption(id="Q2", label=""),
        ]
        assert [o.id for o in dedupe_by_label(options)] == ["Q90", "Q1", "Q2"]


class TestWikidataProvider:
    """Search, dependent SPARQL lists, and label resolution."""

    def _context(self, city_template, source, **params):
        return OptionContext(template=city_template, source=source, request_params=params)

    @pytest.mark.asyncio
    async def test_search(self, registry, city_template, wikidata_city_source, fake_wikidata):
        adapter = registry.get("wikidata")
        param = wikidata_city_source.param_providers["countryId"]
        options = await adapter.search(param, self._context(city_template, wikidata_city_source, countryQuery="fra"))

        assert [(o.id, o.label) for o in options] == [("Q142", "France"), ("Q183", "Germany")]
        request = fake_wikidata.requests[-1]
        assert request.url.params["action"] == "wbsearchentities"
        assert request.url.params["search"] == "fra"
        assert request.url.params["limit"] == "5"
        assert request.headers["user-agent"] == "tilesmith"

    @pytest.mark.asyncio
    async def test_search_without_query_makes_no_request(
        self, registry, city_template, wikidata_city_source, fake_wikidata
    ):
        param = wikidata_city_source.param_providers["countryId"]
        options = await registry.get("wikidata").search(param, self._context(city_template, wikidata_city_source))
        assert options == []
        assert fake_wikidata.requests == []

    @pytest.mark.asyncio
    async def test_dependent(self, registry, city_template, wikidata_city_source, fake_wikidata):
        param = wikidata_city_source.param_providers["cityId"]
        options = await registry.get("wikidata").dependent(
            param, self._context(city_template, wikidata_city_source, countryId="Q142")
        )

        assert [(o.id, o.label) for o in options] == [("Q90", "Paris"), ("Q456", "Lyon")]
        request = fake_wikidata.requests[-1]
        assert request.url.path.endswith("/sparql")
        assert "wd:Q142" in request.url.params["query"]
        assert "LIMIT 20" in request.url.params["query"]
        assert request.headers["accept"] == "application/sparql-results+json"

    @pytest.mark.asyncio
    async def test_resolve_labels_and_aliases(self, registry, wikidata_city_source, fake_wikidata):
        resolved = await registry.get("wikidata").resolve(["Q90", "Q142", "Q404"], wikidata_city_source)

        assert resolved["Q90"] == ResolvedLabel(label="Paris", keywords=["City of Light", "Lutetia"])
        assert resolved["Q142"] == ResolvedLabel(label="France", keywords=[])
        assert "Q404" not in resolved
        params = fake_wikidata.requests[-1].url.params
        assert params["props"] == "labels|aliases"
        assert params["languages"] == "en"

    @pytest.mark.asyncio
    async def test_resolve_falls_back_to_any_language(self, registry, wikidata_city_source, fake_wikidata):
        fake_wikidata.entities["Q7"] = {"labels": {"de": {"value": "Köln"}}}
        resolved = await registry.get("wikidata").resolve(["Q7"], wikidata_city_source)
        assert resolved["Q7"].label == "Köln"

    @pytest.mark.asyncio
    async def test_resolve_batches_requests(self, registry, wikidata_city_source, fake_wikidata):
        ids = [f"Q{i}" for i in range(1, 121)]
        await registry.get("wikidata").resolve(ids, wikidata_city_source)
        batches = [r.url.params["ids"].split("|") for r in fake_wikidata.requests]
        assert [len(b) for b in batches] == [50, 50, 20]

    @pytest.mark.asyncio
    async def test_upstream_failure_gives_empty_results(
        self, registry, city_template, wikidata_city_source, fake_wikidata
    ):
        fake_wikidata.status_code = 503
        adapter = registry.get("wikidata")
        search = wikidata_city_source.param_providers["countryId"]
        dependent = wikidata_city_source.param_providers["cityId"]

        assert await adapter.search(search, self._context(city_template, wikidata_city_source, countryQuery="x")) == []
        assert (
            await adapter.dependent(dependent, self._context(city_template, wikidata_city_source, countryId="Q1"))
            == []
        )
        assert await adapter.resolve(["Q90"], wikidata_city_source) == {}

    @pytest.mark.asyncio
    async def test_malformed_items_are_skipped(
        self, registry, city_template, wikidata_city_source, fake_wikidata
    ):
        fake_wikidata.search_results = [
            {"id": "Q1", "label": {"en": "x"}},
            {"id": 7, "label": "Seven"},
            "Q2",
            {"id": "Q142", "label": "France"},
        ]
        fake_wikidata.bindings = [
            {"id": "http://www.wikidata.org/entity/Q1", "label": {"value": "Nowhere"}},
            {"id": {"value": 42}, "label": {"value": "Answer"}},
            {"id": {"value": "http://www.wikidata.org/entity/Q90"}, "label": "Paris"},
        ]
        fake_wikidata.entities["Q90"] = {"labels": {"en": "Paris", "fr": {"value": "Paris"}}, "aliases": {"en": "x"}}
        fake_wikidata.entities["Q142"] = ["France"]
        adapter = registry.get("wikidata")
        search = wikidata_city_source.param_providers["countryId"]
        dependent = wikidata_city_source.param_providers["cityId"]

        found = await adapter.search(search, self._context(city_template, wikidata_city_source, countryQuery="x"))
        assert [(o.id, o.label) for o in found] == [("Q1", None), ("Q142", "France")]
        listed = await adapter.dependent(
            dependent, self._context(city_template, wikidata_city_source, countryId="Q142")
        )
        assert [(o.id, o.label) for o in listed] == [("Q90", "")]
        resolved = await adapter.resolve(["Q90", "Q142"], wikidata_city_source)
        assert resolved == {"Q90": ResolvedLabel(label="Paris", keywords=[])}

    @pytest.mark.asyncio
    async def test_unexpected_top_level_shapes_give_empty_results(
        self, city_template, wikidata_city_source
    ):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/sparql"):
                return httpx.Response(200, json={"results": ["not", "bindings"]})
            return httpx.Response(200, json={"search": "France", "entities": ["Q90"]})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            adapter = WikidataProvider(client)
            search = wikidata_city_source.param_providers["countryId"]
            dependent = wikidata_city_source.param_providers["cityId"]
            context = self._context(city_template, wikidata_city_source, countryQuery="x", countryId="Q1")
            assert await adapter.search(search, context) == []
            assert await adapter.dependent(dependent, context) == []
            assert await adapter.resolve(["Q90"], wikidata_city_source) == {}

    @pytest.mark.asyncio
    async def test_transport_error_gives_empty_results(self, wikidata_city_source):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            adapter = WikidataProvider(client)
            assert await adapter.resolve(["Q90"], wikidata_city_source) == {}
