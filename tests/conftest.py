"""Shared pytest fixtures for Tilesmith tests."""

from __future__ import annotations

import json
import shutil
import tempfile
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import httpx
import pytest

from tilesmith.core.cache import MemoryCache
from tilesmith.core.config import TilesmithConfig
from tilesmith.core.providers import ProviderRegistry, StaticProvider, WikidataProvider
from tilesmith.core.sources import PromptSource
from tilesmith.core.templates import Template

HEX_REGEX = "^#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6})$"


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path, monkeypatch) -> TilesmithConfig:
    """Configuration using the bundled data files and a temporary tiles dir.

    Args:
        temp_dir: Temporary directory from fixture

    Returns:
        TilesmithConfig instance for testing
    """
    for name in ("TILESMITH_REDIS_URL", "TILESMITH_ENVIRONMENT", "TILESMITH_DATA_DIR"):
        monkeypatch.delenv(name, raising=False)
    return TilesmithConfig(
        _env_file=None,
        environment="test",
        tiles_dir=temp_dir / "tiles",
        openai_api_key="test-key",
    )


@pytest.fixture
def memory_cache() -> MemoryCache:
    return MemoryCache()


@pytest.fixture
def write_json() -> Callable[[Path, Any], Path]:
    """Return a helper that writes JSON to a path and returns the path."""

    def _write(path: Path, data: Any) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data), encoding="utf-8")
        return path

    return _write


# ---------------------------------------------------------------------------
# Template and source builders.
# ---------------------------------------------------------------------------


@pytest.fixture
def template_data() -> dict:
    """A valid themed template document entry (JSON field names)."""
    return {
        "id": "doodle",
        "name": "Doodle",
        "paramsSchema": {
            "themeKey": {"type": "string", "enum": ["space", "ocean"]},
            "backgroundColor": {"type": "string", "regex": HEX_REGEX},
            "crayonColors": {
                "type": "array",
                "minItems": 2,
                "maxItems": 5,
                "items": {"type": "string", "regex": HEX_REGEX},
            },
        },
        "themeOptions": {"space": "planets and rockets", "ocean": "fish and waves"},
        "promptTemplate": "Draw doodles. INPUT_JSON only.",
        "defaults": {"backgroundColor": "#ffffff", "crayonColors": ["#000000", "#ff0000"]},
        "titleTemplate": "{{themeLabel}} doodles",
        "tags": ["doodle", "{{themeLabel}}"],
    }


@pytest.fixture
def enum_template() -> Template:
    """Template with a single enum parameter and no source."""
    return Template.model_validate(
        {
            "id": "T",
            "name": "Themes",
            "paramsSchema": {"themeKey": {"type": "string", "enum": ["space", "ocean"]}},
            "promptTemplate": "INPUT_JSON only",
        }
    )


@pytest.fixture
def city_template() -> Template:
    """Template with a Wikidata-style id parameter."""
    return Template.model_validate(
        {
            "id": "city",
            "name": "City",
            "paramsSchema": {
                "countryId": {"type": "string", "regex": "^Q[0-9]+$"},
                "cityId": {"type": "string", "regex": "^Q[0-9]+$"},
            },
            "promptTemplate": "INPUT_JSON only",
        }
    )


@pytest.fixture
def static_city_source() -> PromptSource:
    return PromptSource.model_validate(
        {
            "id": "city",
            "provider": "static",
            "paramProviders": {
                "cityId": {
                    "type": "static",
                    "options": [{"id": "Q90", "label": "Paris"}, {"id": "Q1490", "label": "Tokyo"}],
                    "labelKey": "cityLabel",
                }
            },
            "entityResolver": {"provider": "static"},
        }
    )


@pytest.fixture
def wikidata_city_source() -> PromptSource:
    return PromptSource.model_validate(
        {
            "id": "city",
            "provider": "wikidata",
            "paramProviders": {
                "countryId": {"type": "search", "searchParam": "countryQuery", "limit": 5},
                "cityId": {
                    "type": "dependent",
                    "dependsOn": ["countryId"],
                    "query": {"sparql": "SELECT ?id ?label WHERE { ?id wdt:P17 wd:{{countryId}} } LIMIT {{limit}}"},
                    "labelKey": "cityLabel",
                    "keywordsKey": "cityKeywords",
                },
            },
            "entityResolver": {"provider": "wikidata", "config": {"labelLangs": ["en"], "aliasLangs": ["en"]}},
            "cache": {"ttlSeconds": 300},
        }
    )


# ---------------------------------------------------------------------------
# Fake external services.
# ---------------------------------------------------------------------------


class FakeWikidata:
    """Answers Wikidata API and SPARQL requests from canned data.

    Attributes
    ----------
    requests : list[httpx.Request]
        Every request received, in order
    status_code : int
        Status returned for every request (set to 500 to simulate outages)
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.status_code = 200
        self.search_results = [{"id": "Q142", "label": "France"}, {"id": "Q183", "label": "Germany"}]
        self.bindings = [
            {"id": {"value": "http://www.wikidata.org/entity/Q90"}, "label": {"value": "Paris"}},
            {"id": {"value": "http://www.wikidata.org/entity/Q456"}, "label": {"value": "Lyon"}},
            {"id": {"value": "http://www.wikidata.org/entity/Q99"}, "label": {"value": " paris "}},
        ]
        self.entities = {
            "Q90": {
                "labels": {"en": {"value": "Paris"}},
                "aliases": {"en": [{"value": "City of Light"}, {"value": "Lutetia"}]},
            },
            "Q142": {"labels": {"en": {"value": "France"}}},
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_code != 200:
            return httpx.Response(self.status_code, text="upstream error")
        if request.url.path.endswith("/sparql"):
            return httpx.Response(200, json={"results": {"bindings": self.bindings}})
        action = request.url.params.get("action")
        if action == "wbsearchentities":
            return httpx.Response(200, json={"search": self.search_results})
        if action == "wbgetentities":
            ids = request.url.params.get("ids", "").split("|")
            return httpx.Response(
                200, json={"entities": {i: self.entities[i] for i in ids if i in self.entities}}
            )
        return httpx.Response(404)


@pytest.fixture
def fake_wikidata() -> FakeWikidata:
    return FakeWikidata()


@pytest.fixture
async def http_client(fake_wikidata: FakeWikidata):
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_wikidata)) as client:
        yield client


@pytest.fixture
def registry(http_client: httpx.AsyncClient) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(StaticProvider())
    registry.register(WikidataProvider(http_client))
    return registry
