"""Tests for tilesmith.core.prompt_input — id-to-label resolution."""

from __future__ import annotations

import pytest

from tilesmith.core.errors import LabelResolutionError, MissingResolverError
from tilesmith.core.prompt_input import resolve_prompt_input
from tilesmith.core.sources import PromptSource


def _static_source(label: str, max_length: int | None = None, resolver: bool = True) -> PromptSource:
    data = {
        "id": "city",
        "provider": "static",
        "paramProviders": {
            "cityId": {"type": "static", "options": [{"id": "Q90", "label": label}], "labelKey": "cityLabel"}
        },
    }
    if max_length:
        data["sanitization"] = {"maxLength": max_length}
    if resolver:
        data["entityResolver"] = {"provider": "static"}
    return PromptSource.model_validate(data)


class TestResolvePromptInput:
    """Safe input construction and fail-closed behaviour."""

    @pytest.mark.asyncio
    async def test_no_source_passes_params_through(self, enum_template, registry):
        safe_input, labels = await resolve_prompt_input(enum_template, None, {"themeKey": "space"}, registry)
        assert safe_input == {"themeKey": "space"}
        assert labels == {}

    @pytest.mark.asyncio
    async def test_static_label_sanitized(self, city_template, registry):
        source = _static_source("Paris\nCity\U0001f4a5", max_length=20)
        safe_input, labels = await resolve_prompt_input(city_template, source, {"cityId": "Q90"}, registry)
        assert safe_input == {"cityId": "Q90", "cityLabel": "Paris City"}
        assert labels == {"cityId": "Paris City"}

    @pytest.mark.asyncio
    async def test_static_labels_need_no_resolver(self, city_template, registry):
        source = _static_source("Paris", resolver=False)
        safe_input, _ = await resolve_prompt_input(city_template, source, {"cityId": "Q90"}, registry)
        assert safe_input["cityLabel"] == "Paris"

    @pytest.mark.asyncio
    async def test_dynamic_id_without_resolver_fails_closed(self, city_template, registry):
        source = _static_source("Paris", resolver=False)
        with pytest.raises(MissingResolverError) as exc_info:
            await resolve_prompt_input(city_template, source, {"cityId": "Q999"}, registry)
        assert exc_info.value.param == "cityId"

    @pytest.mark.asyncio
    async def test_unknown_static_id_fails(self, city_template, static_city_source, registry):
        with pytest.raises(LabelResolutionError, match="Missing label for cityId"):
            await resolve_prompt_input(city_template, static_city_source, {"cityId": "Q999"}, registry)

    @pytest.mark.asyncio
    async def test_label_sanitized_to_empty_fails(self, city_template, registry):
        source = _static_source("\U0001f4a5\U0001f4a5")
        with pytest.raises(LabelResolutionError, match="Invalid label for cityId"):
            await resolve_prompt_input(city_template, source, {"cityId": "Q90"}, registry)

    @pytest.mark.asyncio
    async def test_wikidata_labels_and_keywords(self, city_template, wikidata_city_source, registry):
        safe_input, labels = await resolve_prompt_input(
            city_template, wikidata_city_source, {"countryId": "Q142", "cityId": "Q90"}, registry
        )
        assert safe_input["cityLabel"] == "Paris"
        assert safe_input["cityKeywords"] == "City of Light, Lutetia"
        assert safe_input["countryId"] == "France"
        assert labels == {"countryId": "France", "cityId": "Paris"}

    @pytest.mark.asyncio
    async def test_upstream_failure_fails_closed(self, city_template, wikidata_city_source, registry, fake_wikidata):
        fake_wikidata.status_code = 500
        with pytest.raises(LabelResolutionError):
            await resolve_prompt_input(city_template, wikidata_city_source, {"cityId": "Q90"}, registry)

    @pytest.mark.asyncio
    async def test_keywords_capped(self, city_template, wikidata_city_source, registry, fake_wikidata):
        fake_wikidata.entities["Q90"]["aliases"]["en"] = [{"value": f"Alias {i}"} for i in range(12)]
        safe_input, _ = await resolve_prompt_input(
            city_template, wikidata_city_source, {"cityId": "Q90"}, registry
        )
        assert len(safe_input["cityKeywords"].split(", ")) == 8
