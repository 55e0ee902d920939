"""Prompt sources: how template parameters map to human-readable labels.

A prompt source shares its ``id`` with a template and declares, per parameter,
where the selectable options come from:

- ``static`` — a fixed option list inside the source file
- ``search`` — a provider's entity search, driven by one request parameter
- ``dependent`` — a provider query that needs other parameters chosen first
  (cascading selects), declared through ``dependsOn``

The source also names the ``entityResolver`` that turns a chosen opaque id
(``"Q90"``) back into a label before it reaches the prompt, the sanitization
policy applied to every label, option cache TTL, and an optional colour module
used by the palette service.

Sources are optional.  A missing or unreadable source file simply means no
template has one, whereas a file that exists but is malformed is a
configuration error.
"""

from __future__ import annotations

import functools
import json
import logging
import re
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from .cache import CacheBase
from .errors import PromptSourceLoadError
from .storage import FileSource

logger = logging.getLogger(__name__)

DEFAULT_MAX_LENGTH = 80
DEFAULT_ALLOWED_PATTERN = "A-Za-z0-9 ,.'-"
SOURCE_CACHE_TTL_SECONDS = 600

NonEmptyStr = Annotated[str, Field(min_length=1)]
PositiveInt = Annotated[int, Field(gt=0)]


class _SourceModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class PromptSourceOption(_SourceModel):
    """A selectable choice: an opaque id plus an optional display label."""

    id: str
    label: str | None = None


class StaticParamProvider(_SourceModel):
    type: Literal["static"]
    options: list[PromptSourceOption]
    label_key: NonEmptyStr | None = Field(default=None, alias="labelKey")
    keywords_key: NonEmptyStr | None = Field(default=None, alias="keywordsKey")

    @field_validator("options")
    @classmethod
    def _non_empty_ids(cls, options: list[PromptSourceOption]) -> list[PromptSourceOption]:
        for option in options:
            if not option.id:
                raise ValueError("static option ids must be non-empty")
            if option.label is not None and not option.label:
                raise ValueError("static option labels must be non-empty when given")
        return options


class SearchParamProvider(_SourceModel):
    type: Literal["search"]
    provider: NonEmptyStr | None = None
    query: dict[str, Any] | None = None
    limit: PositiveInt | None = None
    search_param: NonEmptyStr | None = Field(default=None, alias="searchParam")
    label_key: NonEmptyStr | None = Field(default=None, alias="labelKey")
    keywords_key: NonEmptyStr | None = Field(default=None, alias="keywordsKey")


class DependentParamProvider(_SourceModel):
    type: Literal["dependent"]
    provider: NonEmptyStr | None = None
    depends_on: list[NonEmptyStr] = Field(alias="dependsOn", min_length=1)
    query: dict[str, Any] | None = None
    limit: PositiveInt | None = None
    label_key: NonEmptyStr | None = Field(default=None, alias="labelKey")
    keywords_key: NonEmptyStr | None = Field(default=None, alias="keywordsKey")


ParamProvider = Annotated[
    StaticParamProvider | SearchParamProvider | DependentParamProvider,
    Field(discriminator="type"),
]


class EntityResolverConfig(_SourceModel):
    provider: NonEmptyStr
    config: dict[str, Any] | None = None


class SanitizationConfig(_SourceModel):
    max_length: PositiveInt | None = Field(default=None, alias="maxLength")
    allowed_pattern: NonEmptyStr | None = Field(default=None, alias="allowedPattern")

    @field_validator("allowed_pattern")
    @classmethod
    def _compiles(cls, pattern: str | None) -> str | None:
        if pattern is not None:
            try:
                re.compile(f"[^{pattern}]+")
            except re.error as e:
                raise ValueError(f"allowedPattern is not a valid character class: {e}") from e
        return pattern


class CacheConfig(_SourceModel):
    ttl_seconds: PositiveInt | None = Field(default=None, alias="ttlSeconds")


class ColorLimits(_SourceModel):
    palettes: PositiveInt | None = None
    min_colors: PositiveInt | None = Field(default=None, alias="minColors")
    max_colors: PositiveInt | None = Field(default=None, alias="maxColors")


class ColorStrategy(_SourceModel):
    id: NonEmptyStr
    background_policy: Literal["pastel", "light", "neutral"] | None = Field(
        default=None, alias="backgroundPolicy"
    )
    mode: NonEmptyStr | None = None
    count: PositiveInt | None = None


class ColorConfig(_SourceModel):
    engines: list[NonEmptyStr] | None = None
    default_engine: NonEmptyStr | None = Field(default=None, alias="defaultEngine")
    cache: CacheConfig | None = None
    limits: ColorLimits | None = None
    strategies: list[ColorStrategy] | None = None


class PromptSource(_SourceModel):
    """Declarative option/label configuration for one template."""

    id: NonEmptyStr
    provider: NonEmptyStr
    version: str | None = None
    param_providers: dict[str, ParamProvider] = Field(alias="paramProviders")
    entity_resolver: EntityResolverConfig | None = Field(default=None, alias="entityResolver")
    sanitization: SanitizationConfig | None = None
    cache: CacheConfig | None = None
    color: ColorConfig | None = None

    @property
    def options_ttl_seconds(self) -> int:
        return (self.cache.ttl_seconds if self.cache else None) or 0

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


_SOURCE_LIST = TypeAdapter(list[PromptSource])


# ---------------------------------------------------------------------------
# Sanitization.
# ---------------------------------------------------------------------------


@functools.lru_cache(maxsize=64)
def _disallowed_re(allowed_pattern: str) -> re.Pattern[str]:
    try:
        return re.compile(f"[^{allowed_pattern}]+")
    except re.error:
        logger.warning(f"Invalid allowedPattern {allowed_pattern!r}, using default")
        return re.compile(f"[^{DEFAULT_ALLOWED_PATTERN}]+")


_NEWLINES_RE = re.compile(r"[\r\n]+")
_WHITESPACE_RE = re.compile(r"\s+")


def sanitize_label(value: str, sanitization: SanitizationConfig | None = None) -> str:
    """Reduce a label to allow-listed characters and a bounded length.

    Newlines become spaces, every character outside the allow-list is removed,
    whitespace runs collapse to one space, the result is trimmed and then
    truncated.  The function never raises; an empty result is valid and left
    for the caller to reject.

    Args:
        value: Raw label, possibly from an external service.
        sanitization: Source policy; defaults to ``A-Za-z0-9 ,.'-`` and 80 chars.

    Returns:
        The sanitized label.
    """
    max_length = (sanitization.max_length if sanitization else None) or DEFAULT_MAX_LENGTH
    allowed = (sanitization.allowed_pattern if sanitization else None) or DEFAULT_ALLOWED_PATTERN
    cleaned = _NEWLINES_RE.sub(" ", value)
    cleaned = _disallowed_re(allowed).sub("", cleaned)
    cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip()
    return cleaned[:max_length]


def normalize_options(
    options: list[PromptSourceOption],
    sanitization: SanitizationConfig | None = None,
    limit: int | None = None,
) -> list[PromptSourceOption]:
    """Deduplicate options by id, sanitize labels, and cap the list.

    Options whose id is blank or whose label sanitizes to nothing are dropped.
    A missing label falls back to the id.
    """
    seen: set[str] = set()
    result: list[PromptSourceOption] = []
    for option in options:
        option_id = str(option.id or "").strip()
        if not option_id or option_id in seen:
            continue
        label = sanitize_label(option.label if option.label is not None else option_id, sanitization)
        if not label:
            continue
        seen.add(option_id)
        result.append(PromptSourceOption(id=option_id, label=label))
        if limit and len(result) >= limit:
            break
    return result


def build_static_label_map(source: PromptSource) -> dict[str, str]:
    """Map every labelled static option id to its raw label."""
    labels: dict[str, str] = {}
    for provider in source.param_providers.values():
        if not isinstance(provider, StaticParamProvider):
            continue
        for option in provider.options:
            if option.label:
                labels[option.id] = option.label
    return labels


AnyParamProvider = StaticParamProvider | SearchParamProvider | DependentParamProvider


def provider_name_for(source: PromptSource, provider: AnyParamProvider) -> str:
    """Name of the adapter serving a parameter (``static`` for static lists)."""
    if isinstance(provider, StaticParamProvider):
        return "static"
    return provider.provider or source.provider


def parse_sources(raw: bytes | str) -> list[PromptSource]:
    """Parse and validate a prompt source document.

    Raises:
        PromptSourceLoadError: On malformed JSON or schema violations.
    """
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise PromptSourceLoadError(f"Prompt source file is not valid JSON: {e}") from e
    try:
        return _SOURCE_LIST.validate_python(data)
    except ValidationError as e:
        raise PromptSourceLoadError(f"Prompt source file failed schema validation: {e}") from e


# ---------------------------------------------------------------------------
# Store.
# ---------------------------------------------------------------------------


class JsonPromptSourceStore:
    """Prompt source store backed by a JSON file and the shared cache.

    Same versioned-cache discipline as the template store; an unreadable file
    yields an empty source list.
    """

    def __init__(
        self,
        source: FileSource,
        cache: CacheBase | None = None,
        ttl_seconds: int = SOURCE_CACHE_TTL_SECONDS,
    ) -> None:
        self.source = source
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    async def _read(self) -> list[PromptSource]:
        try:
            raw = await self.source.read_all()
        except OSError as e:
            logger.info(f"No prompt sources configured ({self.source}: {e})")
            return []
        try:
            return parse_sources(raw)
        except PromptSourceLoadError as e:
            logger.error(f"Rejecting prompt source file {self.source}: {e}")
            raise

    async def list_sources(self) -> list[PromptSource]:
        version = await self.source.last_modified()
        cache_key = f"prompt-sources:list:{version}"
        if self.cache is not None:
            cached = await self.cache.get(cache_key)
            if cached:
                try:
                    return _SOURCE_LIST.validate_json(cached)
                except ValidationError:
                    logger.warning(f"Discarding unreadable cache entry {cache_key}")

        sources = await self._read()
        if self.cache is not None:
            payload = json.dumps([s.to_json_dict() for s in sources])
            await self.cache.set(cache_key, payload, self.ttl_seconds)
        return sources

    async def get_source(self, source_id: str) -> PromptSource | None:
        version = await self.source.last_modified()
        cache_key = f"prompt-sources:{source_id}:{version}"
        if self.cache is not None:
            cached = await self.cache.get(cache_key)
            if cached:
                try:
                    return PromptSource.model_validate_json(cached)
                except ValidationError:
                    logger.warning(f"Discarding unreadable cache entry {cache_key}")

        sources = await self.list_sources()
        found = next((s for s in sources if s.id == source_id), None)
        if found is not None and self.cache is not None:
            await self.cache.set(cache_key, json.dumps(found.to_json_dict()), self.ttl_seconds)
        return found
