"""Declarative generation templates: schema, safety validation, and storage.

A template describes one parametric tile-generation request: a parameter schema,
fixed prompt text, defaults, UI hints, and render templates for the metadata of
the resulting tile.  Templates live in a single JSON file and are validated as a
batch when the file is loaded.

Safety Rules
------------
User-chosen parameters are the only variable input that reaches the image
prompt, so the schema itself must leave no free-text injection surface:

- every ``string`` parameter has an ``enum`` or a ``regex``
- every ``array`` parameter has ``items`` with an ``enum`` or a ``regex``,
  ``maxItems`` of at most 5 and, when present, ``minItems`` of at least 1
- ``promptTemplate`` contains no ``{{placeholder}}``; parameter values are sent
  as a separate JSON block, never spliced into the prompt text
- ``themeOptions``, when present, is non-empty

A single violation rejects the whole file.  Serving a partially loaded template
set would hide configuration mistakes behind missing entries.

Caching
-------
:class:`JsonTemplateStore` folds the file's modification time into every cache
key (``templates:list:<version>`` / ``templates:<id>:<version>``), so editing the
file invalidates cached entries without any explicit purge.  Cache hits are
trusted and skip the safety checks.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from typing import Annotated, Any, Literal

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    TypeAdapter,
    ValidationError,
    create_model,
)

from .cache import CacheBase
from .errors import ParamsValidationError, TemplateLoadError
from .storage import FileSource

logger = logging.getLogger(__name__)

MAX_ARRAY_ITEMS = 5
TEMPLATE_CACHE_TTL_SECONDS = 600

_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")


# ---------------------------------------------------------------------------
# Schema models.
# ---------------------------------------------------------------------------


class StringParamSchema(BaseModel):
    """Schema node for a single string parameter (or array item)."""

    model_config = ConfigDict(frozen=True)

    type: Literal["string"]
    min: int | None = None
    max: int | None = None
    regex: str | None = None
    enum: list[str] | None = None


class ArrayParamSchema(BaseModel):
    """Schema node for a list-of-strings parameter."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: Literal["array"]
    min_items: int | None = Field(default=None, alias="minItems")
    max_items: int | None = Field(default=None, alias="maxItems")
    items: StringParamSchema


ParamSchema = Annotated[StringParamSchema | ArrayParamSchema, Field(discriminator="type")]


class UiHint(BaseModel):
    """Rendering hints for one parameter's form control."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    widget: str
    label: str | None = None
    description: str | None = None
    depends_on: list[str] | None = Field(default=None, alias="dependsOn")
    supports_suggestions: bool | None = Field(default=None, alias="supportsSuggestions")
    min: int | None = None
    max: int | None = None


class Template(BaseModel):
    """A declarative tile-generation template.

    Field names follow Python conventions; the JSON file uses the camelCase
    aliases (``paramsSchema``, ``promptTemplate`` ...).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str | None = None
    params_schema: dict[str, ParamSchema] = Field(alias="paramsSchema")
    ui_hints: dict[str, UiHint] | None = Field(default=None, alias="uiHints")
    theme_options: dict[str, str] | None = Field(default=None, alias="themeOptions")
    samples: list[Annotated[str, StringConstraints(min_length=1)]] | None = None
    prompt_template: str = Field(alias="promptTemplate", min_length=1)
    defaults: dict[str, Any] | None = None
    title_template: str | None = Field(default=None, alias="titleTemplate")
    description_template: str | None = Field(default=None, alias="descriptionTemplate")
    tags: list[str] | None = None
    model: str | None = None
    size: str | None = None
    output_format: str | None = None
    background: str | None = None

    def to_json_dict(self) -> dict[str, Any]:
        """Serialise with the on-disk (camelCase) field names."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


_TEMPLATE_LIST = TypeAdapter(list[Template])
_TEMPLATE = TypeAdapter(Template)


# ---------------------------------------------------------------------------
# Load-time validation.
# ---------------------------------------------------------------------------


def _check_regex(template_id: str, pattern: str) -> None:
    try:
        re.compile(pattern)
    except re.error as e:
        raise TemplateLoadError(f"Template {template_id} has invalid regex {pattern!r}: {e}") from e


def assert_template_safe(template: Template) -> None:
    """Reject templates that leave a prompt-injection surface.

    Args:
        template: Parsed template to check.

    Raises:
        TemplateLoadError: If any rule from the module docstring is violated.
    """
    if template.theme_options is not None and not template.theme_options:
        raise TemplateLoadError(f"Template {template.id} has empty themeOptions")
    if _PLACEHOLDER_RE.search(template.prompt_template):
        raise TemplateLoadError(f"Template {template.id} contains placeholders in promptTemplate")

    for name, schema in template.params_schema.items():
        if isinstance(schema, StringParamSchema):
            if not schema.enum and not schema.regex:
                raise TemplateLoadError(f"Template {template.id} has unsafe string param {name}")
            if schema.regex:
                _check_regex(template.id, schema.regex)
            continue

        if schema.min_items is not None and schema.min_items < 1:
            raise TemplateLoadError(f"Template {template.id} has invalid minItems for {name}")
        if schema.max_items is None or schema.max_items > MAX_ARRAY_ITEMS:
            raise TemplateLoadError(
                f"Template {template.id} exceeds maxItems {MAX_ARRAY_ITEMS} for {name}"
            )
        if not schema.items.regex and not schema.items.enum:
            raise TemplateLoadError(f"Template {template.id} has unsafe array param {name}")
        if schema.items.regex:
            _check_regex(template.id, schema.items.regex)


def parse_templates(raw: bytes | str) -> list[Template]:
    """Parse and validate a whole template document.

    Args:
        raw: JSON document containing a list of templates.

    Returns:
        The validated templates in file order.

    Raises:
        TemplateLoadError: On malformed JSON, schema violations, duplicate ids,
            or any unsafe template.  Nothing is returned for a partially valid
            document.
    """
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise TemplateLoadError(f"Template file is not valid JSON: {e}") from e

    try:
        templates = _TEMPLATE_LIST.validate_python(data)
    except ValidationError as e:
        raise TemplateLoadError(f"Template file failed schema validation: {e}") from e

    seen: set[str] = set()
    for template in templates:
        if template.id in seen:
            raise TemplateLoadError(f"Duplicate template id {template.id}")
        seen.add(template.id)
        assert_template_safe(template)
    return templates


# ---------------------------------------------------------------------------
# Request-time parameter handling.
# ---------------------------------------------------------------------------


def _enum_validator(allowed: list[str]) -> Callable[[str], str]:
    allowed_set = frozenset(allowed)

    def check(value: str) -> str:
        if value not in allowed_set:
            raise ValueError(f"value must be one of {', '.join(allowed)}")
        return value

    return check


def _regex_validator(pattern: str) -> Callable[[str], str]:
    compiled = re.compile(pattern)

    def check(value: str) -> str:
        if not compiled.search(value):
            raise ValueError(f"value does not match {pattern}")
        return value

    return check


def _string_type(schema: StringParamSchema) -> Any:
    metadata: list[Any] = []
    constraints: dict[str, int] = {}
    if schema.min:
        constraints["min_length"] = schema.min
    if schema.max:
        constraints["max_length"] = schema.max
    if constraints:
        metadata.append(StringConstraints(**constraints))
    if schema.enum:
        metadata.append(AfterValidator(_enum_validator(schema.enum)))
    if schema.regex:
        metadata.append(AfterValidator(_regex_validator(schema.regex)))
    if not metadata:
        return str
    return Annotated[tuple([str, *metadata])]


def _array_type(schema: ArrayParamSchema) -> Any:
    bounds: dict[str, int] = {}
    if schema.min_items:
        bounds["min_length"] = schema.min_items
    if schema.max_items:
        bounds["max_length"] = schema.max_items
    item_type = _string_type(schema.items)
    if not bounds:
        return list[item_type]
    return Annotated[list[item_type], Field(**bounds)]


def build_params_model(params_schema: dict[str, StringParamSchema | ArrayParamSchema]):
    """Build a strict pydantic model for a template's parameters.

    Every declared parameter is required, unknown keys are rejected, and no
    type coercion happens (a number is not accepted as a string).

    Args:
        params_schema: The template's ``paramsSchema``.

    Returns:
        A dynamically created :class:`pydantic.BaseModel` subclass whose
        aliases are the parameter names.
    """
    fields: dict[str, Any] = {}
    for index, (name, schema) in enumerate(params_schema.items()):
        if isinstance(schema, StringParamSchema):
            annotation = _string_type(schema)
        else:
            annotation = _array_type(schema)
        fields[f"param_{index}"] = (annotation, Field(alias=name))

    return create_model(
        "TemplateParams",
        __config__=ConfigDict(extra="forbid", strict=True),
        **fields,
    )


def validate_params(template: Template, params: dict[str, Any]) -> dict[str, Any]:
    """Validate submitted parameters against a template's schema.

    Args:
        template: Template whose schema applies.
        params: Parameters after defaults were applied.

    Returns:
        The validated parameters keyed by parameter name.

    Raises:
        ParamsValidationError: If any parameter is missing, unknown, or fails
            its constraints.
    """
    model = build_params_model(template.params_schema)
    try:
        parsed = model.model_validate(params)
    except ValidationError as e:
        errors = [
            {"loc": [str(part) for part in err["loc"]], "msg": err["msg"]}
            for err in e.errors(include_url=False)
        ]
        raise ParamsValidationError("Invalid params", errors=errors) from e
    return parsed.model_dump(by_alias=True)


def apply_defaults(params: dict[str, Any] | None, defaults: dict[str, Any] | None) -> dict[str, Any]:
    """Overlay submitted params on the template defaults."""
    return {**(defaults or {}), **(params or {})}


def derive_params(params: dict[str, Any]) -> dict[str, str]:
    """Add a ``<key>Csv`` comma-joined variant for every list parameter."""
    derived: dict[str, str] = {}
    for key, value in params.items():
        if isinstance(value, list):
            derived[f"{key}Csv"] = ", ".join(str(item) for item in value)
    return derived


def render_template_text(text: str, params: dict[str, Any]) -> str:
    """Substitute ``{{key}}`` placeholders in title/description/tag templates.

    Lists are comma-joined and missing values render as an empty string.
    """

    def replace(match: re.Match[str]) -> str:
        value = params.get(match.group(1))
        if value is None:
            return ""
        if isinstance(value, list):
            return ", ".join(str(item) for item in value)
        return str(value)

    return _PLACEHOLDER_RE.sub(replace, text)


def public_view(template: Template) -> dict[str, Any]:
    """Return the template as JSON without its prompt text."""
    data = template.to_json_dict()
    data.pop("promptTemplate", None)
    return data


# ---------------------------------------------------------------------------
# Store.
# ---------------------------------------------------------------------------


class JsonTemplateStore:
    """Template store backed by a JSON file and the shared cache.

    Args:
        source: Backing file.
        cache: Shared cache, or ``None`` to always read from the file.
        ttl_seconds: Lifetime of cached entries.
    """

    def __init__(
        self,
        source: FileSource,
        cache: CacheBase | None = None,
        ttl_seconds: int = TEMPLATE_CACHE_TTL_SECONDS,
    ) -> None:
        self.source = source
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    async def _read(self) -> list[Template]:
        try:
            raw = await self.source.read_all()
        except OSError as e:
            logger.error(f"Cannot read templates from {self.source}: {e}")
            raise TemplateLoadError(f"Cannot read template file: {e}") from e
        try:
            return parse_templates(raw)
        except TemplateLoadError as e:
            logger.error(f"Rejecting template file {self.source}: {e}")
            raise

    async def list_templates(self) -> list[Template]:
        """Return every template, validated on cache miss.

        Raises:
            TemplateLoadError: If the backing file is unreadable or invalid.
        """
        version = await self.source.last_modified()
        cache_key = f"templates:list:{version}"
        if self.cache is not None:
            cached = await self.cache.get(cache_key)
            if cached:
                try:
                    return _TEMPLATE_LIST.validate_json(cached)
                except ValidationError:
                    logger.warning(f"Discarding unreadable cache entry {cache_key}")

        templates = await self._read()
        if self.cache is not None:
            payload = json.dumps([t.to_json_dict() for t in templates])
            await self.cache.set(cache_key, payload, self.ttl_seconds)
        return templates

    async def get_template(self, template_id: str) -> Template | None:
        """Return one template, or ``None`` for an unknown id.

        Raises:
            TemplateLoadError: If the backing file is unreadable or invalid.
        """
        version = await self.source.last_modified()
        cache_key = f"templates:{template_id}:{version}"
        if self.cache is not None:
            cached = await self.cache.get(cache_key)
            if cached:
                try:
                    return _TEMPLATE.validate_json(cached)
                except ValidationError:
                    logger.warning(f"Discarding unreadable cache entry {cache_key}")

        templates = await self.list_templates()
        template = next((t for t in templates if t.id == template_id), None)
        if template is not None and self.cache is not None:
            await self.cache.set(cache_key, json.dumps(template.to_json_dict()), self.ttl_seconds)
        return template
