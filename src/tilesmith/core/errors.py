"""Exception hierarchy for the prompt/template core.

Three families matter to callers:

- :class:`ConfigurationError` — the template or source files are malformed.
  Serving the affected template set must stop until an operator fixes them.
- :class:`PromptResolutionError` — a single generation attempt cannot turn the
  submitted ids into safe prompt text.  Only that request fails.
- :class:`GenerationError` — the generation request itself is invalid or the
  upstream image API failed.

Upstream degradations (knowledge-base or colour API failures, cache outages)
are never raised; components absorb them and return narrower results.
"""

from __future__ import annotations

from typing import Any


class TilesmithError(Exception):
    """Base class for all Tilesmith errors."""


class ConfigurationError(TilesmithError):
    """A declarative configuration file is invalid."""


class TemplateLoadError(ConfigurationError):
    """The template file could not be read, parsed, or failed safety checks."""


class PromptSourceLoadError(ConfigurationError):
    """The prompt source file exists but is malformed."""


class PromptResolutionError(TilesmithError):
    """A parameter value could not be resolved into a safe prompt label.

    Attributes:
        param: Name of the offending template parameter, when known.
    """

    def __init__(self, message: str, param: str | None = None) -> None:
        super().__init__(message)
        self.param = param


class MissingResolverError(PromptResolutionError):
    """A dynamic id was submitted but the source has no entity resolver."""


class LabelResolutionError(PromptResolutionError):
    """A resolved label is missing or empty after sanitization."""


class ParamsValidationError(TilesmithError):
    """Submitted parameters do not satisfy the template's parameter schema."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class GenerationError(TilesmithError):
    """A generation request is invalid or the image API failed.

    Attributes:
        status_code: HTTP status the API layer should answer with.
    """

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code
