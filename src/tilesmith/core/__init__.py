"""Core prompt/template engine for seamless tile generation.

Architecture Overview
---------------------
Leaf-first:

1. **Storage and cache** (storage.py, cache.py):
   - ``FileSource`` reads the JSON configs and reports an mtime version token
   - ``CacheBase`` with memory and Redis backends; ``None`` means always-miss

2. **Declarative configs** (templates.py, sources.py):
   - ``JsonTemplateStore`` validates the whole template file on load
   - ``JsonPromptSourceStore`` tolerates a missing source file

3. **Provider adapters** (providers/):
   - ``static`` and ``wikidata`` adapters behind a capability-checked registry

4. **Resolution** (options.py, prompt_input.py):
   - option lists for the generator UI
   - sanitized labels for the prompt

5. **Generation** (cache_key.py, generation.py, palettes.py, rate_limit.py):
   - deduplication keys, request preparation, the image API client,
     palette suggestions, and fixed-window rate limiting

Usage Example
-------------
::

    from tilesmith.core import JsonTemplateStore, FileSource, config

    store = JsonTemplateStore(FileSource(config.templates_path))
    templates = await store.list_templates()
"""

from tilesmith.core.cache import CacheBase, MemoryCache, RedisCache, create_cache
from tilesmith.core.cache_key import build_generation_cache_key, normalize_text
from tilesmith.core.config import TilesmithConfig, config
from tilesmith.core.errors import (
    ConfigurationError,
    GenerationError,
    LabelResolutionError,
    MissingResolverError,
    ParamsValidationError,
    PromptResolutionError,
    PromptSourceLoadError,
    TemplateLoadError,
    TilesmithError,
)
from tilesmith.core.options import resolve_prompt_options
from tilesmith.core.palettes import PaletteService
from tilesmith.core.prompt_input import resolve_prompt_input
from tilesmith.core.providers import ProviderRegistry, build_provider_registry
from tilesmith.core.sources import JsonPromptSourceStore, PromptSource, sanitize_label
from tilesmith.core.storage import FileSource
from tilesmith.core.templates import JsonTemplateStore, Template

__all__ = [
    "CacheBase",
    "ConfigurationError",
    "FileSource",
    "GenerationError",
    "JsonPromptSourceStore",
    "JsonTemplateStore",
    "LabelResolutionError",
    "MemoryCache",
    "MissingResolverError",
    "PaletteService",
    "ParamsValidationError",
    "PromptResolutionError",
    "PromptSource",
    "PromptSourceLoadError",
    "ProviderRegistry",
    "RedisCache",
    "Template",
    "TemplateLoadError",
    "TilesmithConfig",
    "TilesmithError",
    "build_generation_cache_key",
    "build_provider_registry",
    "config",
    "create_cache",
    "normalize_text",
    "resolve_prompt_input",
    "resolve_prompt_options",
    "sanitize_label",
]
