"""Tilesmith — FastAPI Application.

This module is the single entry point for the web service.  It defines the
FastAPI ``app`` instance, all REST API routes, and the ``main()`` CLI function
that launches the uvicorn server.

Architecture
------------
- **Templates and prompt sources** are JSON files in ``data_dir``, served
  through the versioned, cache-backed stores in :mod:`tilesmith.core`.
- **Shared resources** (cache backend, HTTP client, provider registry,
  palette service, image client) are created once in the lifespan handler
  and kept on ``app.state``.
- **Tile persistence** uses a single ``tiles.json`` file plus image files in
  ``tiles_dir`` — no database required.
- **Authentication** is handled upstream.  The authenticated user id arrives
  in the ``X-User-Id`` header.

Endpoints
---------
========  ==============================  ====================================
Method    Path                            Purpose
========  ==============================  ====================================
GET       ``/api/templates``              Template listing (no prompt text)
GET       ``/api/prompts/{id}/options``   Selectable options per parameter
GET       ``/api/prompts/{id}/palettes``  Colour palette suggestions
GET       ``/api/prompts/{id}/debug``     Rendered provider queries (dev only)
POST      ``/api/ai/generate``            Generate (or reuse) a tile
GET       ``/api/me/tiles``               The caller's tiles
GET       ``/api/tiles/{id}``             Tile metadata
GET       ``/api/tiles/{id}/image``       Tile image file
GET       ``/api/health``                 Liveness and cache backend
========  ==============================  ====================================

Usage
-----
CLI (installed entry point)::

    tilesmith

Direct invocation::

    python -m tilesmith.api.main
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse

from tilesmith import __version__
from tilesmith.api import tile_store
from tilesmith.api.models import GenerateRequest, GenerateResponse
from tilesmith.api.prompt_builder import build_prompt
from tilesmith.core.cache import create_cache
from tilesmith.core.config import TilesmithConfig, config
from tilesmith.core.errors import (
    ConfigurationError,
    GenerationError,
    ParamsValidationError,
    PromptResolutionError,
)
from tilesmith.core.generation import OpenAIImageClient, prepare_generation
from tilesmith.core.options import resolve_prompt_options
from tilesmith.core.palettes import DEFAULT_ENGINE, PaletteLimits, PaletteService
from tilesmith.core.providers import build_provider_registry, render_sparql
from tilesmith.core.providers.wikidata import DEFAULT_DEPENDENT_LIMIT
from tilesmith.core.rate_limit import RateLimiter
from tilesmith.core.sources import DependentParamProvider, JsonPromptSourceStore, provider_name_for
from tilesmith.core.storage import FileSource
from tilesmith.core.templates import JsonTemplateStore, Template, public_view

logger = logging.getLogger(__name__)

IMAGE_TIMEOUT_SECONDS = 120.0


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )


# ---------------------------------------------------------------------------
# Request helpers.
# ---------------------------------------------------------------------------


def _require_user(user_id: str | None) -> str:
    if not user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user_id


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


async def _enforce_rate_limit(request: Request, key: str, limit: int, window_seconds: int) -> None:
    result = await request.app.state.rate_limiter.check(key, limit, window_seconds)
    if not result.allowed:
        raise HTTPException(status_code=429, detail="Too many requests")


async def _get_template_or_404(request: Request, template_id: str) -> Template:
    template = await request.app.state.template_store.get_template(template_id)
    if template is None:
        raise HTTPException(status_code=404, detail="Template not found")
    return template


# ---------------------------------------------------------------------------
# Application factory.
# ---------------------------------------------------------------------------


def create_app(settings: TilesmithConfig = config, transport: httpx.AsyncBaseTransport | None = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Configuration to run with.
        transport: Optional HTTP transport for every outbound call (tests pass
            an ``httpx.MockTransport``).

    Returns:
        The configured application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Create shared resources on startup and release them on shutdown."""
        # --- Startup -----------------------------------------------------------
        cache = create_cache(settings)
        http_client = httpx.AsyncClient(
            transport=transport,
            timeout=settings.http_timeout_seconds,
            headers={"user-agent": settings.http_user_agent},
        )
        app.state.settings = settings
        app.state.cache = cache
        app.state.http_client = http_client
        app.state.template_store = JsonTemplateStore(
            FileSource(settings.templates_path), cache, settings.store_cache_ttl_seconds
        )
        app.state.source_store = JsonPromptSourceStore(
            FileSource(settings.sources_path), cache, settings.store_cache_ttl_seconds
        )
        app.state.registry = build_provider_registry(http_client, settings)
        app.state.palette_service = PaletteService(
            http_client,
            cache,
            thecolorapi_url=settings.thecolorapi_url,
            colormind_url=settings.colormind_url,
            timeout=settings.http_timeout_seconds,
        )
        app.state.image_client = OpenAIImageClient(
            http_client,
            settings.openai_api_key,
            settings.openai_images_url,
            timeout=IMAGE_TIMEOUT_SECONDS,
        )
        app.state.rate_limiter = RateLimiter(cache)
        app.state.tiles_dir = settings.tiles_dir
        app.state.tiles_db = settings.tiles_dir / tile_store.TILES_DB_NAME
        app.state.tiles_lock = asyncio.Lock()
        logger.info(f"Tilesmith {__version__} started ({settings.environment}, cache={cache.name})")

        yield  # Application runs here.

        # --- Shutdown ----------------------------------------------------------
        await http_client.aclose()
        await cache.close()
        logger.info("Tilesmith shut down.")

    app = FastAPI(
        title="Tilesmith",
        description="Seamless tile generation API with declarative prompt templates.",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    request_logger = logging.getLogger("tilesmith.api.requests")

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.time()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            duration_ms = int((time.time() - start) * 1000)
            request_logger.info(
                f"{request.method} {request.url.path} status={status} duration_ms={duration_ms}"
            )

    _register_error_handlers(app)
    _register_routes(app)
    return app


# ---------------------------------------------------------------------------
# Error mapping.
# ---------------------------------------------------------------------------


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ParamsValidationError)
    async def params_error(request: Request, exc: ParamsValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc), "errors": exc.errors})

    @app.exception_handler(PromptResolutionError)
    async def resolution_error(request: Request, exc: PromptResolutionError) -> JSONResponse:
        logger.info(f"Prompt resolution failed for {request.url.path}: {exc}")
        return JSONResponse(status_code=400, content={"detail": str(exc), "param": exc.param})

    @app.exception_handler(GenerationError)
    async def generation_error(request: Request, exc: GenerationError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})

    @app.exception_handler(ConfigurationError)
    async def configuration_error(request: Request, exc: ConfigurationError) -> JSONResponse:
        logger.error(f"Configuration error while serving {request.url.path}: {exc}")
        return JSONResponse(status_code=500, content={"detail": "Server configuration error"})


# ---------------------------------------------------------------------------
# Routes.
# ---------------------------------------------------------------------------


def _register_routes(app: FastAPI) -> None:
    @app.get("/api/health")
    async def health(request: Request) -> dict:
        """Return liveness information and the active cache backend."""
        return {"status": "ok", "version": __version__, "cache": request.app.state.cache.name}

    @app.get("/api/templates")
    async def list_templates(request: Request) -> dict:
        """Return every template without its prompt text.

        Raises:
            TemplateLoadError: Mapped to 500 when the template file is invalid.
        """
        templates = await request.app.state.template_store.list_templates()
        return {"templates": [public_view(template) for template in templates]}

    @app.get("/api/prompts/{template_id}/options")
    async def prompt_options(
        template_id: str,
        request: Request,
        x_user_id: str | None = Header(default=None),
    ) -> dict:
        """Resolve the selectable options for every parameter of a template.

        Query parameters are passed through as request params (search text,
        parent selections for dependent parameters).
        """
        _require_user(x_user_id)
        settings: TilesmithConfig = request.app.state.settings
        await _enforce_rate_limit(
            request,
            f"prompt-options:{_client_ip(request)}",
            settings.options_rate_limit,
            settings.rate_window_seconds,
        )
        template = await _get_template_or_404(request, template_id)
        source = await request.app.state.source_store.get_source(template_id)
        result = await resolve_prompt_options(
            template,
            source,
            dict(request.query_params),
            request.app.state.registry,
            request.app.state.cache,
        )
        result["options"] = {
            name: [option.model_dump(exclude_none=True) for option in options]
            for name, options in result["options"].items()
        }
        return {key: value for key, value in result.items() if value is not None}

    @app.get("/api/prompts/{template_id}/palettes")
    async def prompt_palettes(
        template_id: str,
        request: Request,
        x_user_id: str | None = Header(default=None),
    ) -> dict:
        """Suggest colour palettes for a template with a colour module.

        Engine: ``engine`` query → ``color.defaultEngine`` → first
        ``color.engines`` → ``thecolorapi``.  Seed: ``seed`` → ``themeId`` →
        ``cityId`` → template id.
        """
        _require_user(x_user_id)
        settings: TilesmithConfig = request.app.state.settings
        await _enforce_rate_limit(
            request,
            f"palettes:{_client_ip(request)}",
            settings.palettes_rate_limit,
            settings.rate_window_seconds,
        )
        await _get_template_or_404(request, template_id)
        source = await request.app.state.source_store.get_source(template_id)
        if source is None or source.color is None:
            return {"templateId": template_id, "suggestions": {"palettes": []}, "reason": "No color module"}

        query = request.query_params
        color = source.color
        engine = (
            query.get("engine")
            or color.default_engine
            or (color.engines[0] if color.engines else None)
            or DEFAULT_ENGINE
        )
        strategies = color.strategies or []
        strategy = next((item for item in strategies if item.id == query.get("strategy")), None)
        if strategy is None and strategies:
            strategy = strategies[0]
        seed = query.get("seed") or query.get("themeId") or query.get("cityId") or template_id

        color_limits = color.limits
        limits = PaletteLimits(
            palettes=(color_limits.palettes if color_limits else None) or 6,
            min_colors=(color_limits.min_colors if color_limits else None) or 3,
            max_colors=(color_limits.max_colors if color_limits else None) or 5,
        )
        result = await request.app.state.palette_service.suggest_palettes(
            template_id,
            engine,
            seed,
            limits=limits,
            strategy=strategy,
            cache_ttl_seconds=color.cache.ttl_seconds if color.cache else None,
        )
        return {
            "templateId": template_id,
            "suggestions": {"palettes": result["palettes"]},
            "source": {"provider": "color", "engine": engine, "strategy": strategy.id if strategy else None},
            "cache": result["cache"],
        }

    @app.get("/api/prompts/{template_id}/debug")
    async def prompt_debug(
        template_id: str,
        request: Request,
        x_user_id: str | None = Header(default=None),
    ) -> dict:
        """Show which provider serves each parameter and the rendered queries.

        Not available in production.
        """
        _require_user(x_user_id)
        settings: TilesmithConfig = request.app.state.settings
        if settings.is_production:
            raise HTTPException(status_code=404, detail="Not available in production")
        template = await _get_template_or_404(request, template_id)
        source = await request.app.state.source_store.get_source(template_id)
        if source is None:
            raise HTTPException(status_code=404, detail="Source not found")

        request_params = dict(request.query_params)
        queries: dict[str, dict[str, Any]] = {}
        for param_name, param in source.param_providers.items():
            entry: dict[str, Any] = {"provider": provider_name_for(source, param), "type": param.type}
            if isinstance(param, DependentParamProvider):
                entry["dependsOn"] = param.depends_on
                sparql = (param.query or {}).get("sparql")
                if isinstance(sparql, str):
                    entry["query"] = render_sparql(
                        sparql, request_params, param.limit or DEFAULT_DEPENDENT_LIMIT
                    )
            queries[param_name] = entry
        return {"templateId": template.id, "params": request_params, "queries": queries}

    @app.post("/api/ai/generate")
    async def generate_tile(
        req: GenerateRequest,
        request: Request,
        x_user_id: str | None = Header(default=None),
    ) -> dict:
        """Generate a seamless tile, or reuse an identical earlier one.

        This endpoint:

        1. Rate-limits per user.
        2. Validates params, resolves theme and source labels, and builds
           the cache key (:func:`~tilesmith.core.generation.prepare_generation`).
        3. Returns the caller's existing tile for the same key, or clones
           another user's tile privately, without calling the image API.
        4. Otherwise generates the image and stores a new private tile.

        Raises:
            HTTPException: 401 without a user, 404 for an unknown template,
                429 when rate limited.
        """
        user_id = _require_user(x_user_id)
        state = request.app.state
        settings: TilesmithConfig = state.settings
        await _enforce_rate_limit(
            request,
            f"ai-generate:{user_id}",
            settings.generate_rate_limit,
            settings.generate_rate_window_seconds,
        )

        template = await _get_template_or_404(request, req.template_id)
        source = await state.source_store.get_source(template.id)
        prepared = await prepare_generation(template, source, req.params, state.registry, settings)

        meta = {
            "generatedBy": "openai",
            "templateId": template.id,
            "params": prepared.params,
            "cacheKey": prepared.cache_key,
        }
        entries = tile_store.load_tile_entries(state.tiles_db, state.tiles_dir)
        existing = tile_store.find_by_cache_key(entries, prepared.cache_key, owner_id=user_id)

        # --- Reuse -------------------------------------------------------------
        if existing is not None and existing.get("ownerId") == user_id:
            logger.info(f"Reusing tile {existing['id']} for {user_id}")
            return _generate_response(existing, cached=True)
        if existing is not None:
            clone = tile_store.clone_tile_entry(
                existing,
                owner_id=user_id,
                title=prepared.title,
                description=prepared.description,
                tags=prepared.tags,
                meta=meta,
            )
            async with state.tiles_lock:
                tile_store.add_tile_entry(state.tiles_db, state.tiles_dir, clone)
            logger.info(f"Cloned tile {existing['id']} as {clone['id']} for {user_id}")
            return _generate_response(clone, cached=True)

        # --- Generate ----------------------------------------------------------
        prompt = build_prompt(template.prompt_template, prepared.safe_input)
        image = await state.image_client.generate(prompt, prepared.settings)
        tile_id = str(uuid.uuid4())
        filename = tile_store.write_tile_image(state.tiles_dir, tile_id, image, prepared.settings.output_format)
        entry = tile_store.new_tile_entry(
            tile_id=tile_id,
            owner_id=user_id,
            template_id=template.id,
            title=prepared.title,
            description=prepared.description,
            tags=prepared.tags,
            filename=filename,
            output_format=prepared.settings.output_format,
            meta=meta,
        )
        # The image call awaits, so other requests may have saved tiles since
        # the lookup above.
        async with state.tiles_lock:
            tile_store.add_tile_entry(state.tiles_db, state.tiles_dir, entry)
        logger.info(f"Generated tile {entry['id']} from template {template.id}")
        return _generate_response(entry, cached=False)

    @app.get("/api/me/tiles")
    async def my_tiles(request: Request, x_user_id: str | None = Header(default=None)) -> dict:
        """Return the caller's tiles, newest first."""
        user_id = _require_user(x_user_id)
        entries = tile_store.load_tile_entries(request.app.state.tiles_db, request.app.state.tiles_dir)
        return {"tiles": tile_store.list_for_owner(entries, user_id)}

    @app.get("/api/tiles/{tile_id}")
    async def get_tile(
        tile_id: str,
        request: Request,
        x_user_id: str | None = Header(default=None),
    ) -> dict:
        """Return tile metadata.  Private tiles are visible to their owner only."""
        return _visible_tile(request, tile_id, x_user_id)

    @app.get("/api/tiles/{tile_id}/image")
    async def get_tile_image(
        tile_id: str,
        request: Request,
        x_user_id: str | None = Header(default=None),
    ) -> FileResponse:
        """Serve the tile's image file."""
        entry = _visible_tile(request, tile_id, x_user_id)
        media_type = "image/jpeg" if entry.get("format") == "jpg" else f"image/{entry.get('format')}"
        return FileResponse(request.app.state.tiles_dir / entry["filename"], media_type=media_type)


def _visible_tile(request: Request, tile_id: str, user_id: str | None) -> dict:
    entries = tile_store.load_tile_entries(request.app.state.tiles_db, request.app.state.tiles_dir)
    entry = tile_store.find_by_id(entries, tile_id)
    if entry is None or (entry.get("visibility") == "private" and entry.get("ownerId") != user_id):
        raise HTTPException(status_code=404, detail="Tile not found")
    return entry


def _generate_response(entry: dict, cached: bool) -> dict:
    return GenerateResponse(
        tile_id=entry["id"],
        image_url=f"/api/tiles/{entry['id']}/image",
        title=entry.get("title", ""),
        cached=cached,
    ).model_dump(by_alias=True)


# ---------------------------------------------------------------------------
# FastAPI application instance.
# ---------------------------------------------------------------------------
app = create_app(config)


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host and port from :data:`~tilesmith.core.config.config` (which
    loads from ``TILESMITH_SERVER_HOST`` and ``TILESMITH_SERVER_PORT``
    environment variables).  Defaults to ``0.0.0.0:7860``.

    This function is registered as the ``tilesmith`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    setup_logging(config.log_level)
    uvicorn.run(
        "tilesmith.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
