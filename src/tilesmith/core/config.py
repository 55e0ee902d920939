"""Configuration management for Tilesmith.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the TILESMITH_ prefix,
allowing easy customization without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (TILESMITH_* prefix)
2. .env file in the project root
3. Default values defined in TilesmithConfig

Example .env file:
    TILESMITH_REDIS_URL=redis://localhost:6379/0
    TILESMITH_OPENAI_API_KEY=sk-...
    TILESMITH_IMAGE_OUTPUT_FORMAT=png
    TILESMITH_HTTP_TIMEOUT_SECONDS=5

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
The API layer reads it once during startup; library code receives the values it
needs as arguments so it can be exercised with a custom configuration in tests.

Usage Example
-------------
    from tilesmith.core.config import config

    print(config.templates_path)
    print(config.redis_url or "memory cache")

Data Files
----------
Templates and prompt sources are JSON files inside ``data_dir``.  The bundled
defaults live in the package's ``data/`` directory; point ``TILESMITH_DATA_DIR``
at another directory to serve a different template set.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from tilesmith import __version__

PACKAGE_DATA_DIR = Path(__file__).resolve().parent.parent / "data"


class TilesmithConfig(BaseSettings):
    """Main configuration for Tilesmith.

    Values are loaded from environment variables with the TILESMITH_ prefix,
    with fallback to the defaults defined here.

    Attributes
    ----------
    Runtime:
        environment : Literal["development", "test", "production"]
            Deployment environment.  ``production`` hides the debug route.
        log_level : str
            Root logging level used by the API entry point.

    Data:
        data_dir : Path
            Directory that holds the template and prompt source JSON files
        templates_file : str
            Template file name inside ``data_dir``
        sources_file : str
            Prompt source file name inside ``data_dir``
        tiles_dir : Path
            Directory for generated tile images and ``tiles.json``
        store_cache_ttl_seconds : int
            TTL for cached template / source lists

    Cache:
        redis_url : str
            Redis connection URL.  Empty selects the in-process memory cache.

    External services:
        http_timeout_seconds : float
            Timeout applied to every outbound HTTP request
        http_user_agent : str
            User agent sent to the knowledge-base endpoints
        wikidata_api_url, wikidata_sparql_url : str
            Entity search / id resolution and SPARQL endpoints
        thecolorapi_url, colormind_url : str
            Colour scheme engines
        openai_api_key, openai_images_url : str
            Image generation credential and endpoint

    Notes
    -----
    - ``tiles_dir`` is created automatically on initialization
    - Configuration is immutable after initialization; set environment
      variables and restart to change values
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="TILESMITH_",
        case_sensitive=False,
    )

    # Runtime
    environment: Literal["development", "test", "production"] = Field(
        default="development",
        description="Deployment environment (production disables debug endpoints)",
    )
    log_level: str = Field(default="INFO", description="Root logging level")

    # Data files
    data_dir: Path = Field(
        default=PACKAGE_DATA_DIR,
        description="Directory holding prompt-templates.json and prompt-sources.json",
    )
    templates_file: str = Field(default="prompt-templates.json")
    sources_file: str = Field(default="prompt-sources.json")
    tiles_dir: Path = Field(
        default=Path("tiles"),
        description="Directory for generated tile images and tile metadata",
    )
    store_cache_ttl_seconds: int = Field(default=600, ge=1)

    # Cache
    redis_url: str = Field(
        default="",
        description="Redis URL for the shared cache (empty = in-process memory cache)",
    )

    # Outbound HTTP
    http_timeout_seconds: float = Field(default=8.0, gt=0, le=60)
    http_user_agent: str = Field(default=f"tilesmith/{__version__}")
    wikidata_api_url: str = Field(default="https://www.wikidata.org/w/api.php")
    wikidata_sparql_url: str = Field(default="https://query.wikidata.org/sparql")
    thecolorapi_url: str = Field(default="https://www.thecolorapi.com/scheme")
    colormind_url: str = Field(default="http://colormind.io/api/")

    # Image generation
    openai_api_key: str = Field(default="", description="Image generation API key")
    openai_images_url: str = Field(default="https://api.openai.com/v1/images/generations")
    image_model: str = Field(default="gpt-image-1")
    image_size: str = Field(default="1024x1024")
    image_output_format: str = Field(default="webp")
    image_background: str = Field(default="opaque")

    # Rate limits
    generate_rate_limit: int = Field(default=10, ge=1)
    generate_rate_window_seconds: int = Field(default=3600, ge=1)
    options_rate_limit: int = Field(default=60, ge=1)
    palettes_rate_limit: int = Field(default=30, ge=1)
    rate_window_seconds: int = Field(default=60, ge=1)

    # Server
    server_host: str = Field(default="0.0.0.0", description="Server bind address")
    server_port: int = Field(default=7860, ge=1024, le=65535)

    def __init__(self, **kwargs):
        """Initialize configuration and create the tiles directory.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)
        self.tiles_dir.mkdir(parents=True, exist_ok=True)

    @property
    def templates_path(self) -> Path:
        """Absolute path of the template definitions file."""
        return self.data_dir / self.templates_file

    @property
    def sources_path(self) -> Path:
        """Absolute path of the prompt source definitions file."""
        return self.data_dir / self.sources_file

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


# Global configuration instance
# Loads values from environment variables (TILESMITH_* prefix) and .env file.
config = TilesmithConfig()
