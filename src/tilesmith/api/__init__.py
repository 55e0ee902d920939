"""Tilesmith — FastAPI REST API layer.

This package contains the FastAPI application, Pydantic request/response
models, prompt compilation, and the file-backed tile store.

Modules
-------
main
    FastAPI application with all route handlers and the ``main()`` CLI
    entry point.
models
    Pydantic models for API request and response validation.
prompt_builder
    Final prompt compilation (seamless boilerplate + template + input JSON).
tile_store
    File-backed tile metadata helpers: reconciliation, lookup by cache key,
    cloning.
"""
