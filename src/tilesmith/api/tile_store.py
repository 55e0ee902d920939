"""Tile metadata storage helpers for the Tilesmith API.

This module keeps the file-backed tile store out of ``tilesmith.api.main`` so
route handlers only deal with HTTP concerns.

The store is deliberately simple:

- metadata lives in a single ``tiles.json`` file
- image files live in the tiles directory, one file per generated image
- list order is reverse-chronological (newest first)

Clones created by deduplication are separate metadata entries that point at
the original image file (``meta.sourceTileId``).  No image bytes are copied.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

TILES_DB_NAME = "tiles.json"


def load_tile_entries(tiles_db: Path, tiles_dir: Path) -> list[dict]:
    """Load tile metadata and drop entries whose image file is gone.

    A missing or unreadable ``tiles.json`` is an empty store.  Pruned entries
    are persisted immediately so later reads agree.

    Args:
        tiles_db: Path to ``tiles.json``.
        tiles_dir: Directory that should contain the image files.

    Returns:
        Surviving tile entries in persisted order.
    """
    raw_entries: Any = []
    if tiles_db.exists():
        try:
            with open(tiles_db, encoding="utf-8") as handle:
                raw_entries = json.load(handle)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable tile store {tiles_db}: {e}")
            raw_entries = []

    if not isinstance(raw_entries, list):
        raw_entries = []

    cleaned: list[dict] = []
    for entry in raw_entries:
        if not isinstance(entry, dict):
            continue
        filename = entry.get("filename")
        if not filename or not (tiles_dir / filename).exists():
            continue
        cleaned.append(entry)

    if cleaned != raw_entries:
        save_tile_entries(tiles_db, cleaned)
    return cleaned


def save_tile_entries(tiles_db: Path, entries: list[dict]) -> None:
    """Persist the tile metadata list."""
    with open(tiles_db, "w", encoding="utf-8") as handle:
        json.dump(entries, handle, indent=2)


def add_tile_entry(tiles_db: Path, tiles_dir: Path, entry: dict) -> None:
    """Re-read the store, put *entry* first and persist.

    Callers that await between reading the store and adding a tile must use
    this (under their write lock) rather than saving a list read earlier.
    """
    entries = load_tile_entries(tiles_db, tiles_dir)
    entries.insert(0, entry)
    save_tile_entries(tiles_db, entries)


def write_tile_image(tiles_dir: Path, tile_id: str, data: bytes, output_format: str) -> str:
    """Write image bytes for a new tile and return the file name."""
    filename = f"{tile_id}.{output_format}"
    (tiles_dir / filename).write_bytes(data)
    return filename


def find_by_cache_key(entries: list[dict], cache_key: str, owner_id: str | None = None) -> dict | None:
    """Find a tile generated from the same normalized request.

    The caller's own tile is preferred; otherwise the first matching tile of
    any owner is returned.
    """
    matches = [entry for entry in entries if (entry.get("meta") or {}).get("cacheKey") == cache_key]
    if owner_id is not None:
        own = next((entry for entry in matches if entry.get("ownerId") == owner_id), None)
        if own is not None:
            return own
    return matches[0] if matches else None


def find_by_id(entries: list[dict], tile_id: str) -> dict | None:
    return next((entry for entry in entries if entry.get("id") == tile_id), None)


def list_for_owner(entries: list[dict], owner_id: str) -> list[dict]:
    return [entry for entry in entries if entry.get("ownerId") == owner_id]


def new_tile_entry(
    *,
    tile_id: str | None = None,
    owner_id: str,
    template_id: str,
    title: str,
    description: str,
    tags: list[str],
    filename: str,
    output_format: str,
    meta: dict[str, Any],
    visibility: str = "private",
) -> dict:
    """Build a tile metadata entry (a fresh id unless *tile_id* is given)."""
    now = time.time()
    return {
        "id": tile_id or str(uuid.uuid4()),
        "ownerId": owner_id,
        "templateId": template_id,
        "title": title,
        "description": description,
        "tags": tags,
        "seamless": True,
        "visibility": visibility,
        "format": output_format,
        "filename": filename,
        "meta": meta,
        "created_at": now,
        "updated_at": now,
    }


def clone_tile_entry(
    existing: dict, *, owner_id: str, title: str, description: str, tags: list[str], meta: dict
) -> dict:
    """Private copy of *existing* for another owner, sharing the image file."""
    return new_tile_entry(
        owner_id=owner_id,
        template_id=existing.get("templateId", ""),
        title=title,
        description=description,
        tags=tags,
        filename=existing["filename"],
        output_format=existing.get("format", ""),
        meta={**meta, "sourceTileId": existing["id"]},
    )
