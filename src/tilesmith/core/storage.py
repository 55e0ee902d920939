"""File-backed storage for the declarative template and source configs.

The stores only need two operations from their backing storage: read the whole
document and report a version token.  The token is the file's modification
time, which the stores fold into their cache keys so an edited file is picked up
without explicit invalidation.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

MISSING_VERSION = "0"


class FileSource:
    """A JSON document on the local file system.

    Args:
        path: Location of the document.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    async def read_all(self) -> bytes:
        """Read the full document.

        Raises:
            OSError: If the file is missing or unreadable.
        """
        return await asyncio.to_thread(self.path.read_bytes)

    async def last_modified(self) -> str:
        """Return the modification-time version token, or ``"0"`` if absent."""
        try:
            stat = await asyncio.to_thread(self.path.stat)
        except OSError:
            return MISSING_VERSION
        return str(stat.st_mtime_ns)

    def __repr__(self) -> str:
        return f"FileSource({str(self.path)!r})"
