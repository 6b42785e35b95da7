"""File-based cache for large intermediate snapshots.

Stores the schema compatibility result and comparison snapshots as JSON
files, each wrapped with the time it was stored.  Entries older than the
configured TTL are treated as absent so the caller re-fetches.
"""

from __future__ import annotations

import json
import logging
import re
import time
from pathlib import Path
from typing import Any

from .state import write_json_atomic

logger = logging.getLogger(__name__)


class SnapshotCache:
    """Keyed JSON cache with a freshness timeout.

    Args:
        cache_dir: Directory holding the cache files.
        ttl_seconds: Age after which an entry is considered stale.
    """

    def __init__(self, cache_dir: Path, ttl_seconds: float = 3600) -> None:
        self._cache_dir = Path(cache_dir)
        self.ttl_seconds = ttl_seconds

    def _path(self, key: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]+", "_", key)
        return self._cache_dir / f"{safe}.json"

    def get(self, key: str) -> Any | None:
        """Return the cached value for ``key``, or ``None`` if absent or stale."""
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path, encoding="utf-8") as fh:
                entry = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable cache entry %s: %s", path, exc)
            return None
        age = time.time() - float(entry.get("stored_at", 0))
        if age > self.ttl_seconds:
            logger.debug("Cache entry %s expired (%.0fs old)", key, age)
            return None
        return entry.get("value")

    def put(self, key: str, value: Any) -> None:
        write_json_atomic(
            self._path(key), {"stored_at": time.time(), "value": value}
        )

    def invalidate(self, key: str) -> None:
        """Drop one entry.  No-op if absent."""
        self._path(key).unlink(missing_ok=True)

    def clear(self) -> int:
        """Drop every entry.  Returns the number of files removed."""
        if not self._cache_dir.exists():
            return 0
        removed = 0
        for path in self._cache_dir.glob("*.json"):
            path.unlink(missing_ok=True)
            removed += 1
        return removed
