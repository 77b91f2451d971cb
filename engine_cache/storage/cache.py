"""
A simple, file-based JSON cache with a time-to-live (TTL), used to keep a recent
copy of the build manifest across process restarts.
"""

import hashlib
import json
import logging
import os
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)


class DocumentCache:
    """
    Stores JSON documents on disk keyed by an arbitrary string (e.g. a URL).
    """

    def __init__(
        self,
        cache_dir_path: Path,
        max_age_seconds: float,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initializes the document cache.

        Args:
            cache_dir_path: The directory where cache files will be stored.
            max_age_seconds: How long an entry stays valid after it was written.
            clock: Source of the current POSIX time.
        """
        self.cache_dir = cache_dir_path
        self.max_age_seconds = max_age_seconds
        self._clock = clock

    def _get_cache_path(self, key: str) -> Path:
        """Generates a safe filename for a given cache key."""
        hashed_key = hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]
        return self.cache_dir / f"{hashed_key}.json"

    def get(self, key: str) -> tuple[Any, float] | None:
        """
        Retrieves a value and the time it was stored. Returns None if the key is
        not found, expired or unreadable.
        """
        cache_path = self._get_cache_path(key)
        if not cache_path.is_file():
            return None

        try:
            with open(cache_path, encoding="utf-8") as f:
                data = json.load(f)
            stored_at = float(data["timestamp"])
            if self._clock() - stored_at > self.max_age_seconds:
                log.debug(f"Cached document for '{key}' has expired.")
                return None
            return data["value"], stored_at
        except (json.JSONDecodeError, OSError, KeyError, TypeError, ValueError) as e:
            log.debug(f"Cache read failed for key '{key}': {e}")
            return None

    def set(self, key: str, value: Any) -> bool:
        """Saves a value to the cache, replacing the previous copy atomically."""
        cache_path = self._get_cache_path(key)
        tmp_path = cache_path.with_suffix(".json.tmp")
        try:
            payload = {"key": key, "timestamp": self._clock(), "value": value}
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f)
            os.replace(tmp_path, cache_path)
            return True
        except (TypeError, ValueError, OSError) as e:
            log.warning(f"Cache write failed for key '{key}': {e}")
            tmp_path.unlink(missing_ok=True)
            return False

    def clear(self) -> bool:
        """Removes all items from the cache."""
        log.info("Clearing cached manifest documents...")
        try:
            for cache_file in self.cache_dir.glob("*.json"):
                cache_file.unlink()
            return True
        except OSError as e:
            log.error(f"Failed to clear manifest cache: {e}")
            return False
