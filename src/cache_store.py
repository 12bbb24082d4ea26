"""
File-based cache for upstream API responses.

Entries live at ``<cache_dir>/<namespace>/<source_id>/<key>.json`` and hold
``{"timestamp": <epoch ms>, "data": <payload>}``. Caching is best-effort:
read problems behave like a miss and write problems are logged and dropped,
so a broken cache directory never fails the request that triggered it.
"""

import json
import logging
import os
import re
import shutil
import tempfile
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r'[^a-zA-Z0-9_-]')


def sanitize_key(key: Any) -> str:
    """Map an arbitrary key to a token that is safe as a single path component."""
    text = str(key) if key is not None and key != "" else "default"
    return _UNSAFE_CHARS.sub('_', text)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class CacheEntryInfo:
    timestamp: int
    age: int
    size: int


class CacheStore:
    def __init__(self, cache_dir: str, clock: Callable[[], int] = now_ms):
        self.cache_dir = cache_dir
        self._clock = clock

    def _entry_path(self, namespace: str, source_id: Any, key: Any) -> str:
        return os.path.join(
            self.cache_dir,
            sanitize_key(namespace),
            sanitize_key(source_id),
            f"{sanitize_key(key)}.json"
        )

    def _read(self, path: str) -> Optional[dict]:
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as fh:
            cached = json.load(fh)
        if not isinstance(cached, dict) or not isinstance(cached.get("timestamp"), (int, float)):
            raise ValueError("malformed cache entry")
        return cached

    def get(self, namespace: str, source_id: Any, key: Any, max_age_ms: int) -> Optional[Any]:
        """Return the cached payload, or None when missing, expired or unreadable."""
        try:
            cached = self._read(self._entry_path(namespace, source_id, key))
        except (OSError, ValueError) as e:
            logger.warning(
                f"Cache read error for {namespace}/{source_id}/{key}: {e}")
            return None

        if cached is None:
            return None

        age = self._clock() - cached["timestamp"]
        if age > max_age_ms:
            logger.debug(
                f"Cache entry {namespace}/{source_id}/{key} expired ({age}ms old)")
            return None

        return cached.get("data")

    def set(self, namespace: str, source_id: Any, key: Any, data: Any) -> bool:
        """
        Store a payload. Returns False when the write was skipped; the failure
        has already been logged and callers are free to ignore it.
        """
        path = self._entry_path(namespace, source_id, key)
        tmp_path = None
        try:
            directory = os.path.dirname(path)
            os.makedirs(directory, exist_ok=True)
            # Write to a sibling temp file and rename so readers never see a partial entry
            fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump({"timestamp": self._clock(), "data": data}, fh)
            os.replace(tmp_path, path)
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.error(
                f"Cache write error for {namespace}/{source_id}/{key}: {e}")
            if tmp_path and os.path.exists(tmp_path):
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            return False

    def clear_entry(self, namespace: str, source_id: Any, key: Any):
        try:
            os.unlink(self._entry_path(namespace, source_id, key))
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Cache clear error for {namespace}/{source_id}/{key}: {e}")

    def clear_source(self, source_id: Any):
        """Remove every namespace held for a source."""
        safe_id = sanitize_key(source_id)
        try:
            namespaces = os.listdir(self.cache_dir)
        except FileNotFoundError:
            return
        except OSError as e:
            logger.warning(f"Cache clear source error for {source_id}: {e}")
            return

        for namespace in namespaces:
            directory = os.path.join(self.cache_dir, namespace, safe_id)
            if not os.path.isdir(directory):
                continue
            try:
                shutil.rmtree(directory)
                logger.info(f"Cleared {namespace} cache for source {source_id}")
            except OSError as e:
                logger.warning(
                    f"Cache clear source error for {namespace}/{source_id}: {e}")

    def clear_all(self):
        try:
            shutil.rmtree(self.cache_dir)
            logger.info("Cleared all cached data")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Cache clear all error: {e}")

    def info(self, namespace: str, source_id: Any, key: Any) -> Optional[CacheEntryInfo]:
        """Debugging view of a stored entry, regardless of freshness."""
        path = self._entry_path(namespace, source_id, key)
        try:
            cached = self._read(path)
            if cached is None:
                return None
            size = os.path.getsize(path)
        except (OSError, ValueError):
            return None
        timestamp = int(cached["timestamp"])
        return CacheEntryInfo(timestamp=timestamp, age=self._clock() - timestamp, size=size)
