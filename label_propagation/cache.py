"""
Persistence of the image hash cache.

The cache is a JSON file under the project folder mapping absolute image
path to its 64-bit difference hash:

    {"image_hashes": {"/data/frames/0001.jpg": 1234567890123, ...}}

Persistence is best-effort. A missing or corrupt file yields an empty
cache, and failed writes are logged and dropped; neither ever reaches the
propagation run. Writes go through DebouncedCacheWriter so a burst of newly
hashed images produces one write instead of one per image.
"""

import os
import json
import time
import logging
import threading
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

CACHE_DIR_NAME = ".label_propagation"
CACHE_FILE_NAME = "propagation_cache.json"


def cache_path_for(project_folder: str) -> str:
    """Cache file location for a project folder."""
    return os.path.join(project_folder, CACHE_DIR_NAME, CACHE_FILE_NAME)


def load_hash_cache(path: Optional[str]) -> Dict[str, int]:
    """
    Load the hash cache file.

    Returns:
        Mapping of path -> hash. Empty if the file is missing, unreadable
        or malformed.
    """
    if not path or not os.path.exists(path):
        return {}

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        entries = data.get("image_hashes") or {}
        hashes = {str(k): int(v) & 0xFFFFFFFFFFFFFFFF for k, v in entries.items()}
        logger.info(f"Loaded {len(hashes)} cached image hashes from {path}")
        return hashes
    except (OSError, ValueError, TypeError, AttributeError) as e:
        logger.debug(f"Ignoring unreadable hash cache {path}: {e}")
        return {}


def write_hash_cache(path: str, hashes: Dict[str, int]) -> None:
    """Write the cache atomically (temp file + rename). Raises OSError."""
    os.makedirs(os.path.dirname(path), exist_ok=True)
    tmp_path = path + ".tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump({"image_hashes": hashes}, f)
    os.replace(tmp_path, path)


class DebouncedCacheWriter:
    """
    Rate-limited writer for the hash cache.

    save() writes only if at least `min_interval` seconds have passed since
    the last write and no other write is in progress; otherwise it returns
    immediately. flush() always writes (unless a write is in progress).

    Args:
        path: Cache file path.
        min_interval: Minimum seconds between writes.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(self, path: str, min_interval: float = 5.0,
                 clock: Callable[[], float] = time.monotonic):
        self.path = path
        self.min_interval = min_interval
        self._clock = clock
        self._last_write: Optional[float] = None
        self._write_lock = threading.Lock()

    def save(self, snapshot: Callable[[], Dict[str, int]]) -> bool:
        """
        Write the cache if the debounce interval has elapsed.

        Args:
            snapshot: Callable returning the mapping to write. Only called
                when a write actually happens.

        Returns:
            True if the file was written.
        """
        now = self._clock()
        if self._last_write is not None and now - self._last_write < self.min_interval:
            return False
        return self._write(snapshot, now)

    def flush(self, snapshot: Callable[[], Dict[str, int]]) -> bool:
        return self._write(snapshot, self._clock())

    def _write(self, snapshot, now) -> bool:
        if not self._write_lock.acquire(blocking=False):
            return False
        self._last_write = now
        try:
            write_hash_cache(self.path, snapshot())
            logger.debug(f"Saved hash cache to {self.path}")
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"Failed to save hash cache {self.path}: {e}")
            return False
        finally:
            self._write_lock.release()
