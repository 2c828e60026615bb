"""
Sample-encode cache.

Content addressed JSON files under the user cache dir
(``ab-av1/sample-encode-cache/<blake3 hex>.json``). Keys hash the sample
identity (sample file name, input duration/extension/size, full-pass flag)
followed by the encoder argument fingerprint and the scoring configuration.

Entries are written once and never modified. Read or write failures are
logged and treated as a miss.
"""

import json
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional

import blake3

from ...errors import CacheError
from ....config import sample_encode_cache_dir
from ....utils.logging import get_logger

logger = get_logger("cache")

OPEN_RETRY_TIMEOUT = 2.0
OPEN_RETRY_DELAY = 0.05

_LOCK = threading.Lock()


def cache_key(sample_name: str, input_duration: float, input_extension: Optional[str],
              input_size: int, full_pass: bool, fingerprint: bytes,
              score_fingerprint: bytes = b"") -> str:
    """BLAKE3 hex key for a sample encode."""
    # the sample name encodes input stem, start and frames which is
    # much faster than hashing the sample file
    identity = json.dumps(
        [sample_name, float(input_duration).hex(), input_extension, input_size, full_pass],
        separators=(",", ":"),
    ).encode("utf-8")
    hasher = blake3.blake3()
    hasher.update(identity)
    hasher.update(fingerprint)
    hasher.update(score_fingerprint)
    return hasher.hexdigest()


class SampleEncodeCache:
    """Process-wide handle on the on-disk cache."""

    def __init__(self, directory: Optional[Path] = None, enabled: bool = True):
        self.directory = Path(directory) if directory is not None else sample_encode_cache_dir()
        self.enabled = enabled
        self._opened = False

    def path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def _open(self):
        """Create the cache dir, retrying briefly for cross-process contention."""
        if self._opened:
            return
        deadline = time.monotonic() + OPEN_RETRY_TIMEOUT
        while True:
            try:
                self.directory.mkdir(parents=True, exist_ok=True)
                self._opened = True
                return
            except OSError as e:
                if time.monotonic() >= deadline:
                    raise CacheError(f"cannot open cache dir {self.directory}: {e}") from e
                time.sleep(OPEN_RETRY_DELAY)

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Cached result data or None on miss/failure."""
        if not self.enabled:
            return None
        path = self.path(key)
        try:
            with _LOCK:
                self._open()
            if not path.exists():
                logger.cache(f"miss {key}")
                return None
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError, CacheError) as e:
            logger.warn(f"sample-encode cache read failed: {e}")
            return None
        if not isinstance(data, dict):
            logger.warn(f"sample-encode cache entry {path.name} is invalid, ignoring")
            return None
        logger.cache(f"hit {key}")
        return data

    def put(self, key: str, data: Dict[str, Any]):
        """Store result data; existing entries are left untouched."""
        if not self.enabled:
            return
        path = self.path(key)
        tmp = path.with_name(f"{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
        try:
            with _LOCK:
                self._open()
                if path.exists():
                    return
                with open(tmp, "w", encoding="utf-8") as f:
                    json.dump(data, f, sort_keys=True)
                os.replace(tmp, path)
            logger.cache(f"stored {key}")
        except (OSError, TypeError, ValueError, CacheError) as e:
            logger.warn(f"sample-encode cache write failed: {e}")
            try:
                tmp.unlink()
            except OSError:
                pass
