from __future__ import annotations

import hashlib
import os
import time
from threading import Lock
from typing import Any, Dict, Optional, Tuple


def file_fingerprint(path: str) -> str:
    """Fingerprint a file from its size and mtime; missing files hash to a fixed marker."""
    normalized = os.path.abspath(path)
    try:
        stat = os.stat(normalized)
        payload = f"{normalized}:{stat.st_size}:{int(stat.st_mtime_ns)}"
    except OSError:
        payload = f"{normalized}:missing"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ParsedFileCache:
    """
    Holds one parsed value per file path. An entry is served only while the
    file fingerprint is unchanged and the entry is younger than the TTL, so an
    edited config is picked up on the next load.
    """

    def __init__(self, *, max_files: int = 32, ttl_seconds: float = 30.0):
        self._max_files = max(1, int(max_files))
        self._ttl_seconds = max(0.0, float(ttl_seconds))
        self._entries: Dict[str, Tuple[str, float, Any]] = {}
        self._lock = Lock()

    def lookup(self, path: str) -> Tuple[Optional[str], Any]:
        """Return (fingerprint, value); value is None when the entry is stale or absent."""
        key = os.path.abspath(path)
        fingerprint = file_fingerprint(key)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return fingerprint, None
            cached_fingerprint, stored_at, value = entry
            if cached_fingerprint != fingerprint or time.monotonic() - stored_at > self._ttl_seconds:
                del self._entries[key]
                return fingerprint, None
            return fingerprint, value

    def store(self, path: str, fingerprint: str, value: Any) -> None:
        key = os.path.abspath(path)
        with self._lock:
            if key not in self._entries and len(self._entries) >= self._max_files:
                oldest = min(self._entries, key=lambda k: self._entries[k][1])
                del self._entries[oldest]
            self._entries[key] = (fingerprint, time.monotonic(), value)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
