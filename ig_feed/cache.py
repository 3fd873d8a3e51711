from __future__ import annotations

import hashlib
import time
from pathlib import Path
from typing import Any, Callable

from .event_log import EventLogger
from .fileio import atomic_write_json, read_json, safe_name

Clock = Callable[[], float]


def cache_key(prefix: str, *parts: Any, fields: str | None = None) -> str:
    """
    Build a cache key from short components plus a digest of the field list.

    The Graph `fields` string is long and full of punctuation, so it is hashed
    rather than sanitized; otherwise two field lists could map to one file.
    """
    segments = [str(prefix)] + [str(p) for p in parts]
    if fields is not None:
        segments.append(hashlib.sha256(fields.encode("utf-8")).hexdigest()[:32])
    return "_".join(segments)


class FileTTLCache:
    """
    Key/value cache with per-entry expiry, one JSON file per key.

    Storage problems degrade to a miss on read and a skipped write; cached
    values are always reproducible from the upstream API. Entries are only
    removed when read after expiry. A stored `None` value is indistinguishable
    from a miss.
    """

    def __init__(
        self,
        directory: str | Path,
        *,
        clock: Clock | None = None,
        logger: EventLogger | None = None,
    ) -> None:
        self._dir = Path(directory)
        self._clock = clock or time.time
        self._log = (logger or EventLogger.disabled()).bind(component="cache")

    @property
    def directory(self) -> Path:
        return self._dir

    def path_for(self, key: str) -> Path:
        return self._dir / f"{safe_name(key, fallback='cache')}.json"

    def get(self, key: str) -> Any | None:
        path = self.path_for(key)
        data = read_json(path)
        if not isinstance(data, dict) or "value" not in data:
            return None

        expires_at = data.get("expires_at")
        if isinstance(expires_at, bool) or not isinstance(expires_at, (int, float)):
            return None

        if self._clock() >= float(expires_at):
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                self._log.warning("cache_evict_failed", key=key, error=str(e))
            return None

        return data["value"]

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        payload = {
            "key": key,
            "expires_at": self._clock() + max(0, int(ttl_seconds)),
            "value": value,
        }
        try:
            atomic_write_json(self.path_for(key), payload)
        except OSError as e:
            self._log.warning("cache_write_failed", key=key, error=str(e))
