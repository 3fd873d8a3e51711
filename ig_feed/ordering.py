from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Iterable

from .media import MediaItem

_STRPTIME_FORMATS = (
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%d %H:%M:%S%z",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
)


def parse_instant(value: Any) -> float | None:
    """
    Parse a timestamp into unix seconds.

    Accepts ISO-8601 strings (`Z`, `+00:00` and `+0000` offsets), plain dates,
    and epoch seconds. Naive values are read as UTC. Returns None when unparsable.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            ts = float(value)
        except OverflowError:
            return None
        return ts if math.isfinite(ts) else None
    if not isinstance(value, str):
        return None

    s = value.strip()
    if not s:
        return None

    if s.lstrip("-").isdigit():
        try:
            ts = float(int(s))
        except (OverflowError, ValueError):
            return None
        return ts if math.isfinite(ts) else None

    dt: datetime | None = None
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        for fmt in _STRPTIME_FORMATS:
            try:
                dt = datetime.strptime(s, fmt)
                break
            except ValueError:
                continue

    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    try:
        return dt.timestamp()
    except (OverflowError, ValueError):
        return None


def item_instant(item: MediaItem) -> float:
    # Filtering reads unparsable or missing timestamps as the epoch.
    ts = parse_instant(item.timestamp)
    return ts if ts is not None else 0.0


def _sort_key(item: MediaItem) -> float:
    ts = parse_instant(item.timestamp)
    return ts if ts is not None else float("-inf")


def sort_newest_first(items: Iterable[MediaItem]) -> list[MediaItem]:
    # sorted() is stable with reverse=True, so ties keep their incoming order.
    return sorted(items, key=_sort_key, reverse=True)
