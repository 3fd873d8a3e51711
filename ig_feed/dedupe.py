from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from .media import MediaItem
from .ordering import sort_newest_first


@dataclass
class ItemsById:
    """
    Identifier-keyed accumulator with last-write-wins semantics.

    A repeated id replaces the stored value but keeps its first-seen position,
    which is what the stable newest-first sort uses to break ties.
    """

    items: dict[str, MediaItem] = field(default_factory=dict)
    replaced: int = 0

    def __len__(self) -> int:
        return len(self.items)

    def add(self, item: MediaItem) -> bool:
        """Store `item`; returns True when it replaced an earlier occurrence."""
        existed = item.id in self.items
        self.items[item.id] = item
        if existed:
            self.replaced += 1
        return existed

    def newest_first(self) -> list[MediaItem]:
        return sort_newest_first(self.items.values())


def merge_newest_first(*sources: Iterable[MediaItem], limit: int | None = None) -> list[MediaItem]:
    """
    Merge several item lists newest-first, keeping the first occurrence of each id.

    Used for the combined self + tagged view, where the newer copy of a post wins.
    """
    combined: list[MediaItem] = []
    for src in sources:
        combined.extend(src)

    out: list[MediaItem] = []
    seen: set[str] = set()
    for item in sort_newest_first(combined):
        if item.id in seen:
            continue
        seen.add(item.id)
        out.append(item)
        if limit is not None and len(out) >= limit:
            break
    return out
