from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

CAROUSEL_ALBUM = "CAROUSEL_ALBUM"


class ChildItem(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    media_type: str | None = None
    media_url: str | None = None


class MediaItem(BaseModel):
    """A flat media record, the unit stored in snapshots and served to clients."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str = Field(min_length=1)
    username: str | None = None
    caption: str | None = None
    media_type: str | None = None
    media_url: str | None = None
    permalink: str | None = None
    timestamp: str | None = None
    children: tuple[ChildItem, ...] = ()

    @property
    def is_carousel(self) -> bool:
        return self.media_type == CAROUSEL_ALBUM

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class Snapshot(BaseModel):
    """
    The complete stored state of one media collection.

    Items are kept newest-first; `count` always mirrors `len(items)`.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    updated_at: str | None = None
    count: int = 0
    items: tuple[MediaItem, ...] = ()

    @model_validator(mode="before")
    @classmethod
    def _count_matches_items(cls, data: Any) -> Any:
        if isinstance(data, dict):
            items = data.get("items")
            if isinstance(items, (list, tuple)):
                data = {**data, "count": len(items)}
        return data

    @model_validator(mode="after")
    def _ids_are_unique(self) -> "Snapshot":
        seen: set[str] = set()
        for item in self.items:
            if item.id in seen:
                raise ValueError(f"duplicate item id: {item.id}")
            seen.add(item.id)
        return self

    @classmethod
    def empty(cls) -> "Snapshot":
        return cls()
