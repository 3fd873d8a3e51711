from __future__ import annotations

from typing import Any, Mapping

from .media import CAROUSEL_ALBUM, ChildItem, MediaItem


def _coerce_str(value: Any) -> str | None:
    if isinstance(value, str):
        s = value.strip()
        return s if s else None
    return None


def _coerce_id(value: Any) -> str | None:
    if isinstance(value, str):
        v = value.strip()
        return v if v else None
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return None


def _media_url(item: Mapping[str, Any]) -> str | None:
    return _coerce_str(item.get("media_url")) or _coerce_str(item.get("thumbnail_url"))


def _children(item: Mapping[str, Any]) -> tuple[ChildItem, ...]:
    container = item.get("children")
    if not isinstance(container, Mapping):
        return ()

    data = container.get("data")
    if not isinstance(data, list):
        return ()

    out: list[ChildItem] = []
    for child in data:
        if not isinstance(child, Mapping):
            continue
        out.append(
            ChildItem(
                media_type=_coerce_str(child.get("media_type")),
                media_url=_media_url(child),
            )
        )
    return tuple(out)


def child_items_from_graph(items: Any) -> list[ChildItem]:
    """Normalize the `data` list of a `/{media-id}/children` response."""
    if not isinstance(items, list):
        return []
    return [
        ChildItem(media_type=_coerce_str(c.get("media_type")), media_url=_media_url(c))
        for c in items
        if isinstance(c, Mapping)
    ]


def media_item_from_graph(item: Mapping[str, Any]) -> MediaItem | None:
    """
    Best-effort conversion of a Graph API media object into a MediaItem.

    Missing keys become None; returns None only when the item has no usable id.
    Children are kept for carousel albums only.
    """
    media_id = _coerce_id(item.get("id"))
    if not media_id:
        return None

    media_type = _coerce_str(item.get("media_type"))
    children = _children(item) if media_type == CAROUSEL_ALBUM else ()

    caption = item.get("caption")

    return MediaItem(
        id=media_id,
        username=_coerce_str(item.get("username")),
        caption=caption if isinstance(caption, str) else None,
        media_type=media_type,
        media_url=_media_url(item),
        permalink=_coerce_str(item.get("permalink")),
        timestamp=_coerce_str(item.get("timestamp")),
        children=children,
    )


def media_items_from_graph(items: Any) -> list[MediaItem]:
    if not isinstance(items, list):
        return []

    out: list[MediaItem] = []
    for raw in items:
        if not isinstance(raw, Mapping):
            continue
        item = media_item_from_graph(raw)
        if item is not None:
            out.append(item)
    return out
