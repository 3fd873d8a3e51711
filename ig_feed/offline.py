from __future__ import annotations

from typing import Any, Mapping
from urllib.parse import parse_qs, urlencode, urlsplit

from .graph_client import ListingPage, collection_endpoint

_OFFLINE_BASE = "https://offline.invalid/"
_OFFLINE_ACCOUNT = "17840000000000000"
_OFFLINE_API_VERSION = "v24.0"


def _post(
    media_id: str,
    code: str,
    timestamp: str | None,
    *,
    username: str = "offline.account",
    media_type: str = "IMAGE",
    caption: str | None = None,
    children: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    item: dict[str, Any] = {
        "id": media_id,
        "username": username,
        "caption": caption,
        "media_type": media_type,
        "media_url": f"https://offline.invalid/media/{media_id}.jpg",
        "permalink": f"https://www.instagram.com/p/{code}/",
    }
    if timestamp is not None:
        item["timestamp"] = timestamp
    if children is not None:
        item["children"] = {"data": children}
    return item


_CAROUSEL_CHILDREN = [
    {"id": "c1", "media_type": "IMAGE", "media_url": "https://offline.invalid/media/c1.jpg"},
    {"id": "c2", "media_type": "VIDEO", "media_url": "https://offline.invalid/media/c2.mp4"},
    {"id": "c3", "media_type": "IMAGE", "thumbnail_url": "https://offline.invalid/media/c3_thumb.jpg"},
]

_DEFAULT_OFFLINE_ITEMS: dict[str, list[dict[str, Any]]] = {
    "tagged": [
        _post("9001", "Cx1AAA", "2025-01-05T10:00:00+0000", username="friend.one", caption="Morning run"),
        _post(
            "9002",
            "Cx2BBB",
            "2025-01-04T09:30:00+0000",
            username="friend.two",
            media_type="CAROUSEL_ALBUM",
            caption="Weekend album",
            children=_CAROUSEL_CHILDREN,
        ),
        _post("9003", "Cx3CCC", "2025-01-03T08:00:00+0000", username="friend.one"),
        # Same post again on a later page, with an edited caption.
        _post("9001", "Cx1AAA", "2025-01-05T10:00:00+0000", username="friend.one", caption="Morning run (edited)"),
        {"caption": "no id, dropped during normalization"},
        _post("9004", "Cx4DDD", None, username="friend.three"),
        _post("9005", "Cx5EEE", "2025-01-01T00:00:00+0000", username="friend.two", media_type="VIDEO"),
    ],
    "self-media": [
        _post("8001", "Cy1AAA", "2025-02-02T12:00:00+0000", caption="Own post"),
        _post(
            "8002",
            "Cy2BBB",
            "2025-02-01T12:00:00+0000",
            media_type="CAROUSEL_ALBUM",
            children=_CAROUSEL_CHILDREN[:2],
        ),
        _post("8003", "Cy3CCC", "2025-01-31T12:00:00+0000"),
    ],
}


class OfflineGraphClient:
    """
    Deterministic stand-in for the Graph API listing edges.

    Serves canned media in pages, with absolute `next` cursors like the real
    API, so a full crawl runs without network access.
    """

    def __init__(self, items: Mapping[str, list[dict[str, Any]]] | None = None) -> None:
        self._items = {k: list(v) for k, v in (items or _DEFAULT_OFFLINE_ITEMS).items()}
        self.requests: list[str] = []

    @property
    def business_account_id(self) -> str:
        return _OFFLINE_ACCOUNT

    def endpoint(self, collection: str) -> str:
        return collection_endpoint(
            collection,
            api_version=_OFFLINE_API_VERSION,
            business_account_id=_OFFLINE_ACCOUNT,
        )

    def fetch_page(self, url_or_endpoint: str, query: Mapping[str, Any] | None = None) -> ListingPage:
        self.requests.append(url_or_endpoint)

        parts = urlsplit(url_or_endpoint)
        params = {k: v[-1] for k, v in parse_qs(parts.query).items()}
        params.update({k: str(v) for k, v in (query or {}).items()})

        edge = parts.path.rstrip("/").rsplit("/", 1)[-1]
        collection = next((c for c in self._items if self.endpoint(c).endswith("/" + edge)), None)
        source = self._items.get(collection or "", [])

        limit = max(1, int(params.get("limit") or 25))
        after = max(0, int(params.get("after") or 0))
        page = source[after : after + limit]

        next_page: str | None = None
        if after + limit < len(source):
            cursor = urlencode({"limit": limit, "after": after + limit})
            next_page = f"{_OFFLINE_BASE}{self.endpoint(collection or '')}?{cursor}"

        return ListingPage(items=[dict(i) for i in page], next_page=next_page)

    def close(self) -> None:
        return None
