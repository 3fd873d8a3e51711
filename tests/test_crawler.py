from __future__ import annotations

import io
import json
import tempfile
import unittest
from datetime import datetime, timezone
from typing import Any, Mapping

from ig_feed.crawler import crawl_collection
from ig_feed.errors import GraphAPIError
from ig_feed.event_log import EventLogger
from ig_feed.graph_client import ListingPage
from ig_feed.media import MediaItem, Snapshot
from ig_feed.offline import OfflineGraphClient
from ig_feed.snapshot_store import SnapshotStore

_FIXED_NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def _raw(media_id: str, ts: str | None, caption: str = "") -> dict[str, Any]:
    return {"id": media_id, "timestamp": ts, "caption": caption}


class _FakeListing:
    """Pages keyed by url; a value of None means the fetch fails."""

    def __init__(self, pages: dict[str, tuple[list[dict[str, Any]], str | None] | None]) -> None:
        self._pages = pages
        self.calls: list[tuple[str, dict[str, Any] | None]] = []

    def fetch_page(self, url_or_endpoint: str, query: Mapping[str, Any] | None = None) -> ListingPage:
        self.calls.append((url_or_endpoint, dict(query) if query is not None else None))
        page = self._pages.get(url_or_endpoint)
        if page is None:
            raise GraphAPIError("boom", status_code=500)
        items, nxt = page
        return ListingPage(items=items, next_page=nxt)


class TestCrawlCollection(unittest.TestCase):
    def _crawl(self, client: Any, store: SnapshotStore, **kwargs: Any) -> Snapshot:
        params: dict[str, Any] = {
            "collection": "tagged",
            "store": store,
            "page_size": 2,
            "max_pages": 10,
            "now_fn": lambda: _FIXED_NOW,
        }
        params.update(kwargs)
        return crawl_collection(client, "v24.0/1/tags", **params)

    def test_follows_cursors_and_merges_by_id(self) -> None:
        client = _FakeListing(
            {
                "v24.0/1/tags": ([_raw("a", "2025-01-01T00:00:00Z", "first"), _raw("b", "2025-01-03T00:00:00Z")], "p2"),
                "p2": ([_raw("a", "2025-01-01T00:00:00Z", "second"), {"caption": "no id"}], "p3"),
                "p3": ([_raw("c", "2025-01-02T00:00:00Z")], None),
            }
        )
        with tempfile.TemporaryDirectory() as td:
            store = SnapshotStore(td)
            snap = self._crawl(client, store, fields="id,caption")

            self.assertEqual([i.id for i in snap.items], ["b", "c", "a"])
            self.assertEqual(snap.items[2].caption, "second")
            self.assertEqual(snap.count, 3)
            self.assertEqual(snap.updated_at, _FIXED_NOW.isoformat())
            self.assertEqual(store.load("tagged"), snap)

        self.assertEqual(client.calls[0], ("v24.0/1/tags", {"limit": 2, "fields": "id,caption"}))
        self.assertEqual(client.calls[1], ("p2", None))
        self.assertEqual(len(client.calls), 3)

    def test_stops_at_max_pages(self) -> None:
        client = _FakeListing(
            {
                "v24.0/1/tags": ([_raw("a", None)], "p2"),
                "p2": ([_raw("b", None)], "p3"),
                "p3": ([_raw("c", None)], None),
            }
        )
        with tempfile.TemporaryDirectory() as td:
            snap = self._crawl(client, SnapshotStore(td), max_pages=2)
        self.assertEqual([i.id for i in snap.items], ["a", "b"])
        self.assertEqual(len(client.calls), 2)

    def test_mid_crawl_failure_keeps_partial_results(self) -> None:
        client = _FakeListing(
            {
                "v24.0/1/tags": ([_raw("a", "2025-01-01T00:00:00Z")], "p2"),
                "p2": None,
            }
        )
        with tempfile.TemporaryDirectory() as td:
            store = SnapshotStore(td)
            store.save("tagged", Snapshot(items=(MediaItem(id="old"),)))
            snap = self._crawl(client, store)
            self.assertEqual([i.id for i in snap.items], ["a"])
            self.assertEqual([i.id for i in store.load("tagged").items], ["a"])

    def test_first_page_failure_keeps_existing_snapshot(self) -> None:
        client = _FakeListing({})
        with tempfile.TemporaryDirectory() as td:
            store = SnapshotStore(td)
            existing = Snapshot(updated_at="2024-12-01T00:00:00+00:00", items=(MediaItem(id="old"),))
            store.save("tagged", existing)

            snap = self._crawl(client, store)
            self.assertEqual(snap, existing)
            self.assertEqual(store.load("tagged"), existing)

    def test_recrawl_is_idempotent(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            store = SnapshotStore(td)
            first = self._crawl(OfflineGraphClient(), store, page_size=3)
            second = self._crawl(OfflineGraphClient(), store, page_size=3)
            self.assertEqual(first.items, second.items)
            self.assertEqual([i.id for i in first.items], ["9001", "9002", "9003", "9005", "9004"])
            self.assertEqual(first.items[0].caption, "Morning run (edited)")

    def test_oversized_timestamp_does_not_abort_crawl(self) -> None:
        client = _FakeListing(
            {"v24.0/1/tags": ([_raw("huge", "9" * 400), _raw("ok", "2025-01-01T00:00:00Z")], None)}
        )
        with tempfile.TemporaryDirectory() as td:
            store = SnapshotStore(td)
            snap = self._crawl(client, store)
            self.assertEqual([i.id for i in snap.items], ["ok", "huge"])
            self.assertEqual(store.load("tagged"), snap)

    def test_page_size_is_clamped(self) -> None:
        client = _FakeListing({"v24.0/1/tags": ([], None)})
        with tempfile.TemporaryDirectory() as td:
            self._crawl(client, SnapshotStore(td), page_size=500, max_pages=0)
        self.assertEqual(client.calls, [("v24.0/1/tags", {"limit": 50})])

    def test_logs_lifecycle_events(self) -> None:
        client = _FakeListing({"v24.0/1/tags": ([_raw("a", None), {"x": 1}], "p2"), "p2": None})
        stream = io.StringIO()
        with tempfile.TemporaryDirectory() as td:
            self._crawl(client, SnapshotStore(td), logger=EventLogger.to_stream(stream, level="DEBUG"))

        events = [json.loads(ln)["event"] for ln in stream.getvalue().splitlines()]
        for expected in (
            "crawl_started",
            "crawl_item_skipped",
            "crawl_page_fetched",
            "crawl_page_failed",
            "crawl_completed",
        ):
            self.assertIn(expected, events)


if __name__ == "__main__":
    unittest.main()
