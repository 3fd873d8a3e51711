from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable

from .dedupe import ItemsById
from .errors import GraphAPIError
from .event_log import EventLogger
from .graph_client import ListingClient
from .media import Snapshot
from .normalize import media_item_from_graph
from .snapshot_store import SnapshotStore

MAX_PAGE_SIZE = 50

NowFn = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def crawl_collection(
    client: ListingClient,
    endpoint: str,
    *,
    collection: str,
    store: SnapshotStore,
    page_size: int,
    max_pages: int,
    fields: str | None = None,
    now_fn: NowFn | None = None,
    logger: EventLogger | None = None,
) -> Snapshot:
    """
    Walk a paginated listing end to end and persist it as the collection snapshot.

    Items are merged by id (a later page's copy wins), so re-crawls are
    idempotent and duplicates across pages collapse. Paging stops at the last
    page, after `max_pages`, or at the first failed fetch; whatever was
    gathered up to a failure is still saved.

    A failed first page never touches storage: nothing is written, and the
    previously stored snapshot (empty if there is none) is returned unchanged.
    """
    log = (logger or EventLogger.disabled()).bind(component="crawler", collection=collection)
    size = max(1, min(MAX_PAGE_SIZE, int(page_size)))
    page_cap = max(1, int(max_pages))

    query: dict[str, Any] = {"limit": size}
    if fields:
        query["fields"] = fields

    log.info("crawl_started", page_size=size, max_pages=page_cap)

    merged = ItemsById()
    pages = 0
    skipped = 0
    stop_reason = "last_page"
    cursor: str | None = endpoint
    next_query: dict[str, Any] | None = query

    while cursor is not None:
        if pages >= page_cap:
            stop_reason = "max_pages"
            break

        try:
            page = client.fetch_page(cursor, next_query)
        except GraphAPIError as e:
            stop_reason = "fetch_failed"
            log.warning("crawl_page_failed", page=pages + 1, status_code=e.status_code, error=str(e))
            break

        pages += 1
        for raw in page.items:
            item = media_item_from_graph(raw)
            if item is None:
                skipped += 1
                log.debug("crawl_item_skipped", page=pages, reason="missing_id")
                continue
            merged.add(item)

        log.debug("crawl_page_fetched", page=pages, items=len(page.items), total=len(merged))

        # Cursor URLs carry their own query string.
        cursor = page.next_page
        next_query = None

    if pages == 0:
        log.warning("crawl_aborted", reason=stop_reason)
        return store.load(collection)

    completed_at = (now_fn or _utc_now)()
    snapshot = Snapshot(updated_at=completed_at.isoformat(), items=tuple(merged.newest_first()))
    store.save(collection, snapshot)

    log.info(
        "crawl_completed",
        pages=pages,
        count=snapshot.count,
        replaced=merged.replaced,
        skipped=skipped,
        stop_reason=stop_reason,
    )
    return snapshot
