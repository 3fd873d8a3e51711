from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping
from urllib.parse import parse_qsl, urlsplit, urlunsplit

from .media import MediaItem
from .ordering import item_instant, parse_instant, sort_newest_first

MAX_LIMIT = 1000

_SHORTCODE_RE = re.compile(r"/(?:p|reel)/([^/?#]+)/?", re.IGNORECASE)


def extract_shortcode(permalink: str | None) -> str | None:
    """Return the lower-cased post code from a `/p/<code>/` or `/reel/<code>/` permalink."""
    m = _SHORTCODE_RE.search(permalink or "")
    if not m:
        return None
    return m.group(1).lower()


@dataclass(frozen=True)
class ShortcodeSelectors:
    codes: tuple[str, ...] = ()
    selections: dict[str, int] = field(default_factory=dict)


def parse_shortcode_selectors(values: Iterable[str]) -> ShortcodeSelectors:
    """
    Parse shortcode filter values, each either `<code>` or `<code>!<N>`.

    `N` is a 1-based carousel child index. A selector whose `N` is not all
    digits still filters by the part before `!`.
    """
    codes: list[str] = []
    selections: dict[str, int] = {}

    for raw in values:
        value = (raw or "").strip().lower()
        if not value:
            continue

        base = value
        if "!" in value:
            head, _, tail = value.partition("!")
            head = head.strip()
            tail = tail.strip()
            if head and tail.isdigit():
                base = head
                selections[head] = int(tail)
            elif head:
                base = head

        if base and base not in codes:
            codes.append(base)

    return ShortcodeSelectors(codes=tuple(codes), selections=selections)


@dataclass(frozen=True)
class MediaFilters:
    ids: frozenset[str] = frozenset()
    usernames: frozenset[str] = frozenset()
    since: float | None = None
    until: float | None = None
    shortcodes: ShortcodeSelectors = field(default_factory=ShortcodeSelectors)

    def matches(self, item: MediaItem) -> bool:
        if self.ids and item.id not in self.ids:
            return False
        if self.usernames and (item.username or "") not in self.usernames:
            return False

        if self.since is not None or self.until is not None:
            ts = item_instant(item)
            if self.since is not None and ts < self.since:
                return False
            if self.until is not None and ts > self.until:
                return False

        if self.shortcodes.codes:
            return _shortcode_matches(item.permalink or "", self.shortcodes.codes)
        return True


def _shortcode_matches(permalink: str, codes: tuple[str, ...]) -> bool:
    if not permalink:
        return False
    code = extract_shortcode(permalink)
    if code is not None:
        return code in codes
    # Permalinks without a recognisable code fall back to a substring match.
    lowered = permalink.lower()
    return any(c in lowered for c in codes)


@dataclass(frozen=True)
class Page:
    limit: int | None = None
    offset: int = 0

    @classmethod
    def clamped(cls, *, limit: int | None = None, offset: int | None = None) -> "Page":
        lim = None if limit is None else max(1, min(MAX_LIMIT, int(limit)))
        off = 0 if offset is None else max(0, int(offset))
        return cls(limit=lim, offset=off)


@dataclass(frozen=True)
class QueryResult:
    items: list[MediaItem]
    returned_count: int
    total_count: int


def run_query(items: Iterable[MediaItem], filters: MediaFilters, page: Page) -> QueryResult:
    """
    Filter, sort newest-first, and paginate a snapshot's items.

    Carousel child selections only rewrite items on the returned page; the
    stored items are never touched.
    """
    filtered = sort_newest_first(i for i in items if filters.matches(i))

    start = page.offset
    end = None if page.limit is None else start + page.limit
    window = filtered[start:end]

    if filters.shortcodes.selections:
        window = [_apply_child_selection(i, filters.shortcodes.selections) for i in window]

    return QueryResult(items=window, returned_count=len(window), total_count=len(filtered))


def _apply_child_selection(item: MediaItem, selections: Mapping[str, int]) -> MediaItem:
    if not item.permalink or not item.is_carousel:
        return item

    code = extract_shortcode(item.permalink)
    if code is None or code not in selections:
        return item

    n = selections[code]
    if n < 1 or n > len(item.children):
        return item

    child = item.children[n - 1]
    update: dict[str, Any] = {"permalink": with_img_index(item.permalink, n)}
    if child.media_url:
        update["media_url"] = child.media_url
    if child.media_type:
        update["media_type"] = child.media_type
    return item.model_copy(update=update)


def with_img_index(permalink: str, n: int) -> str:
    """Add `img_index=n` to the permalink query unless an img_index is already there."""
    parts = urlsplit(permalink)
    existing = parse_qsl(parts.query, keep_blank_values=True)
    if any(k.lower() == "img_index" for k, _ in existing):
        return permalink
    query = f"{parts.query}&img_index={n}" if parts.query else f"img_index={n}"
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


def first_param(params: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        value = params.get(name)
        if value is None:
            continue
        if isinstance(value, str) and value == "":
            continue
        return value
    return None


def _split_values(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        raw = [str(v) for v in value]
    else:
        raw = str(value).split(",")

    out: list[str] = []
    for v in raw:
        s = v.strip()
        if s and s not in out:
            out.append(s)
    return out


def int_param(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
        if value is None:
            return None
    s = str(value).strip()
    if not s:
        return None
    try:
        return int(s)
    except ValueError:
        try:
            return int(float(s))
        except (ValueError, OverflowError):
            return 0


def _instant_param(value: Any) -> float | None:
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    return parse_instant(value)


def filters_from_params(params: Mapping[str, Any]) -> tuple[MediaFilters, Page]:
    """
    Build filters and a page window from request parameters.

    Supports `ids` (aliases `id`, `mediaid`), `username`, `since`, `until`,
    `shortcode` (alias `permalink_id`), `limit` and `offset`. List parameters
    accept comma-separated strings or repeated values.
    """
    filters = MediaFilters(
        ids=frozenset(_split_values(first_param(params, "ids", "id", "mediaid"))),
        usernames=frozenset(_split_values(first_param(params, "username"))),
        since=_instant_param(first_param(params, "since")),
        until=_instant_param(first_param(params, "until")),
        shortcodes=parse_shortcode_selectors(_split_values(first_param(params, "shortcode", "permalink_id"))),
    )
    page = Page.clamped(
        limit=int_param(first_param(params, "limit")),
        offset=int_param(first_param(params, "offset")),
    )
    return filters, page
