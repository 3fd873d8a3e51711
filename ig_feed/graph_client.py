from __future__ import annotations

import ssl
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol

import httpx
from pydantic import ValidationError

from .cache import FileTTLCache, cache_key
from .config import RuntimeSecrets
from .config_schema import GraphConfig
from .dedupe import merge_newest_first
from .errors import ConfigError, GraphAPIError
from .event_log import EventLogger
from .graph_retry import is_retryable_graph_exception
from .media import ChildItem, MediaItem
from .normalize import child_items_from_graph, media_items_from_graph
from .retry import OnRetryFn, RetryEvent, RetryPolicy, SleepFn, call_with_retries

COLLECTION_EDGES: dict[str, str] = {
    "tagged": "tags",
    "self-media": "media",
}

_CHILDREN_FIELDS = "id,media_type,media_url,thumbnail_url"


@dataclass(frozen=True)
class ListingPage:
    items: list[dict[str, Any]]
    next_page: str | None


class ListingClient(Protocol):
    def fetch_page(self, url_or_endpoint: str, query: Mapping[str, Any] | None = None) -> ListingPage:
        ...


def collection_endpoint(collection: str, *, api_version: str, business_account_id: str) -> str:
    edge = COLLECTION_EDGES.get(collection)
    if edge is None:
        known = ", ".join(sorted(COLLECTION_EDGES))
        raise ConfigError(f"Unknown collection {collection!r}; expected one of: {known}")
    return f"{api_version}/{business_account_id}/{edge}"


def _clamp_limit(limit: int) -> int:
    return max(1, min(50, int(limit)))


def _verify_option(graph: GraphConfig) -> ssl.SSLContext | bool:
    if graph.ca_bundle_path:
        return ssl.create_default_context(cafile=graph.ca_bundle_path)
    return bool(graph.verify_ssl)


def _is_absolute(url: str) -> bool:
    return url.startswith("https://") or url.startswith("http://")


class GraphClient:
    """
    Instagram Graph API reader.

    `fetch_page` is the raw paginated listing used by the crawler. The
    `*_media` readers fetch a single page and cache the normalized result.
    """

    def __init__(
        self,
        secrets: RuntimeSecrets,
        *,
        graph: GraphConfig | None = None,
        cache: FileTTLCache | None = None,
        cache_ttl_seconds: int = 86400,
        http: httpx.Client | None = None,
        retry: RetryPolicy | None = None,
        on_retry: OnRetryFn | None = None,
        sleep_fn: SleepFn | None = None,
        logger: EventLogger | None = None,
    ) -> None:
        self._secrets = secrets
        self._graph = graph or GraphConfig()
        self._cache = cache
        self._ttl = int(cache_ttl_seconds)
        self._retry = retry or RetryPolicy()
        self._sleep_fn = sleep_fn
        self._log = (logger or EventLogger.disabled()).bind(component="graph_client")
        self._on_retry = on_retry or self._log_retry

        if http is not None:
            self._http = http
            self._owns_http = False
        else:
            self._http = httpx.Client(
                base_url=self._graph.base_url,
                timeout=self._graph.timeout_seconds,
                verify=_verify_option(self._graph),
            )
            self._owns_http = True

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> "GraphClient":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    @property
    def api_version(self) -> str:
        return self._graph.api_version

    @property
    def business_account_id(self) -> str:
        return self._secrets.business_account_id

    def endpoint(self, collection: str) -> str:
        return collection_endpoint(
            collection,
            api_version=self.api_version,
            business_account_id=self.business_account_id,
        )

    def fetch_page(self, url_or_endpoint: str, query: Mapping[str, Any] | None = None) -> ListingPage:
        """
        Fetch one page of a listing edge.

        Absolute URLs (the `paging.next` links Graph returns) already carry the
        token and cursor and are requested as-is.
        """
        data = self._get_json(url_or_endpoint, query)

        items = data.get("data")
        if not isinstance(items, list):
            items = []

        next_page: str | None = None
        paging = data.get("paging")
        if isinstance(paging, Mapping):
            nxt = paging.get("next")
            if isinstance(nxt, str) and nxt.strip():
                next_page = nxt.strip()

        return ListingPage(items=[i for i in items if isinstance(i, dict)], next_page=next_page)

    def hashtag_media(
        self,
        tag: str,
        *,
        media_type: str = "recent",
        limit: int = 12,
        fields: str | None = None,
    ) -> list[MediaItem]:
        name = (tag or "").strip().lstrip("#").strip().lower()
        if not name:
            raise ValueError("tag must be non-empty")

        edge = "top_media" if media_type == "top" else "recent_media"
        n = _clamp_limit(limit)
        f = fields or self._graph.default_fields

        def _load() -> list[MediaItem]:
            hashtag_id = self._resolve_hashtag_id(name)
            page = self.fetch_page(
                f"{self.api_version}/{hashtag_id}/{edge}",
                {"user_id": self.business_account_id, "fields": f, "limit": n},
            )
            return media_items_from_graph(page.items)

        return self._cached_items(cache_key("ig_tag", name, edge, n, fields=f), _load)

    def user_media(self, *, limit: int = 12, fields: str | None = None) -> list[MediaItem]:
        return self._edge_media("self-media", "ig_user_media", limit=limit, fields=fields)

    def tagged_media(self, *, limit: int = 12, fields: str | None = None) -> list[MediaItem]:
        return self._edge_media("tagged", "ig_user_tags", limit=limit, fields=fields)

    def merged_media(self, *, limit: int = 12, fields: str | None = None) -> list[MediaItem]:
        """Own posts and tagged posts combined, newest first, one entry per id."""
        n = _clamp_limit(limit)
        f = fields or self._graph.default_fields

        def _load() -> list[MediaItem]:
            own = self.user_media(limit=n, fields=f)
            tagged = self.tagged_media(limit=n, fields=f)
            return merge_newest_first(own, tagged, limit=n)

        key = cache_key("ig_user_merged", self.business_account_id, n, fields=f)
        return self._cached_items(key, _load)

    def media_children(self, media_id: str, *, fields: str | None = None) -> list[ChildItem]:
        mid = (media_id or "").strip()
        if not mid:
            raise ValueError("media_id must be non-empty")

        data = self._get_json(f"{self.api_version}/{mid}/children", {"fields": fields or _CHILDREN_FIELDS})
        return child_items_from_graph(data.get("data"))

    def _edge_media(self, collection: str, prefix: str, *, limit: int, fields: str | None) -> list[MediaItem]:
        n = _clamp_limit(limit)
        f = fields or self._graph.default_fields

        def _load() -> list[MediaItem]:
            page = self.fetch_page(self.endpoint(collection), {"fields": f, "limit": n})
            return media_items_from_graph(page.items)

        return self._cached_items(cache_key(prefix, self.business_account_id, n, fields=f), _load)

    def _resolve_hashtag_id(self, tag: str) -> str:
        data = self._get_json(
            f"{self.api_version}/ig_hashtag_search",
            {"user_id": self.business_account_id, "q": tag},
        )
        found = data.get("data")
        if isinstance(found, list) and found and isinstance(found[0], Mapping):
            hashtag_id = found[0].get("id")
            if hashtag_id:
                return str(hashtag_id)
        raise GraphAPIError(f"Hashtag not found: #{tag}", status_code=404)

    def _cached_items(self, key: str, load: Callable[[], list[MediaItem]]) -> list[MediaItem]:
        if self._cache is not None:
            cached = self._cache.get(key)
            if isinstance(cached, list):
                try:
                    return [MediaItem.model_validate(c) for c in cached]
                except ValidationError:
                    self._log.warning("cache_entry_invalid", key=key)

        items = load()
        if self._cache is not None:
            self._cache.set(key, [i.to_json() for i in items], self._ttl)
        return items

    def _get_json(self, url_or_endpoint: str, query: Mapping[str, Any] | None) -> dict[str, Any]:
        params: dict[str, Any] | None = None
        if not _is_absolute(url_or_endpoint):
            params = {**dict(query or {}), "access_token": self._secrets.access_token}
        elif query:
            params = dict(query)

        def _do_get() -> httpx.Response:
            resp = self._http.get(url_or_endpoint, params=params)
            resp.raise_for_status()
            return resp

        operation = f"graph.get:{url_or_endpoint.split('?', 1)[0]}"
        try:
            resp = call_with_retries(
                _do_get,
                policy=self._retry,
                classify=is_retryable_graph_exception,
                operation=operation,
                on_retry=self._on_retry,
                sleep_fn=self._sleep_fn,
            )
        except httpx.HTTPStatusError as e:
            raise GraphAPIError(
                f"Graph API request failed with HTTP {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise GraphAPIError(f"Graph API request failed: {type(e).__name__}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise GraphAPIError("Graph API returned a non-JSON body", status_code=resp.status_code) from e

        if not isinstance(data, dict):
            raise GraphAPIError("Graph API returned an unexpected payload", status_code=resp.status_code)
        return data

    def _log_retry(self, event: RetryEvent) -> None:
        self._log.warning(
            "graph_retry",
            operation=event.operation,
            attempt=event.failure_attempt,
            max_attempts=event.max_attempts,
            delay_seconds=round(event.delay_seconds, 3),
            reason=event.reason,
        )
