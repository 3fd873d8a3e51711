from __future__ import annotations

import hmac
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Mapping

from .cache import FileTTLCache
from .config import resolve_admin_token, resolve_runtime_secrets
from .config_schema import AppConfig
from .crawler import NowFn, crawl_collection
from .errors import ConfigError, GraphAPIError, StorageError
from .event_log import EventLogger
from .graph_client import COLLECTION_EDGES, GraphClient
from .media import Snapshot
from .query import filters_from_params, first_param, int_param, run_query
from .rate_limit import Clock, FileRateLimiter, RateDecision, resolve_client_id
from .scheduler import Scheduler
from .snapshot_store import SnapshotStore

HASHTAG_TYPES = ("recent", "top")
DEFAULT_LIVE_LIMIT = 12


@dataclass(frozen=True)
class RequestContext:
    """Everything a request handler needs from the incoming request."""

    remote_addr: str | None = None
    forwarded_for: str | None = None
    params: Mapping[str, Any] = field(default_factory=dict)
    admin_token: str | None = None


@dataclass(frozen=True)
class ServiceResponse:
    status: int
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)


def _str_param(params: Mapping[str, Any], *names: str) -> str:
    value = first_param(params, *names)
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    return str(value).strip() if value is not None else ""


def _error(status: int, code: str, message: str | None = None, **extra: Any) -> ServiceResponse:
    body: dict[str, Any] = {"error": code}
    if message is not None:
        body["message"] = message
    body.update(extra)
    return ServiceResponse(status=status, body=body)


class MediaService:
    """
    Request handlers for the media API, independent of any web framework.

    Each handler takes a RequestContext and returns a ServiceResponse. Live
    handlers talk to the Graph API through a lazily built client; local
    handlers read stored snapshots. An injected `client` only needs the
    reading surface it is used through (OfflineGraphClient covers refreshes).
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        environ: Mapping[str, str] | None = None,
        client: GraphClient | None = None,
        store: SnapshotStore | None = None,
        rate_limiter: FileRateLimiter | None = None,
        scheduler: Scheduler | None = None,
        clock: Clock | None = None,
        now_fn: NowFn | None = None,
        logger: EventLogger | None = None,
    ) -> None:
        self._config = config
        self._environ = environ
        self._root_log = logger or EventLogger.disabled()
        self._log = self._root_log.bind(component="service")
        self._now_fn = now_fn

        self._client = client
        self._owns_client = False

        storage = config.storage
        self._store = store or SnapshotStore(storage.snapshot_dir, logger=self._root_log)
        self._scheduler = scheduler or Scheduler(storage.scheduler_dir, clock=clock, logger=self._root_log)

        self._limiter: FileRateLimiter | None = rate_limiter
        if self._limiter is None and config.rate_limit.enabled:
            self._limiter = FileRateLimiter(
                storage.ratelimit_dir,
                window_seconds=config.rate_limit.window_seconds,
                max_requests=config.rate_limit.max_requests,
                clock=clock,
                logger=self._root_log,
            )

    def close(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None
            self._owns_client = False

    def __enter__(self) -> "MediaService":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    @property
    def store(self) -> SnapshotStore:
        return self._store

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    # Live Graph API reads

    def hashtag_media(self, ctx: RequestContext) -> ServiceResponse:
        def _handler() -> ServiceResponse:
            tag = _str_param(ctx.params, "tag")
            media_type = _str_param(ctx.params, "type") or "recent"
            if not tag:
                return _error(400, "missing_tag", 'Query param "tag" is required.')
            if media_type not in HASHTAG_TYPES:
                return _error(400, "invalid_type", "Type must be recent or top.")

            items = self._graph().hashtag_media(
                tag,
                media_type=media_type,
                limit=self._live_limit(ctx),
                fields=self._fields(ctx),
            )
            data = [i.to_json() for i in items]
            return ServiceResponse(200, {"tag": tag, "type": media_type, "count": len(data), "data": data})

        return self._handle(ctx, "hashtag_media", _handler)

    def self_media(self, ctx: RequestContext) -> ServiceResponse:
        return self._handle(
            ctx,
            "self_media",
            lambda: self._scoped("self", self._graph().user_media(limit=self._live_limit(ctx), fields=self._fields(ctx))),
        )

    def tagged_media(self, ctx: RequestContext) -> ServiceResponse:
        return self._handle(
            ctx,
            "tagged_media",
            lambda: self._scoped("tagged", self._graph().tagged_media(limit=self._live_limit(ctx), fields=self._fields(ctx))),
        )

    def merged_media(self, ctx: RequestContext) -> ServiceResponse:
        return self._handle(
            ctx,
            "merged_media",
            lambda: self._scoped("merged", self._graph().merged_media(limit=self._live_limit(ctx), fields=self._fields(ctx))),
        )

    def media_children(self, ctx: RequestContext) -> ServiceResponse:
        def _handler() -> ServiceResponse:
            media_id = _str_param(ctx.params, "mediaid")
            if not media_id:
                return _error(400, "missing_mediaid", 'Query param "mediaid" is required.')

            children = self._graph().media_children(media_id, fields=self._fields(ctx))
            data = [c.model_dump(mode="json") for c in children]
            return ServiceResponse(
                200,
                {"scope": "children", "media_id": media_id, "count": len(data), "data": data},
            )

        return self._handle(ctx, "media_children", _handler)

    # Local snapshots

    def local_media(self, collection: str, ctx: RequestContext) -> ServiceResponse:
        def _handler() -> ServiceResponse:
            if collection not in COLLECTION_EDGES:
                return _error(404, "unknown_collection")

            snapshot = self._store.load(collection)
            filters, page = filters_from_params(ctx.params)
            result = run_query(snapshot.items, filters, page)
            return ServiceResponse(
                200,
                {
                    "source": "local",
                    "updated_at": snapshot.updated_at,
                    "requested": {"limit": page.limit, "offset": page.offset},
                    "returned": result.returned_count,
                    "total": result.total_count,
                    "data": [i.to_json() for i in result.items],
                },
            )

        return self._handle(ctx, "local_media", _handler)

    def refresh_collection(self, collection: str, ctx: RequestContext) -> ServiceResponse:
        def _handler() -> ServiceResponse:
            if collection not in COLLECTION_EDGES:
                return _error(404, "unknown_collection")
            if not self.is_admin(ctx):
                return _error(403, "forbidden")

            snapshot = self.refresh(
                collection,
                per_page=int_param(first_param(ctx.params, "per_page")),
                max_pages=int_param(first_param(ctx.params, "max_pages")),
                fields=self._fields(ctx),
            )
            return ServiceResponse(
                200,
                {"refreshed": True, "updated_at": snapshot.updated_at, "count": snapshot.count},
            )

        return self._handle(ctx, "refresh_collection", _handler)

    def refresh(
        self,
        collection: str,
        *,
        per_page: int | None = None,
        max_pages: int | None = None,
        fields: str | None = None,
    ) -> Snapshot:
        """Crawl a whole collection into its snapshot, using configured defaults for missing knobs."""
        crawl = self._config.crawl
        client = self._graph()
        return crawl_collection(
            client,
            client.endpoint(collection),
            collection=collection,
            store=self._store,
            page_size=crawl.per_page if per_page is None else per_page,
            max_pages=crawl.max_pages if max_pages is None else max_pages,
            fields=fields or self._config.graph.default_fields,
            now_fn=self._now_fn,
            logger=self._root_log,
        )

    def refresh_if_due(
        self,
        collection: str,
        *,
        per_page: int | None = None,
        max_pages: int | None = None,
        fields: str | None = None,
    ) -> bool:
        """Refresh through the scheduler; False when a recent or concurrent run makes this one unnecessary."""
        return self._scheduler.try_run(
            self.refresh_task_name(collection),
            self._config.schedule.refresh_window_seconds,
            lambda: self.refresh(collection, per_page=per_page, max_pages=max_pages, fields=fields),
        )

    @staticmethod
    def refresh_task_name(collection: str) -> str:
        return f"refresh_{collection}"

    # Access control

    def is_admin(self, ctx: RequestContext) -> bool:
        expected = resolve_admin_token(self._config, environ=self._environ)
        supplied = (ctx.admin_token or "").strip()
        if expected and supplied and hmac.compare_digest(expected.encode("utf-8"), supplied.encode("utf-8")):
            return True

        remote = (ctx.remote_addr or "").strip()
        return bool(remote) and remote in self._config.access.whitelisted_ips

    def client_id(self, ctx: RequestContext) -> str:
        return resolve_client_id(
            ctx.remote_addr,
            ctx.forwarded_for,
            trust_proxy=self._config.rate_limit.trust_proxy,
        )

    # Internals

    def _handle(self, ctx: RequestContext, operation: str, handler: Callable[[], ServiceResponse]) -> ServiceResponse:
        decision = self._check_rate_limit(ctx)
        headers = decision.headers() if decision is not None else {}

        if decision is not None and not decision.allowed:
            self._log.info("request_rate_limited", operation=operation, retry_after=decision.retry_after)
            resp = _error(
                429,
                "rate_limited",
                "Too many requests. Please try again later.",
                retry_after=decision.retry_after,
            )
            return replace(resp, headers=headers)

        try:
            resp = handler()
        except ConfigError as e:
            self._log.error("request_config_error", operation=operation, error=str(e))
            resp = _error(500, "configuration_error", "The service is not configured.")
        except GraphAPIError as e:
            self._log.warning("request_upstream_error", operation=operation, status_code=e.status_code, error=str(e))
            resp = _error(502, "instagram_error")
        except StorageError as e:
            self._log.error("request_storage_error", operation=operation, error=str(e))
            resp = _error(502, "refresh_failed", "Failed to persist the refreshed collection.")

        return replace(resp, headers={**headers, **resp.headers})

    def _check_rate_limit(self, ctx: RequestContext) -> RateDecision | None:
        if self._limiter is None:
            return None
        return self._limiter.allow(self._config.rate_limit.group, self.client_id(ctx))

    def _graph(self) -> GraphClient:
        if self._client is None:
            secrets = resolve_runtime_secrets(self._config, environ=self._environ)
            cache = FileTTLCache(Path(self._config.storage.cache_dir), logger=self._root_log)
            self._client = GraphClient(
                secrets,
                graph=self._config.graph,
                cache=cache,
                cache_ttl_seconds=self._config.cache.ttl_seconds,
                logger=self._root_log,
            )
            self._owns_client = True
        return self._client

    @staticmethod
    def _live_limit(ctx: RequestContext) -> int:
        n = int_param(first_param(ctx.params, "limit"))
        return DEFAULT_LIVE_LIMIT if n is None else n

    @staticmethod
    def _fields(ctx: RequestContext) -> str | None:
        return _str_param(ctx.params, "fields") or None

    @staticmethod
    def _scoped(scope: str, items: list[Any]) -> ServiceResponse:
        data = [i.to_json() for i in items]
        return ServiceResponse(200, {"scope": scope, "count": len(data), "data": data})
