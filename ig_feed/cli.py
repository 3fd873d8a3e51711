from __future__ import annotations

import argparse
import json
import sys
from typing import Any, Sequence

from .config import load_config
from .config_schema import AppConfig
from .errors import ConfigError, GraphAPIError, StorageError
from .event_log import EventLogger
from .graph_client import COLLECTION_EDGES
from .service import MediaService, RequestContext


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ig_feed")

    subparsers = parser.add_subparsers(dest="command", required=True)

    collections = sorted(COLLECTION_EDGES)

    refresh = subparsers.add_parser(
        "refresh",
        help="Crawl a whole collection from the Graph API into its local snapshot.",
    )
    refresh.add_argument("--config", help="Path to YAML config file (defaults apply when omitted).")
    refresh.add_argument("--collection", required=True, choices=collections)
    refresh.add_argument("--per-page", type=int, default=None, help="Items per page (1-50).")
    refresh.add_argument("--max-pages", type=int, default=None, help="Upper bound on pages fetched.")
    refresh.add_argument("--fields", default=None, help="Graph API fields override.")
    refresh.add_argument(
        "--if-due",
        action="store_true",
        help="Only refresh when the schedule window has elapsed and no other refresh is running.",
    )
    refresh.add_argument(
        "--offline",
        action="store_true",
        help="Run without network calls using a small stub dataset.",
    )
    refresh.set_defaults(_handler=_cmd_refresh)

    query = subparsers.add_parser(
        "query",
        help="Filter and page through a stored collection snapshot.",
    )
    query.add_argument("--config", help="Path to YAML config file (defaults apply when omitted).")
    query.add_argument("--collection", required=True, choices=collections)
    query.add_argument("--limit", default=None)
    query.add_argument("--offset", default=None)
    query.add_argument("--ids", default=None, help="Comma-separated media ids.")
    query.add_argument("--username", default=None, help="Comma-separated usernames.")
    query.add_argument("--since", default=None, help="Lower time bound (ISO-8601, date or epoch seconds).")
    query.add_argument("--until", default=None, help="Upper time bound (ISO-8601, date or epoch seconds).")
    query.add_argument("--shortcode", default=None, help="Comma-separated shortcodes, optionally CODE!N.")
    query.set_defaults(_handler=_cmd_query)

    status = subparsers.add_parser(
        "status",
        help="Show the scheduler state of a task.",
    )
    status.add_argument("--config", help="Path to YAML config file (defaults apply when omitted).")
    status.add_argument("--task", required=True, help="Task name, e.g. refresh_tagged.")
    status.set_defaults(_handler=_cmd_status)

    return parser


def _eprint(message: str) -> None:
    print(message, file=sys.stderr)


def _open_logger(cfg: AppConfig) -> EventLogger:
    return EventLogger.open(cfg.logging.path, level=cfg.logging.level)


def _cmd_refresh(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)

    client = None
    if bool(getattr(args, "offline", False)):
        from .offline import OfflineGraphClient

        client = OfflineGraphClient()

    with _open_logger(cfg) as log, MediaService(cfg, client=client, logger=log) as service:
        log.info(
            "refresh_command_started",
            collection=args.collection,
            if_due=bool(args.if_due),
            offline=client is not None,
        )
        try:
            if args.if_due:
                ran = service.refresh_if_due(
                    args.collection,
                    per_page=args.per_page,
                    max_pages=args.max_pages,
                    fields=args.fields,
                )
                task_name = MediaService.refresh_task_name(args.collection)
                if not ran:
                    print(f"skipped={task_name}")
                    return 0
                state = service.scheduler.state(task_name)
                if state.last_error:
                    _eprint(f"Refresh failed: {state.last_error}")
                    return 3
                snapshot = service.store.load(args.collection)
            else:
                snapshot = service.refresh(
                    args.collection,
                    per_page=args.per_page,
                    max_pages=args.max_pages,
                    fields=args.fields,
                )
        except Exception as e:
            log.exception("refresh_command_failed", exc=e)
            raise

        print(f"updated_at={snapshot.updated_at}")
        print(f"count={snapshot.count}")
        return 0


def _cmd_query(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)

    params: dict[str, Any] = {}
    for name in ("limit", "offset", "ids", "username", "since", "until", "shortcode"):
        value = getattr(args, name, None)
        if value is not None:
            params[name] = value

    # Local reads from the command line are not rate limited.
    service = MediaService(cfg.model_copy(update={"rate_limit": cfg.rate_limit.model_copy(update={"enabled": False})}))
    with service:
        resp = service.local_media(args.collection, RequestContext(params=params))

    print(json.dumps(resp.body, indent=2, ensure_ascii=False))
    return 0 if resp.status == 200 else 1


def _cmd_status(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    with MediaService(cfg) as service:
        state = service.scheduler.state(args.task)
    print(json.dumps(state.to_json(), indent=2, sort_keys=True))
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        handler = getattr(args, "_handler")
        return int(handler(args))
    except ConfigError as e:
        _eprint(str(e))
        return 2
    except (GraphAPIError, StorageError) as e:
        _eprint(str(e))
        return 3
    except KeyboardInterrupt:
        _eprint("Interrupted")
        return 130
    except Exception as e:
        _eprint(f"Unexpected error: {e}")
        return 1
