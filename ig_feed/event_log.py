from __future__ import annotations

import json
import traceback
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, TextIO

_LEVELS = {"DEBUG": 10, "INFO": 20, "WARN": 30, "ERROR": 40}


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _truncate(text: str, *, limit: int) -> str:
    s = str(text or "")
    if len(s) <= limit:
        return s
    return s[: max(0, limit - 1)] + "…"


def _level_value(level: str) -> int:
    name = (level or "").strip().upper()
    if name == "WARNING":
        name = "WARN"
    return _LEVELS.get(name, _LEVELS["INFO"])


class _Sink:
    """A JSONL destination shared by every logger bound from the same root."""

    def __init__(self, *, path: Path | None = None, stream: TextIO | None = None, overwrite: bool = False) -> None:
        self._path = path
        self._fp: TextIO | None = stream
        self._owns_fp = stream is None
        self._overwrite = overwrite
        self._lock = Lock()

    def write(self, record: dict[str, Any]) -> None:
        payload = json.dumps(
            record,
            ensure_ascii=False,
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )
        with self._lock:
            fp = self._ensure_open()
            if fp is None:
                return
            fp.write(payload + "\n")
            fp.flush()

    def close(self) -> None:
        with self._lock:
            if self._fp is not None and self._owns_fp:
                try:
                    self._fp.flush()
                finally:
                    self._fp.close()
                self._fp = None

    def _ensure_open(self) -> TextIO | None:
        if self._fp is not None or self._path is None:
            return self._fp
        self._path.parent.mkdir(parents=True, exist_ok=True)
        mode = "w" if self._overwrite else "a"
        self._fp = self._path.open(mode, encoding="utf-8", newline="\n")
        # Only the first open truncates.
        self._overwrite = False
        return self._fp


class EventLogger:
    """
    Structured JSONL event log.

    Each line is one JSON object: ts, level, event, any bound context
    (component, collection, ...) and a `data` mapping with event details.
    Loggers created with `bind()` share the parent's file and lock.
    """

    def __init__(
        self,
        sink: _Sink | None,
        *,
        level: str = "INFO",
        context: dict[str, Any] | None = None,
    ) -> None:
        self._sink = sink
        self._threshold = _level_value(level)
        self._context = dict(context or {})

    @classmethod
    def open(cls, path: str | Path, *, overwrite: bool = False, level: str = "INFO") -> "EventLogger":
        return cls(_Sink(path=Path(path), overwrite=overwrite), level=level)

    @classmethod
    def to_stream(cls, stream: TextIO, *, level: str = "INFO") -> "EventLogger":
        return cls(_Sink(stream=stream), level=level)

    @classmethod
    def disabled(cls) -> "EventLogger":
        return cls(None)

    @property
    def enabled(self) -> bool:
        return self._sink is not None

    def bind(self, **context: Any) -> "EventLogger":
        merged = {**self._context, **{k: v for k, v in context.items() if v is not None}}
        child = EventLogger(self._sink, context=merged)
        child._threshold = self._threshold
        return child

    def close(self) -> None:
        if self._sink is not None:
            self._sink.close()

    def __enter__(self) -> "EventLogger":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    def debug(self, event: str, **data: Any) -> None:
        self.log("DEBUG", event, **data)

    def info(self, event: str, **data: Any) -> None:
        self.log("INFO", event, **data)

    def warning(self, event: str, **data: Any) -> None:
        self.log("WARN", event, **data)

    def error(self, event: str, **data: Any) -> None:
        self.log("ERROR", event, **data)

    def exception(self, event: str, *, exc: BaseException, **data: Any) -> None:
        err = {
            "type": type(exc).__name__,
            "message": _truncate(str(exc), limit=2000),
            "traceback": _truncate(
                "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
                limit=12000,
            ),
        }
        self.log("ERROR", event, error=err, **data)

    def log(self, level: str, event: str, **data: Any) -> None:
        if self._sink is None:
            return

        value = _level_value(level)
        if value < self._threshold:
            return

        lvl = next(name for name, v in _LEVELS.items() if v == value)
        record: dict[str, Any] = {
            "ts": _utc_now_iso(),
            "level": lvl,
            "event": (event or "").strip() or "event",
        }
        record.update(self._context)
        if data:
            record["data"] = data

        self._sink.write(record)
