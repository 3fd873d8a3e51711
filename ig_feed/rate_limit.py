from __future__ import annotations

import fcntl
import ipaddress
import json
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .event_log import EventLogger
from .fileio import safe_name

Clock = Callable[[], float]


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int

    def headers(self) -> dict[str, str]:
        out = {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(max(0, self.remaining)),
        }
        if not self.allowed:
            out["Retry-After"] = str(max(1, self.retry_after))
        return out


def _is_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def resolve_client_id(
    remote_addr: str | None,
    forwarded_for: str | None = None,
    *,
    trust_proxy: bool = False,
) -> str:
    """
    Pick the address a request is counted against.

    The direct peer address by default. Behind a trusted proxy, the first
    X-Forwarded-For entry is used when it is a well-formed IP address.
    """
    client = (remote_addr or "").strip() or "unknown"
    if trust_proxy and forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first and _is_ip(first):
            client = first
    return client


def _parse_state(raw: bytes, *, now: int) -> tuple[int, int]:
    if not raw.strip():
        return now, 0
    try:
        data = json.loads(raw.decode("utf-8"))
    except ValueError:
        return now, 0
    if not isinstance(data, dict):
        return now, 0
    try:
        window_start = int(data.get("window_start", now))
        count = int(data.get("count", 0))
    except (TypeError, ValueError):
        return now, 0
    return window_start, max(0, count)


class FileRateLimiter:
    """
    Fixed-window request counter, one locked JSON file per (group, client).

    Calls for the same key are serialized by a blocking exclusive flock, so
    counts are exact per key. Any storage failure fails open: the request is
    allowed, because a broken counter directory must not take the API down.
    """

    def __init__(
        self,
        directory: str | Path,
        *,
        window_seconds: int = 60,
        max_requests: int = 60,
        clock: Clock | None = None,
        logger: EventLogger | None = None,
    ) -> None:
        if window_seconds < 1:
            raise ValueError("window_seconds must be >= 1")
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")

        self._dir = Path(directory)
        self._window = int(window_seconds)
        self._max = int(max_requests)
        self._clock = clock or time.time
        self._log = (logger or EventLogger.disabled()).bind(component="rate_limit")

    @property
    def limit(self) -> int:
        return self._max

    def path_for(self, group: str, client_id: str) -> Path:
        group_dir = self._dir / safe_name(group, fallback="default")
        return group_dir / f"{safe_name(client_id, fallback='unknown')}.json"

    def allow(self, group: str, client_id: str) -> RateDecision:
        path = self.path_for(group, client_id)
        try:
            return self._consume(path)
        except OSError as e:
            self._log.warning("rate_limit_fail_open", group=group, client=client_id, error=str(e))
            return RateDecision(allowed=True, limit=self._max, remaining=self._max - 1, retry_after=0)

    def _consume(self, path: Path) -> RateDecision:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            try:
                now = int(self._clock())
                raw = _read_all(fd)
                window_start, count = _parse_state(raw, now=now)

                elapsed = max(0, now - window_start)
                if elapsed >= self._window:
                    window_start, count, elapsed = now, 0, 0

                if count >= self._max:
                    _write_state(fd, window_start, count)
                    return RateDecision(
                        allowed=False,
                        limit=self._max,
                        remaining=0,
                        retry_after=max(1, self._window - elapsed),
                    )

                count += 1
                _write_state(fd, window_start, count)
                return RateDecision(
                    allowed=True,
                    limit=self._max,
                    remaining=max(0, self._max - count),
                    retry_after=max(0, self._window - elapsed),
                )
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _read_all(fd: int) -> bytes:
    os.lseek(fd, 0, os.SEEK_SET)
    chunks: list[bytes] = []
    while True:
        chunk = os.read(fd, 4096)
        if not chunk:
            break
        chunks.append(chunk)
    return b"".join(chunks)


def _write_state(fd: int, window_start: int, count: int) -> None:
    payload = json.dumps({"window_start": window_start, "count": count}).encode("utf-8")
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, payload)
