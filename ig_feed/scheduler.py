from __future__ import annotations

import fcntl
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from .event_log import EventLogger
from .fileio import atomic_write_json, read_json, safe_name

Clock = Callable[[], float]


@dataclass(frozen=True)
class ScheduleState:
    last_run: int = 0
    running: bool = False
    last_ok: int | None = None
    last_error: str | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "last_run": self.last_run,
            "running": self.running,
            "last_ok": self.last_ok,
            "last_error": self.last_error,
        }


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def _state_from_json(data: Any) -> ScheduleState:
    if not isinstance(data, dict):
        return ScheduleState()
    err = data.get("last_error")
    return ScheduleState(
        last_run=_as_int(data.get("last_run")) or 0,
        running=data.get("running") is True,
        last_ok=_as_int(data.get("last_ok")),
        last_error=err if isinstance(err, str) else None,
    )


class Scheduler:
    """
    Runs named tasks at most once per window, one host-wide runner at a time.

    Coordination is a non-blocking flock on `sched_<task>.json.lock`; a
    contended lock means another process is already on it and the call
    returns False without waiting.
    """

    def __init__(
        self,
        directory: str | Path,
        *,
        clock: Clock | None = None,
        logger: EventLogger | None = None,
    ) -> None:
        self._dir = Path(directory)
        self._clock = clock or time.time
        self._log = (logger or EventLogger.disabled()).bind(component="scheduler")

    def status_path(self, task_name: str) -> Path:
        return self._dir / f"sched_{safe_name(task_name, fallback='task')}.json"

    def lock_path(self, task_name: str) -> Path:
        status = self.status_path(task_name)
        return status.with_name(status.name + ".lock")

    def state(self, task_name: str) -> ScheduleState:
        return _state_from_json(read_json(self.status_path(task_name)))

    def try_run(self, task_name: str, window_seconds: int, task: Callable[[], Any]) -> bool:
        """
        Run `task` if its window has elapsed and nobody else holds the lock.

        Returns True when the task was started (whatever its outcome) and False
        when the run was skipped. Task failures are recorded in the status file
        and logged, never raised.
        """
        status_path = self.status_path(task_name)
        log = self._log.bind(task=task_name)

        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.lock_path(task_name), os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            log.warning("schedule_lock_unavailable", error=str(e))
            return False

        try:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError:
                log.debug("schedule_skipped", reason="locked")
                return False

            try:
                return self._run_locked(status_path, int(window_seconds), task, log)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def _run_locked(self, status_path: Path, window: int, task: Callable[[], Any], log: EventLogger) -> bool:
        now = int(self._clock())
        data = read_json(status_path)
        if not isinstance(data, dict):
            data = {}

        last_run = _as_int(data.get("last_run")) or 0
        if last_run > 0 and (now - last_run) < window:
            log.debug("schedule_skipped", reason="within_window", last_run=last_run)
            return False

        data["last_run"] = now
        data["running"] = True
        try:
            atomic_write_json(status_path, data)
        except OSError as e:
            log.warning("schedule_state_write_failed", error=str(e))
            return False

        log.info("schedule_task_started")
        try:
            task()
            data["last_ok"] = now
            data["last_error"] = None
            log.info("schedule_task_completed")
        except Exception as e:
            data["last_error"] = str(e) or type(e).__name__
            log.exception("schedule_task_failed", exc=e)
        finally:
            data["running"] = False
            try:
                atomic_write_json(status_path, data)
            except OSError as e:
                log.warning("schedule_state_write_failed", error=str(e))

        return True
