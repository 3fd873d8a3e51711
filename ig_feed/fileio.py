from __future__ import annotations

import json
import os
import re
import tempfile
from pathlib import Path
from typing import Any

_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9_.-]")


def safe_name(value: str, *, fallback: str) -> str:
    """Map an arbitrary key to a file name; every char outside [A-Za-z0-9_.-] becomes `_`."""
    name = _UNSAFE_NAME_RE.sub("_", value or "")
    return name or fallback


def json_dumps(value: Any) -> str:
    return json.dumps(
        value,
        ensure_ascii=False,
        separators=(",", ":"),
        default=str,
    )


def atomic_write_text(path: Path, text: str) -> None:
    """
    Replace `path` with `text` in one rename.

    Readers see either the previous file or the complete new one. Each writer
    gets its own temp file, so concurrent writers of one path never share it.
    Raises OSError on failure; the temp file is removed.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as stream:
            stream.write(text)
            stream.flush()
            os.fsync(stream.fileno())
        os.replace(tmp_path, path)
    finally:
        try:
            if tmp_path.exists():
                tmp_path.unlink()
        except OSError:
            pass


def atomic_write_json(path: Path, value: Any) -> None:
    atomic_write_text(path, json_dumps(value))


def read_json(path: Path) -> Any | None:
    """Return the decoded JSON at `path`, or None if missing, unreadable or invalid."""
    try:
        raw = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None

    if not raw.strip():
        return None

    try:
        return json.loads(raw)
    except ValueError:
        return None
