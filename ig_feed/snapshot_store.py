from __future__ import annotations

from pathlib import Path

from pydantic import ValidationError

from .errors import StorageError
from .event_log import EventLogger
from .fileio import atomic_write_json, read_json, safe_name
from .media import Snapshot


class SnapshotStore:
    """
    One JSON document per collection, replaced wholesale on every save.

    Saves go through a temp file and a rename, so readers never lock and only
    ever see a complete document. A missing or malformed document loads as an
    empty snapshot: the collection simply has not been crawled yet.
    """

    def __init__(self, directory: str | Path, *, logger: EventLogger | None = None) -> None:
        self._dir = Path(directory)
        self._log = (logger or EventLogger.disabled()).bind(component="snapshot_store")

    @property
    def directory(self) -> Path:
        return self._dir

    def path_for(self, collection: str) -> Path:
        return self._dir / f"{safe_name(collection, fallback='collection')}.json"

    def save(self, collection: str, snapshot: Snapshot) -> None:
        path = self.path_for(collection)
        try:
            atomic_write_json(path, snapshot.model_dump(mode="json"))
        except OSError as e:
            raise StorageError(f"Failed to write snapshot {path}: {e}") from e

    def load(self, collection: str) -> Snapshot:
        path = self.path_for(collection)
        data = read_json(path)
        if data is None:
            return Snapshot.empty()

        if not isinstance(data, dict) or not isinstance(data.get("items"), list):
            self._log.warning("snapshot_malformed", collection=collection, path=str(path))
            return Snapshot.empty()

        try:
            return Snapshot.model_validate(data)
        except ValidationError as e:
            self._log.warning(
                "snapshot_malformed",
                collection=collection,
                path=str(path),
                errors=e.error_count(),
            )
            return Snapshot.empty()
