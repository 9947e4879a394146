"""File-backed route store: one JSON document per route."""

from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

from ..config import settings
from .store import RecordRouteStore

logger = logging.getLogger(__name__)


class FileRouteStore(RecordRouteStore):
    """Keeps routes under ``<data_root>/routes`` so they survive restarts.

    Writes go to a temporary file in the same directory and are renamed into
    place, so a reader never sees a partially written document. Every
    read-check-write sequence also holds an exclusive ``flock`` on
    ``<data_root>/routes.lock``, so several worker processes may share one
    data root without losing updates. The lock is advisory and POSIX only.
    """

    def __init__(self, root: Path | None = None) -> None:
        super().__init__()
        self.root = (root or settings.data_root).resolve()
        self.routes_root = self.root / "routes"
        self.routes_root.mkdir(parents=True, exist_ok=True)
        self.lock_path = self.root / "routes.lock"

    @contextmanager
    def _guard(self) -> Iterator[None]:
        with self._lock, self.lock_path.open("a") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _path(self, route_id: str) -> Path:
        return self.routes_root / f"{route_id}.json"

    def _load(self, path: Path) -> dict[str, Any]:
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)

    def _read(self, route_id: str) -> Optional[dict[str, Any]]:
        path = self._path(route_id)
        if not path.exists():
            return None
        return self._load(path)

    def _write(self, record: dict[str, Any]) -> None:
        path = self._path(record["id"])
        fd, tmp_name = tempfile.mkstemp(dir=self.routes_root, prefix=f".{record['id']}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(record, handle, ensure_ascii=False, indent=2)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def _records(self) -> Iterable[dict[str, Any]]:
        return [self._load(path) for path in sorted(self.routes_root.glob("*.json"))]
