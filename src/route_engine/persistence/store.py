"""Route persistence contract and the in-process implementation.

Every store hands out detached snapshots: mutating a loaded route never
touches stored state until ``save`` succeeds, and ``save`` is a
compare-and-swap on the route's ``version``.
"""

from __future__ import annotations

import copy
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, Optional

from ..models.domain import Route
from ..services.routing.errors import ConcurrencyConflict, RouteAlreadyActive, RouteArchived
from .records import route_from_record, route_to_record

logger = logging.getLogger(__name__)


class RouteStore(ABC):
    """Load and atomically persist route aggregates."""

    @abstractmethod
    def get(self, route_id: str) -> Optional[Route]:
        """Return the route with ``route_id`` or ``None``."""

    @abstractmethod
    def find_active(self, driver_id: str) -> Optional[Route]:
        """Return the driver's route that has not ended, if any."""

    @abstractmethod
    def list_for_driver(self, driver_id: str) -> list[Route]:
        """All of the driver's routes, oldest first."""

    @abstractmethod
    def insert(self, route: Route) -> Route:
        """Store a new route at version 1.

        Raises ``RouteAlreadyActive`` if the driver already has an active route.
        """

    @abstractmethod
    def save(self, route: Route, expected_version: int) -> Route:
        """Replace the stored route if its version still equals ``expected_version``.

        Raises ``ConcurrencyConflict`` on a version mismatch and ``RouteArchived``
        if the stored route has already ended. Returns the stored snapshot.
        """


class RecordRouteStore(RouteStore):
    """Shared logic for stores that keep one serialized record per route."""

    def __init__(self) -> None:
        self._lock = threading.RLock()

    @contextmanager
    def _guard(self) -> Iterator[None]:
        """Serialize read-check-write sequences against this store."""
        with self._lock:
            yield

    @abstractmethod
    def _read(self, route_id: str) -> Optional[dict[str, Any]]:
        ...

    @abstractmethod
    def _write(self, record: dict[str, Any]) -> None:
        ...

    @abstractmethod
    def _records(self) -> Iterable[dict[str, Any]]:
        ...

    def get(self, route_id: str) -> Optional[Route]:
        with self._guard():
            record = self._read(route_id)
        return route_from_record(record) if record is not None else None

    def find_active(self, driver_id: str) -> Optional[Route]:
        with self._guard():
            record = self._find_active_record(driver_id)
        return route_from_record(record) if record is not None else None

    def list_for_driver(self, driver_id: str) -> list[Route]:
        with self._guard():
            records = [record for record in self._records() if record["driver_id"] == driver_id]
        routes = [route_from_record(record) for record in records]
        routes.sort(key=lambda route: route.created_at)
        return routes

    def insert(self, route: Route) -> Route:
        with self._guard():
            existing = self._find_active_record(route.driver_id)
            if existing is not None:
                raise RouteAlreadyActive(route.driver_id, existing["id"])
            record = route_to_record(route)
            record["version"] = 1
            self._write(record)
        logger.debug(f"Inserted route {route.id} for driver {route.driver_id}")
        return route_from_record(record)

    def save(self, route: Route, expected_version: int) -> Route:
        with self._guard():
            stored = self._read(route.id)
            if stored is None:
                raise ConcurrencyConflict(route.id, expected_version)
            if stored["version"] != expected_version:
                raise ConcurrencyConflict(route.id, expected_version, stored["version"])
            if stored.get("ended_at"):
                raise RouteArchived(route.id)
            record = route_to_record(route)
            record["version"] = expected_version + 1
            self._write(record)
        return route_from_record(record)

    def _find_active_record(self, driver_id: str) -> Optional[dict[str, Any]]:
        for record in self._records():
            if record["driver_id"] == driver_id and not record.get("ended_at"):
                return record
        return None


class InMemoryRouteStore(RecordRouteStore):
    """Process-local store; state lives as long as the process does."""

    def __init__(self) -> None:
        super().__init__()
        self._data: dict[str, dict[str, Any]] = {}

    def _read(self, route_id: str) -> Optional[dict[str, Any]]:
        record = self._data.get(route_id)
        return copy.deepcopy(record) if record is not None else None

    def _write(self, record: dict[str, Any]) -> None:
        self._data[record["id"]] = copy.deepcopy(record)

    def _records(self) -> Iterable[dict[str, Any]]:
        return [copy.deepcopy(record) for record in self._data.values()]
