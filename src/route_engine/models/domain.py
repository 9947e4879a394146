"""Domain models for delivery routes, their stops and audit history."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Literal, Optional

Coordinates = tuple[float, float]  # (latitude, longitude)

StopStatus = Literal["pending", "completed", "failed", "cancelled"]
Priority = Literal["low", "normal", "high", "urgent"]
HistoryAction = Literal["created", "updated", "completed", "cancelled", "recalculated"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})
VISITED_STATUSES: frozenset[str] = frozenset({"completed", "failed"})


def _coordinates(latitude: Optional[float], longitude: Optional[float]) -> Optional[Coordinates]:
    if latitude is None or longitude is None:
        return None
    return (latitude, longitude)


@dataclass(slots=True)
class DeliveryOrder:
    """An order handed to the engine for placement on a route.

    Coordinates are resolved by the caller; leaving either of them unset marks
    the order as unresolved.
    """

    order_ref: str
    priority: Priority = "normal"
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None

    @property
    def coordinates(self) -> Optional[Coordinates]:
        return _coordinates(self.latitude, self.longitude)


@dataclass(slots=True)
class Stop:
    """One delivery within a route."""

    order_ref: str
    sequence_index: int
    estimated_distance_km: float
    estimated_time_min: float
    status: StopStatus = "pending"
    priority: Priority = "normal"
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None
    estimate_resolved: bool = True
    actual_distance_km: Optional[float] = None
    actual_time_min: Optional[float] = None
    completed_at: Optional[datetime] = None
    reason: Optional[str] = None

    @property
    def coordinates(self) -> Optional[Coordinates]:
        return _coordinates(self.latitude, self.longitude)

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def accounted_distance_km(self) -> float:
        """Distance this stop adds to the completed totals once terminal."""
        if self.status not in VISITED_STATUSES:
            return 0.0
        if self.actual_distance_km is not None:
            return self.actual_distance_km
        return self.estimated_distance_km

    @property
    def accounted_time_min(self) -> float:
        if self.status not in VISITED_STATUSES:
            return 0.0
        if self.actual_time_min is not None:
            return self.actual_time_min
        return self.estimated_time_min


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    """Immutable audit record of a route-level event."""

    id: str
    timestamp: datetime
    action: HistoryAction
    description: str
    stop_count: int
    total_distance_km: float
    total_time_min: float
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class EstimationUnavailable:
    """Non-blocking warning raised when a stop's leg could not be estimated."""

    order_ref: str
    message: str


@dataclass(slots=True)
class Route:
    """A driver's persisted plan of delivery stops for one shift."""

    id: str
    driver_id: str
    created_at: datetime
    updated_at: datetime
    shift_date: date
    stops: list[Stop] = field(default_factory=list)
    history: list[HistoryEntry] = field(default_factory=list)
    total_distance_km: float = 0.0
    total_time_min: float = 0.0
    completed_distance_km: float = 0.0
    completed_time_min: float = 0.0
    origin: Optional[Coordinates] = None
    ended_at: Optional[datetime] = None
    version: int = 0
    metrics: dict = field(default_factory=dict)
    # Not persisted: populated by the operation that produced this snapshot.
    warnings: list[EstimationUnavailable] = field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.ended_at is None

    @property
    def pending_stops(self) -> list[Stop]:
        """Pending stops in visit order."""
        return sorted((stop for stop in self.stops if stop.is_pending), key=lambda stop: stop.sequence_index)

    @property
    def terminal_stops(self) -> list[Stop]:
        return [stop for stop in self.stops if stop.is_terminal]

    def find_stop(self, order_ref: str) -> Optional[Stop]:
        for stop in self.stops:
            if stop.order_ref == order_ref:
                return stop
        return None
