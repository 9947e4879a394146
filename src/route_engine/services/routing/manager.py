"""Route orchestration: create, evolve and archive a driver's shift route.

Every mutating operation runs load-validate-mutate-save under a per-route
lock, against a detached snapshot, and finishes with a compare-and-swap save.
A failed validation raises before anything is written; a failed save leaves
the stored route exactly as it was.
"""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Callable, Iterator, Optional, Sequence

from ...config import PRIORITY_LEVELS, settings
from ...models.domain import (
    VISITED_STATUSES,
    Coordinates,
    DeliveryOrder,
    EstimationUnavailable,
    HistoryAction,
    HistoryEntry,
    Route,
    Stop,
)
from ...persistence import RouteStore, build_route_store
from .errors import (
    ConcurrencyConflict,
    InvalidRequest,
    InvalidTransition,
    RouteAlreadyActive,
    RouteArchived,
    RouteNotFound,
    StopNotFound,
)
from .estimator import Estimate, GeoEstimator, default_estimator_provider
from .optimizer import RouteOptimizer

logger = logging.getLogger(__name__)

EstimatorProvider = Callable[[Sequence[Optional[Coordinates]]], GeoEstimator]

RECALCULATION_REMOVAL_REASON = "removed during recalculation"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _validate_orders(orders: Sequence[DeliveryOrder]) -> None:
    seen: set[str] = set()
    for order in orders:
        if not order.order_ref:
            raise InvalidRequest("Every order needs a non-empty order reference.")
        if order.order_ref in seen:
            raise InvalidRequest(f"Order '{order.order_ref}' appears more than once.")
        if order.priority not in PRIORITY_LEVELS:
            raise InvalidRequest(
                f"Order '{order.order_ref}' has unknown priority '{order.priority}'; "
                f"expected one of {', '.join(PRIORITY_LEVELS)}."
            )
        if (order.latitude is None) != (order.longitude is None):
            raise InvalidRequest(f"Order '{order.order_ref}' must carry both latitude and longitude, or neither.")
        seen.add(order.order_ref)


def _set_leg(stop: Stop, leg: Estimate) -> None:
    stop.estimated_distance_km = leg.distance_km
    stop.estimated_time_min = leg.time_min
    stop.estimate_resolved = leg.resolved


def _new_stop(order: DeliveryOrder, sequence_index: int, leg: Estimate) -> Stop:
    stop = Stop(
        order_ref=order.order_ref,
        sequence_index=sequence_index,
        estimated_distance_km=0.0,
        estimated_time_min=0.0,
        priority=order.priority,
        latitude=order.latitude,
        longitude=order.longitude,
        address=order.address,
    )
    _set_leg(stop, leg)
    return stop


def _arrange(route: Route, pending: Sequence[Stop]) -> None:
    """Make ``pending`` the visit order: terminal stops first, then pending 0..k-1."""
    for index, stop in enumerate(pending):
        stop.sequence_index = index
    route.stops = [stop for stop in route.stops if stop.is_terminal] + list(pending)


def _renumber(route: Route) -> None:
    _arrange(route, route.pending_stops)


def _refresh_totals(route: Route) -> None:
    pending = route.pending_stops
    route.total_distance_km = route.completed_distance_km + sum(stop.estimated_distance_km for stop in pending)
    route.total_time_min = route.completed_time_min + sum(stop.estimated_time_min for stop in pending)


def _anchor(route: Route) -> Optional[Coordinates]:
    """Where the driver is assumed to be: the last visited stop, else the route origin."""
    visited = [
        stop
        for stop in route.stops
        if stop.status in VISITED_STATUSES and stop.coordinates is not None and stop.completed_at is not None
    ]
    if visited:
        # Stable sort: on equal timestamps the stop visited later stays last.
        return sorted(visited, key=lambda stop: stop.completed_at)[-1].coordinates
    return route.origin


def _first_resolved(items: Sequence) -> Optional[Coordinates]:
    for item in items:
        if item.coordinates is not None:
            return item.coordinates
    return None


def _warnings(route: Route) -> list[EstimationUnavailable]:
    return [
        EstimationUnavailable(
            order_ref=stop.order_ref,
            message=f"No distance/time estimate for order '{stop.order_ref}'; its coordinates are unresolved.",
        )
        for stop in route.pending_stops
        if not stop.estimate_resolved
    ]


class RouteManager:
    def __init__(
        self,
        store: RouteStore,
        *,
        estimator_provider: EstimatorProvider | None = None,
        priority_bonus_km: dict[str, float] | None = None,
        clock: Callable[[], datetime] | None = None,
        max_conflict_retries: int | None = None,
        shift_window_hours: float | None = None,
    ) -> None:
        self.store = store
        self._estimator_provider = estimator_provider or default_estimator_provider
        self._priority_bonus_km = priority_bonus_km or settings.priority_bonus_km
        self._clock = clock or _utcnow
        self._max_conflict_retries = (
            max_conflict_retries if max_conflict_retries is not None else settings.max_conflict_retries
        )
        self._shift_window_hours = (
            shift_window_hours if shift_window_hours is not None else settings.shift_window_hours
        )
        # key -> [lock, number of callers holding or waiting on it]
        self._locks: dict[str, list] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------ helpers

    @contextmanager
    def _lock_for(self, key: str) -> Iterator[None]:
        """Hold the lock for ``key``; the entry is dropped once no caller needs it."""
        with self._locks_guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def _optimizer(self, points: Sequence[Optional[Coordinates]]) -> RouteOptimizer:
        return RouteOptimizer(self._estimator_provider(points), self._priority_bonus_km)

    def _record(
        self,
        route: Route,
        action: HistoryAction,
        description: str,
        metadata: dict | None = None,
    ) -> None:
        route.history.append(
            HistoryEntry(
                id=str(uuid.uuid4()),
                timestamp=self._clock(),
                action=action,
                description=description,
                stop_count=len(route.stops),
                total_distance_km=route.total_distance_km,
                total_time_min=route.total_time_min,
                metadata=metadata or {},
            )
        )

    def _annotate(self, route: Route) -> Route:
        route.warnings = _warnings(route)
        return route

    def _mutate(self, route_id: str, apply: Callable[[Route], None]) -> Route:
        """Load, apply and save, re-applying on a lost optimistic-concurrency race."""
        with self._lock_for(route_id):
            attempt = 0
            while True:
                route = self.store.get(route_id)
                if route is None:
                    raise RouteNotFound(route_id)
                if not route.is_active:
                    raise RouteArchived(route_id)
                expected_version = route.version
                apply(route)
                route.updated_at = self._clock()
                try:
                    saved = self.store.save(route, expected_version)
                except ConcurrencyConflict:
                    attempt += 1
                    if attempt > self._max_conflict_retries:
                        raise
                    logger.warning(
                        f"Route {route_id} changed during update, retrying ({attempt}/{self._max_conflict_retries})"
                    )
                    continue
                return self._annotate(saved)

    @staticmethod
    def _pending_stop(route: Route, order_ref: str, target: str) -> Stop:
        stop = route.find_stop(order_ref)
        if stop is None:
            raise StopNotFound(route.id, order_ref)
        if not stop.is_pending:
            raise InvalidTransition(route.id, order_ref, stop.status, target)
        return stop

    # -------------------------------------------------------------------- reads

    def get_current_route(self, driver_id: str) -> Optional[Route]:
        """The driver's active route for the current shift, or ``None``."""
        route = self.store.find_active(driver_id)
        if route is None:
            return None
        if self._shift_window_hours > 0:
            window_start = self._clock() - timedelta(hours=self._shift_window_hours)
            if route.created_at < window_start:
                logger.info(
                    f"Active route {route.id} for driver {driver_id} predates the current shift window"
                )
                return None
        return self._annotate(route)

    def get_route(self, route_id: str) -> Route:
        route = self.store.get(route_id)
        if route is None:
            raise RouteNotFound(route_id)
        return self._annotate(route)

    def list_driver_routes(self, driver_id: str) -> list[Route]:
        return [self._annotate(route) for route in self.store.list_for_driver(driver_id)]

    # ------------------------------------------------------------------- create

    def create_optimized_route(
        self,
        driver_id: str,
        orders: Sequence[DeliveryOrder],
        origin: Optional[Coordinates] = None,
    ) -> Route:
        if not driver_id:
            raise InvalidRequest("A driver id is required to create a route.")
        _validate_orders(orders)

        with self._lock_for(f"driver:{driver_id}"):
            existing = self.store.find_active(driver_id)
            if existing is not None:
                raise RouteAlreadyActive(driver_id, existing.id)

            start = origin if origin is not None else _first_resolved(orders)
            optimizer = self._optimizer([start, *(order.coordinates for order in orders)])
            result = optimizer.order(start, orders)

            now = self._clock()
            route = Route(
                id=str(uuid.uuid4()),
                driver_id=driver_id,
                created_at=now,
                updated_at=now,
                shift_date=now.date(),
                stops=[_new_stop(p.item, index, p.leg) for index, p in enumerate(result.placements)],
                origin=start,
                metrics=optimizer.analyze(result.placements),
            )
            _refresh_totals(route)
            self._record(
                route,
                "created",
                f"Optimized route created with {len(route.stops)} stops",
                {
                    "origin": list(start) if start is not None else None,
                    "order_count": len(orders),
                    "unresolved": result.unresolved,
                },
            )
            saved = self.store.insert(route)

        logger.info(
            f"Created route {saved.id} for driver {driver_id}: {len(saved.stops)} stops, "
            f"{saved.total_distance_km:.2f} km, {saved.total_time_min:.1f} min"
        )
        return self._annotate(saved)

    # ---------------------------------------------------------------- mutations

    def complete_delivery(
        self,
        route_id: str,
        order_ref: str,
        actual_time_min: Optional[float] = None,
        actual_distance_km: Optional[float] = None,
    ) -> Route:
        if actual_time_min is not None and actual_time_min < 0:
            raise InvalidRequest("Actual time cannot be negative.")
        if actual_distance_km is not None and actual_distance_km < 0:
            raise InvalidRequest("Actual distance cannot be negative.")

        def apply(route: Route) -> None:
            stop = self._pending_stop(route, order_ref, "completed")
            stop.status = "completed"
            stop.completed_at = self._clock()
            stop.actual_time_min = actual_time_min
            stop.actual_distance_km = actual_distance_km
            route.completed_distance_km += stop.accounted_distance_km
            route.completed_time_min += stop.accounted_time_min
            _renumber(route)
            _refresh_totals(route)
            self._record(
                route,
                "completed",
                f"Delivery completed for order {order_ref}",
                {
                    "order_ref": order_ref,
                    "actual_time_min": actual_time_min,
                    "actual_distance_km": actual_distance_km,
                    "accounted_distance_km": stop.accounted_distance_km,
                    "accounted_time_min": stop.accounted_time_min,
                },
            )

        route = self._mutate(route_id, apply)
        logger.info(f"Completed order {order_ref} on route {route_id}")
        return route

    def fail_delivery(self, route_id: str, order_ref: str, reason: str) -> Route:
        """Mark a visited stop as undeliverable; its leg still counts as driven."""

        def apply(route: Route) -> None:
            stop = self._pending_stop(route, order_ref, "failed")
            stop.status = "failed"
            stop.completed_at = self._clock()
            stop.reason = reason
            route.completed_distance_km += stop.accounted_distance_km
            route.completed_time_min += stop.accounted_time_min
            _renumber(route)
            _refresh_totals(route)
            self._record(
                route,
                "updated",
                f"Delivery failed for order {order_ref}: {reason}",
                {"order_ref": order_ref, "reason": reason, "failed": True},
            )

        route = self._mutate(route_id, apply)
        logger.info(f"Order {order_ref} on route {route_id} failed: {reason}")
        return route

    def add_delivery_to_route(self, route_id: str, order: DeliveryOrder) -> Route:
        _validate_orders([order])

        def apply(route: Route) -> None:
            if route.find_stop(order.order_ref) is not None:
                raise InvalidRequest(f"Order '{order.order_ref}' is already on route '{route.id}'.")
            pending = route.pending_stops
            anchor = _anchor(route)
            optimizer = self._optimizer([anchor, *(stop.coordinates for stop in pending), order.coordinates])
            insertion = optimizer.insert(anchor, pending, order)

            stop = _new_stop(order, insertion.position, insertion.leg)
            if insertion.next_leg is not None:
                _set_leg(pending[insertion.position], insertion.next_leg)
            pending.insert(insertion.position, stop)
            _arrange(route, pending)
            _refresh_totals(route)
            self._record(
                route,
                "updated",
                f"Delivery {order.order_ref} inserted at position {insertion.position + 1} of {len(pending)}",
                {
                    "order_ref": order.order_ref,
                    "position": insertion.position,
                    "added_distance_km": insertion.added_distance_km,
                    "unresolved": not stop.estimate_resolved,
                },
            )

        route = self._mutate(route_id, apply)
        logger.info(f"Added order {order.order_ref} to route {route_id}")
        return route

    def cancel_delivery(self, route_id: str, order_ref: str, reason: str) -> Route:
        def apply(route: Route) -> None:
            stop = self._pending_stop(route, order_ref, "cancelled")
            before = route.pending_stops
            position = before.index(stop)

            stop.status = "cancelled"
            stop.completed_at = self._clock()
            stop.reason = reason

            pending = [item for item in before if item is not stop]
            if position < len(pending):
                following = pending[position]
                previous = pending[position - 1].coordinates if position > 0 else _anchor(route)
                optimizer = self._optimizer([previous, following.coordinates])
                _set_leg(following, optimizer.leg(previous, following.coordinates))
            _arrange(route, pending)
            _refresh_totals(route)
            self._record(
                route,
                "cancelled",
                f"Delivery cancelled for order {order_ref}: {reason}",
                {"order_ref": order_ref, "reason": reason},
            )

        route = self._mutate(route_id, apply)
        logger.info(f"Cancelled order {order_ref} on route {route_id}: {reason}")
        return route

    def recalculate_route(
        self,
        route_id: str,
        pending_orders: Sequence[DeliveryOrder],
        origin: Optional[Coordinates] = None,
    ) -> Route:
        """Re-sequence the route over exactly ``pending_orders``.

        Pending stops missing from ``pending_orders`` are cancelled, unknown orders
        become new stops, terminal stops and history are left untouched.
        """
        _validate_orders(pending_orders)

        def apply(route: Route) -> None:
            for order in pending_orders:
                existing = route.find_stop(order.order_ref)
                if existing is not None and existing.is_terminal:
                    raise InvalidTransition(route.id, order.order_ref, existing.status, "pending")

            now = self._clock()
            wanted = {order.order_ref for order in pending_orders}
            removed = []
            for stop in route.pending_stops:
                if stop.order_ref not in wanted:
                    stop.status = "cancelled"
                    stop.completed_at = now
                    stop.reason = RECALCULATION_REMOVAL_REASON
                    removed.append(stop.order_ref)

            start = origin if origin is not None else (_anchor(route) or _first_resolved(pending_orders))
            optimizer = self._optimizer([start, *(order.coordinates for order in pending_orders)])
            result = optimizer.order(start, pending_orders)

            pending: list[Stop] = []
            added = []
            for placement in result.placements:
                order = placement.item
                stop = route.find_stop(order.order_ref)
                if stop is None:
                    stop = _new_stop(order, 0, placement.leg)
                    route.stops.append(stop)
                    added.append(order.order_ref)
                else:
                    stop.priority = order.priority
                    stop.latitude = order.latitude
                    stop.longitude = order.longitude
                    stop.address = order.address or stop.address
                    _set_leg(stop, placement.leg)
                pending.append(stop)

            _arrange(route, pending)
            _refresh_totals(route)
            route.metrics = optimizer.analyze(result.placements)
            self._record(
                route,
                "recalculated",
                f"Route recalculated for {len(pending)} pending deliveries",
                {
                    "pending_count": len(pending),
                    "origin": list(start) if start is not None else None,
                    "added": added,
                    "removed": removed,
                    "unresolved": result.unresolved,
                },
            )

        route = self._mutate(route_id, apply)
        logger.info(f"Recalculated route {route_id}: {len(route.pending_stops)} pending stops")
        return route

    def end_shift(self, route_id: str) -> None:
        """Archive the route. No operation may change it afterwards."""

        def apply(route: Route) -> None:
            route.ended_at = self._clock()
            self._record(
                route,
                "completed",
                "Shift ended and route archived",
                {"shift_ended": True, "pending_count": len(route.pending_stops)},
            )

        self._mutate(route_id, apply)
        logger.info(f"Shift ended for route {route_id}")


@lru_cache()
def get_route_manager() -> RouteManager:
    """Process-wide manager over the configured store."""
    return RouteManager(build_route_store())
