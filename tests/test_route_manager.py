import random
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from route_engine.models.domain import DeliveryOrder, Route
from route_engine.persistence import InMemoryRouteStore
from route_engine.services.routing.errors import (
    ConcurrencyConflict,
    InvalidRequest,
    InvalidTransition,
    RouteAlreadyActive,
    RouteArchived,
    RouteNotFound,
    StopNotFound,
    StoreError,
)
from route_engine.services.routing.estimator import HaversineEstimator
from route_engine.services.routing.manager import RECALCULATION_REMOVAL_REASON, RouteManager

ORIGIN = (0.0, 0.0)
ESTIMATOR = HaversineEstimator(distance_model="haversine", average_speed_kmh=60.0, buffer_per_km=0.0, buffer_cap=0.0)


class Clock:
    """Deterministic clock that advances one minute per reading."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(minutes=1)
        return self.now


def _manager(store=None, clock=None, **kwargs) -> RouteManager:
    return RouteManager(
        store or InMemoryRouteStore(),
        estimator_provider=lambda points: ESTIMATOR,
        priority_bonus_km={"low": 0.0, "normal": 0.5, "high": 1.5, "urgent": 3.0},
        clock=clock or Clock(),
        **kwargs,
    )


def _order(ref: str, lat: float | None, lon: float | None, priority: str = "normal") -> DeliveryOrder:
    return DeliveryOrder(order_ref=ref, priority=priority, latitude=lat, longitude=lon, address=f"{ref} Street")


def _three_stop_route(manager: RouteManager) -> Route:
    orders = [_order("C", 0.0, 0.03), _order("A", 0.0, 0.01), _order("B", 0.0, 0.02)]
    return manager.create_optimized_route("driver-1", orders, origin=ORIGIN)


def _leg(a, b) -> float:
    return ESTIMATOR.estimate(a, b).distance_km


def _assert_consistent(route: Route) -> None:
    pending = route.pending_stops
    assert sorted(stop.sequence_index for stop in pending) == list(range(len(pending)))
    assert route.total_distance_km == pytest.approx(
        route.completed_distance_km + sum(stop.estimated_distance_km for stop in pending)
    )
    assert route.total_time_min == pytest.approx(
        route.completed_time_min + sum(stop.estimated_time_min for stop in pending)
    )


def test_create_orders_stops_and_records_history() -> None:
    route = _three_stop_route(_manager())

    assert [stop.order_ref for stop in route.stops] == ["A", "B", "C"]
    assert [stop.sequence_index for stop in route.stops] == [0, 1, 2]
    assert route.completed_distance_km == 0.0
    assert route.total_distance_km == pytest.approx(_leg(ORIGIN, (0.0, 0.03)))
    assert route.version == 1
    assert route.origin == ORIGIN
    assert [entry.action for entry in route.history] == ["created"]
    assert route.history[0].stop_count == 3
    assert route.history[0].total_distance_km == pytest.approx(route.total_distance_km)
    assert route.metrics["algorithm"] == "priority_nearest_neighbor"
    _assert_consistent(route)


def test_create_defaults_origin_to_first_resolved_order() -> None:
    route = _manager().create_optimized_route("driver-1", [_order("X", None, None), _order("A", 0.0, 0.01)])

    assert route.origin == (0.0, 0.01)
    assert route.stops[0].order_ref == "A"
    assert route.stops[0].estimated_distance_km == 0.0


def test_create_with_no_orders_gives_an_empty_active_route() -> None:
    route = _manager().create_optimized_route("driver-1", [])

    assert route.stops == []
    assert route.is_active
    assert route.total_distance_km == 0.0


def test_second_active_route_for_driver_is_rejected() -> None:
    manager = _manager()
    first = _three_stop_route(manager)

    with pytest.raises(RouteAlreadyActive) as excinfo:
        manager.create_optimized_route("driver-1", [_order("Z", 0.0, 0.04)])

    assert excinfo.value.route_id == first.id
    assert "end it before starting a new one" in str(excinfo.value)
    assert [route.id for route in manager.list_driver_routes("driver-1")] == [first.id]


def test_driver_can_start_again_after_ending_shift() -> None:
    manager = _manager()
    first = _three_stop_route(manager)
    manager.end_shift(first.id)

    second = manager.create_optimized_route("driver-1", [_order("Z", 0.0, 0.04)])

    assert second.id != first.id
    assert manager.get_current_route("driver-1").id == second.id
    assert len(manager.list_driver_routes("driver-1")) == 2


def test_create_rejects_malformed_orders() -> None:
    manager = _manager()

    with pytest.raises(InvalidRequest):
        manager.create_optimized_route("driver-1", [_order("A", 0.0, 0.01), _order("A", 0.0, 0.02)])
    with pytest.raises(InvalidRequest):
        manager.create_optimized_route("driver-1", [DeliveryOrder(order_ref="A", priority="critical")])
    with pytest.raises(InvalidRequest):
        manager.create_optimized_route("driver-1", [DeliveryOrder(order_ref="A", latitude=1.0)])

    assert manager.get_current_route("driver-1") is None


def test_get_current_route_is_scoped_to_the_shift_window() -> None:
    clock = Clock()
    manager = _manager(clock=clock, shift_window_hours=12)
    route = _three_stop_route(manager)

    assert manager.get_current_route("driver-1").id == route.id
    assert manager.get_current_route("driver-2") is None

    clock.now += timedelta(hours=13)
    assert manager.get_current_route("driver-1") is None
    # The stale route still blocks a new one until it is ended.
    with pytest.raises(RouteAlreadyActive):
        manager.create_optimized_route("driver-1", [])


def test_get_route_reads_archived_routes() -> None:
    manager = _manager()
    route = _three_stop_route(manager)
    manager.end_shift(route.id)

    archived = manager.get_route(route.id)

    assert not archived.is_active
    with pytest.raises(RouteNotFound):
        manager.get_route("missing")


def test_complete_delivery_accounts_actual_values() -> None:
    manager = _manager()
    route = _three_stop_route(manager)

    updated = manager.complete_delivery(route.id, "A", actual_time_min=10, actual_distance_km=4.2)

    a = updated.find_stop("A")
    assert a.status == "completed"
    assert a.completed_at is not None
    assert updated.completed_distance_km == pytest.approx(4.2)
    assert updated.completed_time_min == pytest.approx(10)
    b, c = updated.find_stop("B"), updated.find_stop("C")
    assert updated.total_distance_km == pytest.approx(4.2 + b.estimated_distance_km + c.estimated_distance_km)
    assert [(stop.order_ref, stop.sequence_index) for stop in updated.pending_stops] == [("B", 0), ("C", 1)]
    assert updated.history[-1].action == "completed"
    assert updated.history[-1].metadata["actual_distance_km"] == 4.2
    assert updated.history[:-1] == route.history
    assert updated.version == 2
    _assert_consistent(updated)


def test_complete_without_actuals_uses_the_estimate() -> None:
    manager = _manager()
    route = _three_stop_route(manager)
    estimate = route.find_stop("A").estimated_distance_km

    updated = manager.complete_delivery(route.id, "A")

    assert updated.completed_distance_km == pytest.approx(estimate)
    assert updated.total_distance_km == pytest.approx(route.total_distance_km)


def test_complete_rejects_unknown_and_terminal_stops() -> None:
    manager = _manager()
    route = _three_stop_route(manager)
    manager.complete_delivery(route.id, "A")

    with pytest.raises(StopNotFound):
        manager.complete_delivery(route.id, "nope")
    with pytest.raises(InvalidTransition):
        manager.complete_delivery(route.id, "A")
    with pytest.raises(InvalidRequest):
        manager.complete_delivery(route.id, "B", actual_distance_km=-1)
    with pytest.raises(RouteNotFound):
        manager.complete_delivery("missing", "A")

    assert manager.get_route(route.id).version == 2


def test_cancel_delivery_relinks_the_following_stop() -> None:
    manager = _manager()
    route = _three_stop_route(manager)
    a_estimate = route.find_stop("A").estimated_distance_km

    updated = manager.cancel_delivery(route.id, "B", reason="customer refused")

    b = updated.find_stop("B")
    c = updated.find_stop("C")
    assert b.status == "cancelled"
    assert b.reason == "customer refused"
    assert c.estimated_distance_km == pytest.approx(_leg((0.0, 0.01), (0.0, 0.03)))
    assert updated.total_distance_km == pytest.approx(a_estimate + c.estimated_distance_km)
    assert updated.completed_distance_km == 0.0
    assert updated.history[-1].action == "cancelled"
    assert updated.history[-1].metadata["reason"] == "customer refused"
    assert "customer refused" in updated.history[-1].description
    assert len(updated.stops) == 3
    _assert_consistent(updated)


def test_cancel_first_pending_stop_relinks_from_last_completed_stop() -> None:
    manager = _manager()
    route = _three_stop_route(manager)
    manager.complete_delivery(route.id, "A")

    updated = manager.cancel_delivery(route.id, "B", reason="closed")

    assert updated.find_stop("C").estimated_distance_km == pytest.approx(_leg((0.0, 0.01), (0.0, 0.03)))
    assert [stop.order_ref for stop in updated.pending_stops] == ["C"]
    _assert_consistent(updated)


def test_cancel_rejects_terminal_stop() -> None:
    manager = _manager()
    route = _three_stop_route(manager)
    manager.cancel_delivery(route.id, "C", reason="duplicate")

    with pytest.raises(InvalidTransition):
        manager.cancel_delivery(route.id, "C", reason="again")


def test_fail_delivery_counts_the_leg_as_driven() -> None:
    manager = _manager()
    route = _three_stop_route(manager)
    a_estimate = route.find_stop("A").estimated_distance_km

    updated = manager.fail_delivery(route.id, "A", reason="nobody home")

    assert updated.find_stop("A").status == "failed"
    assert updated.find_stop("A").reason == "nobody home"
    assert updated.completed_distance_km == pytest.approx(a_estimate)
    assert updated.history[-1].action == "updated"
    assert updated.history[-1].metadata["reason"] == "nobody home"
    _assert_consistent(updated)


def test_add_delivery_uses_cheapest_insertion() -> None:
    manager = _manager()
    route = _three_stop_route(manager)

    updated = manager.add_delivery_to_route(route.id, _order("D", 0.002, 0.015))

    assert [stop.order_ref for stop in updated.pending_stops] == ["A", "D", "B", "C"]
    d, b = updated.find_stop("D"), updated.find_stop("B")
    assert d.estimated_distance_km == pytest.approx(_leg((0.0, 0.01), (0.002, 0.015)))
    assert b.estimated_distance_km == pytest.approx(_leg((0.002, 0.015), (0.0, 0.02)))
    assert updated.history[-1].action == "updated"
    assert updated.history[-1].stop_count == 4
    _assert_consistent(updated)


def test_add_delivery_matches_brute_force_minimum() -> None:
    manager = _manager()
    route = manager.create_optimized_route(
        "driver-1",
        [_order("A", 0.0, 0.01), _order("B", 0.01, 0.03), _order("C", 0.0, 0.05)],
        origin=ORIGIN,
    )
    chain = [ORIGIN] + [stop.coordinates for stop in route.pending_stops]
    new_point = (0.012, 0.02)

    def added(position: int) -> float:
        leg = _leg(chain[position], new_point)
        if position + 1 == len(chain):
            return leg
        return leg + _leg(new_point, chain[position + 1]) - _leg(chain[position], chain[position + 1])

    expected = min(range(len(chain)), key=added)
    updated = manager.add_delivery_to_route(route.id, _order("D", *new_point))

    assert updated.find_stop("D").sequence_index == expected
    _assert_consistent(updated)


def test_add_delivery_starts_from_the_last_completed_stop() -> None:
    manager = _manager()
    route = _three_stop_route(manager)
    manager.complete_delivery(route.id, "A")
    manager.complete_delivery(route.id, "B")

    updated = manager.add_delivery_to_route(route.id, _order("D", 0.0, 0.025))

    assert [stop.order_ref for stop in updated.pending_stops] == ["D", "C"]
    assert updated.find_stop("D").estimated_distance_km == pytest.approx(_leg((0.0, 0.02), (0.0, 0.025)))


def test_add_delivery_rejects_duplicate_order() -> None:
    manager = _manager()
    route = _three_stop_route(manager)

    with pytest.raises(InvalidRequest):
        manager.add_delivery_to_route(route.id, _order("B", 0.0, 0.02))


def test_unresolved_delivery_is_placed_last_with_a_warning() -> None:
    manager = _manager()
    route = _three_stop_route(manager)

    updated = manager.add_delivery_to_route(route.id, _order("LOST", None, None, priority="urgent"))

    lost = updated.pending_stops[-1]
    assert lost.order_ref == "LOST"
    assert not lost.estimate_resolved
    assert lost.estimated_distance_km == 0.0
    assert [warning.order_ref for warning in updated.warnings] == ["LOST"]
    assert [warning.order_ref for warning in manager.get_route(route.id).warnings] == ["LOST"]
    _assert_consistent(updated)


def test_recalculate_is_deterministic_and_keeps_terminal_stops() -> None:
    manager = _manager()
    route = _three_stop_route(manager)
    manager.complete_delivery(route.id, "A", actual_distance_km=1.5)
    pending = [_order("C", 0.0, 0.03), _order("B", 0.0, 0.02, priority="high"), _order("E", 0.001, 0.035)]

    first = manager.recalculate_route(route.id, pending)
    second = manager.recalculate_route(route.id, pending)

    assert [stop.order_ref for stop in first.pending_stops] == [stop.order_ref for stop in second.pending_stops]
    assert [stop.order_ref for stop in first.pending_stops] == ["B", "C", "E"]
    assert second.find_stop("A") == first.find_stop("A")
    assert second.find_stop("A").status == "completed"
    assert second.completed_distance_km == pytest.approx(1.5)
    assert second.history[: len(first.history)] == first.history
    assert [entry.action for entry in second.history] == ["created", "completed", "recalculated", "recalculated"]
    _assert_consistent(second)


def test_recalculate_cancels_pending_stops_left_out() -> None:
    manager = _manager()
    route = _three_stop_route(manager)

    updated = manager.recalculate_route(route.id, [_order("C", 0.0, 0.03)], origin=(0.0, 0.04))

    assert [stop.order_ref for stop in updated.pending_stops] == ["C"]
    assert updated.find_stop("A").status == "cancelled"
    assert updated.find_stop("A").reason == RECALCULATION_REMOVAL_REASON
    assert updated.find_stop("C").estimated_distance_km == pytest.approx(_leg((0.0, 0.04), (0.0, 0.03)))
    assert updated.origin == ORIGIN
    assert updated.history[-1].metadata["removed"] == ["A", "B"]
    _assert_consistent(updated)


def test_recalculate_rejects_terminal_stop_in_pending_set() -> None:
    manager = _manager()
    route = _three_stop_route(manager)
    manager.complete_delivery(route.id, "A")

    with pytest.raises(InvalidTransition):
        manager.recalculate_route(route.id, [_order("A", 0.0, 0.01), _order("B", 0.0, 0.02)])

    stored = manager.get_route(route.id)
    assert [stop.order_ref for stop in stored.pending_stops] == ["B", "C"]


def test_end_shift_archives_route_once() -> None:
    manager = _manager()
    route = _three_stop_route(manager)

    assert manager.end_shift(route.id) is None
    ended = manager.get_route(route.id)

    with pytest.raises(RouteArchived):
        manager.end_shift(route.id)

    again = manager.get_route(route.id)
    assert again.ended_at == ended.ended_at
    assert again.history == ended.history
    assert ended.history[-1].action == "completed"
    assert manager.get_current_route("driver-1") is None


def test_route_locks_are_released_after_use() -> None:
    manager = _manager()

    for _ in range(50):
        with pytest.raises(RouteNotFound):
            manager.end_shift(str(uuid.uuid4()))
    assert manager._locks == {}

    route = _three_stop_route(manager)
    manager.complete_delivery(route.id, "A")
    manager.end_shift(route.id)
    assert manager._locks == {}


class SettableClock:
    """Clock that stays where the test puts it."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def test_history_keeps_append_order_when_clock_steps_back() -> None:
    clock = SettableClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))
    manager = _manager(clock=clock)
    route = _three_stop_route(manager)

    clock.now = datetime(2026, 3, 2, 8, 59, tzinfo=timezone.utc)
    manager.end_shift(route.id)

    reloaded = manager.get_route(route.id)
    assert [entry.action for entry in reloaded.history] == ["created", "completed"]
    assert reloaded.history[1].timestamp < reloaded.history[0].timestamp


@pytest.mark.parametrize(
    "operation",
    [
        lambda m, rid: m.complete_delivery(rid, "A"),
        lambda m, rid: m.fail_delivery(rid, "A", reason="x"),
        lambda m, rid: m.cancel_delivery(rid, "A", reason="x"),
        lambda m, rid: m.add_delivery_to_route(rid, DeliveryOrder(order_ref="Z")),
        lambda m, rid: m.recalculate_route(rid, []),
    ],
)
def test_archived_route_rejects_every_mutation(operation) -> None:
    manager = _manager()
    route = _three_stop_route(manager)
    manager.end_shift(route.id)
    before = manager.get_route(route.id)

    with pytest.raises(RouteArchived):
        operation(manager, route.id)

    after = manager.get_route(route.id)
    assert after.stops == before.stops
    assert after.history == before.history
    assert after.version == before.version


class FlakyStore(InMemoryRouteStore):
    """Loses the optimistic-concurrency race a fixed number of times."""

    def __init__(self, conflicts: int = 0, fail_with: Exception | None = None) -> None:
        super().__init__()
        self.conflicts = conflicts
        self.fail_with = fail_with
        self.saves = 0

    def save(self, route, expected_version):
        self.saves += 1
        if self.fail_with is not None:
            raise self.fail_with
        if self.conflicts:
            self.conflicts -= 1
            raise ConcurrencyConflict(route.id, expected_version, expected_version + 1)
        return super().save(route, expected_version)


def test_conflicting_save_is_retried() -> None:
    store = FlakyStore(conflicts=2)
    manager = _manager(store=store, max_conflict_retries=3)
    route = _three_stop_route(manager)

    updated = manager.complete_delivery(route.id, "A")

    assert store.saves == 3
    assert updated.version == 2
    assert [entry.action for entry in updated.history] == ["created", "completed"]


def test_conflict_propagates_after_retries_and_leaves_route_untouched() -> None:
    store = FlakyStore(conflicts=5)
    manager = _manager(store=store, max_conflict_retries=1)
    route = _three_stop_route(manager)

    with pytest.raises(ConcurrencyConflict):
        manager.complete_delivery(route.id, "A")

    stored = manager.get_route(route.id)
    assert stored.find_stop("A").status == "pending"
    assert stored.version == 1


def test_store_failure_means_nothing_happened() -> None:
    store = FlakyStore(fail_with=StoreError("database unreachable"))
    manager = _manager(store=store)
    route = _three_stop_route(manager)

    with pytest.raises(StoreError):
        manager.cancel_delivery(route.id, "B", reason="closed")

    stored = manager.get_route(route.id)
    assert stored.find_stop("B").status == "pending"
    assert stored.history == route.history


def test_stale_snapshot_cannot_overwrite_newer_route() -> None:
    store = InMemoryRouteStore()
    manager = _manager(store=store)
    route = _three_stop_route(manager)
    stale = store.get(route.id)
    manager.complete_delivery(route.id, "A")

    stale.find_stop("B").status = "cancelled"
    with pytest.raises(ConcurrencyConflict):
        store.save(stale, stale.version)

    assert store.get(route.id).find_stop("B").status == "pending"


@pytest.mark.parametrize("seed", [1, 7, 42, 2026])
def test_random_operation_sequences_keep_route_consistent(seed: int) -> None:
    rng = random.Random(seed)
    manager = _manager()

    def random_order(ref: str) -> DeliveryOrder:
        if rng.random() < 0.1:
            return DeliveryOrder(order_ref=ref, priority=rng.choice(["low", "normal", "high", "urgent"]))
        return _order(ref, rng.uniform(-0.05, 0.05), rng.uniform(-0.05, 0.05), rng.choice(["low", "normal", "high", "urgent"]))

    counter = 0
    orders = []
    for _ in range(6):
        counter += 1
        orders.append(random_order(f"O{counter}"))
    route = manager.create_optimized_route("driver-r", orders, origin=ORIGIN)
    _assert_consistent(route)

    for _ in range(40):
        pending = route.pending_stops
        choice = rng.choice(["complete", "fail", "cancel", "add", "recalculate"])
        completed_before = (route.completed_distance_km, route.completed_time_min)
        history_before = list(route.history)

        if choice in {"complete", "fail", "cancel"} and pending:
            target = rng.choice(pending).order_ref
            if choice == "complete":
                actual = rng.choice([None, rng.uniform(0.1, 5.0)])
                route = manager.complete_delivery(route.id, target, actual_distance_km=actual)
            elif choice == "fail":
                route = manager.fail_delivery(route.id, target, reason="refused")
            else:
                route = manager.cancel_delivery(route.id, target, reason="cancelled by customer")
        elif choice == "recalculate":
            kept = [
                DeliveryOrder(stop.order_ref, stop.priority, stop.latitude, stop.longitude)
                for stop in pending
                if rng.random() < 0.8
            ]
            counter += 1
            route = manager.recalculate_route(route.id, kept + [random_order(f"O{counter}")])
        else:
            counter += 1
            route = manager.add_delivery_to_route(route.id, random_order(f"O{counter}"))

        _assert_consistent(route)
        assert route.completed_distance_km >= completed_before[0]
        assert route.completed_time_min >= completed_before[1]
        assert route.history[: len(history_before)] == history_before
        assert manager.get_route(route.id).version == route.version

    manager.end_shift(route.id)
    with pytest.raises(RouteArchived):
        manager.end_shift(route.id)
