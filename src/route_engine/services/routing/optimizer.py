"""Stop ordering: priority-weighted nearest neighbor and cheapest insertion.

Both algorithms work on any item exposing ``order_ref``, ``priority`` and
``coordinates`` (orders waiting for a route as well as stops already on one).
Items without coordinates cannot be costed; they are placed after every
resolved item, keep their input order, and are reported as unresolved.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Mapping, Optional, Sequence

from ...config import settings
from ...models.domain import Coordinates
from .estimator import Estimate, GeoEstimator, HaversineEstimator, UNKNOWN_ESTIMATE
from .models import InsertionResult, OrderingResult, Placement

logger = logging.getLogger(__name__)

STARTING_LEG = Estimate(distance_km=0.0, time_min=0.0)


class RouteOptimizer:
    def __init__(
        self,
        estimator: GeoEstimator | None = None,
        priority_bonus_km: Mapping[str, float] | None = None,
    ) -> None:
        self.estimator = estimator or HaversineEstimator()
        self.priority_bonus_km = dict(priority_bonus_km or settings.priority_bonus_km)

    def priority_bonus(self, priority: str) -> float:
        return self.priority_bonus_km.get(priority, self.priority_bonus_km.get("normal", 0.0))

    def leg(self, origin: Optional[Coordinates], destination: Optional[Coordinates]) -> Estimate:
        if destination is None:
            return UNKNOWN_ESTIMATE
        # No origin means the route starts at this stop.
        if origin is None:
            return STARTING_LEG
        return self.estimator.estimate(origin, destination)

    def order(self, origin: Optional[Coordinates], stops: Sequence[Any]) -> OrderingResult:
        """Sequence every stop, greedily picking the cheapest next candidate.

        Candidate cost is ``distance(current, candidate) - bonus(priority)``.
        Equal costs keep input order.
        """
        remaining = [stop for stop in stops if stop.coordinates is not None]
        unresolved = [stop for stop in stops if stop.coordinates is None]
        if unresolved:
            logger.warning(
                f"{len(unresolved)} stop(s) have no coordinates and will be placed last: "
                f"{', '.join(stop.order_ref for stop in unresolved)}"
            )

        placements: list[Placement] = []
        current = origin
        while remaining:
            best_index = 0
            best_cost = math.inf
            best_leg = UNKNOWN_ESTIMATE
            for index, candidate in enumerate(remaining):
                leg = self.leg(current, candidate.coordinates)
                cost = leg.distance_km - self.priority_bonus(candidate.priority) if leg.resolved else math.inf
                if cost < best_cost:
                    best_index, best_cost, best_leg = index, cost, leg
            chosen = remaining.pop(best_index)
            placements.append(Placement(item=chosen, leg=best_leg))
            current = chosen.coordinates

        placements.extend(Placement(item=stop, leg=UNKNOWN_ESTIMATE) for stop in unresolved)
        return OrderingResult(
            placements=placements,
            unresolved=[placement.item.order_ref for placement in placements if not placement.leg.resolved],
        )

    def insert(self, anchor: Optional[Coordinates], pending: Sequence[Any], new_stop: Any) -> InsertionResult:
        """Find the cheapest slot for ``new_stop`` without reordering ``pending``.

        Slot ``i`` places the new stop before ``pending[i]``; slot ``len(pending)``
        appends it. The added distance of a slot is
        ``d(prev, new) + d(new, next) - d(prev, next)``. Placing the new stop ahead
        of a lower-priority stop earns the difference between their bonuses.
        """
        target = new_stop.coordinates
        resolved_prefix = 0
        for stop in pending:
            if stop.coordinates is None:
                break
            resolved_prefix += 1

        if target is None:
            return InsertionResult(
                position=len(pending),
                added_distance_km=0.0,
                leg=UNKNOWN_ESTIMATE,
                next_leg=None,
            )

        best_cost = math.inf
        best_position = 0
        candidates: list[InsertionResult] = []
        for position in range(resolved_prefix + 1):
            prev_point = anchor if position == 0 else pending[position - 1].coordinates
            following = pending[position] if position < resolved_prefix else None

            leg = self.leg(prev_point, target)
            if following is None:
                next_leg = None
                added = leg.distance_km
                cost = added
            else:
                next_leg = self.estimator.estimate(target, following.coordinates)
                replaced = self.leg(prev_point, following.coordinates)
                added = leg.distance_km + next_leg.distance_km - replaced.distance_km
                advantage = self.priority_bonus(new_stop.priority) - self.priority_bonus(following.priority)
                cost = added - max(0.0, advantage)

            candidates.append(InsertionResult(position=position, added_distance_km=added, leg=leg, next_leg=next_leg))
            if cost < best_cost:
                best_cost = cost
                best_position = position

        return candidates[best_position]

    def analyze(self, placements: Sequence[Placement]) -> dict:
        """Segment statistics for a sequenced route."""
        segments = [placement.leg.distance_km for placement in placements if placement.leg.resolved]
        if not segments:
            return {
                "algorithm": "priority_nearest_neighbor",
                "average_segment_km": 0.0,
                "longest_segment_km": 0.0,
                "shortest_segment_km": 0.0,
                "clustering_score": 0.0,
            }
        average = sum(segments) / len(segments)
        variance = sum((segment - average) ** 2 for segment in segments) / len(segments)
        return {
            "algorithm": "priority_nearest_neighbor",
            "average_segment_km": average,
            "longest_segment_km": max(segments),
            "shortest_segment_km": min(segments),
            "clustering_score": max(0.0, 100.0 - math.sqrt(variance)),
        }
