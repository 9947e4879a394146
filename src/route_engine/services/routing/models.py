"""Routing result models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional

from .estimator import Estimate


@dataclass(slots=True)
class Placement:
    item: Any
    leg: Estimate


@dataclass(slots=True)
class OrderingResult:
    placements: List[Placement]
    unresolved: List[str] = field(default_factory=list)

    @property
    def total_distance_km(self) -> float:
        return sum(placement.leg.distance_km for placement in self.placements)

    @property
    def total_time_min(self) -> float:
        return sum(placement.leg.time_min for placement in self.placements)


@dataclass(slots=True)
class InsertionResult:
    position: int
    added_distance_km: float
    leg: Estimate
    next_leg: Optional[Estimate]
