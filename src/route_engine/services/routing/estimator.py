"""Leg distance and travel-time estimation between two points.

Estimators are pure: any network lookup happens up front in
:func:`build_table_estimator`, so ordering never blocks on I/O. An unresolved
point (``None``) never raises; it yields :data:`UNKNOWN_ESTIMATE`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

import httpx

from ...config import settings
from ...models.domain import Coordinates
from ..geospatial import haversine_km, road_adjusted_km, travel_time_min
from .osrm_client import OSRMClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Estimate:
    distance_km: float
    time_min: float
    resolved: bool = True


UNKNOWN_ESTIMATE = Estimate(distance_km=0.0, time_min=0.0, resolved=False)


class GeoEstimator(Protocol):
    def estimate(self, origin: Optional[Coordinates], destination: Optional[Coordinates]) -> Estimate:
        ...


class HaversineEstimator:
    """Straight-line or road-adjusted distance with speed-derived travel time."""

    def __init__(
        self,
        *,
        distance_model: str | None = None,
        average_speed_kmh: float | None = None,
        buffer_per_km: float | None = None,
        buffer_cap: float | None = None,
    ) -> None:
        self.distance_model = distance_model or settings.distance_model
        self.average_speed_kmh = average_speed_kmh or settings.average_speed_kmh
        self.buffer_per_km = buffer_per_km if buffer_per_km is not None else settings.traffic_buffer_min_per_km
        self.buffer_cap = buffer_cap if buffer_cap is not None else settings.traffic_buffer_cap_min

    def estimate(self, origin: Optional[Coordinates], destination: Optional[Coordinates]) -> Estimate:
        if origin is None or destination is None:
            return UNKNOWN_ESTIMATE
        if self.distance_model == "haversine":
            distance = haversine_km(origin[0], origin[1], destination[0], destination[1])
        else:
            distance = road_adjusted_km(origin[0], origin[1], destination[0], destination[1])
        minutes = travel_time_min(distance, self.average_speed_kmh, self.buffer_per_km, self.buffer_cap)
        return Estimate(distance_km=distance, time_min=minutes)


def _key(point: Coordinates) -> tuple[float, float]:
    return (round(point[0], 6), round(point[1], 6))


class TableEstimator:
    """Looks legs up in a precomputed table, falling back for missing pairs."""

    def __init__(
        self,
        points: Sequence[Coordinates],
        durations_s: Sequence[Sequence[float | None]],
        distances_m: Sequence[Sequence[float | None]],
        fallback: GeoEstimator,
    ) -> None:
        self.fallback = fallback
        self._legs: dict[tuple[tuple[float, float], tuple[float, float]], Estimate] = {}
        for i, origin in enumerate(points):
            for j, destination in enumerate(points):
                duration = durations_s[i][j]
                distance = distances_m[i][j]
                if duration is None or distance is None:
                    continue
                self._legs[(_key(origin), _key(destination))] = Estimate(
                    distance_km=distance / 1000.0,
                    time_min=duration / 60.0,
                )

    def estimate(self, origin: Optional[Coordinates], destination: Optional[Coordinates]) -> Estimate:
        if origin is None or destination is None:
            return UNKNOWN_ESTIMATE
        leg = self._legs.get((_key(origin), _key(destination)))
        if leg is None:
            return self.fallback.estimate(origin, destination)
        return leg


def build_table_estimator(
    points: Sequence[Optional[Coordinates]],
    *,
    client: OSRMClient | None = None,
    fallback: GeoEstimator | None = None,
) -> GeoEstimator:
    """Fetch an OSRM table for the resolved points, or return the math fallback."""
    fallback = fallback or HaversineEstimator()
    unique: list[Coordinates] = []
    seen: set[tuple[float, float]] = set()
    for point in points:
        if point is None or _key(point) in seen:
            continue
        seen.add(_key(point))
        unique.append(point)
    if len(unique) < 2:
        return fallback

    try:
        client = client or OSRMClient()
        table = client.table(unique)
    except (ConnectionError, ValueError, httpx.HTTPError) as e:
        logger.warning(f"OSRM table request failed: {e}. Using haversine fallback.")
        return fallback
    return TableEstimator(unique, table["durations"], table["distances"], fallback)


def default_estimator_provider(points: Sequence[Optional[Coordinates]]) -> GeoEstimator:
    """Pick the estimator for one operation from the configured capabilities."""
    if settings.osrm_base_url:
        return build_table_estimator(points)
    return HaversineEstimator()
