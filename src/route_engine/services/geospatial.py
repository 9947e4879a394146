"""Geospatial helper functions."""

from __future__ import annotations

import math

EARTH_RADIUS_KM = 6371.0
KM_PER_DEGREE_LAT = 111.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Compute distance between two coordinates using the Haversine formula."""

    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def manhattan_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Approximate grid distance, closer to street travel over short hops."""

    lat_km = abs(lat2 - lat1) * KM_PER_DEGREE_LAT
    lon_km = abs(lon2 - lon1) * KM_PER_DEGREE_LAT * math.cos(math.radians((lat1 + lat2) / 2))
    return lat_km + lon_km


def road_adjusted_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Estimate street distance by blending grid and great-circle distance.

    Short hops follow the street grid, long hops follow arterials, so the blend
    shifts from Manhattan to haversine as the straight-line distance grows.
    """

    straight = haversine_km(lat1, lon1, lat2, lon2)
    grid = manhattan_km(lat1, lon1, lat2, lon2)
    if straight < 2.0:
        return grid * 1.1
    if straight < 10.0:
        weight = straight / 10.0
        return (grid * (1 - weight) + straight * weight) * 1.25
    return straight * 1.3


def travel_time_min(distance_km: float, speed_kmh: float, buffer_per_km: float = 0.0, buffer_cap: float = 0.0) -> float:
    """Driving minutes for a leg plus a capped per-km buffer for stops and traffic."""

    driving = distance_km / speed_kmh * 60.0
    return driving + min(distance_km * buffer_per_km, buffer_cap)
