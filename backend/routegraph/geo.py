from __future__ import annotations

from typing import Sequence

import numpy as np

EARTH_RADIUS_KM = 6371.0088

# Average door-to-door speeds used when a provider row lacks a duration.
CRUISE_SPEED_KMH: dict[str, float] = {
    "air": 550.0,
    "bus": 60.0,
    "ferry": 25.0,
    "rail": 70.0,
    "taxi": 75.0,
}
# Fixed overhead (boarding, taxiing, loading) added to estimated durations.
FIXED_OVERHEAD_MIN: dict[str, float] = {
    "air": 45.0,
    "bus": 10.0,
    "ferry": 20.0,
    "rail": 10.0,
    "taxi": 0.0,
}
# Roads and rivers are longer than the great circle.
DETOUR_FACTOR: dict[str, float] = {
    "air": 1.0,
    "bus": 1.25,
    "ferry": 1.35,
    "rail": 1.2,
    "taxi": 1.25,
}


def haversine_km(
    lat1: Sequence[float] | np.ndarray,
    lon1: Sequence[float] | np.ndarray,
    lat2: Sequence[float] | np.ndarray,
    lon2: Sequence[float] | np.ndarray,
) -> np.ndarray:
    """Great-circle distance for aligned coordinate arrays, in kilometres."""
    p1 = np.radians(np.asarray(lat1, dtype=float))
    p2 = np.radians(np.asarray(lat2, dtype=float))
    dp = p2 - p1
    dl = np.radians(np.asarray(lon2, dtype=float) - np.asarray(lon1, dtype=float))
    a = np.sin(dp / 2.0) ** 2 + np.cos(p1) * np.cos(p2) * np.sin(dl / 2.0) ** 2
    return 2.0 * EARTH_RADIUS_KM * np.arcsin(np.sqrt(np.clip(a, 0.0, 1.0)))


def estimate_distance_km(transport_type: str, great_circle_km: float) -> float:
    return float(great_circle_km) * DETOUR_FACTOR.get(transport_type, 1.25)


def estimate_duration_min(transport_type: str, distance_km: float) -> float:
    speed = CRUISE_SPEED_KMH.get(transport_type, 50.0)
    overhead = FIXED_OVERHEAD_MIN.get(transport_type, 0.0)
    return round((max(0.0, float(distance_km)) / speed) * 60.0 + overhead, 1)
