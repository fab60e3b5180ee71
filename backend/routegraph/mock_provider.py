"""Deterministic synthetic dataset used when neither the provider nor the caches can serve data.

The network is a small model of the Yakutia (Sakha) transport system: regional
airports radiating from Yakutsk, the Lena river ferry line, and the few all-season
bus corridors. Every value is derived from static tables so repeated calls return
identical payloads.
"""

from __future__ import annotations

import hashlib
from datetime import UTC, datetime
from typing import Any

from .errors import DataLoadError, ErrorKind
from .geo import estimate_distance_km, estimate_duration_min, haversine_km
from .logging_utils import log_event

# city, lat, lon, kinds of stops present
_CITIES: tuple[tuple[str, str, float, float, tuple[str, ...]], ...] = (
    ("yks", "Якутск", 62.0281, 129.7326, ("airport", "bus_station", "port")),
    ("mjz", "Мирный", 62.5347, 113.9611, ("airport", "bus_station")),
    ("nrg", "Нерюнгри", 56.6599, 124.6496, ("airport", "bus_station")),
    ("lnk", "Ленск", 60.7253, 114.9264, ("airport", "port")),
    ("olk", "Олекминск", 60.3744, 120.4264, ("airport", "port")),
    ("pkv", "Покровск", 61.4843, 129.1482, ("bus_station", "port")),
    ("ald", "Алдан", 58.6031, 125.3894, ("bus_station",)),
    ("vlk", "Вилюйск", 63.7553, 121.6247, ("airport", "bus_station")),
    ("tks", "Тикси", 71.6369, 128.8717, ("airport", "port")),
    ("vrh", "Верхоянск", 67.5447, 133.3850, ("airport",)),
)

_KIND_LABELS: dict[str, str] = {
    "airport": "Аэропорт",
    "bus_station": "Автовокзал",
    "port": "Речной порт",
}

_KIND_OFFSETS: dict[str, tuple[float, float]] = {
    "airport": (0.012, -0.021),
    "bus_station": (0.0, 0.0),
    "port": (-0.009, 0.014),
}

# (from city, to city, transport) - each yields a pair of directed routes
_LINKS: tuple[tuple[str, str, str], ...] = (
    ("yks", "mjz", "air"),
    ("yks", "nrg", "air"),
    ("yks", "lnk", "air"),
    ("yks", "olk", "air"),
    ("yks", "vlk", "air"),
    ("yks", "tks", "air"),
    ("yks", "vrh", "air"),
    ("mjz", "lnk", "air"),
    ("yks", "pkv", "bus"),
    ("yks", "ald", "bus"),
    ("ald", "nrg", "bus"),
    ("mjz", "vlk", "bus"),
    ("yks", "pkv", "ferry"),
    ("pkv", "olk", "ferry"),
    ("olk", "lnk", "ferry"),
)

_TRANSPORT_STOP_KIND: dict[str, str] = {
    "air": "airport",
    "bus": "bus_station",
    "ferry": "port",
}

_PRICE_PER_KM: dict[str, float] = {"air": 11.5, "bus": 3.2, "ferry": 2.6}
_BASE_FARE: dict[str, float] = {"air": 1500.0, "bus": 150.0, "ferry": 300.0}


def _stop_id(city_code: str, kind: str) -> str:
    return f"{city_code}-{kind.replace('_', '-')}"


def _unit(seed: str) -> float:
    """Stable pseudo-random value in [0, 1) derived from a string."""
    digest = hashlib.sha1(seed.encode("utf-8")).hexdigest()
    return int(digest[:8], 16) / 0x100000000


def _stops() -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for code, city, lat, lon, kinds in _CITIES:
        for kind in kinds:
            dlat, dlon = _KIND_OFFSETS[kind]
            rows.append(
                {
                    "id": _stop_id(code, kind),
                    "name": f"{_KIND_LABELS[kind]} {city}",
                    "kind": kind,
                    "city": city,
                    "lat": round(lat + dlat, 4),
                    "lon": round(lon + dlon, 4),
                }
            )
    return rows


def _route_stats(route_id: str, transport: str) -> dict[str, Any]:
    weather_exposed = transport in {"ferry", "air"}
    return {
        "delays30": round(60.0 * _unit(route_id + ":d30"), 1),
        "delays60": round(180.0 * _unit(route_id + ":d60"), 1),
        "delays90": round(300.0 * _unit(route_id + ":d90"), 1),
        "delay_frequency": round(0.45 * _unit(route_id + ":freq"), 3),
        "cancellation_rate": round(0.12 * _unit(route_id + ":cancel"), 3),
        "avg_occupancy": round(0.5 + 0.45 * _unit(route_id + ":occ"), 3),
        "high_occupancy_segments": 1 if _unit(route_id + ":hi") > 0.7 else 0,
        "low_availability_segments": 1 if _unit(route_id + ":lo") > 0.85 else 0,
        "schedule_regularity": round(0.4 + 0.6 * _unit(route_id + ":reg"), 3),
        "weather_risk": round(0.6 * _unit(route_id + ":wx"), 3) if weather_exposed else 0.0,
        "seasonality_factor": round(1.0 + 0.2 * _unit(route_id + ":season"), 3),
    }


def _routes(stops_by_id: dict[str, dict[str, Any]]) -> tuple[list[dict[str, Any]], dict[str, dict[str, Any]]]:
    directed: list[tuple[str, str, str]] = []
    for a, b, transport in _LINKS:
        kind = _TRANSPORT_STOP_KIND[transport]
        directed.append((_stop_id(a, kind), _stop_id(b, kind), transport))
        directed.append((_stop_id(b, kind), _stop_id(a, kind), transport))

    src = [stops_by_id[s] for s, _, _ in directed]
    dst = [stops_by_id[d] for _, d, _ in directed]
    great_circle = haversine_km(
        [r["lat"] for r in src],
        [r["lon"] for r in src],
        [r["lat"] for r in dst],
        [r["lon"] for r in dst],
    )

    routes: list[dict[str, Any]] = []
    stats: dict[str, dict[str, Any]] = {}
    for (from_id, to_id, transport), gc_km in zip(directed, great_circle.tolist()):
        route_id = f"mock-{transport}-{from_id}-{to_id}"
        distance = round(estimate_distance_km(transport, gc_km), 1)
        routes.append(
            {
                "id": route_id,
                "from": from_id,
                "to": to_id,
                "transport_type": transport,
                "distance_km": distance,
                "duration_min": estimate_duration_min(transport, distance),
                "price": round(_BASE_FARE[transport] + _PRICE_PER_KM[transport] * distance, -1),
            }
        )
        stats[route_id] = _route_stats(route_id, transport)
    return routes, stats


def build_mock_payload(*, now: datetime | None = None) -> dict[str, Any]:
    stops = _stops()
    routes, stats = _routes({row["id"]: row for row in stops})
    return {
        "stops": stops,
        "routes": routes,
        "as_of": (now or datetime.now(UTC)).isoformat(),
        "route_stats": stats,
    }


class MockProvider:
    name = "mock"

    def load(self, *, now: datetime | None = None) -> dict[str, Any]:
        try:
            payload = build_mock_payload(now=now)
        except (KeyError, ValueError, TypeError) as exc:
            raise DataLoadError(
                ErrorKind.MOCK_FAILED,
                f"Synthetic dataset could not be generated: {exc}",
                context={"error_type": type(exc).__name__},
            ) from exc
        log_event(
            "mock_dataset_generated",
            stop_rows=len(payload["stops"]),
            route_rows=len(payload["routes"]),
        )
        return payload
