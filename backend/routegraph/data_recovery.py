from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any

from .entities import extract_city_name, normalize_city


@dataclass(frozen=True)
class RecoveryReport:
    stops_added: int = 0
    names_filled: int = 0
    coordinates_filled: int = 0
    coordinates_interpolated: int = 0
    routes_added: int = 0
    stats_added: int = 0

    @property
    def changed(self) -> bool:
        return any(
            (
                self.stops_added,
                self.names_filled,
                self.coordinates_filled,
                self.coordinates_interpolated,
                self.routes_added,
                self.stats_added,
            )
        )

    def as_dict(self) -> dict[str, int]:
        return {
            "stops_added": self.stops_added,
            "names_filled": self.names_filled,
            "coordinates_filled": self.coordinates_filled,
            "coordinates_interpolated": self.coordinates_interpolated,
            "routes_added": self.routes_added,
            "stats_added": self.stats_added,
        }


def _has_coords(row: dict[str, Any]) -> bool:
    lat, lon = row.get("lat"), row.get("lon")
    if not isinstance(lat, (int, float)) or not isinstance(lon, (int, float)):
        return False
    return -90.0 <= float(lat) <= 90.0 and -180.0 <= float(lon) <= 180.0


def _route_identity(row: dict[str, Any]) -> tuple[str, str, str]:
    return (str(row.get("from") or ""), str(row.get("to") or ""), str(row.get("transport_type") or ""))


def _row_city(row: dict[str, Any]) -> str:
    return normalize_city(row.get("city") or extract_city_name(str(row.get("name") or "")))


def merge_with_cached(
    fetched: dict[str, Any] | None,
    cached: dict[str, Any],
) -> tuple[dict[str, Any], RecoveryReport]:
    """Repair a degraded payload with the last good payload for the same key.

    Only gaps are filled: values present in the fresh payload always win. Stops still
    lacking coordinates afterwards get the centroid of same-city stops.
    """
    base = copy.deepcopy(fetched) if isinstance(fetched, dict) else {}
    stops = [r for r in base.get("stops") or [] if isinstance(r, dict)]
    routes = [r for r in base.get("routes") or [] if isinstance(r, dict)]
    cached_stops = {
        str(r["id"]): r for r in cached.get("stops") or [] if isinstance(r, dict) and r.get("id")
    }
    cached_routes = [r for r in cached.get("routes") or [] if isinstance(r, dict)]

    names_filled = 0
    coords_filled = 0
    by_id: dict[str, dict[str, Any]] = {}
    for row in stops:
        stop_id = str(row.get("id") or "")
        if not stop_id:
            continue
        by_id[stop_id] = row
        previous = cached_stops.get(stop_id)
        if previous is None:
            continue
        if not str(row.get("name") or "").strip() and previous.get("name"):
            row["name"] = previous["name"]
            names_filled += 1
        if not _has_coords(row) and _has_coords(previous):
            row["lat"], row["lon"] = previous["lat"], previous["lon"]
            coords_filled += 1
        if not row.get("city") and previous.get("city"):
            row["city"] = previous["city"]

    stops_added = 0
    for stop_id in sorted(cached_stops):
        if stop_id not in by_id:
            row = copy.deepcopy(cached_stops[stop_id])
            stops.append(row)
            by_id[stop_id] = row
            stops_added += 1

    interpolated = 0
    centroids: dict[str, list[tuple[float, float]]] = {}
    for row in stops:
        if _has_coords(row):
            centroids.setdefault(_row_city(row), []).append((float(row["lat"]), float(row["lon"])))
    for row in stops:
        if _has_coords(row):
            continue
        points = centroids.get(_row_city(row))
        if points:
            row["lat"] = round(sum(p[0] for p in points) / len(points), 6)
            row["lon"] = round(sum(p[1] for p in points) / len(points), 6)
            interpolated += 1

    known_ids = {str(r.get("id") or "") for r in routes}
    known_identity = {_route_identity(r) for r in routes}
    routes_added = 0
    for row in cached_routes:
        if str(row.get("id") or "") in known_ids or _route_identity(row) in known_identity:
            continue
        routes.append(copy.deepcopy(row))
        known_ids.add(str(row.get("id") or ""))
        known_identity.add(_route_identity(row))
        routes_added += 1

    stats = dict(base.get("route_stats") or {})
    stats_added = 0
    for route_id, value in (cached.get("route_stats") or {}).items():
        if route_id not in stats and isinstance(value, dict):
            stats[route_id] = copy.deepcopy(value)
            stats_added += 1

    repaired = {
        "stops": stops,
        "routes": routes,
        "as_of": base.get("as_of") or cached.get("as_of"),
        "route_stats": stats,
    }
    return repaired, RecoveryReport(
        stops_added=stops_added,
        names_filled=names_filled,
        coordinates_filled=coords_filled,
        coordinates_interpolated=interpolated,
        routes_added=routes_added,
        stats_added=stats_added,
    )
