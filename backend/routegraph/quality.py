from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from .entities import TRANSPORT_TYPES, Stop, TransportDataset, stop_from_record
from .settings import settings

CATEGORY_WEIGHTS: dict[str, float] = {
    "edges": 0.4,
    "stops": 0.3,
    "coordinates": 0.2,
    "freshness": 0.1,
}


@dataclass(frozen=True)
class QualityReport:
    overall: int
    edges_score: int
    stops_score: int
    coordinates_score: int
    freshness_score: int
    valid_edges: int
    valid_stops: int

    @property
    def completeness(self) -> float:
        """Structural completeness (freshness excluded), in [0, 100]."""
        w = CATEGORY_WEIGHTS
        total = w["edges"] + w["stops"] + w["coordinates"]
        return (
            self.edges_score * w["edges"]
            + self.stops_score * w["stops"]
            + self.coordinates_score * w["coordinates"]
        ) / total

    def as_dict(self) -> dict[str, Any]:
        return {
            "overall": self.overall,
            "edges": self.edges_score,
            "stops": self.stops_score,
            "coordinates": self.coordinates_score,
            "freshness": self.freshness_score,
            "valid_edges": self.valid_edges,
            "valid_stops": self.valid_stops,
        }


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        out = float(value)
    except (TypeError, ValueError):
        return None
    return out if math.isfinite(out) else None


def _percent(part: int, whole: int) -> int:
    if whole <= 0:
        return 0
    return int(round((part / whole) * 100))


def parse_timestamp(raw: Any) -> datetime | None:
    if not isinstance(raw, str) or not raw.strip():
        return None
    text = raw.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _stop_rows(payload: dict[str, Any]) -> list[dict[str, Any]]:
    rows = payload.get("stops")
    return [r for r in rows if isinstance(r, dict)] if isinstance(rows, list) else []


def _route_rows(payload: dict[str, Any]) -> list[dict[str, Any]]:
    rows = payload.get("routes")
    return [r for r in rows if isinstance(r, dict)] if isinstance(rows, list) else []


def _stop_is_complete(row: dict[str, Any]) -> bool:
    return bool(str(row.get("id") or "").strip()) and bool(str(row.get("name") or "").strip())


def _coordinates_valid(row: dict[str, Any]) -> bool:
    lat = _as_float(row.get("lat"))
    lon = _as_float(row.get("lon"))
    return lat is not None and lon is not None and -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0


def _route_is_complete(row: dict[str, Any], stop_ids: set[str]) -> bool:
    if not str(row.get("id") or "").strip():
        return False
    src = str(row.get("from") or "")
    dst = str(row.get("to") or "")
    if not src or not dst or src == dst or src not in stop_ids or dst not in stop_ids:
        return False
    if str(row.get("transport_type") or "") not in TRANSPORT_TYPES:
        return False
    duration = _as_float(row.get("duration_min"))
    distance = _as_float(row.get("distance_km"))
    return (duration is not None and duration > 0) or (distance is not None and distance > 0)


def freshness_score(as_of: Any, *, now: datetime | None = None, refresh_interval_s: int | None = None) -> int:
    stamp = parse_timestamp(as_of)
    if stamp is None:
        return 0
    interval = float(refresh_interval_s or settings.provider_refresh_interval_s)
    age_s = max(0.0, ((now or datetime.now(UTC)) - stamp).total_seconds())
    if age_s <= interval:
        return 100
    if age_s >= 2 * interval:
        return 0
    return int(round(100 * (1.0 - (age_s - interval) / interval)))


def score_payload(
    payload: dict[str, Any],
    *,
    now: datetime | None = None,
    refresh_interval_s: int | None = None,
) -> QualityReport:
    stops = _stop_rows(payload)
    routes = _route_rows(payload)
    stop_ids = {str(r.get("id")) for r in stops if str(r.get("id") or "").strip()}

    valid_stops = sum(1 for r in stops if _stop_is_complete(r))
    valid_coords = sum(1 for r in stops if _coordinates_valid(r))
    valid_edges = sum(1 for r in routes if _route_is_complete(r, stop_ids))

    edges_score = _percent(valid_edges, len(routes))
    stops_score = _percent(valid_stops, len(stops))
    coords_score = _percent(valid_coords, len(stops))
    fresh = freshness_score(payload.get("as_of"), now=now, refresh_interval_s=refresh_interval_s)

    w = CATEGORY_WEIGHTS
    overall = int(
        round(
            edges_score * w["edges"]
            + stops_score * w["stops"]
            + coords_score * w["coordinates"]
            + fresh * w["freshness"]
        )
    )
    return QualityReport(
        overall=max(0, min(100, overall)),
        edges_score=edges_score,
        stops_score=stops_score,
        coordinates_score=coords_score,
        freshness_score=fresh,
        valid_edges=valid_edges,
        valid_stops=valid_stops,
    )


def parse_payload(payload: dict[str, Any], *, source: str) -> TransportDataset:
    """Build a dataset from a raw payload. Malformed rows are skipped, not raised."""
    stops: dict[str, Stop] = {}
    for row in _stop_rows(payload):
        stop_id = str(row.get("id") or "").strip()
        if not stop_id or stop_id in stops:
            continue
        clean = dict(row)
        clean["lat"] = _as_float(row.get("lat"))
        clean["lon"] = _as_float(row.get("lon"))
        if str(clean.get("kind") or "") == "virtual":
            clean["kind"] = "generic"
        stops[stop_id] = stop_from_record(clean)

    routes: list[dict[str, Any]] = []
    for row in _route_rows(payload):
        src = str(row.get("from") or "")
        dst = str(row.get("to") or "")
        transport = str(row.get("transport_type") or "")
        if not src or not dst or src == dst or transport not in TRANSPORT_TYPES or transport == "transfer":
            continue
        routes.append(
            {
                "id": str(row.get("id") or f"{src}->{dst}"),
                "from": src,
                "to": dst,
                "transport_type": transport,
                "distance_km": _as_float(row.get("distance_km")),
                "duration_min": _as_float(row.get("duration_min")),
                "price": _as_float(row.get("price")),
            }
        )

    raw_stats = payload.get("route_stats")
    route_stats = (
        {str(k): dict(v) for k, v in raw_stats.items() if isinstance(v, dict)}
        if isinstance(raw_stats, dict)
        else {}
    )
    as_of = payload.get("as_of")
    return TransportDataset(
        stops=tuple(stops[k] for k in sorted(stops)),
        routes=tuple(routes),
        source=source,
        as_of=as_of if isinstance(as_of, str) else None,
        route_stats=route_stats,
    )
