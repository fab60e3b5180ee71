from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class DataSourceMode(str, Enum):
    REAL = "REAL"
    RECOVERY = "RECOVERY"
    MOCK = "MOCK"
    UNKNOWN = "UNKNOWN"

    @property
    def trust(self) -> int:
        return _MODE_TRUST[self]


_MODE_TRUST: dict[DataSourceMode, int] = {
    DataSourceMode.REAL: 3,
    DataSourceMode.RECOVERY: 2,
    DataSourceMode.MOCK: 1,
    DataSourceMode.UNKNOWN: 0,
}

STOP_KINDS: frozenset[str] = frozenset({"airport", "bus_station", "port", "generic", "virtual"})
TRANSPORT_TYPES: frozenset[str] = frozenset({"air", "bus", "ferry", "rail", "taxi", "transfer"})
TRANSFER = "transfer"

_KIND_PREFIXES = re.compile(
    r"^(airport|аэропорт|bus\s+station|bus\s+stop|автостанция|автовокзал|вокзал|port|river\s+port|речной\s+порт|"
    r"пристань|порт|остановка|stop)\s+",
    re.IGNORECASE,
)
_CITY_MARKER = re.compile(r"(?:^|\s)(?:г\.|city of)\s*([^,()]+)", re.IGNORECASE)


def normalize_city(name: str | None) -> str:
    text = str(name or "").strip().casefold().replace("ё", "е")
    return " ".join(text.split())


def extract_city_name(stop_name: str) -> str:
    """Best-effort city for a stop that carries no explicit city."""
    name = str(stop_name or "").strip()
    if not name:
        return ""
    marker = _CITY_MARKER.search(name)
    if marker:
        return marker.group(1).strip()
    parts = [p.strip() for p in name.split(",") if p.strip()]
    if len(parts) > 1:
        return parts[-1]
    cleaned = _KIND_PREFIXES.sub("", name).strip()
    first = re.split(r"[\s,()]+", cleaned)
    return first[0] if first and first[0] else name


@dataclass(frozen=True)
class Stop:
    id: str
    name: str
    kind: str = "generic"
    lat: float | None = None
    lon: float | None = None
    city: str | None = None

    @property
    def city_name(self) -> str:
        return self.city.strip() if self.city and self.city.strip() else extract_city_name(self.name)

    @property
    def city_key(self) -> str:
        return normalize_city(self.city_name)

    @property
    def has_coordinates(self) -> bool:
        return (
            self.lat is not None
            and self.lon is not None
            and -90.0 <= float(self.lat) <= 90.0
            and -180.0 <= float(self.lon) <= 180.0
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind,
            "lat": self.lat,
            "lon": self.lon,
            "city": self.city,
        }


@dataclass(frozen=True)
class VirtualStop(Stop):
    member_ids: tuple[str, ...] = ()

    def to_record(self) -> dict[str, Any]:
        record = super().to_record()
        record["member_ids"] = list(self.member_ids)
        return record


@dataclass(frozen=True, order=True)
class Edge:
    from_stop_id: str
    to_stop_id: str
    route_id: str
    transport_type: str = "bus"
    distance_km: float = 0.0
    duration_min: float = 0.0
    price: float = 0.0

    @property
    def is_transfer(self) -> bool:
        return self.transport_type == TRANSFER

    def to_record(self) -> dict[str, Any]:
        return {
            "route_id": self.route_id,
            "from": self.from_stop_id,
            "to": self.to_stop_id,
            "transport_type": self.transport_type,
            "distance_km": self.distance_km,
            "duration_min": self.duration_min,
            "price": self.price,
        }


def stop_from_record(raw: dict[str, Any]) -> Stop:
    kind = str(raw.get("kind") or "generic")
    lat = raw.get("lat")
    lon = raw.get("lon")
    common = {
        "id": str(raw["id"]),
        "name": str(raw.get("name") or ""),
        "kind": kind,
        "lat": float(lat) if lat is not None else None,
        "lon": float(lon) if lon is not None else None,
        "city": raw.get("city"),
    }
    if kind == "virtual":
        return VirtualStop(**common, member_ids=tuple(str(m) for m in raw.get("member_ids") or ()))
    return Stop(**common)


def edge_from_record(raw: dict[str, Any]) -> Edge:
    return Edge(
        from_stop_id=str(raw["from"]),
        to_stop_id=str(raw["to"]),
        route_id=str(raw.get("route_id") or ""),
        transport_type=str(raw.get("transport_type") or "bus"),
        distance_km=float(raw.get("distance_km") or 0.0),
        duration_min=float(raw.get("duration_min") or 0.0),
        price=float(raw.get("price") or 0.0),
    )


@dataclass(frozen=True)
class TransportDataset:
    """Stops and raw route rows as delivered by a provider (before graph assembly)."""

    stops: tuple[Stop, ...]
    routes: tuple[dict[str, Any], ...]
    source: str
    as_of: str | None = None
    route_stats: dict[str, dict[str, Any]] = field(default_factory=dict)


@dataclass(frozen=True)
class GraphVersion:
    version: int
    built_at: str
    nodes: frozenset[Stop]
    edges: frozenset[Edge]
    data_mode: DataSourceMode = DataSourceMode.UNKNOWN
    data_quality: int = 0

    @property
    def metadata(self) -> dict[str, Any]:
        return {
            "node_count": len(self.nodes),
            "edge_count": len(self.edges),
            "built_at": self.built_at,
            "data_mode": self.data_mode.value,
            "data_quality": int(self.data_quality),
        }


@dataclass(frozen=True)
class RouteSegment:
    route_id: str
    from_stop_id: str
    to_stop_id: str
    transport_type: str
    distance_km: float
    duration_min: float
    price: float


@dataclass(frozen=True)
class RouteResult:
    segments: tuple[RouteSegment, ...]
    total_distance_km: float
    total_duration_min: float
    total_price: float
    transfer_count: int
    from_city: str
    to_city: str
    date: str | None = None
    passengers: int = 1
    node_path: tuple[str, ...] = ()
    # Minutes spent changing stops inside a city; included in total_duration_min.
    connection_min: float = 0.0

    @property
    def transport_types(self) -> tuple[str, ...]:
        return tuple(sorted({seg.transport_type for seg in self.segments}))
