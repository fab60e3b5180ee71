from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Iterable

from .entities import TRANSFER, Edge, Stop, VirtualStop


@dataclass(frozen=True)
class VirtualStopSet:
    virtual_stops: tuple[VirtualStop, ...]
    transfer_edges: tuple[Edge, ...]


def virtual_stop_id(member_ids: Iterable[str]) -> str:
    digest = hashlib.sha1(",".join(sorted(member_ids)).encode("utf-8")).hexdigest()
    return f"virtual-{digest[:16]}"


def _mean(values: list[float]) -> float | None:
    return round(sum(values) / len(values), 6) if values else None


# Minutes needed to change between two physical stops of the same city.
_CONNECTION_MIN: dict[tuple[str, str], float] = {
    ("airport", "ground"): 90.0,
    ("ground", "airport"): 120.0,
    ("airport", "port"): 90.0,
    ("port", "airport"): 90.0,
    ("port", "ground"): 30.0,
    ("ground", "port"): 30.0,
    ("ground", "ground"): 60.0,
}
DEFAULT_CONNECTION_MIN = 60.0


def _stop_family(stop: Stop) -> str:
    if stop.kind in ("airport", "port"):
        return stop.kind
    return "ground"


def connection_minutes(src: Stop, dst: Stop) -> float:
    """Time to get from one stop of a city to another before the next departure."""
    if src.id == dst.id:
        return 0.0
    return _CONNECTION_MIN.get((_stop_family(src), _stop_family(dst)), DEFAULT_CONNECTION_MIN)


def connection_edge(src: Stop, dst: Stop) -> Edge:
    return Edge(
        from_stop_id=src.id,
        to_stop_id=dst.id,
        route_id=f"connection:{src.id}:{dst.id}",
        transport_type=TRANSFER,
        distance_km=0.0,
        duration_min=connection_minutes(src, dst),
        price=0.0,
    )


def _transfer(src: str, dst: str) -> Edge:
    return Edge(
        from_stop_id=src,
        to_stop_id=dst,
        route_id=f"transfer:{src}:{dst}",
        transport_type=TRANSFER,
        distance_km=0.0,
        duration_min=0.0,
        price=0.0,
    )


def generate(stops: Iterable[Stop]) -> VirtualStopSet:
    """One transfer hub per city with more than one physical stop. Output order is stable."""
    groups: dict[str, list[Stop]] = {}
    for stop in stops:
        if isinstance(stop, VirtualStop) or stop.kind == "virtual":
            continue
        key = stop.city_key
        if not key:
            continue
        groups.setdefault(key, []).append(stop)

    hubs: list[VirtualStop] = []
    edges: list[Edge] = []
    for city_key in sorted(groups):
        members = sorted({s.id: s for s in groups[city_key]}.values(), key=lambda s: s.id)
        if len(members) < 2:
            continue
        member_ids = tuple(s.id for s in members)
        hub_id = virtual_stop_id(member_ids)
        located = [s for s in members if s.has_coordinates]
        city_name = sorted(s.city_name for s in members)[0]
        hubs.append(
            VirtualStop(
                id=hub_id,
                name=f"{city_name} (all stops)",
                kind="virtual",
                lat=_mean([float(s.lat) for s in located]),
                lon=_mean([float(s.lon) for s in located]),
                city=city_name,
                member_ids=member_ids,
            )
        )
        for member_id in member_ids:
            edges.append(_transfer(hub_id, member_id))
            edges.append(_transfer(member_id, hub_id))

    hubs.sort(key=lambda h: h.id)
    edges.sort(key=lambda e: (e.from_stop_id, e.to_stop_id))
    return VirtualStopSet(virtual_stops=tuple(hubs), transfer_edges=tuple(edges))
