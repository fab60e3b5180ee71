from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable

from .entities import DataSourceMode, Edge, GraphVersion, RouteResult, RouteSegment, Stop, VirtualStop, normalize_city
from .errors import TRANSIENT_SEARCH_ERRORS, SearchErrorCode, user_message
from .graph_store import SnapshotIncomplete, SnapshotRepository
from .k_shortest import Adjacency, PathResult, yen_k_shortest_paths_with_stats
from .logging_utils import log_event
from .settings import settings
from .virtual_stops import connection_edge

_ORIGIN = "__origin__"
_DESTINATION = "__destination__"


@dataclass(frozen=True)
class CityStops:
    name: str
    virtual_id: str | None
    stop_ids: tuple[str, ...]

    @property
    def entry_points(self) -> tuple[str, ...]:
        return (self.virtual_id,) if self.virtual_id else self.stop_ids


@dataclass
class GraphView:
    """Search-ready projection of one immutable graph version."""

    version: int
    data_mode: DataSourceMode
    data_quality: int
    nodes: dict[str, Stop]
    edges: dict[str, Edge]
    adjacency: Adjacency
    cities: dict[str, CityStops]
    hubs: frozenset[str] = frozenset()

    @classmethod
    def from_version(cls, graph: GraphVersion) -> "GraphView":
        nodes = {n.id: n for n in graph.nodes}
        edges: dict[str, Edge] = {}
        arcs: dict[str, list[tuple[str, str, tuple[float, ...]]]] = {}
        for idx, edge in enumerate(sorted(graph.edges)):
            edge_id = f"e{idx}"
            edges[edge_id] = edge
            segment = 0.0 if edge.is_transfer else 1.0
            cost = (float(edge.duration_min), float(edge.price), segment, 1.0)
            arcs.setdefault(edge.from_stop_id, []).append((edge.to_stop_id, edge_id, cost))

        # Changing stops inside a city goes through a direct connection arc that carries the
        # connection time; the hub itself is only an entry and exit point.
        hubs = sorted((n for n in nodes.values() if isinstance(n, VirtualStop)), key=lambda n: n.id)
        for hub in hubs:
            members = [nodes[m] for m in hub.member_ids if m in nodes]
            for src in members:
                for dst in members:
                    if src.id == dst.id:
                        continue
                    edge = connection_edge(src, dst)
                    edge_id = f"c{len(edges)}"
                    edges[edge_id] = edge
                    cost = (edge.duration_min, 0.0, 0.0, 1.0)
                    arcs.setdefault(src.id, []).append((dst.id, edge_id, cost))

        grouped: dict[str, dict[str, Any]] = {}
        for node in sorted(nodes.values(), key=lambda n: n.id):
            key = node.city_key
            if not key:
                continue
            entry = grouped.setdefault(key, {"name": node.city_name, "virtual": None, "stops": []})
            if isinstance(node, VirtualStop):
                entry["virtual"] = node.id
            else:
                entry["stops"].append(node.id)
        cities = {
            key: CityStops(name=v["name"], virtual_id=v["virtual"], stop_ids=tuple(v["stops"]))
            for key, v in grouped.items()
        }
        return cls(
            version=graph.version,
            data_mode=graph.data_mode,
            data_quality=graph.data_quality,
            nodes=nodes,
            edges=edges,
            adjacency={node: tuple(out) for node, out in arcs.items()},
            cities=cities,
            hubs=frozenset(h.id for h in hubs),
        )


class GraphViewCache:
    """Materialized views keyed by version. Old versions fall out in LRU order."""

    def __init__(self, max_entries: int | None = None) -> None:
        self._max_entries = max(1, int(max_entries or settings.graph_view_cache_size))
        self._lock = Lock()
        self._items: OrderedDict[int, GraphView] = OrderedDict()

    def get(self, version: int, loader: Callable[[int], GraphView]) -> GraphView:
        with self._lock:
            view = self._items.get(version)
            if view is not None:
                self._items.move_to_end(version)
                return view
        view = loader(version)
        with self._lock:
            self._items[version] = view
            self._items.move_to_end(version)
            while len(self._items) > self._max_entries:
                self._items.popitem(last=False)
        return view

    def evict(self, version: int) -> bool:
        with self._lock:
            return self._items.pop(version, None) is not None

    def clear(self) -> int:
        with self._lock:
            cleared = len(self._items)
            self._items.clear()
            return cleared

    def versions(self) -> list[int]:
        with self._lock:
            return list(self._items)


@dataclass
class SearchOutcome:
    success: bool
    routes: list[RouteResult] = field(default_factory=list)
    alternatives: list[RouteResult] = field(default_factory=list)
    error: SearchErrorCode | None = None
    message: str | None = None
    data_mode: DataSourceMode = DataSourceMode.UNKNOWN
    data_quality: int = 0
    version: int | None = None

    @classmethod
    def failure(cls, code: SearchErrorCode, **kwargs: Any) -> "SearchOutcome":
        return cls(success=False, error=code, message=user_message(code), **kwargs)


def rank_key(route: RouteResult) -> tuple[Any, ...]:
    return (route.total_duration_min, route.total_price, route.transfer_count, route.node_path)


def cheapest_key(route: RouteResult) -> tuple[Any, ...]:
    return (route.total_price, route.total_duration_min, route.transfer_count, route.node_path)


def select_alternatives(ranked: list[RouteResult], limit: int = 2) -> list[RouteResult]:
    """Fastest and cheapest of the non-primary routes; one entry when they coincide."""
    remaining = ranked[1:]
    if not remaining:
        return []
    fastest = remaining[0]
    cheapest = min(remaining, key=cheapest_key)
    picked = [fastest] if cheapest is fastest else [fastest, cheapest]
    return picked[:limit]


class RouteSearchEngine:
    def __init__(
        self,
        repository: SnapshotRepository,
        *,
        view_cache: GraphViewCache | None = None,
        max_transfers: int | None = None,
        candidate_paths: int | None = None,
        max_state_budget: int | None = None,
    ) -> None:
        self.repository = repository
        self.views = view_cache or GraphViewCache()
        self.max_transfers = settings.search_max_transfers if max_transfers is None else max(0, int(max_transfers))
        self.candidate_paths = max(1, int(candidate_paths or settings.search_candidate_paths))
        self.max_state_budget = int(max_state_budget or settings.search_max_state_budget)

    def _load_view(self, version: int) -> GraphView:
        return GraphView.from_version(self.repository.read_version(version))

    def current_view(self) -> GraphView | None:
        version = self.repository.current_version()
        if version is None:
            return None
        # A cached view is only valid while its snapshot is still in the store (TTL, pruning).
        if self.repository.read_metadata(version) is None:
            if self.views.evict(version):
                log_event("graph_view_evicted", version=version, reason="metadata missing")
            raise SnapshotIncomplete(version, "metadata missing")
        return self.views.get(version, self._load_view)

    def search(
        self,
        from_city: str,
        to_city: str,
        date: str | None = None,
        passengers: int = 1,
    ) -> SearchOutcome:
        t0 = time.perf_counter()
        try:
            view = self.current_view()
        except SnapshotIncomplete as exc:
            log_event("route_search_out_of_sync", version=exc.version, reason=exc.reason)
            return SearchOutcome.failure(SearchErrorCode.GRAPH_OUT_OF_SYNC, version=exc.version)
        if view is None:
            log_event("route_search_out_of_sync", version=None, reason="no current version")
            return SearchOutcome.failure(SearchErrorCode.GRAPH_OUT_OF_SYNC)

        context = {"data_mode": view.data_mode, "data_quality": view.data_quality, "version": view.version}
        origin = view.cities.get(normalize_city(from_city))
        destination = view.cities.get(normalize_city(to_city))
        if origin is None or destination is None:
            log_event(
                "route_search_unknown_city",
                from_city=from_city,
                to_city=to_city,
                from_known=origin is not None,
                to_known=destination is not None,
            )
            return SearchOutcome.failure(SearchErrorCode.STOPS_NOT_FOUND, **context)
        if origin == destination:
            return SearchOutcome.failure(SearchErrorCode.ROUTES_NOT_FOUND, **context)

        passengers = max(1, int(passengers))
        routes = self._candidate_routes(view, origin, destination, date=date, passengers=passengers)
        duration_ms = round((time.perf_counter() - t0) * 1000.0, 2)
        if not routes:
            log_event(
                "route_search_no_routes",
                from_city=origin.name,
                to_city=destination.name,
                version=view.version,
                duration_ms=duration_ms,
            )
            return SearchOutcome.failure(SearchErrorCode.ROUTES_NOT_FOUND, **context)

        ranked = sorted(routes, key=rank_key)
        alternatives = select_alternatives(ranked)
        log_event(
            "route_search_ok",
            from_city=origin.name,
            to_city=destination.name,
            version=view.version,
            candidates=len(ranked),
            alternatives=len(alternatives),
            duration_ms=duration_ms,
        )
        return SearchOutcome(success=True, routes=[ranked[0]], alternatives=alternatives, **context)

    def search_with_retry(
        self,
        from_city: str,
        to_city: str,
        date: str | None = None,
        passengers: int = 1,
        *,
        retries: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> SearchOutcome:
        attempts = 1 + (settings.search_out_of_sync_retries if retries is None else max(0, int(retries)))
        outcome = self.search(from_city, to_city, date, passengers)
        for attempt in range(1, attempts):
            if outcome.error not in TRANSIENT_SEARCH_ERRORS:
                break
            wait_s = (settings.search_retry_backoff_base_ms * (2 ** (attempt - 1))) / 1000.0
            log_event("route_search_retry", attempt=attempt, wait_s=wait_s)
            sleep(wait_s)
            self.views.clear()
            outcome = self.search(from_city, to_city, date, passengers)
        return outcome

    def _candidate_routes(
        self,
        view: GraphView,
        origin: CityStops,
        destination: CityStops,
        *,
        date: str | None,
        passengers: int,
    ) -> list[RouteResult]:
        zero = (0.0, 0.0, 0.0, 0.0)
        adjacency = dict(view.adjacency)
        adjacency[_ORIGIN] = tuple((sid, f"{_ORIGIN}:{sid}", zero) for sid in origin.entry_points)
        for sid in destination.entry_points:
            adjacency[sid] = (*adjacency.get(sid, ()), (_DESTINATION, f"{_DESTINATION}:{sid}", zero))

        max_segments = self.max_transfers + 1
        edges = view.edges
        hubs = view.hubs

        def transition(state: Any, edge_id: str) -> int | None:
            edge = edges.get(edge_id)
            if edge is None:
                return int(state)
            if edge.is_transfer:
                # Leaving a hub is only allowed at the start; mid-trip changes use connection arcs.
                if edge.from_stop_id in hubs and int(state) > 0:
                    return None
                return int(state)
            used = int(state) + 1
            return used if used <= max_segments else None

        paths, stats = yen_k_shortest_paths_with_stats(
            adjacency=adjacency,
            start=_ORIGIN,
            goal=_DESTINATION,
            k=self.candidate_paths,
            max_state_budget=self.max_state_budget,
            initial_state=0,
            transition_state_fn=transition,
        )
        if stats.get("no_path_reason"):
            log_event("route_search_path_stats", **{str(k): v for k, v in stats.items()})

        by_segments: dict[tuple[str, ...], RouteResult] = {}
        for path in paths:
            route = self._to_route(view, path, origin, destination, date=date, passengers=passengers)
            if route is None:
                continue
            key = tuple(s.route_id for s in route.segments)
            current = by_segments.get(key)
            if current is None or rank_key(route) < rank_key(current):
                by_segments[key] = route
        return list(by_segments.values())

    @staticmethod
    def _to_route(
        view: GraphView,
        path: PathResult,
        origin: CityStops,
        destination: CityStops,
        *,
        date: str | None,
        passengers: int,
    ) -> RouteResult | None:
        segments: list[RouteSegment] = []
        connection_min = 0.0
        for edge_id in path.edges:
            edge = view.edges.get(edge_id)
            if edge is None:
                continue
            if edge.is_transfer:
                connection_min += edge.duration_min
                continue
            segments.append(
                RouteSegment(
                    route_id=edge.route_id,
                    from_stop_id=edge.from_stop_id,
                    to_stop_id=edge.to_stop_id,
                    transport_type=edge.transport_type,
                    distance_km=edge.distance_km,
                    duration_min=edge.duration_min,
                    price=edge.price,
                )
            )
        if not segments:
            return None
        unit_price = sum(s.price for s in segments)
        return RouteResult(
            segments=tuple(segments),
            total_distance_km=round(sum(s.distance_km for s in segments), 3),
            total_duration_min=round(sum(s.duration_min for s in segments) + connection_min, 3),
            total_price=round(unit_price * passengers, 2),
            transfer_count=len(segments) - 1,
            from_city=origin.name,
            to_city=destination.name,
            date=date,
            passengers=passengers,
            node_path=tuple(n for n in path.nodes if n not in (_ORIGIN, _DESTINATION)),
            connection_min=round(connection_min, 3),
        )
