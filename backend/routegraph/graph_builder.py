from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime
from typing import Any, Iterable

from .entities import DataSourceMode, Edge, GraphVersion, Stop, VirtualStop
from .errors import GraphPublishConflict, GraphValidationError
from .graph_store import SnapshotIncomplete, SnapshotRepository
from .logging_utils import log_event
from .settings import settings


def _find(parent: dict[str, str], item: str) -> str:
    root = item
    while parent[root] != root:
        root = parent[root]
    while parent[item] != root:
        parent[item], item = root, parent[item]
    return root


def isolated_cities(nodes: dict[str, Stop], edges: Iterable[Edge]) -> list[str]:
    """Cities referenced by a scheduled edge that cannot reach any other city."""
    parent: dict[str, str] = {}
    referenced: set[str] = set()
    for edge in edges:
        if edge.is_transfer:
            continue
        a = nodes[edge.from_stop_id].city_key
        b = nodes[edge.to_stop_id].city_key
        for city in (a, b):
            referenced.add(city)
            parent.setdefault(city, city)
        ra, rb = _find(parent, a), _find(parent, b)
        if ra != rb:
            parent[ra] = rb

    sizes: dict[str, int] = {}
    for city in parent:
        root = _find(parent, city)
        sizes[root] = sizes.get(root, 0) + 1
    return sorted(c for c in referenced if sizes[_find(parent, c)] < 2)


def validate_graph(nodes: Iterable[Stop], edges: Iterable[Edge]) -> None:
    node_list = list(nodes)
    edge_list = list(edges)
    if not node_list:
        raise GraphValidationError("empty_nodes", "Graph has no nodes.")
    if not edge_list:
        raise GraphValidationError("empty_edges", "Graph has no edges.")

    by_id: dict[str, Stop] = {}
    for node in node_list:
        if node.id in by_id and by_id[node.id] != node:
            raise GraphValidationError("duplicate_node", f"Node id '{node.id}' is defined twice.", {"node_id": node.id})
        by_id[node.id] = node

    dangling = sorted(
        {e.from_stop_id for e in edge_list if e.from_stop_id not in by_id}
        | {e.to_stop_id for e in edge_list if e.to_stop_id not in by_id}
    )
    if dangling:
        raise GraphValidationError(
            "dangling_edge",
            f"{len(dangling)} edge endpoint(s) are not graph nodes.",
            {"missing_node_ids": dangling[:20]},
        )

    negative = [e.route_id for e in edge_list if e.duration_min < 0 or e.price < 0 or e.distance_km < 0]
    if negative:
        raise GraphValidationError(
            "negative_cost",
            "Edges must not have negative duration, price or distance.",
            {"route_ids": sorted(negative)[:20]},
        )

    isolated = isolated_cities(by_id, edge_list)
    if isolated:
        raise GraphValidationError(
            "isolated_city",
            f"{len(isolated)} city(ies) cannot reach any other city.",
            {"cities": isolated[:20]},
        )


class GraphBuilder:
    """Assembles validated graph versions and publishes them behind an atomic pointer."""

    def __init__(self, repository: SnapshotRepository, *, retention_versions: int | None = None) -> None:
        self.repository = repository
        self.retention_versions = (
            settings.graph_retention_versions if retention_versions is None else max(0, int(retention_versions))
        )

    def build(
        self,
        stops: Iterable[Stop],
        virtual_stops: Iterable[VirtualStop],
        edges: Iterable[Edge],
        *,
        data_mode: DataSourceMode = DataSourceMode.UNKNOWN,
        data_quality: int = 0,
    ) -> GraphVersion:
        nodes = frozenset([*stops, *virtual_stops])
        edge_set = frozenset(edges)
        validate_graph(nodes, edge_set)
        return GraphVersion(
            version=0,
            built_at=datetime.now(UTC).isoformat(),
            nodes=nodes,
            edges=edge_set,
            data_mode=data_mode,
            data_quality=max(0, min(100, int(data_quality))),
        )

    def publish(self, graph: GraphVersion) -> int:
        repo = self.repository
        expected = repo.current_version()
        version = repo.allocate_version()
        published = replace(graph, version=version)
        try:
            repo.write_snapshot(version, published.nodes, published.edges, published.metadata)
        except Exception:
            repo.delete_version(version)
            raise

        if not repo.publish_pointer(expected, version):
            repo.delete_version(version)
            log_event("graph_publish_conflict", version=version, expected_version=expected)
            raise GraphPublishConflict(f"current version changed while publishing v{version}")

        log_event(
            "graph_published",
            version=version,
            previous_version=expected,
            node_count=len(published.nodes),
            edge_count=len(published.edges),
            data_mode=published.data_mode.value,
            data_quality=published.data_quality,
        )
        self.prune()
        return version

    def metadata(self, version: int | None = None) -> dict[str, Any] | None:
        target = self.repository.current_version() if version is None else version
        if target is None:
            return None
        return self.repository.read_metadata(target)

    def prune(self) -> list[int]:
        current = self.repository.current_version()
        if current is None:
            return []
        # Versions above the pointer may belong to a writer that has not published yet.
        superseded = sorted((v for v in self.repository.versions() if v < current), reverse=True)
        doomed = superseded[self.retention_versions :]
        for version in doomed:
            self.repository.delete_version(version)
        if doomed:
            log_event("graph_versions_pruned", current_version=current, pruned=doomed)
        return doomed

    def rollback(self, version: int) -> int:
        try:
            self.repository.read_version(version)
        except SnapshotIncomplete as exc:
            raise GraphValidationError(
                "rollback_target_unavailable",
                f"Version {version} is not a complete retained snapshot.",
                {"version": version, "reason": exc.reason},
            ) from exc
        current = self.repository.current_version()
        if current == version:
            return version
        if not self.repository.publish_pointer(current, version):
            raise GraphPublishConflict(f"current version changed during rollback to v{version}")
        log_event("graph_rolled_back", version=version, previous_version=current)
        return version

    def versions(self) -> list[int]:
        return self.repository.versions()
