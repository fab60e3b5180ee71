from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock
from typing import Any

from .data_source import AdaptiveDataSource
from .dataset_cache import CacheStore
from .entities import RouteResult
from .errors import SearchErrorCode
from .graph_builder import GraphBuilder
from .graph_store import SnapshotRepository, SnapshotStore, create_snapshot_store
from .historical_stats import collect
from .logging_utils import log_event
from .pipeline import PipelineContext, PipelineOrchestrator, RunStatus
from .provider_client import DatasetRequest
from .risk_model import RiskAssessment, assess_cached
from .route_search import RouteSearchEngine, SearchOutcome
from .settings import settings


@dataclass
class RouteStatsIndex:
    """Route history from the dataset behind the most recently published graph."""

    _lock: Lock = field(default_factory=Lock)
    _stats: dict[str, dict[str, Any]] = field(default_factory=dict)
    version: int | None = None

    def update(self, ctx: PipelineContext) -> None:
        stats = dict(ctx.load.dataset.route_stats) if ctx.load is not None else {}
        with self._lock:
            self._stats = stats
            self.version = ctx.published_version

    def snapshot(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return self._stats


@dataclass
class Services:
    store: SnapshotStore
    repository: SnapshotRepository
    builder: GraphBuilder
    data_source: AdaptiveDataSource
    pipeline: PipelineOrchestrator
    search: RouteSearchEngine
    route_stats: RouteStatsIndex
    risk_cache: CacheStore


def build_services(
    *,
    store: SnapshotStore | None = None,
    data_source: AdaptiveDataSource | None = None,
    region: str | None = None,
) -> Services:
    store = store or create_snapshot_store()
    repository = SnapshotRepository(store)
    builder = GraphBuilder(repository)
    source = data_source or AdaptiveDataSource()
    route_stats = RouteStatsIndex()
    pipeline = PipelineOrchestrator(
        data_source=source,
        builder=builder,
        request=DatasetRequest(region=region) if region else None,
        on_success=route_stats.update,
    )
    return Services(
        store=store,
        repository=repository,
        builder=builder,
        data_source=source,
        pipeline=pipeline,
        search=RouteSearchEngine(repository),
        route_stats=route_stats,
        risk_cache=CacheStore(ttl_s=settings.risk_cache_ttl_s, max_entries=settings.risk_cache_max_entries),
    )


@dataclass(frozen=True)
class RatedRoute:
    route: RouteResult
    risk: RiskAssessment | None


@dataclass(frozen=True)
class RatedSearch:
    outcome: SearchOutcome
    routes: tuple[RatedRoute, ...]
    alternatives: tuple[RatedRoute, ...]


def _rate(route: RouteResult, route_stats: dict[str, dict[str, Any]], cache: CacheStore) -> RatedRoute:
    try:
        risk = assess_cached(route, collect(route, route_stats), cache=cache)
    except (TypeError, ValueError) as exc:
        log_event("route_risk_failed", error_type=type(exc).__name__, detail=str(exc))
        risk = None
    return RatedRoute(route=route, risk=risk)


def search_routes(
    services: Services,
    from_city: str,
    to_city: str,
    date: str | None = None,
    passengers: int = 1,
    *,
    with_risk: bool = True,
) -> RatedSearch:
    """Search with out-of-sync retries, then attach a risk rating to every route.

    A graph that is still missing once retries run out, while no rebuild is in
    flight and the last rebuild failed, is reported as DATA_UNAVAILABLE.
    """
    outcome = services.search.search_with_retry(from_city, to_city, date, passengers)
    if outcome.error is SearchErrorCode.GRAPH_OUT_OF_SYNC and services.repository.current_version() is None:
        status = services.pipeline.status()
        if not status["running"] and status["last_status"] in (RunStatus.FAILED.value, RunStatus.CANCELLED.value):
            log_event("route_search_data_unavailable", last_error=status["last_error"])
            outcome = SearchOutcome.failure(SearchErrorCode.DATA_UNAVAILABLE)

    stats = services.route_stats.snapshot() if with_risk else {}
    rate = (lambda r: _rate(r, stats, services.risk_cache)) if with_risk else (lambda r: RatedRoute(route=r, risk=None))
    return RatedSearch(
        outcome=outcome,
        routes=tuple(rate(r) for r in outcome.routes),
        alternatives=tuple(rate(r) for r in outcome.alternatives),
    )
