from __future__ import annotations

import threading
from typing import Any

from routegraph.data_source import AdaptiveDataSource, LoadResult
from routegraph.dataset_cache import CacheStore
from routegraph.entities import DataSourceMode, Stop
from routegraph.graph_builder import GraphBuilder
from routegraph.graph_store import InMemorySnapshotStore, SnapshotRepository
from routegraph.pipeline import (
    PipelineOrchestrator,
    RunStatus,
    TriggerResult,
    _edges_for_rows,
    default_stages,
)
from routegraph.provider_client import DatasetRequest, ProviderClient
from routegraph.quality import parse_payload, score_payload


def _mock_only_source() -> AdaptiveDataSource:
    return AdaptiveDataSource(
        client=ProviderClient(base_url=""),
        cache=CacheStore(ttl_s=60, max_entries=4),
        offline_snapshots=False,
    )


def _isolated_payload() -> dict[str, Any]:
    return {
        "stops": [
            {"id": "c1", "name": "Port Z", "city": "Z", "lat": 60.0, "lon": 120.0},
            {"id": "c2", "name": "Pier Z", "city": "Z", "lat": 60.01, "lon": 120.01},
        ],
        "routes": [{"id": "r", "from": "c1", "to": "c2", "transport_type": "bus", "duration_min": 10}],
    }


class _StaticSource:
    """Serves a fixed payload; optionally blocks until released."""

    def __init__(self, payload: dict[str, Any], *, gate: threading.Event | None = None) -> None:
        self.payload = payload
        self.gate = gate
        self.entered = threading.Event()

    def load(self, request: DatasetRequest | None = None) -> LoadResult:  # noqa: ARG002
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        report = score_payload(self.payload)
        return LoadResult(
            dataset=parse_payload(self.payload, source="test"),
            mode=DataSourceMode.MOCK,
            quality=report.overall,
            report=report,
        )


class _DownStore(InMemorySnapshotStore):
    def ping(self) -> bool:
        return False


def _orchestrator(source: Any, store: InMemorySnapshotStore | None = None, **kwargs: Any) -> PipelineOrchestrator:
    repo = SnapshotRepository(store or InMemorySnapshotStore(), prefix="test", ttl_s=0)
    return PipelineOrchestrator(data_source=source, builder=GraphBuilder(repo), concurrency=2, **kwargs)


def test_successful_run_publishes_mock_graph() -> None:
    seen: list[int | None] = []
    orchestrator = _orchestrator(_mock_only_source(), on_success=lambda ctx: seen.append(ctx.published_version))

    result = orchestrator.run()

    assert result.trigger is TriggerResult.ACCEPTED
    assert result.status is RunStatus.SUCCESS
    assert result.version == 1
    assert [s.stage for s in result.stages] == [s.name for s in default_stages()]
    assert all(s.success for s in result.stages)
    assert seen == [1]
    meta = orchestrator.builder.metadata()
    assert meta is not None
    assert meta["data_mode"] == "MOCK"
    status = orchestrator.status()
    assert status["status"] == "success"
    assert status["run_count"] == 1
    assert status["last_version"] == 1
    assert status["running"] is False


def test_second_run_while_busy_is_refused() -> None:
    gate = threading.Event()
    source = _StaticSource(_isolated_payload(), gate=gate)
    orchestrator = _orchestrator(source)

    assert orchestrator.trigger() is TriggerResult.ACCEPTED
    assert source.entered.wait(timeout=5)
    refused = orchestrator.run()
    gate.set()
    assert orchestrator.wait(timeout_s=5)

    assert refused.trigger is TriggerResult.ALREADY_RUNNING
    assert orchestrator.status()["run_count"] == 1


def test_unreachable_store_means_cannot_run() -> None:
    orchestrator = _orchestrator(_mock_only_source(), store=_DownStore())

    result = orchestrator.run()

    assert result.trigger is TriggerResult.CANNOT_RUN
    assert "build_publish" in (result.error or "")
    assert orchestrator.status()["run_count"] == 0
    assert orchestrator.status()["status"] == "idle"


def test_failed_stage_keeps_previous_version() -> None:
    store = InMemorySnapshotStore()
    good = _orchestrator(_mock_only_source(), store=store)
    assert good.run().version == 1

    bad = _orchestrator(_StaticSource(_isolated_payload()), store=store)
    result = bad.run()

    assert result.status is RunStatus.FAILED
    assert result.version is None
    assert result.stages[-1].stage == "build_publish"
    assert result.stages[-1].success is False
    assert "cannot reach" in (result.error or "")
    assert bad.builder.repository.current_version() == 1
    assert bad.status()["last_error"] == result.error


def test_failing_success_hook_does_not_fail_the_run() -> None:
    def _hook(ctx) -> None:  # noqa: ANN001
        raise RuntimeError("listener broke")

    orchestrator = _orchestrator(_mock_only_source(), on_success=_hook)

    assert orchestrator.run().status is RunStatus.SUCCESS


def test_cancel_stops_at_next_stage_boundary() -> None:
    gate = threading.Event()
    source = _StaticSource(_isolated_payload(), gate=gate)
    orchestrator = _orchestrator(source)

    assert orchestrator.cancel() is False
    assert orchestrator.trigger() is TriggerResult.ACCEPTED
    assert source.entered.wait(timeout=5)
    assert orchestrator.cancel() is True
    gate.set()
    assert orchestrator.wait(timeout_s=5)

    status = orchestrator.status()
    assert status["status"] == "cancelled"
    assert [s["stage"] for s in status["stages"]] == ["fetch_stops"]
    assert orchestrator.builder.repository.current_version() is None


def test_edges_for_rows_estimates_missing_distance_and_duration() -> None:
    stops = {
        "a": Stop(id="a", name="A", city="A", lat=62.0, lon=129.7),
        "b": Stop(id="b", name="B", city="B", lat=62.5, lon=114.0),
        "c": Stop(id="c", name="C", city="C"),
    }
    rows = [
        {"id": "r1", "from": "a", "to": "b", "transport_type": "air", "distance_km": None, "duration_min": None},
        {"id": "r2", "from": "a", "to": "b", "transport_type": "bus", "distance_km": 900.0, "duration_min": None},
        {"id": "r3", "from": "a", "to": "c", "transport_type": "bus", "distance_km": None, "duration_min": None},
        {"id": "r4", "from": "b", "to": "a", "transport_type": "air", "distance_km": None, "duration_min": 130.0},
    ]

    edges = {e.route_id: e for e in _edges_for_rows(rows, stops)}

    assert set(edges) == {"r1", "r2", "r4"}
    assert 700 < edges["r1"].distance_km < 900
    assert edges["r1"].duration_min > 45
    assert edges["r2"].duration_min == 910.0
    assert edges["r4"].duration_min == 130.0
    assert edges["r4"].distance_km == edges["r1"].distance_km
