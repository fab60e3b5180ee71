from __future__ import annotations

import threading
import time
from datetime import UTC, datetime
from typing import Any

import pytest

import routegraph.data_source as data_source
from routegraph.data_recovery import merge_with_cached
from routegraph.data_source import AdaptiveDataSource, mode_for_score
from routegraph.dataset_cache import CacheStore
from routegraph.entities import DataSourceMode
from routegraph.errors import DataLoadError, ErrorKind, ErrorSeverity
from routegraph.metrics_store import metrics_snapshot
from routegraph.mock_provider import MockProvider
from routegraph.provider_client import DatasetRequest, FetchResult
from routegraph.quality import QualityReport

REQUEST = DatasetRequest(region="yakutia")


def _full_payload() -> dict[str, Any]:
    return {
        "as_of": datetime.now(UTC).isoformat(),
        "stops": [
            {"id": "a1", "name": "Airport X", "city": "X", "lat": 62.0, "lon": 129.7},
            {"id": "a2", "name": "Bus station X", "city": "X", "lat": 62.03, "lon": 129.73},
            {"id": "b1", "name": "Airport Y", "city": "Y", "lat": 60.7, "lon": 114.9},
        ],
        "routes": [
            {"id": "r1", "from": "a1", "to": "b1", "transport_type": "air", "duration_min": 180, "price": 2000},
            {"id": "r2", "from": "b1", "to": "a1", "transport_type": "air", "duration_min": 180, "price": 2000},
        ],
        "route_stats": {"r1": {"delays90": 600}},
    }


def _report(overall: int, *, edges: int = 100, stops: int = 100, coords: int = 100) -> QualityReport:
    return QualityReport(
        overall=overall,
        edges_score=edges,
        stops_score=stops,
        coordinates_score=coords,
        freshness_score=100,
        valid_edges=1,
        valid_stops=2,
    )


class _FakeFetcher:
    def __init__(self, result: FetchResult | Exception, *, delay_s: float = 0.0) -> None:
        self.result = result
        self.delay_s = delay_s
        self.calls = 0

    def fetch(self, request: DatasetRequest) -> FetchResult:  # noqa: ARG002
        self.calls += 1
        if self.delay_s:
            time.sleep(self.delay_s)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class _BrokenMock:
    def load(self) -> dict[str, Any]:
        raise DataLoadError(ErrorKind.MOCK_FAILED, "mock tables missing")


def _source(fetcher: Any, *, cache: CacheStore | None = None, mock: Any = None, offline: bool = False) -> AdaptiveDataSource:
    return AdaptiveDataSource(
        client=fetcher,
        mock=mock or MockProvider(),
        cache=cache or CacheStore(ttl_s=3600, max_entries=8),
        offline_snapshots=offline,
    )


def test_mode_for_score_is_monotone() -> None:
    modes = [mode_for_score(s, real_threshold=90, recovery_threshold=50) for s in range(0, 101)]

    assert modes[95] is DataSourceMode.REAL
    assert modes[90] is DataSourceMode.REAL
    assert modes[70] is DataSourceMode.RECOVERY
    assert modes[49] is DataSourceMode.MOCK
    trust = [m.trust for m in modes]
    assert trust == sorted(trust)


def test_high_quality_payload_is_served_as_real_and_cached() -> None:
    cache = CacheStore(ttl_s=3600, max_entries=8)
    payload = _full_payload()
    source = _source(_FakeFetcher(FetchResult(payload=payload, quality=_report(95))), cache=cache)

    result = source.load(REQUEST)

    assert result.mode is DataSourceMode.REAL
    assert result.quality == 95
    assert result.cache_hit is False
    assert [s.id for s in result.dataset.stops] == ["a1", "a2", "b1"]
    assert cache.get(REQUEST.cache_key) == payload
    loads = metrics_snapshot()["loads"]
    assert loads["load_count"] == 1
    assert loads["mode_distribution"] == {"REAL": 1}


def test_medium_quality_payload_is_repaired_from_cache() -> None:
    cache = CacheStore(ttl_s=3600, max_entries=8)
    cache.set(REQUEST.cache_key, _full_payload())
    degraded = _full_payload()
    degraded["stops"][2]["lat"] = None
    degraded["stops"][2]["lon"] = None
    degraded["routes"] = degraded["routes"][:1]
    source = _source(
        _FakeFetcher(FetchResult(payload=degraded, quality=_report(70, edges=50, coords=67))),
        cache=cache,
    )

    result = source.load(REQUEST)

    assert result.mode is DataSourceMode.RECOVERY
    assert result.cache_hit is True
    assert result.recovery is not None
    assert result.recovery.coordinates_filled == 1
    assert result.recovery.routes_added == 1
    assert result.report.completeness > _report(70, edges=50, coords=67).completeness
    assert {r["id"] for r in result.dataset.routes} == {"r1", "r2"}
    assert metrics_snapshot()["loads"]["mode_distribution"] == {"RECOVERY": 1}


def test_repair_that_adds_nothing_is_a_warning_and_falls_back_to_mock() -> None:
    cache = CacheStore(ttl_s=3600, max_entries=8)
    cache.set(REQUEST.cache_key, _full_payload())
    fetched_report = QualityReport(
        overall=70,
        edges_score=100,
        stops_score=100,
        coordinates_score=100,
        freshness_score=0,
        valid_edges=99,
        valid_stops=99,
    )
    source = _source(_FakeFetcher(FetchResult(payload=_full_payload(), quality=fetched_report)), cache=cache)

    result = source.load(REQUEST)

    assert result.mode is DataSourceMode.MOCK
    assert metrics_snapshot()["errors"] == {"recovery": {"warning": 1}}


def test_medium_quality_without_cache_falls_back_to_mock() -> None:
    payload = _full_payload()
    source = _source(_FakeFetcher(FetchResult(payload=payload, quality=_report(70))))

    result = source.load(REQUEST)

    assert result.mode is DataSourceMode.MOCK
    assert result.dataset.source == "mock"


def test_low_quality_payload_uses_mock() -> None:
    payload = _full_payload()
    source = _source(_FakeFetcher(FetchResult(payload=payload, quality=_report(30))))

    result = source.load(REQUEST)

    assert result.mode is DataSourceMode.MOCK
    assert len(result.dataset.stops) > 10
    assert any(r["transport_type"] == "ferry" for r in result.dataset.routes)


def test_upstream_failure_recovers_from_offline_snapshot(monkeypatch) -> None:  # noqa: ANN001
    snapshot = _full_payload()
    monkeypatch.setattr(data_source, "load_dataset_snapshot", lambda key: (snapshot, "2026-01-01T00:00:00+00:00"))
    failure = DataLoadError(ErrorKind.UPSTREAM_CONNECTION, "connection refused")
    source = _source(_FakeFetcher(failure), offline=True)

    result = source.load(REQUEST)

    assert result.mode is DataSourceMode.RECOVERY
    assert {s.id for s in result.dataset.stops} == {"a1", "a2", "b1"}
    assert metrics_snapshot()["errors"] == {"provider": {"recoverable": 1}}


def test_critical_mock_failure_propagates() -> None:
    failure = DataLoadError(ErrorKind.UPSTREAM_TIMEOUT, "timed out")
    source = _source(_FakeFetcher(failure), mock=_BrokenMock())

    with pytest.raises(DataLoadError) as excinfo:
        source.load(REQUEST)

    assert excinfo.value.severity is ErrorSeverity.CRITICAL
    snapshot = metrics_snapshot()
    assert snapshot["loads"]["mode_distribution"] == {"UNKNOWN": 1}
    assert snapshot["errors"]["mock"] == {"critical": 1}


def test_cache_write_failure_does_not_fail_the_load(monkeypatch) -> None:  # noqa: ANN001
    def _boom(key: str, payload: dict[str, Any]) -> None:  # noqa: ARG001
        raise OSError("disk full")

    monkeypatch.setattr(data_source, "save_dataset_snapshot", _boom)
    source = _source(_FakeFetcher(FetchResult(payload=_full_payload(), quality=_report(96))), offline=True)

    result = source.load(REQUEST)

    assert result.mode is DataSourceMode.REAL
    assert metrics_snapshot()["errors"] == {"cache": {"warning": 1}}


def test_concurrent_loads_for_one_key_are_coalesced() -> None:
    fetcher = _FakeFetcher(FetchResult(payload=_full_payload(), quality=_report(95)), delay_s=0.2)
    source = _source(fetcher)
    results: list[Any] = []
    start = threading.Barrier(4)

    def _worker() -> None:
        start.wait()
        results.append(source.load(REQUEST))

    threads = [threading.Thread(target=_worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    assert len(results) == 4
    assert fetcher.calls == 1
    assert all(r is results[0] for r in results)
    assert metrics_snapshot()["loads"]["load_count"] == 4


def test_last_load_info_and_invalidate() -> None:
    cache = CacheStore(ttl_s=3600, max_entries=8)
    source = _source(_FakeFetcher(FetchResult(payload=_full_payload(), quality=_report(99))), cache=cache)

    assert source.last_load_info() is None
    source.load(REQUEST)
    info = source.last_load_info()
    assert info is not None
    assert info["mode"] == "REAL"
    assert info["route_count"] == 2

    source.invalidate(REQUEST)
    assert cache.get(REQUEST.cache_key) is None


def test_merge_keeps_fresh_values_and_interpolates_city_centroid() -> None:
    cached = _full_payload()
    fetched = _full_payload()
    fetched["stops"][0]["name"] = "Airport X (new)"
    fetched["stops"].append({"id": "a3", "name": "Port X", "city": "X"})

    repaired, report = merge_with_cached(fetched, cached)

    by_id = {s["id"]: s for s in repaired["stops"]}
    assert by_id["a1"]["name"] == "Airport X (new)"
    assert by_id["a3"]["lat"] == pytest.approx((62.0 + 62.03) / 2)
    assert report.coordinates_interpolated == 1
    assert report.routes_added == 0
    assert report.changed is True
