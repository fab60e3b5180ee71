from __future__ import annotations

import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import UTC, datetime
from threading import Lock
from typing import Any, Protocol

from .data_recovery import RecoveryReport, merge_with_cached
from .dataset_cache import CacheStore
from .entities import DataSourceMode, TransportDataset
from .errors import DataLoadError, ErrorKind, FallbackAction, fallback_action
from .fallback_store import load_dataset_snapshot, save_dataset_snapshot
from .logging_utils import log_event
from .metrics_store import record_error, record_load
from .mock_provider import MockProvider
from .provider_client import DatasetRequest, FetchResult, ProviderClient
from .quality import QualityReport, parse_payload, score_payload
from .settings import settings


class DatasetFetcher(Protocol):
    def fetch(self, request: DatasetRequest) -> FetchResult: ...


class MockSource(Protocol):
    def load(self) -> dict[str, Any]: ...


@dataclass(frozen=True)
class LoadResult:
    dataset: TransportDataset
    mode: DataSourceMode
    quality: int
    report: QualityReport
    cache_hit: bool = False
    loaded_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    recovery: RecoveryReport | None = None


def mode_for_score(
    score: int,
    *,
    real_threshold: int | None = None,
    recovery_threshold: int | None = None,
) -> DataSourceMode:
    """Pure threshold mapping: higher scores never select a less trusted mode."""
    real = settings.quality_threshold_real if real_threshold is None else int(real_threshold)
    recovery = settings.quality_threshold_recovery if recovery_threshold is None else int(recovery_threshold)
    if score >= real:
        return DataSourceMode.REAL
    if score >= recovery:
        return DataSourceMode.RECOVERY
    return DataSourceMode.MOCK


def _improved(before: QualityReport | None, after: QualityReport) -> bool:
    if before is None:
        return after.completeness > 0.0
    if after.completeness != before.completeness:
        return after.completeness > before.completeness
    # Same ratios, but more usable rows is still a strictly more complete dataset.
    return (after.valid_edges, after.valid_stops) > (before.valid_edges, before.valid_stops)


class AdaptiveDataSource:
    """Chooses REAL, RECOVERY or MOCK data for a request based on upstream quality."""

    def __init__(
        self,
        *,
        client: DatasetFetcher | None = None,
        mock: MockSource | None = None,
        cache: CacheStore | None = None,
        offline_snapshots: bool | None = None,
    ) -> None:
        self._client = client or ProviderClient()
        self._mock = mock or MockProvider()
        self._cache = cache or CacheStore(
            ttl_s=settings.dataset_cache_ttl_s,
            max_entries=settings.dataset_cache_max_entries,
        )
        self._offline = settings.offline_snapshots_enabled if offline_snapshots is None else offline_snapshots
        self._lock = Lock()
        self._inflight: dict[str, Future[LoadResult]] = {}
        self._last_info: dict[str, Any] | None = None

    def load(self, request: DatasetRequest | None = None) -> LoadResult:
        request = request or DatasetRequest()
        key = request.cache_key
        with self._lock:
            future = self._inflight.get(key)
            leader = future is None
            if future is None:
                future = Future()
                self._inflight[key] = future

        t0 = time.perf_counter()
        if not leader:
            log_event("dataset_load_coalesced", cache_key=key)
            try:
                result = future.result()
            except Exception:
                self._record(None, t0)
                raise
            self._record(result, t0)
            return result

        try:
            result = self._load_once(request)
        except BaseException as exc:
            future.set_exception(exc)
            self._record(None, t0)
            raise
        else:
            future.set_result(result)
            self._record(result, t0)
            self._remember(request, result, t0)
            return result
        finally:
            with self._lock:
                self._inflight.pop(key, None)

    def last_load_info(self) -> dict[str, Any] | None:
        with self._lock:
            return dict(self._last_info) if self._last_info is not None else None

    def cache_stats(self) -> dict[str, int]:
        return self._cache.snapshot()

    def invalidate(self, request: DatasetRequest | None = None) -> None:
        if request is None:
            self._cache.clear()
            return
        self._cache.delete(request.cache_key)

    def _record(self, result: LoadResult | None, t0: float) -> None:
        latency_ms = round((time.perf_counter() - t0) * 1000.0, 2)
        if result is None:
            record_load(mode=DataSourceMode.UNKNOWN.value, quality=0, latency_ms=latency_ms, cache_hit=False)
            return
        record_load(
            mode=result.mode.value,
            quality=result.quality,
            latency_ms=latency_ms,
            cache_hit=result.cache_hit,
        )

    def _remember(self, request: DatasetRequest, result: LoadResult, t0: float) -> None:
        info = {
            "region": request.region,
            "mode": result.mode.value,
            "quality": result.quality,
            "loaded_at": result.loaded_at,
            "cache_hit": result.cache_hit,
            "latency_ms": round((time.perf_counter() - t0) * 1000.0, 2),
            "stop_count": len(result.dataset.stops),
            "route_count": len(result.dataset.routes),
        }
        with self._lock:
            self._last_info = info

    def _handle(self, error: DataLoadError, *, source: str) -> FallbackAction:
        action = fallback_action(error)
        severity = error.severity.value if error.severity is not None else "unknown"
        record_error(source=source, severity=severity)
        log_event(
            "dataset_load_error",
            severity=error.severity,
            source=source,
            kind=error.kind.value,
            action=action.value,
            detail=str(error),
            error_context=error.context or {},
        )
        return action

    def _load_once(self, request: DatasetRequest) -> LoadResult:
        key = request.cache_key
        fetched: FetchResult | None = None
        try:
            fetched = self._client.fetch(request)
        except DataLoadError as exc:
            if self._handle(exc, source="provider") is FallbackAction.RAISE:
                raise

        if fetched is not None:
            score = fetched.quality.overall
            mode = mode_for_score(score)
            log_event("dataset_quality_scored", cache_key=key, quality=score, mode=mode.value)
            if mode is DataSourceMode.REAL:
                self._write_cache(key, fetched.payload)
                return LoadResult(
                    dataset=parse_payload(fetched.payload, source="provider"),
                    mode=DataSourceMode.REAL,
                    quality=score,
                    report=fetched.quality,
                )
            if mode is DataSourceMode.RECOVERY:
                recovered = self._recover(key, fetched)
                if recovered is not None:
                    return recovered
        else:
            recovered = self._recover(key, None)
            if recovered is not None:
                return recovered

        return self._load_mock(key)

    def _recover(self, key: str, fetched: FetchResult | None) -> LoadResult | None:
        cached = self._read_cache(key)
        if cached is None:
            log_event("dataset_recovery_skipped", cache_key=key, reason="no_cached_payload")
            return None
        repaired, recovery = merge_with_cached(fetched.payload if fetched else None, cached)
        report = score_payload(repaired)
        before = fetched.quality if fetched else None
        if not _improved(before, report):
            rejected = DataLoadError(
                ErrorKind.RECOVERY_FAILED,
                "Cached data did not make the dataset more complete.",
                context={
                    "cache_key": key,
                    "completeness_before": before.completeness if before else 0.0,
                    "completeness_after": report.completeness,
                },
            )
            self._handle(rejected, source="recovery")
            return None
        log_event(
            "dataset_recovered",
            cache_key=key,
            quality_before=before.overall if before else 0,
            quality_after=report.overall,
            **recovery.as_dict(),
        )
        self._write_cache(key, repaired)
        return LoadResult(
            dataset=parse_payload(repaired, source="recovery"),
            mode=DataSourceMode.RECOVERY,
            quality=report.overall,
            report=report,
            cache_hit=True,
            recovery=recovery,
        )

    def _load_mock(self, key: str) -> LoadResult:
        try:
            payload = self._mock.load()
        except DataLoadError as exc:
            self._handle(exc, source="mock")
            raise
        except (KeyError, TypeError, ValueError) as exc:
            error = DataLoadError(ErrorKind.MOCK_FAILED, f"Mock provider failed: {exc}")
            self._handle(error, source="mock")
            raise error from exc
        report = score_payload(payload)
        log_event("dataset_mock_selected", cache_key=key, quality=report.overall)
        return LoadResult(
            dataset=parse_payload(payload, source="mock"),
            mode=DataSourceMode.MOCK,
            quality=report.overall,
            report=report,
        )

    def _read_cache(self, key: str) -> dict[str, Any] | None:
        try:
            cached = self._cache.get(key)
            if isinstance(cached, dict):
                return cached
            if not self._offline:
                return None
            snapshot = load_dataset_snapshot(key)
            if snapshot is None:
                return None
            payload, updated_at = snapshot
            log_event("dataset_offline_snapshot_used", cache_key=key, updated_at=updated_at)
            return payload
        except Exception as exc:
            self._handle(DataLoadError(ErrorKind.CACHE_READ, f"Cache read failed: {exc}"), source="cache")
            return None

    def _write_cache(self, key: str, payload: dict[str, Any]) -> None:
        try:
            self._cache.set(key, payload)
            if self._offline:
                save_dataset_snapshot(key, payload)
        except Exception as exc:
            # Cache failures degrade freshness of future recoveries, never the current load.
            self._handle(DataLoadError(ErrorKind.CACHE_WRITE, f"Cache write failed: {exc}"), source="cache")
