from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import UTC, datetime
from threading import Lock


@dataclass
class EndpointStats:
    request_count: int = 0
    error_count: int = 0
    total_duration_ms: float = 0.0
    max_duration_ms: float = 0.0


@dataclass
class LoadStats:
    load_count: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    total_latency_ms: float = 0.0
    total_quality: int = 0
    last_mode: str | None = None
    last_quality: int | None = None
    last_at: str | None = None


class MetricsStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._created_at = datetime.now(UTC).isoformat()
        self._endpoints: dict[str, EndpointStats] = {}
        self._loads = LoadStats()
        self._modes: Counter[str] = Counter()
        self._errors: Counter[tuple[str, str]] = Counter()

    def record(self, endpoint: str, *, duration_ms: float, error: bool = False) -> None:
        name = endpoint.strip() or "unknown"
        d_ms = max(float(duration_ms), 0.0)

        with self._lock:
            stats = self._endpoints.setdefault(name, EndpointStats())
            stats.request_count += 1
            if error:
                stats.error_count += 1
            stats.total_duration_ms += d_ms
            if d_ms > stats.max_duration_ms:
                stats.max_duration_ms = d_ms

    def record_load(self, *, mode: str, quality: int, latency_ms: float, cache_hit: bool) -> None:
        with self._lock:
            self._loads.load_count += 1
            if cache_hit:
                self._loads.cache_hits += 1
            else:
                self._loads.cache_misses += 1
            self._loads.total_latency_ms += max(float(latency_ms), 0.0)
            self._loads.total_quality += int(quality)
            self._loads.last_mode = mode
            self._loads.last_quality = int(quality)
            self._loads.last_at = datetime.now(UTC).isoformat()
            self._modes[mode] += 1

    def record_error(self, *, source: str, severity: str) -> None:
        with self._lock:
            self._errors[(source.strip() or "unknown", severity)] += 1

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            endpoints: dict[str, dict[str, float | int]] = {}
            total_requests = 0
            total_errors = 0

            for name in sorted(self._endpoints):
                stats = self._endpoints[name]
                total_requests += stats.request_count
                total_errors += stats.error_count
                avg_duration_ms = (
                    stats.total_duration_ms / stats.request_count if stats.request_count else 0.0
                )
                endpoints[name] = {
                    "request_count": stats.request_count,
                    "error_count": stats.error_count,
                    "total_duration_ms": round(stats.total_duration_ms, 3),
                    "avg_duration_ms": round(avg_duration_ms, 3),
                    "max_duration_ms": round(stats.max_duration_ms, 3),
                }

            loads = self._loads
            count = loads.load_count
            load_section: dict[str, object] = {
                "load_count": count,
                "cache_hits": loads.cache_hits,
                "cache_misses": loads.cache_misses,
                "cache_hit_rate": round(loads.cache_hits / count, 4) if count else 0.0,
                "avg_latency_ms": round(loads.total_latency_ms / count, 3) if count else 0.0,
                "avg_quality": round(loads.total_quality / count, 2) if count else 0.0,
                "last_mode": loads.last_mode,
                "last_quality": loads.last_quality,
                "last_at": loads.last_at,
                "mode_distribution": {mode: self._modes[mode] for mode in sorted(self._modes)},
            }

            errors: dict[str, dict[str, int]] = {}
            for (source, severity), n in sorted(self._errors.items()):
                errors.setdefault(source, {})[severity] = n

            return {
                "created_at": self._created_at,
                "total_requests": total_requests,
                "total_errors": total_errors,
                "endpoint_count": len(endpoints),
                "endpoints": endpoints,
                "loads": load_section,
                "errors": errors,
            }

    def reset(self) -> None:
        with self._lock:
            self._created_at = datetime.now(UTC).isoformat()
            self._endpoints.clear()
            self._loads = LoadStats()
            self._modes.clear()
            self._errors.clear()


METRICS = MetricsStore()


def record_request(endpoint: str, *, duration_ms: float, error: bool = False) -> None:
    METRICS.record(endpoint, duration_ms=duration_ms, error=error)


def record_load(*, mode: str, quality: int, latency_ms: float, cache_hit: bool) -> None:
    METRICS.record_load(mode=mode, quality=quality, latency_ms=latency_ms, cache_hit=cache_hit)


def record_error(*, source: str, severity: str) -> None:
    METRICS.record_error(source=source, severity=severity)


def metrics_snapshot() -> dict[str, object]:
    return METRICS.snapshot()


def reset_metrics() -> None:
    METRICS.reset()
