from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Mapping

from .entities import RouteResult


@dataclass(frozen=True)
class HistoricalStats:
    """Per-route operating history. Defaults describe a route with no known problems."""

    delays30: float = 0.0
    delays60: float = 0.0
    delays90: float = 0.0
    delay_frequency: float = 0.0
    cancellation_rate: float = 0.0
    avg_occupancy: float = 0.0
    high_occupancy_segments: int = 0
    low_availability_segments: int = 0
    schedule_regularity: float = 1.0
    weather_risk: float | None = None
    seasonality_factor: float | None = None
    segments_with_history: int = 0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def _num(raw: Mapping[str, Any], key: str, default: float) -> float:
    value = raw.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    out = float(value)
    return out if math.isfinite(out) else default


def _unit(value: float) -> float:
    return min(1.0, max(0.0, value))


def stats_from_mapping(raw: Mapping[str, Any]) -> HistoricalStats:
    weather = raw.get("weather_risk")
    season = raw.get("seasonality_factor")
    return HistoricalStats(
        delays30=max(0.0, _num(raw, "delays30", 0.0)),
        delays60=max(0.0, _num(raw, "delays60", 0.0)),
        delays90=max(0.0, _num(raw, "delays90", 0.0)),
        delay_frequency=_unit(_num(raw, "delay_frequency", 0.0)),
        cancellation_rate=_unit(_num(raw, "cancellation_rate", 0.0)),
        avg_occupancy=_unit(_num(raw, "avg_occupancy", 0.0)),
        high_occupancy_segments=max(0, int(_num(raw, "high_occupancy_segments", 0))),
        low_availability_segments=max(0, int(_num(raw, "low_availability_segments", 0))),
        schedule_regularity=_unit(_num(raw, "schedule_regularity", 1.0)),
        weather_risk=_unit(_num(raw, "weather_risk", 0.0)) if weather is not None else None,
        seasonality_factor=max(0.0, _num(raw, "seasonality_factor", 1.0)) if season is not None else None,
        segments_with_history=1,
    )


def collect(route: RouteResult, route_stats: Mapping[str, Mapping[str, Any]] | None) -> HistoricalStats:
    """Aggregate segment histories into one value for the whole journey.

    Delays and occupancy are averaged, the worst frequency, weather and seasonality
    win, and cancellation is the chance that at least one leg is cancelled.
    """
    rows = [
        stats_from_mapping(route_stats[seg.route_id])
        for seg in route.segments
        if route_stats and isinstance(route_stats.get(seg.route_id), Mapping)
    ]
    if not rows:
        return HistoricalStats()

    n = len(rows)
    survive = 1.0
    for row in rows:
        survive *= 1.0 - row.cancellation_rate
    weather = [r.weather_risk for r in rows if r.weather_risk is not None]
    season = [r.seasonality_factor for r in rows if r.seasonality_factor is not None]
    return HistoricalStats(
        delays30=round(sum(r.delays30 for r in rows) / n, 3),
        delays60=round(sum(r.delays60 for r in rows) / n, 3),
        delays90=round(sum(r.delays90 for r in rows) / n, 3),
        delay_frequency=max(r.delay_frequency for r in rows),
        cancellation_rate=round(1.0 - survive, 6),
        avg_occupancy=round(sum(r.avg_occupancy for r in rows) / n, 6),
        high_occupancy_segments=sum(r.high_occupancy_segments for r in rows),
        low_availability_segments=sum(r.low_availability_segments for r in rows),
        schedule_regularity=min(r.schedule_regularity for r in rows),
        weather_risk=max(weather) if weather else None,
        seasonality_factor=max(season) if season else None,
        segments_with_history=n,
    )
