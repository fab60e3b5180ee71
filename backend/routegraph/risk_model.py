from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from typing import Any

from .dataset_cache import CacheStore
from .entities import RouteResult
from .historical_stats import HistoricalStats
from .settings import settings

BASE_SCORE = 1.0
MAX_SCORE = 10.0
WATER_TRANSPORT = frozenset({"ferry"})


@dataclass(frozen=True)
class RiskAssessment:
    score: float
    level: str
    description: str
    factors: dict[str, Any] = field(default_factory=dict)
    recommendations: tuple[str, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["recommendations"] = list(self.recommendations)
        return out


def transfer_risk(transfers: int) -> float:
    if transfers <= 0:
        return 0.0
    if transfers == 1:
        return 0.5
    if transfers == 2:
        return 1.0
    return 1.5 + (transfers - 2) * 0.5


def transport_type_risk(transport_types: tuple[str, ...]) -> float:
    kinds = set(transport_types)
    risk = 0.0
    if kinds & WATER_TRANSPORT:
        risk += 1.5
    if len(kinds) > 1:
        risk += 0.5
    if "bus" in kinds:
        risk += 0.3
    return risk


def delay_risk(delays90: float, delay_frequency: float) -> float:
    avg_delay = delays90 / 60.0
    if avg_delay < 15:
        base = 0.0
    elif avg_delay < 30:
        base = 0.5
    elif avg_delay < 60:
        base = 1.0
    else:
        base = 1.5 + (avg_delay - 60) / 60
    return min(2.0, base + delay_frequency * 2)


def cancellation_risk(rate: float) -> float:
    if rate < 0.05:
        return 0.0
    if rate < 0.1:
        return 0.5
    if rate < 0.2:
        return 1.0
    return 1.5 + rate * 5


def occupancy_risk(avg_occupancy: float, high_segments: int, low_availability: int) -> float:
    risk = 0.0
    if avg_occupancy > 0.9:
        risk += 1.0
    elif avg_occupancy > 0.8:
        risk += 0.5
    risk += high_segments * 0.3
    risk += low_availability * 0.5
    return min(2.0, risk)


def schedule_risk(regularity: float) -> float:
    if regularity > 0.8:
        return 0.0
    if regularity > 0.6:
        return 0.3
    if regularity > 0.4:
        return 0.7
    return 1.0


def weather_risk(value: float | None) -> float:
    return max(0.0, float(value or 0.0)) * 1.5


def seasonality_risk(factor: float | None) -> float:
    value = float(factor or 1.0)
    if value > 1.15:
        return 0.5
    if value > 1.1:
        return 0.3
    return 0.0


def duration_risk(total_minutes: float) -> float:
    hours = total_minutes / 60.0
    if hours < 2:
        return 0.0
    if hours < 6:
        return 0.2
    if hours < 12:
        return 0.4
    return 0.6 + (hours - 12) / 24


def risk_level(score: float) -> str:
    if score <= 2:
        return "very_low"
    if score <= 4:
        return "low"
    if score <= 6:
        return "medium"
    if score <= 8:
        return "high"
    return "very_high"


_DESCRIPTIONS: dict[str, str] = {
    "very_low": "Very low risk of delays",
    "low": "Low risk of delays",
    "medium": "Moderate risk of delays",
    "high": "High risk of delays",
    "very_high": "Very high risk of delays",
}


def recommendations_for(
    score: float,
    route: RouteResult,
    stats: HistoricalStats,
    *,
    delay_frequency_threshold: float,
) -> tuple[str, ...]:
    out: list[str] = []
    if score >= 7:
        out.append("Consider travel insurance for this trip.")
    if route.transfer_count > 2:
        out.append("Arrive early at each transfer point.")
    if set(route.transport_types) & WATER_TRANSPORT:
        out.append("Ferry transport is weather-dependent; check for delays before departure.")
    if stats.avg_occupancy > 0.9:
        out.append("Seats sell out quickly on this route; book early.")
    if stats.schedule_regularity < 0.6:
        out.append("Schedules on this route are irregular; confirm departure times with the carrier.")
    if stats.cancellation_rate > 0.1:
        out.append("Cancellations are frequent; keep an alternative route in mind.")
    if stats.delay_frequency > delay_frequency_threshold:
        out.append("Delays are frequent; consider an earlier departure.")
    return tuple(out)


def assess(
    route: RouteResult,
    stats: HistoricalStats,
    *,
    delay_frequency_threshold: float | None = None,
) -> RiskAssessment:
    """Rule-based score in [0, 10]. Pure: equal inputs always give equal outputs."""
    threshold = (
        settings.risk_delay_frequency_threshold if delay_frequency_threshold is None else float(delay_frequency_threshold)
    )
    components = {
        "transfers": transfer_risk(route.transfer_count),
        "transport_type": transport_type_risk(route.transport_types),
        "delays": delay_risk(stats.delays90, stats.delay_frequency),
        "cancellations": cancellation_risk(stats.cancellation_rate),
        "occupancy": occupancy_risk(
            stats.avg_occupancy,
            stats.high_occupancy_segments,
            stats.low_availability_segments,
        ),
        "schedule": schedule_risk(stats.schedule_regularity),
        "weather": weather_risk(stats.weather_risk),
        "seasonality": seasonality_risk(stats.seasonality_factor),
        "duration": duration_risk(route.total_duration_min),
    }
    raw = BASE_SCORE + sum(components.values())
    score = round(min(MAX_SCORE, max(0.0, raw)), 1)
    level = risk_level(score)

    factors: dict[str, Any] = {
        "transfer_count": route.transfer_count,
        "historical_delays": {
            "delays30": stats.delays30,
            "delays60": stats.delays60,
            "delays90": stats.delays90,
            "delay_frequency": stats.delay_frequency,
        },
        "cancellations": {"rate": stats.cancellation_rate},
        "occupancy": {
            "average": stats.avg_occupancy,
            "high_occupancy_segments": stats.high_occupancy_segments,
            "low_availability_segments": stats.low_availability_segments,
        },
        "components": {k: round(v, 3) for k, v in components.items()},
    }
    if stats.weather_risk is not None:
        factors["weather"] = {"risk": stats.weather_risk}
    if stats.seasonality_factor is not None:
        factors["seasonality"] = {"factor": stats.seasonality_factor}

    return RiskAssessment(
        score=score,
        level=level,
        description=_DESCRIPTIONS[level],
        factors=factors,
        recommendations=recommendations_for(score, route, stats, delay_frequency_threshold=threshold),
    )


def risk_cache_key(route: RouteResult, stats: HistoricalStats) -> str:
    canonical = {
        "segments": [asdict(s) for s in route.segments],
        "transfer_count": route.transfer_count,
        "total_duration_min": route.total_duration_min,
        "stats": stats.as_dict(),
        "threshold": settings.risk_delay_frequency_threshold,
    }
    payload = json.dumps(canonical, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    return "risk:" + hashlib.sha1(payload.encode("utf-8")).hexdigest()


def assess_cached(route: RouteResult, stats: HistoricalStats, *, cache: CacheStore) -> RiskAssessment:
    key = risk_cache_key(route, stats)
    hit = cache.get(key)
    if isinstance(hit, RiskAssessment):
        return hit
    result = assess(route, stats)
    cache.set(key, result)
    return result
