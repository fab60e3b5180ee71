from __future__ import annotations

import pytest

from routegraph.dataset_cache import CacheStore
from routegraph.entities import RouteResult, RouteSegment
from routegraph.historical_stats import HistoricalStats, collect, stats_from_mapping
from routegraph.risk_model import (
    assess,
    assess_cached,
    cancellation_risk,
    delay_risk,
    duration_risk,
    occupancy_risk,
    risk_cache_key,
    risk_level,
    transfer_risk,
)


def _segment(route_id: str, transport: str = "air", duration: float = 90.0) -> RouteSegment:
    return RouteSegment(
        route_id=route_id,
        from_stop_id=f"{route_id}-a",
        to_stop_id=f"{route_id}-b",
        transport_type=transport,
        distance_km=500.0,
        duration_min=duration,
        price=1000.0,
    )


def _route(*segments: RouteSegment) -> RouteResult:
    return RouteResult(
        segments=segments,
        total_distance_km=sum(s.distance_km for s in segments),
        total_duration_min=sum(s.duration_min for s in segments),
        total_price=sum(s.price for s in segments),
        transfer_count=len(segments) - 1,
        from_city="X",
        to_city="Y",
    )


def test_quiet_direct_flight_is_very_low_risk() -> None:
    risk = assess(_route(_segment("r1")), HistoricalStats())

    assert risk.score == 1.0
    assert risk.level == "very_low"
    assert risk.description
    assert risk.recommendations == ()
    assert risk.factors["transfer_count"] == 0


def test_score_is_clamped_and_rounded() -> None:
    stats = HistoricalStats(
        delays90=6000.0,
        delay_frequency=1.0,
        cancellation_rate=0.9,
        avg_occupancy=0.99,
        high_occupancy_segments=5,
        low_availability_segments=5,
        schedule_regularity=0.1,
        weather_risk=1.0,
        seasonality_factor=1.5,
    )
    route = _route(*(_segment(f"r{i}", "ferry", 600.0) for i in range(6)))

    risk = assess(route, stats)

    assert risk.score == 10.0
    assert risk.level == "very_high"
    assert risk.score == round(risk.score, 1)


def test_components_are_monotone_in_their_inputs() -> None:
    assert [transfer_risk(n) for n in range(6)] == sorted(transfer_risk(n) for n in range(6))
    delays = [delay_risk(seconds, 0.1) for seconds in range(0, 10_000, 300)]
    assert delays == sorted(delays)
    rates = [cancellation_risk(r / 100) for r in range(0, 100, 5)]
    assert rates == sorted(rates)
    occupancy = [occupancy_risk(o / 100, 0, 0) for o in range(0, 100, 5)]
    assert occupancy == sorted(occupancy)
    durations = [duration_risk(m) for m in range(0, 3000, 60)]
    assert durations == sorted(durations)


@pytest.mark.parametrize(
    ("score", "level"),
    [(0.0, "very_low"), (2.0, "very_low"), (2.1, "low"), (4.0, "low"), (6.0, "medium"), (8.0, "high"), (8.1, "very_high")],
)
def test_risk_level_thresholds(score: float, level: str) -> None:
    assert risk_level(score) == level


def test_recommendations_follow_route_and_history() -> None:
    route = _route(_segment("r1", "ferry"), _segment("r2", "bus"), _segment("r3", "bus"), _segment("r4", "air"))
    stats = HistoricalStats(avg_occupancy=0.95, delay_frequency=0.5, cancellation_rate=0.15)

    risk = assess(route, stats, delay_frequency_threshold=0.3)

    text = " ".join(risk.recommendations)
    assert "transfer" in text
    assert "weather" in text
    assert "Ferry transport" in text
    assert "book early" in text
    assert "earlier departure" in text
    assert "alternative route" in text


def test_delay_frequency_threshold_controls_recommendation() -> None:
    route = _route(_segment("r1"))
    stats = HistoricalStats(delay_frequency=0.4)

    assert "Delays are frequent; consider an earlier departure." in assess(
        route, stats, delay_frequency_threshold=0.3
    ).recommendations
    assert "Delays are frequent; consider an earlier departure." not in assess(
        route, stats, delay_frequency_threshold=0.5
    ).recommendations


def test_assessment_is_deterministic_and_cached() -> None:
    route = _route(_segment("r1"), _segment("r2", "bus"))
    stats = HistoricalStats(delays90=1800.0, delay_frequency=0.2)
    cache = CacheStore(ttl_s=60, max_entries=4)

    first = assess_cached(route, stats, cache=cache)
    second = assess_cached(route, stats, cache=cache)

    assert first == assess(route, stats)
    assert second == first
    assert cache.snapshot()["size"] == 1
    assert cache.snapshot()["hits"] == 1
    assert risk_cache_key(route, stats) == risk_cache_key(route, stats)
    assert risk_cache_key(route, stats) != risk_cache_key(route, HistoricalStats())
    assert risk_cache_key(route, stats).startswith("risk:")


def test_collect_aggregates_segment_history() -> None:
    route = _route(_segment("r1"), _segment("r2"), _segment("r3"))
    route_stats = {
        "r1": {"delays90": 600, "delay_frequency": 0.1, "cancellation_rate": 0.1, "schedule_regularity": 0.9},
        "r2": {
            "delays90": 1200,
            "delay_frequency": 0.4,
            "cancellation_rate": 0.2,
            "schedule_regularity": 0.5,
            "weather_risk": 0.3,
            "high_occupancy_segments": 1,
        },
    }

    stats = collect(route, route_stats)

    assert stats.segments_with_history == 2
    assert stats.delays90 == 900.0
    assert stats.delay_frequency == 0.4
    assert stats.cancellation_rate == pytest.approx(1 - 0.9 * 0.8)
    assert stats.schedule_regularity == 0.5
    assert stats.weather_risk == 0.3
    assert stats.seasonality_factor is None
    assert stats.high_occupancy_segments == 1


def test_collect_without_history_is_neutral() -> None:
    assert collect(_route(_segment("r1")), {}) == HistoricalStats()
    assert collect(_route(_segment("r1")), None) == HistoricalStats()


def test_stats_from_mapping_clamps_bad_values() -> None:
    stats = stats_from_mapping({"delay_frequency": 3.0, "cancellation_rate": -1, "avg_occupancy": "full", "delays90": True})

    assert stats.delay_frequency == 1.0
    assert stats.cancellation_rate == 0.0
    assert stats.avg_occupancy == 0.0
    assert stats.delays90 == 0.0
