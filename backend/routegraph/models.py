from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from .entities import RouteResult
from .risk_model import RiskAssessment

DataMode = Literal["REAL", "RECOVERY", "MOCK", "UNKNOWN"]


class HealthResponse(BaseModel):
    status: Literal["ok", "degraded"]
    store_reachable: bool
    graph_version: int | None = None


class RouteSegmentOut(BaseModel):
    route_id: str
    from_stop_id: str
    to_stop_id: str
    transport_type: str
    distance_km: float = Field(..., ge=0)
    duration_min: float = Field(..., ge=0)
    price: float = Field(..., ge=0)


class RiskOut(BaseModel):
    score: float = Field(..., ge=0, le=10)
    level: Literal["very_low", "low", "medium", "high", "very_high"]
    description: str
    factors: dict[str, Any] = Field(default_factory=dict)
    recommendations: list[str] = Field(default_factory=list)

    @classmethod
    def from_assessment(cls, risk: RiskAssessment) -> "RiskOut":
        return cls(
            score=risk.score,
            level=risk.level,  # type: ignore[arg-type]
            description=risk.description,
            factors=risk.factors,
            recommendations=list(risk.recommendations),
        )


class RouteOut(BaseModel):
    from_city: str
    to_city: str
    date: str | None = None
    passengers: int = Field(..., ge=1)
    total_distance_km: float
    total_duration_min: float
    total_price: float
    transfer_count: int = Field(..., ge=0)
    connection_min: float = 0.0
    segments: list[RouteSegmentOut]
    risk: RiskOut | None = None

    @classmethod
    def from_result(cls, route: RouteResult, risk: RiskAssessment | None = None) -> "RouteOut":
        return cls(
            from_city=route.from_city,
            to_city=route.to_city,
            date=route.date,
            passengers=route.passengers,
            total_distance_km=route.total_distance_km,
            total_duration_min=route.total_duration_min,
            total_price=route.total_price,
            transfer_count=route.transfer_count,
            connection_min=route.connection_min,
            segments=[
                RouteSegmentOut(
                    route_id=s.route_id,
                    from_stop_id=s.from_stop_id,
                    to_stop_id=s.to_stop_id,
                    transport_type=s.transport_type,
                    distance_km=s.distance_km,
                    duration_min=s.duration_min,
                    price=s.price,
                )
                for s in route.segments
            ],
            risk=RiskOut.from_assessment(risk) if risk is not None else None,
        )


class SearchResponse(BaseModel):
    success: bool
    routes: list[RouteOut] = Field(default_factory=list)
    alternatives: list[RouteOut] = Field(default_factory=list)
    error_code: str | None = None
    message: str | None = None
    data_mode: DataMode = "UNKNOWN"
    data_quality: int = Field(default=0, ge=0, le=100)
    graph_version: int | None = None


class StageResultOut(BaseModel):
    stage: str
    success: bool
    duration_ms: float
    message: str = ""


class PipelineRunResponse(BaseModel):
    trigger: Literal["ACCEPTED", "ALREADY_RUNNING", "CANNOT_RUN"]
    status: Literal["idle", "running", "success", "failed", "cancelled"] | None = None
    stages: list[StageResultOut] = Field(default_factory=list)
    error: str | None = None
    version: int | None = None
    duration_ms: float = 0.0


class PipelineStatusResponse(BaseModel):
    status: Literal["idle", "running", "success", "failed", "cancelled"]
    running: bool
    run_count: int
    last_run_at: str | None = None
    last_status: str | None = None
    last_duration_ms: float | None = None
    last_error: str | None = None
    last_version: int | None = None
    stages: list[StageResultOut] = Field(default_factory=list)


class CancelResponse(BaseModel):
    cancelled: bool


class GraphMetadataResponse(BaseModel):
    version: int
    current_version: int | None = None
    node_count: int
    edge_count: int
    built_at: str
    data_mode: DataMode
    data_quality: int
    retained_versions: list[int] = Field(default_factory=list)
