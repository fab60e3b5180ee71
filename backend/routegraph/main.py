from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .errors import SearchErrorCode
from .logging_utils import log_event
from .metrics_store import metrics_snapshot, record_request
from .models import (
    CancelResponse,
    GraphMetadataResponse,
    HealthResponse,
    PipelineRunResponse,
    PipelineStatusResponse,
    RouteOut,
    SearchResponse,
)
from .pipeline import TriggerResult
from .services import RatedSearch, Services, build_services, search_routes
from .settings import settings


@asynccontextmanager
async def lifespan(app: FastAPI):
    services = build_services()
    app.state.services = services
    if settings.pipeline_run_on_startup:
        result = services.pipeline.trigger()
        log_event("startup_pipeline_trigger", trigger=result.value)
    yield
    services.pipeline.cancel()


app = FastAPI(title="Route Graph Service", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def record_timing(request: Request, call_next):
    t0 = time.perf_counter()
    failed = True
    try:
        response = await call_next(request)
        failed = response.status_code >= 500
        return response
    finally:
        record_request(
            f"{request.method} {request.url.path}",
            duration_ms=(time.perf_counter() - t0) * 1000.0,
            error=failed,
        )


def get_services(request: Request) -> Services:
    services: Services | None = getattr(request.app.state, "services", None)  # type: ignore[attr-defined]
    if services is None:
        raise HTTPException(status_code=503, detail="Services not initialised")
    return services


ServicesDep = Annotated[Services, Depends(get_services)]

# ROUTES_NOT_FOUND is an answer, not a failure.
_SEARCH_STATUS: dict[SearchErrorCode, int] = {
    SearchErrorCode.STOPS_NOT_FOUND: 404,
    SearchErrorCode.ROUTES_NOT_FOUND: 200,
    SearchErrorCode.GRAPH_OUT_OF_SYNC: 503,
    SearchErrorCode.DATA_UNAVAILABLE: 503,
}

_TRIGGER_STATUS: dict[TriggerResult, int] = {
    TriggerResult.ACCEPTED: 202,
    TriggerResult.ALREADY_RUNNING: 409,
    TriggerResult.CANNOT_RUN: 503,
}


@app.get("/")
async def root() -> dict[str, str]:
    return {"message": "Backend is running. Visit /docs for the API UI.", "docs": "/docs"}


@app.get("/health", response_model=HealthResponse)
def health(services: ServicesDep) -> HealthResponse:
    reachable = services.repository.ping()
    version = services.repository.current_version() if reachable else None
    return HealthResponse(
        status="ok" if reachable and version is not None else "degraded",
        store_reachable=reachable,
        graph_version=version,
    )


def _search_response(rated: RatedSearch) -> SearchResponse:
    outcome = rated.outcome
    return SearchResponse(
        success=outcome.success,
        routes=[RouteOut.from_result(r.route, r.risk) for r in rated.routes],
        alternatives=[RouteOut.from_result(r.route, r.risk) for r in rated.alternatives],
        error_code=outcome.error.value if outcome.error is not None else None,
        message=outcome.message,
        data_mode=outcome.data_mode.value,  # type: ignore[arg-type]
        data_quality=outcome.data_quality,
        graph_version=outcome.version,
    )


@app.get("/routes/search", response_model=SearchResponse)
def search(
    services: ServicesDep,
    response: Response,
    from_city: Annotated[str, Query(alias="from", min_length=1)],
    to_city: Annotated[str, Query(alias="to", min_length=1)],
    date: str | None = None,
    passengers: Annotated[int, Query(ge=1, le=50)] = 1,
    risk: bool = True,
) -> SearchResponse:
    rated = search_routes(services, from_city, to_city, date, passengers, with_risk=risk)
    if rated.outcome.error is not None:
        response.status_code = _SEARCH_STATUS[rated.outcome.error]
    return _search_response(rated)


@app.post("/pipeline/run", response_model=PipelineRunResponse)
def run_pipeline(
    services: ServicesDep,
    response: Response,
    wait: bool = False,
) -> PipelineRunResponse:
    if wait:
        result = services.pipeline.run()
        payload = result.as_dict()
        if result.trigger is TriggerResult.ACCEPTED:
            response.status_code = 200
        else:
            response.status_code = _TRIGGER_STATUS[result.trigger]
        return PipelineRunResponse(**payload)

    trigger = services.pipeline.trigger()
    response.status_code = _TRIGGER_STATUS[trigger]
    status = services.pipeline.status()
    return PipelineRunResponse(trigger=trigger.value, status=status["status"])


@app.post("/pipeline/cancel", response_model=CancelResponse)
def cancel_pipeline(services: ServicesDep) -> CancelResponse:
    return CancelResponse(cancelled=services.pipeline.cancel())


@app.get("/pipeline/status", response_model=PipelineStatusResponse)
def pipeline_status(services: ServicesDep) -> PipelineStatusResponse:
    return PipelineStatusResponse(**services.pipeline.status())


@app.get("/graph/metadata", response_model=GraphMetadataResponse)
def graph_metadata(services: ServicesDep, version: int | None = None) -> GraphMetadataResponse:
    current = services.repository.current_version()
    meta = services.builder.metadata(version)
    if meta is None:
        raise HTTPException(status_code=404, detail="No graph version has been published yet.")
    return GraphMetadataResponse(
        version=int(meta["version"]),
        current_version=current,
        node_count=int(meta["node_count"]),
        edge_count=int(meta["edge_count"]),
        built_at=str(meta["built_at"]),
        data_mode=str(meta["data_mode"]),  # type: ignore[arg-type]
        data_quality=int(meta["data_quality"]),
        retained_versions=services.builder.versions(),
    )


@app.get("/diagnostics")
def diagnostics(services: ServicesDep) -> dict[str, Any]:
    return {
        "store_reachable": services.repository.ping(),
        "current_version": services.repository.current_version(),
        "retained_versions": services.builder.versions(),
        "view_cache_versions": services.search.views.versions(),
        "pipeline": services.pipeline.status(),
        "last_load": services.data_source.last_load_info(),
        "dataset_cache": services.data_source.cache_stats(),
        "risk_cache": services.risk_cache.snapshot(),
        "route_stats_version": services.route_stats.version,
    }


@app.get("/metrics")
def metrics() -> dict[str, object]:
    return metrics_snapshot()


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    log_event("unhandled_error", path=request.url.path, error_type=type(exc).__name__, detail=str(exc))
    return JSONResponse(status_code=500, content={"detail": "Internal server error."})
