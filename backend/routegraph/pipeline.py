from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Callable, Sequence

import numpy as np

from .data_source import AdaptiveDataSource, LoadResult
from .entities import Edge, GraphVersion, Stop
from .errors import DataLoadError, ErrorSeverity, GraphPublishConflict, GraphValidationError
from .geo import estimate_distance_km, estimate_duration_min, haversine_km
from .graph_builder import GraphBuilder
from .logging_utils import log_event
from .provider_client import DatasetRequest
from .settings import settings
from .virtual_stops import VirtualStopSet, generate


class RunStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TriggerResult(str, Enum):
    ACCEPTED = "ACCEPTED"
    ALREADY_RUNNING = "ALREADY_RUNNING"
    CANNOT_RUN = "CANNOT_RUN"


@dataclass(frozen=True)
class StageResult:
    success: bool
    duration_ms: float
    message: str = ""
    stage: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "success": self.success,
            "duration_ms": round(self.duration_ms, 2),
            "message": self.message,
        }


@dataclass
class PipelineContext:
    request: DatasetRequest
    data_source: AdaptiveDataSource
    builder: GraphBuilder
    concurrency: int = 1
    load: LoadResult | None = None
    stops: tuple[Stop, ...] = ()
    virtual: VirtualStopSet | None = None
    edges: tuple[Edge, ...] = ()
    dropped_routes: int = 0
    graph: GraphVersion | None = None
    published_version: int | None = None


@dataclass(frozen=True)
class PipelineRunResult:
    trigger: TriggerResult
    status: RunStatus | None = None
    stages: tuple[StageResult, ...] = ()
    error: str | None = None
    version: int | None = None
    duration_ms: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "trigger": self.trigger.value,
            "status": self.status.value if self.status is not None else None,
            "stages": [s.as_dict() for s in self.stages],
            "error": self.error,
            "version": self.version,
            "duration_ms": round(self.duration_ms, 2),
        }


class PipelineStage:
    name = "stage"

    def can_run(self, ctx: PipelineContext) -> bool:
        return True

    def run(self, ctx: PipelineContext) -> StageResult:
        t0 = time.perf_counter()
        message = self._run(ctx)
        return StageResult(
            success=True,
            duration_ms=(time.perf_counter() - t0) * 1000.0,
            message=message,
            stage=self.name,
        )

    def _run(self, ctx: PipelineContext) -> str:
        raise NotImplementedError


class FetchStopsStage(PipelineStage):
    name = "fetch_stops"

    def _run(self, ctx: PipelineContext) -> str:
        ctx.load = ctx.data_source.load(ctx.request)
        ctx.stops = ctx.load.dataset.stops
        return f"{len(ctx.stops)} stops loaded in {ctx.load.mode.value} mode (quality {ctx.load.quality})"


class GenerateVirtualStopsStage(PipelineStage):
    name = "generate_virtual_stops"

    def _run(self, ctx: PipelineContext) -> str:
        ctx.virtual = generate(ctx.stops)
        return f"{len(ctx.virtual.virtual_stops)} virtual stops, {len(ctx.virtual.transfer_edges)} transfer edges"


def _edges_for_rows(rows: Sequence[dict[str, Any]], stops: dict[str, Stop]) -> list[Edge]:
    """Fill missing distance/duration for a chunk of route rows with one vectorized pass."""
    need_distance = [
        i
        for i, r in enumerate(rows)
        if not r.get("distance_km") and stops[r["from"]].has_coordinates and stops[r["to"]].has_coordinates
    ]
    estimated: dict[int, float] = {}
    if need_distance:
        src = [stops[rows[i]["from"]] for i in need_distance]
        dst = [stops[rows[i]["to"]] for i in need_distance]
        km = haversine_km(
            np.array([s.lat for s in src], dtype=float),
            np.array([s.lon for s in src], dtype=float),
            np.array([d.lat for d in dst], dtype=float),
            np.array([d.lon for d in dst], dtype=float),
        )
        for i, gc_km in zip(need_distance, km.tolist()):
            estimated[i] = round(estimate_distance_km(str(rows[i]["transport_type"]), gc_km), 1)

    out: list[Edge] = []
    for i, row in enumerate(rows):
        transport = str(row["transport_type"])
        distance = float(row.get("distance_km") or estimated.get(i, 0.0))
        duration = float(row.get("duration_min") or 0.0)
        if duration <= 0.0:
            if distance <= 0.0:
                continue
            duration = estimate_duration_min(transport, distance)
        out.append(
            Edge(
                from_stop_id=str(row["from"]),
                to_stop_id=str(row["to"]),
                route_id=str(row["id"]),
                transport_type=transport,
                distance_km=distance,
                duration_min=duration,
                price=max(0.0, float(row.get("price") or 0.0)),
            )
        )
    return out


class FetchEdgesStage(PipelineStage):
    name = "fetch_edges"
    chunk_size = 500

    def can_run(self, ctx: PipelineContext) -> bool:
        return ctx.concurrency >= 1

    def _run(self, ctx: PipelineContext) -> str:
        if ctx.load is None:
            raise RuntimeError("fetch_edges requires a loaded dataset")
        stops = {s.id: s for s in ctx.stops}
        rows = [r for r in ctx.load.dataset.routes if r["from"] in stops and r["to"] in stops]
        chunks = [rows[i : i + self.chunk_size] for i in range(0, len(rows), self.chunk_size)]
        if ctx.concurrency > 1 and len(chunks) > 1:
            with ThreadPoolExecutor(max_workers=ctx.concurrency, thread_name_prefix="fetch-edges") as pool:
                parts = list(pool.map(lambda chunk: _edges_for_rows(chunk, stops), chunks))
        else:
            parts = [_edges_for_rows(chunk, stops) for chunk in chunks]
        scheduled = [edge for part in parts for edge in part]
        transfers = ctx.virtual.transfer_edges if ctx.virtual is not None else ()
        ctx.edges = tuple(scheduled) + tuple(transfers)
        ctx.dropped_routes = len(ctx.load.dataset.routes) - len(scheduled)
        return f"{len(scheduled)} scheduled edges ({ctx.dropped_routes} dropped), {len(transfers)} transfer edges"


class BuildPublishStage(PipelineStage):
    name = "build_publish"

    def can_run(self, ctx: PipelineContext) -> bool:
        return ctx.builder.repository.ping()

    def _run(self, ctx: PipelineContext) -> str:
        if ctx.load is None:
            raise RuntimeError("build_publish requires a loaded dataset")
        virtual = ctx.virtual.virtual_stops if ctx.virtual is not None else ()
        ctx.graph = ctx.builder.build(
            ctx.stops,
            virtual,
            ctx.edges,
            data_mode=ctx.load.mode,
            data_quality=ctx.load.quality,
        )
        ctx.published_version = ctx.builder.publish(ctx.graph)
        return f"published version {ctx.published_version}"


def default_stages() -> list[PipelineStage]:
    return [FetchStopsStage(), GenerateVirtualStopsStage(), FetchEdgesStage(), BuildPublishStage()]


def _iso_utc_now() -> str:
    return datetime.now(UTC).isoformat()


class PipelineOrchestrator:
    """Single-flight runner for the graph rebuild stages."""

    def __init__(
        self,
        *,
        data_source: AdaptiveDataSource,
        builder: GraphBuilder,
        stages: Sequence[PipelineStage] | None = None,
        request: DatasetRequest | None = None,
        concurrency: int | None = None,
        on_success: Callable[[PipelineContext], None] | None = None,
    ) -> None:
        self.on_success = on_success
        self.data_source = data_source
        self.builder = builder
        self.stages: list[PipelineStage] = list(stages) if stages is not None else default_stages()
        self.request = request or DatasetRequest()
        self.concurrency = max(1, int(concurrency or settings.pipeline_concurrency))

        self._lock = threading.Lock()
        self._busy = False
        self._cancel = threading.Event()
        self._thread: threading.Thread | None = None
        self._status = RunStatus.IDLE
        self._last_status: RunStatus | None = None
        self._run_count = 0
        self._last_run_at: str | None = None
        self._last_duration_ms: float | None = None
        self._last_error: str | None = None
        self._last_stages: tuple[StageResult, ...] = ()
        self._last_version: int | None = None

    def run(self) -> PipelineRunResult:
        """Run all stages on the calling thread. Failures are reported, not raised."""
        ctx, refused = self._reserve()
        if refused is not None:
            return refused
        return self._execute(ctx)

    def trigger(self) -> TriggerResult:
        ctx, refused = self._reserve()
        if refused is not None:
            return refused.trigger
        thread = threading.Thread(target=self._execute, args=(ctx,), name="graph-pipeline", daemon=True)
        with self._lock:
            self._thread = thread
        thread.start()
        return TriggerResult.ACCEPTED

    def cancel(self) -> bool:
        with self._lock:
            if not self._busy:
                return False
            self._cancel.set()
        log_event("pipeline_cancel_requested")
        return True

    def wait(self, timeout_s: float | None = None) -> bool:
        with self._lock:
            thread = self._thread
        if thread is None:
            return True
        thread.join(timeout_s)
        return not thread.is_alive()

    def status(self) -> dict[str, Any]:
        with self._lock:
            return {
                "status": self._status.value,
                "running": self._busy,
                "run_count": self._run_count,
                "last_run_at": self._last_run_at,
                "last_status": self._last_status.value if self._last_status is not None else None,
                "last_duration_ms": round(self._last_duration_ms, 2) if self._last_duration_ms is not None else None,
                "last_error": self._last_error,
                "last_version": self._last_version,
                "stages": [s.as_dict() for s in self._last_stages],
            }

    def _reserve(self) -> tuple[PipelineContext, PipelineRunResult | None]:
        ctx = PipelineContext(
            request=self.request,
            data_source=self.data_source,
            builder=self.builder,
            concurrency=self.concurrency,
        )
        with self._lock:
            if self._busy:
                log_event("pipeline_run_refused", reason=TriggerResult.ALREADY_RUNNING.value)
                return ctx, PipelineRunResult(trigger=TriggerResult.ALREADY_RUNNING, status=self._status)
            self._busy = True

        blocked = [stage.name for stage in self.stages if not self._can_run(stage, ctx)]
        if blocked:
            with self._lock:
                self._busy = False
            log_event("pipeline_run_refused", reason=TriggerResult.CANNOT_RUN.value, blocked_stages=blocked)
            return ctx, PipelineRunResult(
                trigger=TriggerResult.CANNOT_RUN,
                error=f"stage(s) not runnable: {', '.join(blocked)}",
            )

        with self._lock:
            self._cancel.clear()
            self._run_count += 1
            self._status = RunStatus.RUNNING
            self._last_run_at = _iso_utc_now()
            self._last_error = None
            self._last_stages = ()
        return ctx, None

    @staticmethod
    def _can_run(stage: PipelineStage, ctx: PipelineContext) -> bool:
        try:
            return bool(stage.can_run(ctx))
        except Exception as exc:
            log_event("pipeline_can_run_error", stage=stage.name, error_type=type(exc).__name__, detail=str(exc))
            return False

    def _execute(self, ctx: PipelineContext) -> PipelineRunResult:
        t0 = time.perf_counter()
        results: list[StageResult] = []
        status = RunStatus.SUCCESS
        error: str | None = None
        log_event("pipeline_run_started", region=ctx.request.region, stage_count=len(self.stages))

        for stage in self.stages:
            if self._cancel.is_set():
                status = RunStatus.CANCELLED
                error = f"cancelled before {stage.name}"
                break
            stage_t0 = time.perf_counter()
            try:
                result = stage.run(ctx)
            except (DataLoadError, GraphValidationError, GraphPublishConflict) as exc:
                result = StageResult(False, (time.perf_counter() - stage_t0) * 1000.0, str(exc), stage.name)
                log_event(
                    "pipeline_stage_failed",
                    severity=getattr(exc, "severity", None) or ErrorSeverity.CRITICAL,
                    stage=stage.name,
                    error_type=type(exc).__name__,
                    reason_code=getattr(exc, "reason_code", None) or getattr(getattr(exc, "kind", None), "value", None),
                    detail=str(exc),
                    details=getattr(exc, "details", None),
                )
            except Exception as exc:
                result = StageResult(
                    False,
                    (time.perf_counter() - stage_t0) * 1000.0,
                    f"{type(exc).__name__}: {exc}",
                    stage.name,
                )
                log_event(
                    "pipeline_stage_failed",
                    severity=ErrorSeverity.CRITICAL,
                    stage=stage.name,
                    error_type=type(exc).__name__,
                    detail=str(exc),
                )
            results.append(result)
            if not result.success:
                status = RunStatus.FAILED
                error = f"{stage.name}: {result.message}"
                break
            log_event("pipeline_stage_ok", stage=stage.name, duration_ms=round(result.duration_ms, 2), detail=result.message)

        duration_ms = (time.perf_counter() - t0) * 1000.0
        version = ctx.published_version if status is RunStatus.SUCCESS else None
        if status is RunStatus.SUCCESS and self.on_success is not None:
            try:
                self.on_success(ctx)
            except Exception as exc:
                log_event(
                    "pipeline_success_hook_failed",
                    severity=ErrorSeverity.WARNING,
                    error_type=type(exc).__name__,
                    detail=str(exc),
                )
        with self._lock:
            self._busy = False
            self._status = status
            self._last_status = status
            self._last_duration_ms = duration_ms
            self._last_error = error
            self._last_stages = tuple(results)
            if version is not None:
                self._last_version = version
        log_event(
            "pipeline_run_finished",
            status=status.value,
            duration_ms=round(duration_ms, 2),
            version=version,
            error=error,
        )
        return PipelineRunResult(
            trigger=TriggerResult.ACCEPTED,
            status=status,
            stages=tuple(results),
            error=error,
            version=version,
            duration_ms=duration_ms,
        )
