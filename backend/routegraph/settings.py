from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _running_in_docker() -> bool:
    """Best-effort check for container execution.

    Used only to pick sensible defaults. Environment variables always win.
    """
    return Path("/.dockerenv").exists() or os.environ.get("RUNNING_IN_DOCKER") == "1"


def _default_out_dir() -> str:
    # Keep runtime artifacts in backend/out by default to avoid polluting the source tree.
    if _running_in_docker():
        return "/app/out"
    return str(Path(__file__).resolve().parents[1] / "out")


class Settings(BaseSettings):
    """Validated settings (env-driven), keeping config out of code for easy extension."""

    model_config = SettingsConfigDict(
        # Support both "repo root/.env" (docker compose) and "backend/.env" (local dev)
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    out_dir: str = Field(default_factory=_default_out_dir, alias="OUT_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Upstream provider
    provider_base_url: str = Field(default="", alias="PROVIDER_BASE_URL")
    provider_api_key: str = Field(default="", alias="PROVIDER_API_KEY")
    provider_timeout_s: float = Field(default=10.0, ge=0.5, le=120.0, alias="PROVIDER_TIMEOUT_S")
    provider_max_attempts: int = Field(default=3, ge=1, le=10, alias="PROVIDER_MAX_ATTEMPTS")
    provider_retry_deadline_ms: int = Field(default=20_000, ge=100, alias="PROVIDER_RETRY_DEADLINE_MS")
    provider_retry_backoff_base_ms: int = Field(default=200, ge=0, alias="PROVIDER_RETRY_BACKOFF_BASE_MS")
    provider_retry_backoff_max_ms: int = Field(default=2_000, ge=0, alias="PROVIDER_RETRY_BACKOFF_MAX_MS")
    provider_retryable_status_codes: str = Field(
        default="408,429,500,502,503,504",
        alias="PROVIDER_RETRYABLE_STATUS_CODES",
    )
    # Payloads older than this lose freshness; at twice the interval freshness is zero.
    provider_refresh_interval_s: int = Field(default=6 * 3600, ge=60, alias="PROVIDER_REFRESH_INTERVAL_S")

    # Adaptive loading
    quality_threshold_real: int = Field(default=90, ge=1, le=100, alias="QUALITY_THRESHOLD_REAL")
    quality_threshold_recovery: int = Field(default=50, ge=0, le=99, alias="QUALITY_THRESHOLD_RECOVERY")
    dataset_cache_ttl_s: int = Field(default=24 * 3600, ge=10, alias="DATASET_CACHE_TTL_S")
    dataset_cache_max_entries: int = Field(default=32, ge=1, alias="DATASET_CACHE_MAX_ENTRIES")
    offline_snapshots_enabled: bool = Field(default=True, alias="OFFLINE_SNAPSHOTS_ENABLED")
    default_region: str = Field(default="yakutia", alias="DEFAULT_REGION")

    # Snapshot store
    redis_url: str = Field(default="", alias="REDIS_URL")
    graph_key_prefix: str = Field(default="routegraph", alias="GRAPH_KEY_PREFIX")
    graph_retention_versions: int = Field(default=3, ge=0, le=50, alias="GRAPH_RETENTION_VERSIONS")
    graph_snapshot_ttl_s: int = Field(default=0, ge=0, alias="GRAPH_SNAPSHOT_TTL_S")
    graph_view_cache_size: int = Field(default=4, ge=1, le=64, alias="GRAPH_VIEW_CACHE_SIZE")

    # Pipeline
    pipeline_concurrency: int = Field(default=4, ge=1, le=64, alias="PIPELINE_CONCURRENCY")
    pipeline_run_on_startup: bool = Field(default=True, alias="PIPELINE_RUN_ON_STARTUP")

    # Route search
    search_max_transfers: int = Field(default=3, ge=0, le=10, alias="SEARCH_MAX_TRANSFERS")
    search_candidate_paths: int = Field(default=8, ge=1, le=64, alias="SEARCH_CANDIDATE_PATHS")
    search_max_state_budget: int = Field(default=200_000, ge=100, alias="SEARCH_MAX_STATE_BUDGET")
    search_out_of_sync_retries: int = Field(default=3, ge=0, le=10, alias="SEARCH_OUT_OF_SYNC_RETRIES")
    search_retry_backoff_base_ms: int = Field(default=250, ge=0, alias="SEARCH_RETRY_BACKOFF_BASE_MS")

    # Risk
    risk_delay_frequency_threshold: float = Field(
        default=0.3,
        ge=0.0,
        le=1.0,
        alias="RISK_DELAY_FREQUENCY_THRESHOLD",
    )
    risk_cache_ttl_s: int = Field(default=900, ge=1, alias="RISK_CACHE_TTL_S")
    risk_cache_max_entries: int = Field(default=2048, ge=1, alias="RISK_CACHE_MAX_ENTRIES")

    @model_validator(mode="after")
    def _check_thresholds(self) -> "Settings":
        # Mode selection is only monotone when the REAL bar sits above the RECOVERY bar.
        if self.quality_threshold_recovery >= self.quality_threshold_real:
            self.quality_threshold_recovery = max(0, self.quality_threshold_real - 1)
        self.default_region = str(self.default_region or "").strip().lower() or "yakutia"
        return self


settings = Settings()
