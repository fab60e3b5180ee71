from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import httpx

from .errors import DataLoadError, ErrorKind
from .logging_utils import log_event
from .quality import QualityReport, score_payload
from .settings import settings


@dataclass(frozen=True)
class DatasetRequest:
    region: str = field(default_factory=lambda: settings.default_region)

    @property
    def cache_key(self) -> str:
        return f"dataset:{self.region.strip().lower()}"


@dataclass(frozen=True)
class FetchResult:
    payload: dict[str, Any]
    quality: QualityReport
    attempts: int = 1
    fetched_at: str | None = None


def _retryable_status_codes() -> set[int]:
    raw = str(settings.provider_retryable_status_codes or "")
    parsed: set[int] = set()
    for token in raw.split(","):
        part = token.strip()
        if not part:
            continue
        try:
            code = int(part)
        except ValueError:
            continue
        if 100 <= code <= 599:
            parsed.add(code)
    return parsed or {429, 500, 502, 503, 504}


def _is_retryable_exception(exc: Exception) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return int(exc.response.status_code) in _retryable_status_codes()
    return isinstance(exc, (httpx.TimeoutException, httpx.TransportError))


def _compute_backoff_ms(attempt_index: int) -> int:
    attempt = max(1, int(attempt_index))
    base_ms = max(0, int(settings.provider_retry_backoff_base_ms))
    max_ms = max(base_ms, int(settings.provider_retry_backoff_max_ms))
    bounded = min(max_ms, base_ms * (2 ** (attempt - 1)))
    if base_ms > 0:
        bounded += random.randint(0, max(1, base_ms // 4))
    return int(min(max_ms, bounded))


def _classify(exc: Exception, *, url: str, attempts: int) -> DataLoadError:
    context: dict[str, Any] = {"url": url, "attempts": attempts, "error_type": type(exc).__name__}
    if isinstance(exc, httpx.TimeoutException):
        return DataLoadError(ErrorKind.UPSTREAM_TIMEOUT, f"Provider timed out after {attempts} attempt(s).", context=context)
    if isinstance(exc, httpx.HTTPStatusError):
        context["status_code"] = int(exc.response.status_code)
        return DataLoadError(
            ErrorKind.UPSTREAM_INVALID_RESPONSE,
            f"Provider returned HTTP {exc.response.status_code}.",
            context=context,
        )
    if isinstance(exc, httpx.TransportError):
        return DataLoadError(ErrorKind.UPSTREAM_CONNECTION, f"Provider unreachable: {exc}", context=context)
    return DataLoadError(ErrorKind.UPSTREAM_INVALID_RESPONSE, f"Provider response unusable: {exc}", context=context)


def _check_shape(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise ValueError("payload is not a JSON object")
    if not isinstance(payload.get("stops"), list) or not isinstance(payload.get("routes"), list):
        raise ValueError("payload must contain 'stops' and 'routes' lists")
    return payload


class ProviderClient:
    """Fetches a regional dataset from the upstream provider and scores it. Never caches."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout_s: float | None = None,
        max_attempts: int | None = None,
        deadline_ms: int | None = None,
    ) -> None:
        self.base_url = (settings.provider_base_url if base_url is None else base_url).rstrip("/")
        self.api_key = settings.provider_api_key if api_key is None else api_key
        self.timeout_s = float(timeout_s or settings.provider_timeout_s)
        self.max_attempts = max(1, int(max_attempts or settings.provider_max_attempts))
        self.deadline_ms = max(1, int(deadline_ms or settings.provider_retry_deadline_ms))

    def _url(self, request: DatasetRequest) -> str:
        return f"{self.base_url}/datasets/{request.region}"

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def fetch(self, request: DatasetRequest, *, now: datetime | None = None) -> FetchResult:
        if not self.base_url:
            raise DataLoadError(
                ErrorKind.UPSTREAM_CONNECTION,
                "Provider base URL is not configured.",
                context={"region": request.region},
            )
        url = self._url(request)
        deadline_at = time.monotonic() + (self.deadline_ms / 1000.0)
        attempts = 0
        last_exc: Exception | None = None

        while attempts < self.max_attempts:
            remaining_s = deadline_at - time.monotonic()
            if remaining_s <= 0.0:
                break
            attempts += 1
            try:
                with httpx.Client(timeout=min(self.timeout_s, remaining_s)) as client:
                    response = client.get(url, headers=self._headers())
                if int(response.status_code) >= 400:
                    response.raise_for_status()
                payload = _check_shape(response.json())
            except (httpx.HTTPError, ValueError) as exc:
                last_exc = exc
                retryable = _is_retryable_exception(exc)
                log_event(
                    "provider_fetch_attempt_failed",
                    url=url,
                    attempt=attempts,
                    error_type=type(exc).__name__,
                    retryable=retryable,
                )
                if not retryable or attempts >= self.max_attempts:
                    break
                wait_ms = min(_compute_backoff_ms(attempts), int(max(0.0, deadline_at - time.monotonic()) * 1000))
                if wait_ms > 0:
                    time.sleep(wait_ms / 1000.0)
                continue

            report = score_payload(payload, now=now)
            log_event(
                "provider_fetch_ok",
                url=url,
                attempt=attempts,
                quality=report.overall,
                stop_rows=len(payload["stops"]),
                route_rows=len(payload["routes"]),
            )
            return FetchResult(
                payload=payload,
                quality=report,
                attempts=attempts,
                fetched_at=datetime.now(UTC).isoformat(),
            )

        if last_exc is None:
            raise DataLoadError(
                ErrorKind.UPSTREAM_TIMEOUT,
                "Provider retry deadline exceeded before a response was received.",
                context={"url": url, "attempts": attempts},
            )
        raise _classify(last_exc, url=url, attempts=attempts)
