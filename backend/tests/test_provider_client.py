from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import httpx
import pytest

import routegraph.provider_client as provider_client
from routegraph.errors import DataLoadError, ErrorKind, ErrorSeverity
from routegraph.provider_client import DatasetRequest, ProviderClient
from routegraph.settings import settings

URL = "https://provider.example.com/datasets/yakutia"
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class _FakeClient:
    def __init__(self, responses: list[Any], seen: list[dict[str, Any]]) -> None:
        self._responses = responses
        self._seen = seen

    def __enter__(self) -> _FakeClient:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:  # noqa: ANN001
        return False

    def get(self, url: str, headers: dict[str, str] | None = None) -> httpx.Response:
        self._seen.append({"url": url, "headers": dict(headers or {})})
        item = self._responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _response(status_code: int, payload: Any = None) -> httpx.Response:
    request = httpx.Request("GET", URL)
    if payload is None:
        return httpx.Response(status_code, request=request, content=b"")
    return httpx.Response(status_code, request=request, json=payload)


def _dataset() -> dict[str, Any]:
    return {
        "as_of": NOW.isoformat(),
        "stops": [
            {"id": "a1", "name": "Airport X", "city": "X", "lat": 62.0, "lon": 129.7},
            {"id": "b1", "name": "Airport Y", "city": "Y", "lat": 60.7, "lon": 114.9},
        ],
        "routes": [{"id": "r1", "from": "a1", "to": "b1", "transport_type": "air", "duration_min": 180}],
    }


@pytest.fixture
def fake_http(monkeypatch):  # noqa: ANN001
    responses: list[Any] = []
    seen: list[dict[str, Any]] = []
    sleeps: list[float] = []

    def _client_factory(*args, **kwargs):  # noqa: ANN001, ARG001
        return _FakeClient(responses, seen)

    monkeypatch.setattr(provider_client.httpx, "Client", _client_factory)
    monkeypatch.setattr(provider_client.time, "sleep", lambda seconds: sleeps.append(seconds))
    monkeypatch.setattr(settings, "provider_retry_backoff_base_ms", 100)
    monkeypatch.setattr(settings, "provider_retry_backoff_max_ms", 400)
    monkeypatch.setattr(settings, "provider_retryable_status_codes", "429,500,502,503,504")
    return responses, seen, sleeps


def _client(**kwargs: Any) -> ProviderClient:
    defaults: dict[str, Any] = {
        "base_url": "https://provider.example.com/",
        "api_key": "secret",
        "max_attempts": 3,
        "deadline_ms": 60_000,
    }
    defaults.update(kwargs)
    return ProviderClient(**defaults)


def test_network_error_then_success_is_retried(fake_http) -> None:  # noqa: ANN001
    responses, seen, sleeps = fake_http
    request = httpx.Request("GET", URL)
    responses.extend([httpx.ConnectError("temporary failure", request=request), _response(200, _dataset())])

    result = _client().fetch(DatasetRequest(region="yakutia"), now=NOW)

    assert result.attempts == 2
    assert result.quality.overall == 100
    assert result.payload["routes"][0]["id"] == "r1"
    assert len(sleeps) == 1
    assert seen[0]["url"] == URL
    assert seen[0]["headers"]["Authorization"] == "Bearer secret"


def test_retryable_status_exhausts_attempts(fake_http) -> None:  # noqa: ANN001
    responses, _seen, sleeps = fake_http
    responses.extend([_response(503), _response(503), _response(503)])

    with pytest.raises(DataLoadError) as excinfo:
        _client().fetch(DatasetRequest(region="yakutia"))

    err = excinfo.value
    assert err.kind is ErrorKind.UPSTREAM_INVALID_RESPONSE
    assert err.severity is ErrorSeverity.RECOVERABLE
    assert err.context["status_code"] == 503
    assert err.context["attempts"] == 3
    assert len(sleeps) == 2


def test_non_retryable_status_fails_fast(fake_http) -> None:  # noqa: ANN001
    responses, _seen, sleeps = fake_http
    responses.extend([_response(404), _response(200, _dataset())])

    with pytest.raises(DataLoadError) as excinfo:
        _client().fetch(DatasetRequest(region="yakutia"))

    assert excinfo.value.context["attempts"] == 1
    assert sleeps == []


def test_timeout_is_classified(fake_http) -> None:  # noqa: ANN001
    responses, _seen, _sleeps = fake_http
    request = httpx.Request("GET", URL)
    responses.extend([httpx.ReadTimeout("slow", request=request)])

    with pytest.raises(DataLoadError) as excinfo:
        _client(max_attempts=1).fetch(DatasetRequest(region="yakutia"))

    assert excinfo.value.kind is ErrorKind.UPSTREAM_TIMEOUT


def test_malformed_payload_is_invalid_response(fake_http) -> None:  # noqa: ANN001
    responses, _seen, _sleeps = fake_http
    responses.extend([_response(200, {"stops": "nope"})])

    with pytest.raises(DataLoadError) as excinfo:
        _client().fetch(DatasetRequest(region="yakutia"))

    assert excinfo.value.kind is ErrorKind.UPSTREAM_INVALID_RESPONSE
    assert excinfo.value.context["attempts"] == 1


def test_missing_base_url_is_a_connection_error(fake_http) -> None:  # noqa: ANN001
    _responses, seen, _sleeps = fake_http

    with pytest.raises(DataLoadError) as excinfo:
        _client(base_url="").fetch(DatasetRequest(region="yakutia"))

    assert excinfo.value.kind is ErrorKind.UPSTREAM_CONNECTION
    assert seen == []


def test_backoff_is_bounded(monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.setattr(settings, "provider_retry_backoff_base_ms", 100)
    monkeypatch.setattr(settings, "provider_retry_backoff_max_ms", 300)

    assert 100 <= provider_client._compute_backoff_ms(1) <= 125
    assert provider_client._compute_backoff_ms(10) == 300


def test_dataset_request_cache_key_is_normalized() -> None:
    assert DatasetRequest(region=" Yakutia ").cache_key == "dataset:yakutia"
