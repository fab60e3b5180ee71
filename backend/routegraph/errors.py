from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorSeverity(str, Enum):
    CRITICAL = "critical"
    RECOVERABLE = "recoverable"
    WARNING = "warning"


class ErrorKind(str, Enum):
    UPSTREAM_CONNECTION = "upstream_connection"
    UPSTREAM_TIMEOUT = "upstream_timeout"
    UPSTREAM_INVALID_RESPONSE = "upstream_invalid_response"
    CACHE_READ = "cache_read"
    CACHE_WRITE = "cache_write"
    RECOVERY_FAILED = "recovery_failed"
    MOCK_FAILED = "mock_failed"


_DEFAULT_SEVERITY: dict[ErrorKind, ErrorSeverity] = {
    ErrorKind.UPSTREAM_CONNECTION: ErrorSeverity.RECOVERABLE,
    ErrorKind.UPSTREAM_TIMEOUT: ErrorSeverity.RECOVERABLE,
    ErrorKind.UPSTREAM_INVALID_RESPONSE: ErrorSeverity.RECOVERABLE,
    ErrorKind.CACHE_READ: ErrorSeverity.WARNING,
    ErrorKind.CACHE_WRITE: ErrorSeverity.WARNING,
    ErrorKind.RECOVERY_FAILED: ErrorSeverity.WARNING,
    ErrorKind.MOCK_FAILED: ErrorSeverity.CRITICAL,
}


@dataclass
class DataLoadError(RuntimeError):
    kind: ErrorKind
    message: str
    severity: ErrorSeverity | None = None
    context: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        if self.severity is None:
            self.severity = _DEFAULT_SEVERITY[self.kind]

    def __str__(self) -> str:
        return self.message


class FallbackAction(str, Enum):
    RECOVER = "recover"
    CONTINUE = "continue"
    RAISE = "raise"


def fallback_action(error: DataLoadError) -> FallbackAction:
    """Single decision point for what the loader does with a failure."""
    if error.severity is ErrorSeverity.CRITICAL:
        return FallbackAction.RAISE
    if error.severity is ErrorSeverity.RECOVERABLE:
        return FallbackAction.RECOVER
    return FallbackAction.CONTINUE


class SearchErrorCode(str, Enum):
    STOPS_NOT_FOUND = "STOPS_NOT_FOUND"
    ROUTES_NOT_FOUND = "ROUTES_NOT_FOUND"
    GRAPH_OUT_OF_SYNC = "GRAPH_OUT_OF_SYNC"
    DATA_UNAVAILABLE = "DATA_UNAVAILABLE"


_USER_MESSAGES: dict[SearchErrorCode, str] = {
    SearchErrorCode.STOPS_NOT_FOUND: "We could not find any stops for the requested city.",
    SearchErrorCode.ROUTES_NOT_FOUND: "No routes connect these cities for the selected trip.",
    SearchErrorCode.GRAPH_OUT_OF_SYNC: "Route data is being refreshed. Please try again shortly.",
    SearchErrorCode.DATA_UNAVAILABLE: "Transport data is temporarily unavailable. Please contact support.",
}

# Only these are worth retrying on the caller's side.
TRANSIENT_SEARCH_ERRORS: frozenset[SearchErrorCode] = frozenset({SearchErrorCode.GRAPH_OUT_OF_SYNC})


def user_message(code: SearchErrorCode) -> str:
    return _USER_MESSAGES[code]


@dataclass
class GraphValidationError(ValueError):
    reason_code: str
    message: str
    details: dict[str, Any] | None = None

    def __str__(self) -> str:
        return self.message


class GraphPublishConflict(RuntimeError):
    pass
