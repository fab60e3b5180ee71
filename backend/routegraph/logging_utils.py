from __future__ import annotations

import logging
from pathlib import Path
from tempfile import gettempdir
from typing import Any

from pythonjsonlogger import jsonlogger

from .settings import settings

# Error severities (see errors.ErrorSeverity) and the log level their events are written at.
_SEVERITY_LEVELS: dict[str, int] = {
    "warning": logging.WARNING,
    "recoverable": logging.WARNING,
    "critical": logging.ERROR,
}

# Attributes LogRecord owns; passing them through ``extra`` raises KeyError.
_RESERVED_FIELDS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}


def _parse_level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def level_for_severity(severity: Any) -> int:
    value = getattr(severity, "value", severity)
    return _SEVERITY_LEVELS.get(str(value or "").lower(), logging.INFO)


def _resolve_log_dir(configured_out_dir: str) -> Path | None:
    candidates = (
        Path(configured_out_dir) / "logs",
        Path.cwd() / "out" / "logs",
        Path(gettempdir()) / "routegraph" / "logs",
    )
    for log_dir in candidates:
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            marker = log_dir / ".writetest"
            marker.touch(exist_ok=True)
            marker.unlink(missing_ok=True)
            return log_dir
        except OSError:
            continue
    return None


def get_logger() -> logging.Logger:
    logger = logging.getLogger("routegraph")

    # Prevent duplicate handlers (common with reloaders)
    if getattr(logger, "_configured", False):
        return logger

    logger.setLevel(_parse_level(settings.log_level))
    logger.propagate = False

    formatter = jsonlogger.JsonFormatter("%(levelname)s %(message)s")

    sh = logging.StreamHandler()
    sh.setFormatter(formatter)
    logger.addHandler(sh)

    log_dir = _resolve_log_dir(settings.out_dir)
    if log_dir is not None:
        try:
            fh = logging.FileHandler(log_dir / "routegraph.log.jsonl", encoding="utf-8")
            fh.setFormatter(formatter)
            logger.addHandler(fh)
        except OSError:
            pass

    logger._configured = True  # type: ignore[attr-defined]
    return logger


LOGGER: logging.Logger | None = None


def _safe_fields(fields: dict[str, Any]) -> dict[str, Any]:
    return {(f"field_{k}" if k in _RESERVED_FIELDS else k): v for k, v in fields.items()}


def log_event(event: str, *, level: int = logging.INFO, severity: Any = None, **fields: Any) -> None:
    """Structured event: ``event`` is both the message and a top-level key.

    When ``severity`` is given it picks the level and is written as a field.
    """
    global LOGGER
    if LOGGER is None:
        LOGGER = get_logger()
    if severity is not None:
        level = level_for_severity(severity)
        fields["severity"] = getattr(severity, "value", severity)
    LOGGER.log(level, event, extra={"event": event, **_safe_fields(fields)})
