from __future__ import annotations

import copy
import json
from datetime import UTC, datetime
from pathlib import Path
from threading import Lock
from typing import Any

from .settings import settings


_LOCK = Lock()


def _snapshot_store_path() -> Path:
    path = Path(settings.out_dir) / "offline" / "dataset_snapshots.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def _read_snapshot_store() -> dict[str, dict[str, Any]]:
    path = _snapshot_store_path()
    if not path.exists():
        return {}

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}

    if not isinstance(raw, dict):
        return {}

    out: dict[str, dict[str, Any]] = {}
    for key, value in raw.items():
        if not isinstance(key, str) or not isinstance(value, dict):
            continue
        updated_at = value.get("updated_at")
        payload = value.get("payload")
        if isinstance(updated_at, str) and isinstance(payload, dict):
            out[key] = {"updated_at": updated_at, "payload": payload}
    return out


def _write_snapshot_store(payload: dict[str, dict[str, Any]]) -> None:
    path = _snapshot_store_path()
    tmp = path.with_suffix(".json.tmp")
    tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
    tmp.replace(path)


def save_dataset_snapshot(cache_key: str, payload: dict[str, Any]) -> None:
    """Persist the last good payload for a key. OSError propagates to the caller."""
    if not cache_key:
        return

    with _LOCK:
        store = _read_snapshot_store()
        store[cache_key] = {
            "updated_at": datetime.now(UTC).isoformat(),
            "payload": copy.deepcopy(payload),
        }
        _write_snapshot_store(store)


def load_dataset_snapshot(cache_key: str) -> tuple[dict[str, Any], str] | None:
    if not cache_key:
        return None

    with _LOCK:
        store = _read_snapshot_store()
        entry = store.get(cache_key)
        if not isinstance(entry, dict):
            return None
        return copy.deepcopy(entry["payload"]), entry["updated_at"]


def clear_dataset_snapshots() -> int:
    with _LOCK:
        path = _snapshot_store_path()
        if not path.exists():
            return 0
        count = len(_read_snapshot_store())
        path.write_text("{}", encoding="utf-8")
        return count
