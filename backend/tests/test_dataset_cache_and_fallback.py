from __future__ import annotations

import json
from pathlib import Path

from routegraph import dataset_cache
from routegraph.dataset_cache import CacheStore
from routegraph.fallback_store import clear_dataset_snapshots, load_dataset_snapshot, save_dataset_snapshot
from routegraph.settings import settings


def test_cache_evicts_least_recently_used() -> None:
    cache = CacheStore(ttl_s=60, max_entries=2)
    cache.set("a", {"n": 1})
    cache.set("b", {"n": 2})
    assert cache.get("a") == {"n": 1}

    cache.set("c", {"n": 3})

    assert cache.get("b") is None
    assert cache.get("a") == {"n": 1}
    snap = cache.snapshot()
    assert snap["size"] == 2
    assert snap["evictions"] == 1
    assert snap["hits"] == 2
    assert snap["misses"] == 1


def test_cache_expires_entries(monkeypatch) -> None:  # noqa: ANN001
    now = [1000.0]
    monkeypatch.setattr(dataset_cache.time, "time", lambda: now[0])
    cache = CacheStore(ttl_s=5, max_entries=4)
    cache.set("k", [1])

    now[0] += 6

    assert cache.get("k") is None
    assert cache.snapshot()["size"] == 0


def test_cache_values_are_isolated_copies() -> None:
    cache = CacheStore(ttl_s=60, max_entries=4)
    payload = {"stops": [1]}
    cache.set("k", payload)
    payload["stops"].append(2)

    fetched = cache.get("k")
    fetched["stops"].append(3)

    assert cache.get("k") == {"stops": [1]}
    assert cache.delete("k") is True
    assert cache.delete("k") is False


def test_offline_snapshots_round_trip_and_clear() -> None:
    save_dataset_snapshot("dataset:yakutia", {"stops": [{"id": "s1"}]})
    save_dataset_snapshot("", {"stops": []})

    loaded = load_dataset_snapshot("dataset:yakutia")

    assert loaded is not None
    payload, updated_at = loaded
    assert payload == {"stops": [{"id": "s1"}]}
    assert updated_at
    assert load_dataset_snapshot("dataset:other") is None
    assert clear_dataset_snapshots() == 1
    assert load_dataset_snapshot("dataset:yakutia") is None


def test_corrupt_snapshot_file_reads_as_empty() -> None:
    path = Path(settings.out_dir) / "offline" / "dataset_snapshots.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("{not json", encoding="utf-8")

    assert load_dataset_snapshot("dataset:yakutia") is None

    path.write_text(json.dumps({"dataset:yakutia": {"payload": "bad"}}), encoding="utf-8")
    assert load_dataset_snapshot("dataset:yakutia") is None
