"""Versioned graph snapshots in a shared key-value store.

Layout (``{p}`` is the configured prefix)::

    {p}:current          -> version id readers should use
    {p}:seq              -> monotonically increasing version counter
    {p}:v{n}:nodes       -> set of JSON stop records
    {p}:v{n}:edges       -> set of JSON edge records
    {p}:v{n}:meta        -> JSON metadata, written last

A version is complete only when its metadata exists and its member counts match.
"""

from __future__ import annotations

import fnmatch
import json
import re
import time
from threading import Lock
from typing import Any, Iterable, Protocol

import redis

from .entities import DataSourceMode, Edge, GraphVersion, Stop, edge_from_record, stop_from_record
from .logging_utils import log_event
from .settings import settings


class SnapshotIncomplete(LookupError):
    def __init__(self, version: int | None, reason: str) -> None:
        super().__init__(f"graph version {version} is incomplete: {reason}")
        self.version = version
        self.reason = reason


class SnapshotStore(Protocol):
    def ping(self) -> bool: ...

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, *, ttl_s: int = 0) -> None: ...

    def incr(self, key: str) -> int: ...

    def sadd(self, key: str, members: Iterable[str], *, ttl_s: int = 0) -> None: ...

    def smembers(self, key: str) -> set[str]: ...

    def delete(self, *keys: str) -> int: ...

    def keys(self, pattern: str) -> list[str]: ...

    def compare_and_publish(self, key: str, expected: str | None, new: str) -> bool: ...


class InMemorySnapshotStore:
    """Process-local store with the same semantics as the Redis backend."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._values: dict[str, Any] = {}
        self._expires: dict[str, float] = {}

    def _alive(self, key: str) -> bool:
        expires_at = self._expires.get(key)
        if expires_at is not None and time.time() >= expires_at:
            self._values.pop(key, None)
            self._expires.pop(key, None)
        return key in self._values

    def _touch(self, key: str, ttl_s: int) -> None:
        if ttl_s > 0:
            self._expires[key] = time.time() + ttl_s
        else:
            self._expires.pop(key, None)

    def ping(self) -> bool:
        return True

    def get(self, key: str) -> str | None:
        with self._lock:
            if not self._alive(key):
                return None
            value = self._values[key]
            return value if isinstance(value, str) else None

    def set(self, key: str, value: str, *, ttl_s: int = 0) -> None:
        with self._lock:
            self._values[key] = str(value)
            self._touch(key, ttl_s)

    def incr(self, key: str) -> int:
        with self._lock:
            current = int(self._values[key]) if self._alive(key) else 0
            current += 1
            self._values[key] = str(current)
            return current

    def sadd(self, key: str, members: Iterable[str], *, ttl_s: int = 0) -> None:
        with self._lock:
            existing = self._values.get(key) if self._alive(key) else None
            bucket = set(existing) if isinstance(existing, frozenset) else set()
            bucket.update(members)
            self._values[key] = frozenset(bucket)
            self._touch(key, ttl_s)

    def smembers(self, key: str) -> set[str]:
        with self._lock:
            if not self._alive(key):
                return set()
            value = self._values[key]
            return set(value) if isinstance(value, frozenset) else set()

    def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._values.pop(key, None) is not None:
                    removed += 1
                self._expires.pop(key, None)
        return removed

    def keys(self, pattern: str) -> list[str]:
        with self._lock:
            return sorted(k for k in list(self._values) if self._alive(k) and fnmatch.fnmatchcase(k, pattern))

    def compare_and_publish(self, key: str, expected: str | None, new: str) -> bool:
        with self._lock:
            current = self._values.get(key) if self._alive(key) else None
            if current != expected:
                return False
            self._values[key] = str(new)
            self._expires.pop(key, None)
            return True


class RedisSnapshotStore:
    def __init__(self, url: str, *, client: redis.Redis | None = None) -> None:
        self._redis = client or redis.Redis.from_url(url, decode_responses=True)
        sanitized = url.split("@")[-1] if "@" in url else url
        log_event("snapshot_store_redis", target=sanitized)

    def ping(self) -> bool:
        try:
            return bool(self._redis.ping())
        except redis.RedisError:
            return False

    def get(self, key: str) -> str | None:
        return self._redis.get(key)

    def set(self, key: str, value: str, *, ttl_s: int = 0) -> None:
        self._redis.set(key, value, ex=ttl_s if ttl_s > 0 else None)

    def incr(self, key: str) -> int:
        return int(self._redis.incr(key))

    def sadd(self, key: str, members: Iterable[str], *, ttl_s: int = 0) -> None:
        batch = list(members)
        with self._redis.pipeline() as pipe:
            for start in range(0, len(batch), 1000):
                pipe.sadd(key, *batch[start : start + 1000])
            if ttl_s > 0:
                pipe.expire(key, ttl_s)
            pipe.execute()

    def smembers(self, key: str) -> set[str]:
        return set(self._redis.smembers(key))

    def delete(self, *keys: str) -> int:
        return int(self._redis.delete(*keys)) if keys else 0

    def keys(self, pattern: str) -> list[str]:
        return sorted(self._redis.scan_iter(match=pattern))

    def compare_and_publish(self, key: str, expected: str | None, new: str) -> bool:
        with self._redis.pipeline() as pipe:
            try:
                pipe.watch(key)
                current = pipe.get(key)
                if current != expected:
                    pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(key, new)
                pipe.execute()
                return True
            except redis.WatchError:
                return False


def create_snapshot_store() -> SnapshotStore:
    if settings.redis_url:
        return RedisSnapshotStore(settings.redis_url)
    return InMemorySnapshotStore()


def _dump(record: dict[str, Any]) -> str:
    return json.dumps(record, sort_keys=True, ensure_ascii=False, separators=(",", ":"))


class SnapshotRepository:
    """Version-level operations over a key-value :class:`SnapshotStore`."""

    def __init__(self, store: SnapshotStore, *, prefix: str | None = None, ttl_s: int | None = None) -> None:
        self.store = store
        self.prefix = (prefix or settings.graph_key_prefix).rstrip(":")
        self.ttl_s = settings.graph_snapshot_ttl_s if ttl_s is None else max(0, int(ttl_s))
        self._version_key = re.compile(rf"^{re.escape(self.prefix)}:v(\d+):meta$")

    @property
    def current_key(self) -> str:
        return f"{self.prefix}:current"

    @property
    def seq_key(self) -> str:
        return f"{self.prefix}:seq"

    def meta_key(self, version: int) -> str:
        return f"{self.prefix}:v{version}:meta"

    def nodes_key(self, version: int) -> str:
        return f"{self.prefix}:v{version}:nodes"

    def edges_key(self, version: int) -> str:
        return f"{self.prefix}:v{version}:edges"

    def ping(self) -> bool:
        return self.store.ping()

    def allocate_version(self) -> int:
        return self.store.incr(self.seq_key)

    def current_version(self) -> int | None:
        raw = self.store.get(self.current_key)
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError:
            return None

    def write_snapshot(self, version: int, nodes: Iterable[Stop], edges: Iterable[Edge], meta: dict[str, Any]) -> None:
        self.store.sadd(self.nodes_key(version), (_dump(n.to_record()) for n in nodes), ttl_s=self.ttl_s)
        self.store.sadd(self.edges_key(version), (_dump(e.to_record()) for e in edges), ttl_s=self.ttl_s)
        # Metadata last: its presence marks the snapshot as complete.
        self.store.set(self.meta_key(version), _dump({**meta, "version": version}), ttl_s=self.ttl_s)

    def read_metadata(self, version: int) -> dict[str, Any] | None:
        raw = self.store.get(self.meta_key(version))
        if raw is None:
            return None
        try:
            meta = json.loads(raw)
        except ValueError:
            return None
        return meta if isinstance(meta, dict) else None

    def read_version(self, version: int) -> GraphVersion:
        meta = self.read_metadata(version)
        if meta is None:
            raise SnapshotIncomplete(version, "metadata missing")
        node_rows = self.store.smembers(self.nodes_key(version))
        edge_rows = self.store.smembers(self.edges_key(version))
        if len(node_rows) != int(meta.get("node_count", -1)) or len(edge_rows) != int(meta.get("edge_count", -1)):
            raise SnapshotIncomplete(version, "member counts do not match metadata")
        try:
            nodes = frozenset(stop_from_record(json.loads(r)) for r in node_rows)
            edges = frozenset(edge_from_record(json.loads(r)) for r in edge_rows)
        except (KeyError, TypeError, ValueError) as exc:
            raise SnapshotIncomplete(version, f"unreadable record: {exc}") from exc
        try:
            mode = DataSourceMode(str(meta.get("data_mode") or "UNKNOWN"))
        except ValueError:
            mode = DataSourceMode.UNKNOWN
        return GraphVersion(
            version=version,
            built_at=str(meta.get("built_at") or ""),
            nodes=nodes,
            edges=edges,
            data_mode=mode,
            data_quality=int(meta.get("data_quality") or 0),
        )

    def publish_pointer(self, expected: int | None, new: int) -> bool:
        return self.store.compare_and_publish(
            self.current_key,
            None if expected is None else str(expected),
            str(new),
        )

    def versions(self) -> list[int]:
        found: list[int] = []
        for key in self.store.keys(f"{self.prefix}:v*:meta"):
            match = self._version_key.match(key)
            if match:
                found.append(int(match.group(1)))
        return sorted(found)

    def delete_version(self, version: int) -> int:
        return self.store.delete(self.meta_key(version), self.nodes_key(version), self.edges_key(version))
