"""Content-addressed cache for the review context pipeline.

Purpose:
- Memoize change analyses (keyed by path + mtime) and extracted contexts
  (keyed by content hash + analysis) so unchanged files cost nothing.
- Bound memory with a byte budget and an entry budget, evicting by LRU,
  LFU or soonest-expiry, down to 80% of the exceeded budget.
- Optionally persist live entries to a JSON snapshot on a timer and at
  shutdown.

The cache is an explicit handle: construct once, `start()` it, pass it to
consumers, `shutdown()` at exit. All state is guarded by one re-entrant
lock so concurrent workers see consistent hashing and eviction accounting.
Values must be JSON-serializable (pydantic models are dumped in JSON mode).
"""

from __future__ import annotations

import hashlib
import json
import os
import tempfile
import threading
import time
from dataclasses import asdict, dataclass, field, is_dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from loguru import logger
from pydantic import BaseModel

from .errors import CacheIOError
from .schemas import CacheConfig, CachePolicy


EVICTION_TARGET_FRACTION = 0.8
SNAPSHOT_VERSION = 1


class CacheEvent(str, Enum):
    HIT = "hit"
    MISS = "miss"
    SET = "set"
    DELETE = "delete"
    EXPIRE = "expire"
    EVICT = "evict"
    CLEANUP = "cleanup"


@dataclass
class CacheEntry:
    key: str
    value: Any
    content_hash: str
    created_at: float
    last_accessed_at: float
    access_count: int
    ttl_seconds: float
    size_bytes: int
    tags: List[str] = field(default_factory=list)

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl_seconds

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        """Rebuild an entry from snapshot data. Malformed fields raise TypeError or ValueError."""
        if not isinstance(data, dict):
            raise TypeError(f"cache entry must be an object, got {type(data).__name__}")
        if "value" not in data:
            raise ValueError("cache entry has no value")
        content_hash = data.get("content_hash")
        if not isinstance(content_hash, str):
            raise TypeError(f"content_hash must be a string, got {content_hash!r}")
        tags = data.get("tags") or []
        if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            raise TypeError(f"tags must be a list of strings, got {tags!r}")

        size_bytes = int(_snapshot_number(data, "size_bytes"))
        access_count = int(_snapshot_number(data, "access_count"))
        if size_bytes < 0 or access_count < 0:
            raise ValueError("size_bytes and access_count must not be negative")

        return cls(
            key=str(data.get("key", "")),
            value=data["value"],
            content_hash=content_hash,
            created_at=_snapshot_number(data, "created_at"),
            last_accessed_at=_snapshot_number(data, "last_accessed_at"),
            access_count=access_count,
            ttl_seconds=_snapshot_number(data, "ttl_seconds"),
            size_bytes=size_bytes,
            tags=list(tags),
        )


def _snapshot_number(data: Dict[str, Any], name: str) -> float:
    value = data.get(name)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"{name} must be a number, got {value!r}")
    return float(value)


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    hit_rate: float  # 0..1
    total_size_bytes: int
    entry_count: int
    oldest_entry: Optional[float]
    newest_entry: Optional[float]
    top_keys: List[str]
    evictions: int
    expirations: int


def _json_default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=_json_default)


def content_hash(value: Any) -> str:
    """Deterministic sha256 digest of a value (strings are hashed verbatim)."""
    text = value if isinstance(value, str) else canonical_json(value)
    return hashlib.sha256(text.encode("utf-8", errors="replace")).hexdigest()


def build_key(*parts: Any) -> str:
    return ":".join(str(p) for p in parts)


EventCallback = Callable[[CacheEvent, Dict[str, Any]], None]


class ContentCache:
    """
    Size-bounded, TTL-aware key/value cache with content-hash short-circuit.

    Usage:
        cache = ContentCache(CacheConfig(cache_dir=".cache"))
        cache.start()
        cache.set("analysis:HEAD~1:src/a.ts:1700000000", analysis.model_dump(mode="json"))
        value = cache.get("analysis:HEAD~1:src/a.ts:1700000000")
        cache.shutdown()
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or CacheConfig()
        self._clock = clock
        self._lock = threading.RLock()
        self._entries: Dict[str, CacheEntry] = {}
        self._total_size = 0
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0
        self._callbacks: Dict[CacheEvent, List[EventCallback]] = {}
        self._stop_event = threading.Event()
        self._worker: Optional[threading.Thread] = None
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> "ContentCache":
        """Load the snapshot (if persistent) and start the maintenance thread."""
        if self._started or not self.config.enabled:
            return self
        self._started = True

        if self.config.persist_to_disk:
            self.load_snapshot()

        intervals = [self.config.cleanup_interval_seconds]
        if self.config.persist_to_disk:
            intervals.append(self.config.backup_interval_seconds)
        if any(i > 0 for i in intervals):
            self._stop_event.clear()
            self._worker = threading.Thread(
                target=self._maintenance_loop,
                name="review-context-cache",
                daemon=True,
            )
            self._worker.start()

        logger.debug(f"Content cache started ({self.config.strategy.value}, {len(self._entries)} entries)")
        return self

    def shutdown(self) -> None:
        """Stop the maintenance thread and write a final snapshot."""
        if not self._started:
            return
        self._started = False
        self._stop_event.set()
        if self._worker is not None:
            self._worker.join(timeout=5.0)
            self._worker = None
        if self.config.persist_to_disk:
            self.save_snapshot()

    def __enter__(self) -> "ContentCache":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    def _maintenance_loop(self) -> None:
        cleanup_every = self.config.cleanup_interval_seconds
        backup_every = self.config.backup_interval_seconds if self.config.persist_to_disk else 0
        tick = min(i for i in (cleanup_every, backup_every) if i > 0)
        last_cleanup = last_backup = time.monotonic()

        while not self._stop_event.wait(tick):
            now = time.monotonic()
            if cleanup_every > 0 and now - last_cleanup >= cleanup_every:
                self.cleanup()
                last_cleanup = now
            if backup_every > 0 and now - last_backup >= backup_every:
                self.save_snapshot()
                last_backup = now

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[Any]:
        if not self.config.enabled:
            return None

        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                self._emit(CacheEvent.MISS, {"key": key})
                return None

            now = self._clock()
            if entry.is_expired(now):
                self._remove(key)
                self._expirations += 1
                self._misses += 1
                self._emit(CacheEvent.EXPIRE, {"key": key})
                self._emit(CacheEvent.MISS, {"key": key})
                return None

            entry.last_accessed_at = now
            entry.access_count += 1
            self._hits += 1
            self._emit(CacheEvent.HIT, {"key": key})
            return entry.value

    def set(
        self,
        key: str,
        value: Any,
        *,
        ttl: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
        force_update: bool = False,
    ) -> bool:
        """Store `value` under `key`. Returns False when nothing could be stored.

        Storing content identical to the current entry only refreshes its
        access bookkeeping; `created_at` and the TTL window are kept.
        """
        if not self.config.enabled:
            return False

        try:
            serialized = canonical_json(value)
        except (TypeError, ValueError) as e:
            logger.warning(f"Cache value for {key} is not serializable: {e}")
            return False

        digest = content_hash(value)
        size = len(serialized.encode("utf-8"))

        with self._lock:
            now = self._clock()
            existing = self._entries.get(key)
            if existing is not None and existing.content_hash == digest and not force_update:
                if not existing.is_expired(now):
                    existing.last_accessed_at = now
                    existing.access_count += 1
                    return True

            if size > self.config.max_size_bytes:
                logger.debug(f"Cache value for {key} exceeds the size budget ({size} bytes), not cached")
                return False

            if existing is not None:
                self._remove(key)

            entry = CacheEntry(
                key=key,
                value=value,
                content_hash=digest,
                created_at=now,
                last_accessed_at=now,
                access_count=1,
                ttl_seconds=float(ttl) if ttl else self.config.default_ttl_seconds,
                size_bytes=size,
                tags=list(tags or []),
            )
            self._store(entry)
            self._emit(CacheEvent.SET, {"key": key, "size_bytes": size})
            return True

    def get_or_set(
        self,
        key: str,
        factory: Callable[[], Any],
        *,
        ttl: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> Any:
        """Return the cached value or compute, store and return it."""
        cached = self.get(key)
        if cached is not None:
            return cached
        value = factory()
        self.set(key, value, ttl=ttl, tags=tags)
        return value

    def entry(self, key: str) -> Optional[CacheEntry]:
        """Copy of the entry under `key`, for introspection. No bookkeeping."""
        with self._lock:
            found = self._entries.get(key)
            return replace(found, tags=list(found.tags)) if found is not None else None

    def invalidate(self, key: str) -> bool:
        with self._lock:
            if key not in self._entries:
                return False
            self._remove(key)
            self._emit(CacheEvent.DELETE, {"key": key})
            return True

    def invalidate_tag(self, tag: str) -> int:
        with self._lock:
            keys = [k for k, e in self._entries.items() if tag in e.tags]
            for key in keys:
                self._remove(key)
                self._emit(CacheEvent.DELETE, {"key": key})
            return len(keys)

    def clear(self) -> None:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._total_size = 0
        logger.debug(f"Cleared {count} cache entries")

    def cleanup(self) -> int:
        """Remove expired entries; returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                self._remove(key)
                self._emit(CacheEvent.EXPIRE, {"key": key})
            self._expirations += len(expired)
            if expired:
                self._emit(CacheEvent.CLEANUP, {"count": len(expired)})
        if expired:
            logger.debug(f"Removed {len(expired)} expired cache entries")
        return len(expired)

    def stats(self) -> CacheStats:
        with self._lock:
            lookups = self._hits + self._misses
            created = [e.created_at for e in self._entries.values()]
            by_use = sorted(self._entries.values(), key=lambda e: -e.access_count)
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                hit_rate=self._hits / lookups if lookups else 0.0,
                total_size_bytes=self._total_size,
                entry_count=len(self._entries),
                oldest_entry=min(created) if created else None,
                newest_entry=max(created) if created else None,
                top_keys=[e.key for e in by_use[:10]],
                evictions=self._evictions,
                expirations=self._expirations,
            )

    def on(self, event: CacheEvent, callback: EventCallback) -> None:
        with self._lock:
            self._callbacks.setdefault(event, []).append(callback)

    # ------------------------------------------------------------------
    # Budget accounting and eviction
    # ------------------------------------------------------------------

    def _store(self, entry: CacheEntry) -> None:
        if self._over_budget(entry.size_bytes):
            self._make_space(entry.size_bytes)
        self._entries[entry.key] = entry
        self._total_size += entry.size_bytes

    def _remove(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._total_size -= entry.size_bytes
        return entry

    def _over_budget(self, incoming_size: int) -> bool:
        return (
            self._total_size + incoming_size > self.config.max_size_bytes
            or len(self._entries) + 1 > self.config.max_entries
        )

    def _eviction_order(self) -> List[Tuple[str, CacheEntry]]:
        items = list(self._entries.items())
        policy = self.config.strategy
        if policy == CachePolicy.LFU:
            return sorted(items, key=lambda kv: (kv[1].access_count, kv[1].last_accessed_at))
        if policy == CachePolicy.TTL:
            return sorted(items, key=lambda kv: kv[1].expires_at)
        return sorted(items, key=lambda kv: kv[1].last_accessed_at)

    def _make_space(self, incoming_size: int) -> None:
        """Evict by policy until the exceeded budget is back to 80%."""
        max_bytes = self.config.max_size_bytes
        max_entries = self.config.max_entries
        byte_target = max_bytes * EVICTION_TARGET_FRACTION
        count_target = int(max_entries * EVICTION_TARGET_FRACTION)
        bytes_exceeded = self._total_size + incoming_size > max_bytes
        count_exceeded = len(self._entries) + 1 > max_entries
        freed = 0
        evicted = 0

        for key, entry in self._eviction_order():
            # The incoming entry must always fit; only an exceeded budget is trimmed to 80%.
            over_bytes = self._total_size + incoming_size > max_bytes or (
                bytes_exceeded and self._total_size > byte_target
            )
            over_count = len(self._entries) + 1 > max_entries or (
                count_exceeded and len(self._entries) > count_target
            )
            if not (over_bytes or over_count):
                break
            self._remove(key)
            freed += entry.size_bytes
            evicted += 1
            self._emit(CacheEvent.EVICT, {"key": key, "size_bytes": entry.size_bytes})

        self._evictions += evicted
        logger.debug(f"Evicted {evicted} cache entries ({freed} bytes, policy={self.config.strategy.value})")

    def _emit(self, event: CacheEvent, data: Dict[str, Any]) -> None:
        for callback in self._callbacks.get(event, []):
            try:
                callback(event, data)
            except Exception as e:
                logger.warning(f"Cache event callback failed for {event.value}: {e}")

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save_snapshot(self) -> bool:
        """Write all live entries to the snapshot file. Failures are logged, not raised."""
        try:
            count = self._write_snapshot(self.config.snapshot_path)
        except CacheIOError as e:
            logger.warning(f"Cache snapshot not saved, continuing memory-only: {e}")
            return False
        logger.debug(f"Saved {count} cache entries to {self.config.snapshot_path}")
        return True

    def load_snapshot(self) -> int:
        """Load non-expired entries from the snapshot; a missing or corrupt file loads nothing."""
        path = self.config.snapshot_path
        if not path.exists():
            return 0
        try:
            loaded = self._read_snapshot(path)
        except CacheIOError as e:
            logger.warning(f"Ignoring unreadable cache snapshot: {e}")
            return 0
        logger.info(f"Loaded {loaded} cache entries from {path}")
        return loaded

    def _write_snapshot(self, path: Path) -> int:
        with self._lock:
            now = self._clock()
            live = [[k, e.to_dict()] for k, e in self._entries.items() if not e.is_expired(now)]
            payload = {"version": SNAPSHOT_VERSION, "timestamp": now, "entries": live}

        try:
            text = json.dumps(payload, default=_json_default)
        except (TypeError, ValueError) as e:
            raise CacheIOError(f"Cannot serialize snapshot for {path}: {e}") from e

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp", text=True)
        except OSError as e:
            raise CacheIOError(f"Cannot write {path}: {e}") from e

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmp_path, path)
        except OSError as e:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
            raise CacheIOError(f"Cannot write {path}: {e}") from e
        return len(live)

    def _read_snapshot(self, path: Path) -> int:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            raw_entries = data.get("entries") or []
            if not isinstance(raw_entries, list):
                raise TypeError(f"entries must be a list, got {type(raw_entries).__name__}")
            # Every entry is validated before any is stored, so a bad one loads nothing.
            entries = [(str(key), CacheEntry.from_dict(raw)) for key, raw in raw_entries]
        except (OSError, ValueError, TypeError, AttributeError) as e:
            raise CacheIOError(f"Cannot read {path}: {e}") from e

        loaded = 0
        with self._lock:
            now = self._clock()
            for key, entry in entries:
                if entry.is_expired(now) or entry.size_bytes > self.config.max_size_bytes:
                    continue
                self._remove(key)
                entry.key = key
                self._store(entry)
                loaded += 1
        return loaded
