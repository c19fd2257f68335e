from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, Protocol

from ..config import CACHE, CacheConfig
from ..matching.normalizer import TitleNormalizer
from ..models import CacheEntry
from ..utils.utilities import load_json_cache, save_json_cache

STORE_KEY = "hltb_cache"


class KeyValueStore(Protocol):
    """Async persistence seam. Missing keys read as None."""

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def remove(self, key: str) -> None: ...


class MemoryStore:
    def __init__(self) -> None:
        self._data: dict[str, Any] = {}

    async def get(self, key: str) -> Any | None:
        return self._data.get(key)

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore:
    """
    One JSON file holding every key; file IO runs in a worker thread.

    Reads and read-modify-write cycles are serialized so concurrent callers never interleave
    on the file.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            data = await asyncio.to_thread(load_json_cache, self.path)
        return data.get(key)

    async def set(self, key: str, value: Any) -> None:
        def _write() -> None:
            data = load_json_cache(self.path) if self.path.exists() else {}
            data[key] = value
            save_json_cache(data, self.path)

        async with self._lock:
            await asyncio.to_thread(_write)

    async def remove(self, key: str) -> None:
        def _remove() -> None:
            if not self.path.exists():
                return
            data = load_json_cache(self.path)
            if data.pop(key, None) is not None:
                save_json_cache(data, self.path)

        async with self._lock:
            await asyncio.to_thread(_remove)


def cache_key(title: str, app_id: str | None = None) -> str:
    return f"id:{app_id or ''}|t:{TitleNormalizer.standard(title)}"


class CacheService:
    """
    Retention-windowed result cache with hit/miss accounting.

    Expired entries read as misses. When full, the least-used entry is evicted (oldest first
    among ties). Storage failures are logged and never fatal. Expired entries are only swept
    by `cleanup_expired()`, which a host scheduler is expected to call.
    """

    def __init__(
        self,
        store: KeyValueStore | None = None,
        *,
        config: CacheConfig = CACHE,
        clock: Callable[[], float] = time.time,
    ):
        self.store: KeyValueStore = store if store is not None else MemoryStore()
        self.retention_s = float(config.retention_s)
        self.max_entries = int(config.max_entries)
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._loaded = False
        self._load_lock = asyncio.Lock()
        self.stats: dict[str, int] = {
            "hits": 0,
            "misses": 0,
            "expired": 0,
            "evictions": 0,
            "store_errors": 0,
        }

    # ----------------------------
    # Persistence
    # ----------------------------

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        async with self._load_lock:
            if self._loaded:
                return
            try:
                raw = await self.store.get(STORE_KEY)
            except Exception as e:
                self.stats["store_errors"] += 1
                logging.warning(
                    f"[CACHE] Failed to load persisted cache: {type(e).__name__}: {e}"
                )
                raw = None
            if not isinstance(raw, dict):
                raw = {}
            for key, item in raw.items():
                if not isinstance(item, dict) or "timestamp" not in item:
                    continue
                try:
                    self._entries[key] = CacheEntry(
                        data=item.get("data"),
                        timestamp=float(item["timestamp"]),
                        hits=int(item.get("hits", 0) or 0),
                    )
                except (TypeError, ValueError):
                    continue
            self._loaded = True
            if self._entries:
                logging.info(f"[CACHE] Loaded {len(self._entries)} entries")

    def _snapshot(self) -> dict[str, Any]:
        return {
            k: {"data": e.data, "timestamp": e.timestamp, "hits": e.hits}
            for k, e in self._entries.items()
        }

    async def _persist(self) -> None:
        try:
            await self.store.set(STORE_KEY, self._snapshot())
        except Exception as e:
            self.stats["store_errors"] += 1
            logging.warning(f"[CACHE] Failed to persist cache: {type(e).__name__}: {e}")

    # ----------------------------
    # Operations
    # ----------------------------

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.timestamp > self.retention_s

    async def get(self, title: str, app_id: str | None = None) -> Any | None:
        await self._ensure_loaded()
        key = cache_key(title, app_id)
        entry = self._entries.get(key)
        if entry is None:
            self.stats["misses"] += 1
            return None
        if self._is_expired(entry, self._clock()):
            del self._entries[key]
            self.stats["expired"] += 1
            self.stats["misses"] += 1
            await self._persist()
            return None
        entry.hits += 1
        self.stats["hits"] += 1
        await self._persist()
        return entry.data

    async def set(self, title: str, value: Any, app_id: str | None = None) -> None:
        await self._ensure_loaded()
        self._entries[cache_key(title, app_id)] = CacheEntry(value, self._clock(), 0)
        while len(self._entries) > self.max_entries:
            self._evict_one()
        await self._persist()

    def _evict_one(self) -> None:
        victim = min(
            self._entries, key=lambda k: (self._entries[k].hits, self._entries[k].timestamp)
        )
        del self._entries[victim]
        self.stats["evictions"] += 1

    async def delete(self, title: str, app_id: str | None = None) -> bool:
        await self._ensure_loaded()
        removed = self._entries.pop(cache_key(title, app_id), None) is not None
        if removed:
            await self._persist()
        return removed

    async def cleanup_expired(self) -> int:
        await self._ensure_loaded()
        now = self._clock()
        expired = [k for k, e in self._entries.items() if self._is_expired(e, now)]
        for k in expired:
            del self._entries[k]
        if expired:
            self.stats["expired"] += len(expired)
            await self._persist()
            logging.info(f"[CACHE] Removed {len(expired)} expired entries")
        return len(expired)

    async def clear(self) -> None:
        await self._ensure_loaded()
        self._entries.clear()
        try:
            await self.store.remove(STORE_KEY)
        except Exception as e:
            self.stats["store_errors"] += 1
            logging.warning(f"[CACHE] Failed to clear persisted cache: {type(e).__name__}: {e}")

    async def get_stats(self) -> dict[str, Any]:
        await self._ensure_loaded()
        lookups = self.stats["hits"] + self.stats["misses"]
        timestamps = [e.timestamp for e in self._entries.values()]
        return {
            "size": len(self._entries),
            "max_entries": self.max_entries,
            "hits": self.stats["hits"],
            "misses": self.stats["misses"],
            "hit_rate": round(self.stats["hits"] / lookups, 4) if lookups else 0.0,
            "entry_hits": sum(e.hits for e in self._entries.values()),
            "expired": self.stats["expired"],
            "evictions": self.stats["evictions"],
            "store_errors": self.stats["store_errors"],
            "oldest_entry": min(timestamps) if timestamps else None,
            "newest_entry": max(timestamps) if timestamps else None,
            "total_size": len(json.dumps(self._snapshot(), default=str)),
        }

    def format_cache_stats(self) -> str:
        s = self.stats
        return (
            f"size={len(self._entries)} hits={s['hits']} misses={s['misses']} "
            f"expired={s['expired']} evictions={s['evictions']} store_errors={s['store_errors']}"
        )
