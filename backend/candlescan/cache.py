"""
CandleScan — Document Cache Backends

Storage for cached scan result sets. One JSON document per cache key, plus an
index set so entries can be swept by scan type, timeframe or expiry.

Backends raise TransientStoreError on connectivity failures; the ResultCache
above them decides what a failure means (miss on read, False on write).
"""

from __future__ import annotations

import math
import threading
from datetime import datetime, timezone
from typing import Optional, Protocol

import redis as redis_lib
import structlog

from candlescan.errors import TransientStoreError
from candlescan.models import CacheEntry, ScanType, Timeframe, ensure_utc

log = structlog.get_logger(__name__)

KEY_PREFIX = "cs:scan"
INDEX_KEY = f"{KEY_PREFIX}:index"


def _matches(
    entry: CacheEntry,
    scan_type: Optional[ScanType],
    timeframe: Optional[Timeframe],
    expired_before: Optional[datetime],
) -> bool:
    if scan_type is not None and entry.scan_type != scan_type:
        return False
    if timeframe is not None and entry.timeframe != timeframe:
        return False
    if expired_before is not None and entry.expires_at > ensure_utc(expired_before):
        return False
    return True


class DocumentCache(Protocol):

    def find_by_key(self, cache_key: str) -> Optional[CacheEntry]: ...

    def upsert(self, entry: CacheEntry) -> None: ...

    def delete_where(
        self,
        scan_type: Optional[ScanType] = None,
        timeframe: Optional[Timeframe] = None,
        expired_before: Optional[datetime] = None,
    ) -> int:
        """Delete entries matching every given filter. Returns count deleted."""
        ...

    def entries(self) -> list[CacheEntry]: ...


# ──────────────────────────────────────────────
# Redis
# ──────────────────────────────────────────────


class RedisDocumentCache:
    """Redis-backed DocumentCache with JSON documents and native TTLs."""

    def __init__(self, url: str = "redis://localhost:6379/0", client=None):
        self._url = url
        self._client = client

    def _get_client(self):
        if self._client is None:
            self._client = redis_lib.from_url(
                self._url,
                decode_responses=True,
                socket_timeout=2,
                socket_connect_timeout=2,
            )
            log.info("cache.connected", url=self._url)
        return self._client

    @staticmethod
    def _doc_key(cache_key: str) -> str:
        return f"{KEY_PREFIX}:{cache_key}"

    def find_by_key(self, cache_key: str) -> Optional[CacheEntry]:
        try:
            raw = self._get_client().get(self._doc_key(cache_key))
        except redis_lib.RedisError as exc:
            raise TransientStoreError("cache.get", str(exc)) from exc
        if raw is None:
            return None
        return CacheEntry.model_validate_json(raw)

    def upsert(self, entry: CacheEntry) -> None:
        # Redis expiry is housekeeping; liveness is decided on expires_at
        remaining = (entry.expires_at - datetime.now(timezone.utc)).total_seconds()
        ttl = max(1, math.ceil(remaining))
        try:
            pipe = self._get_client().pipeline()
            pipe.setex(self._doc_key(entry.cache_key), ttl, entry.model_dump_json())
            pipe.sadd(INDEX_KEY, entry.cache_key)
            pipe.execute()
        except redis_lib.RedisError as exc:
            raise TransientStoreError("cache.upsert", str(exc)) from exc

    def _indexed(self) -> list[tuple[str, Optional[CacheEntry]]]:
        client = self._get_client()
        keys = sorted(client.smembers(INDEX_KEY))
        if not keys:
            return []
        raws = client.mget([self._doc_key(k) for k in keys])
        return [
            (key, CacheEntry.model_validate_json(raw) if raw is not None else None)
            for key, raw in zip(keys, raws)
        ]

    def delete_where(
        self,
        scan_type: Optional[ScanType] = None,
        timeframe: Optional[Timeframe] = None,
        expired_before: Optional[datetime] = None,
    ) -> int:
        try:
            client = self._get_client()
            deleted = 0
            stale: list[str] = []
            for key, entry in self._indexed():
                if entry is None:
                    stale.append(key)  # already expired by Redis
                    continue
                if _matches(entry, scan_type, timeframe, expired_before):
                    client.delete(self._doc_key(key))
                    stale.append(key)
                    deleted += 1
            if stale:
                client.srem(INDEX_KEY, *stale)
        except redis_lib.RedisError as exc:
            raise TransientStoreError("cache.delete", str(exc)) from exc
        return deleted

    def entries(self) -> list[CacheEntry]:
        try:
            return [entry for _, entry in self._indexed() if entry is not None]
        except redis_lib.RedisError as exc:
            raise TransientStoreError("cache.entries", str(exc)) from exc


# ──────────────────────────────────────────────
# In-memory
# ──────────────────────────────────────────────


class MemoryDocumentCache:
    """Process-local DocumentCache (CACHE_BACKEND=memory, tests)."""

    def __init__(self):
        self._docs: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def find_by_key(self, cache_key: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._docs.get(cache_key)

    def upsert(self, entry: CacheEntry) -> None:
        with self._lock:
            self._docs[entry.cache_key] = entry

    def delete_where(
        self,
        scan_type: Optional[ScanType] = None,
        timeframe: Optional[Timeframe] = None,
        expired_before: Optional[datetime] = None,
    ) -> int:
        with self._lock:
            doomed = [k for k, e in self._docs.items() if _matches(e, scan_type, timeframe, expired_before)]
            for key in doomed:
                del self._docs[key]
        return len(doomed)

    def entries(self) -> list[CacheEntry]:
        with self._lock:
            return list(self._docs.values())


def create_document_cache(backend: str, redis_url: str) -> DocumentCache:
    if backend == "memory":
        return MemoryDocumentCache()
    return RedisDocumentCache(redis_url)
