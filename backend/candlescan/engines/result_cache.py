"""
CandleScan — Scan Result Cache

Content-addressed cache of scan result sets. The key is a hash of
(scan type, timeframe, filters) with filter keys sorted, so two requests with
the same filters in a different order share one entry.

Reads never raise: a backend failure is a logged miss. Writes never raise
either: a failed put is logged and reported as False.
"""

from __future__ import annotations

import hashlib
import json
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Union

import structlog

from candlescan.cache import DocumentCache
from candlescan.models import (
    CacheEntry,
    CacheMetadata,
    ScanMatch,
    ScanType,
    Timeframe,
)

log = structlog.get_logger(__name__)

DEFAULT_TTL_HOURS = 24
DEFAULT_REFRESH_HOURS = 12


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def make_cache_key(scan_type: Union[ScanType, str], timeframe: Union[Timeframe, str], filters: dict) -> str:
    """md5 hex of ``"{scan_type}:{timeframe}:{filters as sorted JSON}"``."""
    st = ScanType.parse(scan_type).value
    tf = Timeframe.parse(timeframe).value
    raw = f"{st}:{tf}:{json.dumps(filters, sort_keys=True, default=str)}"
    return hashlib.md5(raw.encode()).hexdigest()


class ResultCache:
    """Keyed TTL cache of scan results over a DocumentCache backend."""

    def __init__(
        self,
        backend: DocumentCache,
        ttl_hours: int = DEFAULT_TTL_HOURS,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self._backend = backend
        self._ttl = timedelta(hours=ttl_hours)
        self._clock = clock

    def get(self, scan_type: Union[ScanType, str], timeframe: Union[Timeframe, str], filters: dict) -> Optional[CacheEntry]:
        """Live entry for the key, or None on miss, expiry or backend error."""
        key = make_cache_key(scan_type, timeframe, filters)
        try:
            entry = self._backend.find_by_key(key)
        except Exception as exc:
            log.warning("result_cache.get_failed", key=key, error=str(exc))
            return None

        if entry is None:
            log.debug("result_cache.miss", key=key)
            return None
        if not entry.is_live(self._clock()):
            log.debug("result_cache.expired", key=key, expires_at=entry.expires_at.isoformat())
            return None
        log.info("result_cache.hit", key=key, scan_type=entry.scan_type.value, timeframe=entry.timeframe.value)
        return entry

    def build_entry(
        self,
        scan_type: Union[ScanType, str],
        timeframe: Union[Timeframe, str],
        filters: dict,
        results: list[Union[ScanMatch, dict]],
        metadata: Optional[CacheMetadata] = None,
        ttl_hours: Optional[float] = None,
    ) -> CacheEntry:
        """Assemble the entry a put would store, stamped with the current time."""
        st = ScanType.parse(scan_type)
        tf = Timeframe.parse(timeframe)
        now = self._clock()
        ttl = timedelta(hours=ttl_hours) if ttl_hours is not None else self._ttl

        rows: list[dict[str, Any]] = [
            r.model_dump(mode="json") if isinstance(r, ScanMatch) else r for r in results
        ]
        meta = metadata or CacheMetadata(data_date=now)
        meta = meta.model_copy(update={"last_updated": now, "matched_stocks": meta.matched_stocks or len(rows)})

        return CacheEntry(
            cache_key=make_cache_key(st, tf, filters),
            scan_type=st,
            filters=filters,
            timeframe=tf,
            results=rows,
            metadata=meta,
            expires_at=now + ttl,
        )

    def put_entry(self, entry: CacheEntry) -> bool:
        """Store a prepared entry. Returns False (after logging) on failure."""
        try:
            self._backend.upsert(entry)
        except Exception as exc:
            log.error("result_cache.put_failed", key=entry.cache_key, error=str(exc))
            return False
        log.info("result_cache.stored", key=entry.cache_key, results=len(entry.results),
                 expires_at=entry.expires_at.isoformat())
        return True

    def put(
        self,
        scan_type: Union[ScanType, str],
        timeframe: Union[Timeframe, str],
        filters: dict,
        results: list[Union[ScanMatch, dict]],
        metadata: Optional[CacheMetadata] = None,
        ttl_hours: Optional[float] = None,
    ) -> bool:
        """Store a result set. Returns False (after logging) on failure."""
        try:
            entry = self.build_entry(scan_type, timeframe, filters, results, metadata, ttl_hours)
        except Exception as exc:
            log.error("result_cache.put_failed", scan_type=str(scan_type), timeframe=str(timeframe), error=str(exc))
            return False
        return self.put_entry(entry)

    def invalidate(
        self,
        scan_type: Union[ScanType, str, None] = None,
        timeframe: Union[Timeframe, str, None] = None,
    ) -> int:
        """Delete entries by scan type and/or timeframe (all when both None)."""
        st = ScanType.parse(scan_type) if scan_type is not None else None
        tf = Timeframe.parse(timeframe) if timeframe is not None else None
        deleted = self._backend.delete_where(scan_type=st, timeframe=tf)
        log.info("result_cache.invalidated", scan_type=st and st.value, timeframe=tf and tf.value, deleted=deleted)
        return deleted

    def cleanup_expired(self) -> int:
        deleted = self._backend.delete_where(expired_before=self._clock())
        log.info("result_cache.cleanup", deleted=deleted)
        return deleted

    def needs_refresh(
        self,
        scan_type: Union[ScanType, str],
        timeframe: Union[Timeframe, str],
        filters: dict,
        max_age_hours: float = DEFAULT_REFRESH_HOURS,
    ) -> bool:
        """True when the entry is missing, expired or older than *max_age_hours*."""
        entry = self.get(scan_type, timeframe, filters)
        if entry is None or entry.metadata.last_updated is None:
            return True
        return self._clock() - entry.metadata.last_updated > timedelta(hours=max_age_hours)

    def stats(self) -> dict:
        entries = self._backend.entries()
        now = self._clock()
        live = [e for e in entries if e.is_live(now)]
        updated = [e.metadata.last_updated for e in entries if e.metadata.last_updated is not None]
        return {
            "total_entries": len(entries),
            "live_entries": len(live),
            "expired_entries": len(entries) - len(live),
            "by_scan_type": dict(Counter(e.scan_type.value for e in live)),
            "by_timeframe": dict(Counter(e.timeframe.value for e in live)),
            "oldest_update": min(updated).isoformat() if updated else None,
            "newest_update": max(updated).isoformat() if updated else None,
        }
