"""
CandleScan — Persistence

Store factory. STORE_BACKEND selects PostgreSQL (default) or the
in-memory store used for local development and tests.
"""

from __future__ import annotations

from candlescan.config import Settings
from candlescan.db.base import CandleStore
from candlescan.db.memory_store import MemoryCandleStore
from candlescan.db.sql_store import PostgresCandleStore


def create_store(settings: Settings) -> CandleStore:
    if settings.store_backend == "memory":
        return MemoryCandleStore()
    return PostgresCandleStore(
        settings.database_url,
        pool_size=settings.store_pool_size,
        connect_timeout=settings.store_connect_timeout,
        statement_timeout_ms=settings.store_statement_timeout_ms,
    )


__all__ = ["CandleStore", "MemoryCandleStore", "PostgresCandleStore", "create_store"]
