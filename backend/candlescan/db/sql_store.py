"""
CandleScan — PostgreSQL Candle Store

Durable CandleStore over the PostgreSQL wire protocol (psycopg2).
Upserts are INSERT … ON CONFLICT DO UPDATE on the natural key, so a
re-delivered row overwrites rather than duplicates. Feature rows are
stored as compact JSONB (see feature_codec).
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import date, datetime
from typing import Iterator, Optional

import psycopg2
import structlog
from psycopg2.extras import Json, execute_values
from psycopg2.pool import ThreadedConnectionPool

from candlescan.db.feature_codec import decode_features, encode_features
from candlescan.errors import TransientStoreError
from candlescan.models import (
    Candle,
    CandleBackup,
    CandleFeatures,
    Instrument,
    Timeframe,
    build_candle,
    ensure_utc,
)

log = structlog.get_logger(__name__)

# Connectivity problems are retryable; anything else (bad SQL, constraint
# violations) is a bug and propagates unchanged.
_TRANSIENT_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS candles (
        symbol TEXT NOT NULL,
        timeframe TEXT NOT NULL,
        ts TIMESTAMPTZ NOT NULL,
        open DOUBLE PRECISION NOT NULL,
        high DOUBLE PRECISION NOT NULL,
        low DOUBLE PRECISION NOT NULL,
        close DOUBLE PRECISION NOT NULL,
        volume DOUBLE PRECISION NOT NULL DEFAULT 0,
        open_interest DOUBLE PRECISION,
        PRIMARY KEY (symbol, timeframe, ts)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS candle_features (
        symbol TEXT NOT NULL,
        timeframe TEXT NOT NULL,
        ts TIMESTAMPTZ NOT NULL,
        f JSONB NOT NULL,
        PRIMARY KEY (symbol, timeframe, ts)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS candle_backups (
        symbol TEXT NOT NULL,
        source_timeframe TEXT NOT NULL,
        target_timeframe TEXT NOT NULL,
        day DATE NOT NULL,
        compression_ratio DOUBLE PRECISION NOT NULL,
        payload JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (symbol, source_timeframe, target_timeframe, day)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_candle_backups_created ON candle_backups (created_at);",
    """
    CREATE TABLE IF NOT EXISTS instruments (
        symbol TEXT PRIMARY KEY,
        name TEXT NOT NULL DEFAULT '',
        exchange TEXT NOT NULL DEFAULT 'NSE',
        instrument_type TEXT NOT NULL DEFAULT 'EQ',
        is_active BOOLEAN NOT NULL DEFAULT TRUE
    );
    """,
)

_CANDLE_COLUMNS = "symbol, timeframe, ts, open, high, low, close, volume, open_interest"


def _window_clause(start: Optional[datetime], end: Optional[datetime], params: list) -> str:
    clause = ""
    if start is not None:
        clause += " AND ts >= %s"
        params.append(ensure_utc(start))
    if end is not None:
        clause += " AND ts < %s"
        params.append(ensure_utc(end))
    return clause


def _row_to_candle(row) -> Candle:
    symbol, timeframe, ts, o, h, l, c, v, oi = row
    return build_candle(
        symbol=symbol, timeframe=timeframe, timestamp=ts,
        open=o, high=h, low=l, close=c, volume=v, open_interest=oi,
    )


class PostgresCandleStore:
    """CandleStore backed by PostgreSQL.

    Usage::

        store = PostgresCandleStore(settings.database_url)
        store.ensure_tables()
        store.upsert_candles(candles)
        rows = store.query_candles("RELIANCE", Timeframe.D1, limit=90)
    """

    def __init__(
        self,
        dsn: str,
        pool_size: int = 10,
        connect_timeout: int = 5,
        statement_timeout_ms: int = 30000,
        pool=None,
    ):
        self._dsn = dsn
        self._pool_size = pool_size
        self._connect_timeout = connect_timeout
        self._statement_timeout_ms = statement_timeout_ms
        self._pool = pool
        self._pool_lock = threading.Lock()

    # ──────────────────────────────────────────────
    # Connection
    # ──────────────────────────────────────────────

    def _get_pool(self):
        """Get or create the connection pool."""
        with self._pool_lock:
            if self._pool is None:
                try:
                    self._pool = ThreadedConnectionPool(
                        1,
                        self._pool_size,
                        self._dsn,
                        connect_timeout=self._connect_timeout,
                        options=f"-c statement_timeout={self._statement_timeout_ms}",
                    )
                    log.info("postgres.connected", pool_size=self._pool_size)
                except _TRANSIENT_ERRORS as exc:
                    log.warning("postgres.connection_failed", error=str(exc))
                    raise TransientStoreError("connect", str(exc)) from exc
            return self._pool

    @contextmanager
    def _transaction(self, operation: str) -> Iterator:
        """Yield a cursor inside one transaction; commit on success."""
        pool = self._get_pool()
        try:
            conn = pool.getconn()
        except (psycopg2.pool.PoolError, *_TRANSIENT_ERRORS) as exc:
            raise TransientStoreError(operation, str(exc)) from exc

        broken = False
        try:
            with conn:
                with conn.cursor() as cur:
                    yield cur
        except _TRANSIENT_ERRORS as exc:
            broken = True
            log.error("postgres.operation_failed", operation=operation, error=str(exc))
            raise TransientStoreError(operation, str(exc)) from exc
        finally:
            pool.putconn(conn, close=broken)

    @property
    def available(self) -> bool:
        try:
            with self._transaction("ping") as cur:
                cur.execute("SELECT 1;")
            return True
        except TransientStoreError:
            return False

    def close(self):
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None
            log.info("postgres.closed")

    # ──────────────────────────────────────────────
    # Schema
    # ──────────────────────────────────────────────

    def ensure_tables(self) -> None:
        """Create tables if they don't exist (idempotent)."""
        with self._transaction("ensure_tables") as cur:
            for ddl in _SCHEMA:
                cur.execute(ddl)
        log.info("postgres.tables_ensured")

    # ──────────────────────────────────────────────
    # Candles
    # ──────────────────────────────────────────────

    def upsert_candles(self, candles: list[Candle]) -> int:
        if not candles:
            return 0
        rows = [
            (c.symbol, c.timeframe.value, c.timestamp, c.open, c.high, c.low,
             c.close, c.volume, c.open_interest)
            for c in candles
        ]
        with self._transaction("upsert_candles") as cur:
            execute_values(
                cur,
                f"""
                INSERT INTO candles ({_CANDLE_COLUMNS}) VALUES %s
                ON CONFLICT (symbol, timeframe, ts) DO UPDATE SET
                    open = EXCLUDED.open, high = EXCLUDED.high, low = EXCLUDED.low,
                    close = EXCLUDED.close, volume = EXCLUDED.volume,
                    open_interest = EXCLUDED.open_interest;
                """,
                rows,
            )
        log.debug("postgres.candles_upserted", rows=len(rows))
        return len(rows)

    def query_candles(
        self,
        symbol: str,
        timeframe: Timeframe,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[Candle]:
        params: list = [symbol.upper(), Timeframe.parse(timeframe).value]
        query = f"SELECT {_CANDLE_COLUMNS} FROM candles WHERE symbol = %s AND timeframe = %s"
        query += _window_clause(start, end, params)

        if limit is not None:
            # Most recent rows, returned oldest first
            query += " ORDER BY ts DESC LIMIT %s"
            params.append(max(limit, 0))
        else:
            query += " ORDER BY ts ASC"

        with self._transaction("query_candles") as cur:
            cur.execute(query, params)
            rows = cur.fetchall()

        candles = [_row_to_candle(r) for r in rows]
        if limit is not None:
            candles.reverse()
        return candles

    def delete_candles(
        self,
        symbol: str,
        timeframe: Timeframe,
        before: datetime,
        after: Optional[datetime] = None,
    ) -> int:
        params: list = [symbol.upper(), Timeframe.parse(timeframe).value]
        window = _window_clause(after, before, params)

        with self._transaction("delete_candles") as cur:
            cur.execute(f"DELETE FROM candle_features WHERE symbol = %s AND timeframe = %s{window};", params)
            cur.execute(f"DELETE FROM candles WHERE symbol = %s AND timeframe = %s{window};", params)
            deleted = cur.rowcount

        log.info("postgres.candles_deleted", symbol=symbol.upper(), timeframe=params[1], rows=deleted)
        return deleted

    def distinct_symbols(self, timeframe: Timeframe) -> list[str]:
        with self._transaction("distinct_symbols") as cur:
            cur.execute(
                "SELECT DISTINCT symbol FROM candles WHERE timeframe = %s ORDER BY symbol;",
                (Timeframe.parse(timeframe).value,),
            )
            return [row[0] for row in cur.fetchall()]

    # ──────────────────────────────────────────────
    # Features
    # ──────────────────────────────────────────────

    def upsert_features(self, features: list[CandleFeatures]) -> int:
        if not features:
            return 0
        rows = [
            (f.symbol, f.timeframe.value, f.timestamp, Json(encode_features(f)))
            for f in features
        ]
        with self._transaction("upsert_features") as cur:
            execute_values(
                cur,
                """
                INSERT INTO candle_features (symbol, timeframe, ts, f) VALUES %s
                ON CONFLICT (symbol, timeframe, ts) DO UPDATE SET f = EXCLUDED.f;
                """,
                rows,
            )
        return len(rows)

    def query_features(
        self,
        symbol: str,
        timeframe: Timeframe,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[CandleFeatures]:
        tf = Timeframe.parse(timeframe)
        params: list = [symbol.upper(), tf.value]
        query = "SELECT symbol, ts, f FROM candle_features WHERE symbol = %s AND timeframe = %s"
        query += _window_clause(start, end, params) + " ORDER BY ts ASC;"

        with self._transaction("query_features") as cur:
            cur.execute(query, params)
            rows = cur.fetchall()

        return [decode_features(sym, tf, ts, compact or {}) for sym, ts, compact in rows]

    # ──────────────────────────────────────────────
    # Instruments
    # ──────────────────────────────────────────────

    def upsert_instruments(self, instruments: list[Instrument]) -> int:
        if not instruments:
            return 0
        rows = [
            (i.symbol, i.name, i.exchange, i.instrument_type, i.is_active)
            for i in instruments
        ]
        with self._transaction("upsert_instruments") as cur:
            execute_values(
                cur,
                """
                INSERT INTO instruments (symbol, name, exchange, instrument_type, is_active) VALUES %s
                ON CONFLICT (symbol) DO UPDATE SET
                    name = EXCLUDED.name, exchange = EXCLUDED.exchange,
                    instrument_type = EXCLUDED.instrument_type, is_active = EXCLUDED.is_active;
                """,
                rows,
            )
        return len(rows)

    def list_instruments(
        self,
        instrument_type: str = "EQ",
        active_only: bool = True,
        limit: Optional[int] = None,
    ) -> list[Instrument]:
        query = "SELECT symbol, name, exchange, instrument_type, is_active FROM instruments WHERE instrument_type = %s"
        params: list = [instrument_type]
        if active_only:
            query += " AND is_active = TRUE"
        query += " ORDER BY symbol"
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)

        with self._transaction("list_instruments") as cur:
            cur.execute(query + ";", params)
            rows = cur.fetchall()

        return [
            Instrument(symbol=r[0], name=r[1], exchange=r[2], instrument_type=r[3], is_active=r[4])
            for r in rows
        ]

    # ──────────────────────────────────────────────
    # Backups
    # ──────────────────────────────────────────────

    def save_backup(self, backup: CandleBackup) -> bool:
        payload = backup.model_dump(mode="json", include={"candles", "features"}, exclude_none=True)
        with self._transaction("save_backup") as cur:
            cur.execute(
                """
                INSERT INTO candle_backups
                    (symbol, source_timeframe, target_timeframe, day, compression_ratio, payload, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT DO NOTHING;
                """,
                (
                    backup.symbol,
                    backup.source_timeframe.value,
                    backup.target_timeframe.value,
                    backup.day,
                    backup.compression_ratio,
                    Json(payload),
                    backup.created_at,
                ),
            )
            created = cur.rowcount == 1
        if created:
            log.info("postgres.backup_saved", symbol=backup.symbol, day=str(backup.day),
                     candles=len(backup.candles))
        return created

    def find_backup(
        self,
        symbol: str,
        source_timeframe: Timeframe,
        target_timeframe: Timeframe,
        day: date,
    ) -> Optional[CandleBackup]:
        src = Timeframe.parse(source_timeframe)
        tgt = Timeframe.parse(target_timeframe)
        with self._transaction("find_backup") as cur:
            cur.execute(
                """
                SELECT compression_ratio, payload, created_at FROM candle_backups
                WHERE symbol = %s AND source_timeframe = %s AND target_timeframe = %s AND day = %s;
                """,
                (symbol.upper(), src.value, tgt.value, day),
            )
            row = cur.fetchone()

        if row is None:
            return None
        ratio, payload, created_at = row
        return CandleBackup(
            symbol=symbol.upper(),
            source_timeframe=src,
            target_timeframe=tgt,
            day=day,
            compression_ratio=ratio,
            created_at=created_at,
            candles=payload.get("candles", []),
            features=payload.get("features", []),
        )

    def purge_backups(self, older_than: datetime) -> int:
        with self._transaction("purge_backups") as cur:
            cur.execute("DELETE FROM candle_backups WHERE created_at < %s;", (ensure_utc(older_than),))
            purged = cur.rowcount
        log.info("postgres.backups_purged", rows=purged, older_than=ensure_utc(older_than).isoformat())
        return purged
