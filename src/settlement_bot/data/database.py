"""Async SQLite database manager for settlement sessions and positions.

Uses aiosqlite for non-blocking database operations with WAL mode
so snapshot writes never stall the monitoring loop on readers.
"""

import os
from typing import Self

import aiosqlite

from settlement_bot.exceptions import StoreNotConnectedError
from settlement_bot.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS settlement_sessions (
    id TEXT PRIMARY KEY,
    settlement_time INTEGER NOT NULL,
    state TEXT NOT NULL,
    selected_symbols TEXT NOT NULL,
    selection_timestamp INTEGER,
    funding_rates TEXT NOT NULL,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS price_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    symbol TEXT NOT NULL,
    timestamp_ms INTEGER NOT NULL,
    phase TEXT NOT NULL,
    bid_price TEXT NOT NULL,
    ask_price TEXT NOT NULL,
    bid_volume TEXT NOT NULL,
    ask_volume TEXT NOT NULL,
    spread TEXT NOT NULL,
    mark_price TEXT,
    index_price TEXT,
    volume_24h TEXT,
    orderbook_data TEXT,
    ohlc_open TEXT,
    ohlc_high TEXT,
    ohlc_low TEXT,
    ohlc_close TEXT,
    ohlc_volume TEXT,
    FOREIGN KEY (session_id) REFERENCES settlement_sessions(id)
);

CREATE TABLE IF NOT EXISTS settlement_analysis (
    session_id TEXT NOT NULL,
    symbol TEXT NOT NULL,
    funding_rate TEXT NOT NULL,
    price_change_percent TEXT NOT NULL,
    volume_change_percent TEXT NOT NULL,
    spread_change_percent TEXT NOT NULL,
    liquidity_change_percent TEXT NOT NULL,
    time_to_max_move REAL NOT NULL,
    max_price_move TEXT NOT NULL,
    theory_test TEXT NOT NULL,
    PRIMARY KEY (session_id, symbol)
);

CREATE TABLE IF NOT EXISTS positions (
    id TEXT PRIMARY KEY,
    symbol TEXT NOT NULL,
    side TEXT NOT NULL,
    size TEXT NOT NULL,
    quantity TEXT NOT NULL,
    entry_price TEXT NOT NULL,
    entry_time REAL NOT NULL,
    stop_loss TEXT NOT NULL,
    profit_target TEXT NOT NULL,
    status TEXT NOT NULL,
    order_id TEXT,
    stop_loss_order_id TEXT,
    pnl TEXT NOT NULL,
    funding_rate TEXT NOT NULL,
    expected_profit TEXT NOT NULL,
    fees TEXT NOT NULL,
    slippage TEXT NOT NULL,
    close_reason TEXT,
    closed_at REAL,
    updated_at REAL NOT NULL
);
"""

_CREATE_INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_snapshots_session
    ON price_snapshots(session_id, timestamp_ms);

CREATE INDEX IF NOT EXISTS idx_sessions_settlement
    ON settlement_sessions(settlement_time);

CREATE INDEX IF NOT EXISTS idx_positions_status
    ON positions(status);
"""


class SettlementDatabase:
    """Async SQLite connection manager.

    Usage:
        async with SettlementDatabase("data/settlement_monitor.db") as db:
            store = SettlementStore(db)
    """

    def __init__(self, db_path: str = "data/settlement_monitor.db") -> None:
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    @property
    def db(self) -> aiosqlite.Connection:
        """Access the raw aiosqlite connection.

        Raises StoreNotConnectedError if not connected.
        """
        if self._connection is None:
            raise StoreNotConnectedError("Database not connected. Call connect() first.")
        return self._connection

    async def connect(self) -> None:
        """Open database connection, configure pragmas, and create schema."""
        db_dir = os.path.dirname(self._db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self._connection = await aiosqlite.connect(self._db_path)

        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")

        await self._create_tables()
        await self._ensure_schema_version()

        logger.info("settlement_db_connected", db_path=self._db_path)

    async def close(self) -> None:
        """Close the database connection if open."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("settlement_db_closed", db_path=self._db_path)

    async def _create_tables(self) -> None:
        await self.db.executescript(_CREATE_TABLES_SQL)
        await self.db.executescript(_CREATE_INDEXES_SQL)
        await self.db.commit()

    async def _ensure_schema_version(self) -> None:
        cursor = await self.db.execute("SELECT version FROM schema_version LIMIT 1")
        row = await cursor.fetchone()
        if row is None:
            await self.db.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            await self.db.commit()
            logger.info("schema_version_set", version=SCHEMA_VERSION)

    async def __aenter__(self) -> Self:
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        """Async context manager exit."""
        await self.close()
