"""Typed SQLite read/write abstraction for sessions, snapshots and positions.

All SQL is isolated behind SettlementStore. Sessions, snapshots and
analyses form an append-only audit trail; positions are upserted on every
lifecycle transition so they survive a restart and can be reconciled.

CRITICAL: All monetary/rate values stored as TEXT in SQLite, restored as Decimal on read.
"""

import json
import time
from decimal import Decimal

from settlement_bot.data.database import SettlementDatabase
from settlement_bot.logging import get_logger
from settlement_bot.models import (
    OHLCData,
    OrderbookLevel,
    OrderSide,
    Position,
    PositionStatus,
    PriceSnapshot,
    SessionState,
    SettlementAnalysis,
    SettlementSession,
    SnapshotPhase,
    TheoryTest,
)

logger = get_logger(__name__)

_SNAPSHOT_COLUMNS = (
    "symbol, timestamp_ms, phase, bid_price, ask_price, bid_volume, ask_volume, "
    "spread, mark_price, index_price, volume_24h, orderbook_data, "
    "ohlc_open, ohlc_high, ohlc_low, ohlc_close, ohlc_volume"
)

_POSITION_COLUMNS = (
    "id, symbol, side, size, quantity, entry_price, entry_time, stop_loss, "
    "profit_target, status, order_id, stop_loss_order_id, pnl, funding_rate, "
    "expected_profit, fees, slippage, close_reason, closed_at"
)


def _opt_str(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


def _opt_dec(value: str | None) -> Decimal | None:
    return Decimal(value) if value is not None else None


class SettlementStore:
    """Async SQLite store for the settlement audit trail and positions.

    Usage:
        async with SettlementDatabase("data/settlement_monitor.db") as database:
            store = SettlementStore(database)
            await store.save_session(session)
    """

    def __init__(self, database: SettlementDatabase) -> None:
        self._database = database

    # ──────────────────────────────────────────────
    # Sessions, snapshots, analyses
    # ──────────────────────────────────────────────

    async def save_session(self, session: SettlementSession) -> None:
        """Insert or replace a session header (snapshots are stored separately)."""
        await self._database.db.execute(
            "INSERT OR REPLACE INTO settlement_sessions "
            "(id, settlement_time, state, selected_symbols, selection_timestamp, "
            "funding_rates, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                session.id,
                session.settlement_time,
                session.state.value,
                json.dumps(session.selected_symbols),
                session.selection_timestamp,
                json.dumps({k: str(v) for k, v in session.funding_rates_at_selection.items()}),
                session.created_at,
            ),
        )
        await self._database.db.commit()
        logger.debug("session_saved", session_id=session.id, state=session.state.value)

    async def update_session_state(self, session_id: str, state: SessionState) -> None:
        await self._database.db.execute(
            "UPDATE settlement_sessions SET state = ? WHERE id = ?",
            (state.value, session_id),
        )
        await self._database.db.commit()

    async def save_snapshots(self, session_id: str, snapshots: list[PriceSnapshot]) -> int:
        """Append snapshots for a session. Returns the number written."""
        if not snapshots:
            return 0

        rows = [
            (
                session_id,
                s.symbol,
                s.timestamp,
                s.phase.value,
                str(s.bid_price),
                str(s.ask_price),
                str(s.bid_volume),
                str(s.ask_volume),
                str(s.spread),
                _opt_str(s.mark_price),
                _opt_str(s.index_price),
                _opt_str(s.volume_24h),
                json.dumps(
                    [[str(lvl.price), str(lvl.volume), lvl.side] for lvl in s.orderbook_levels]
                ),
                _opt_str(s.ohlc.open) if s.ohlc else None,
                _opt_str(s.ohlc.high) if s.ohlc else None,
                _opt_str(s.ohlc.low) if s.ohlc else None,
                _opt_str(s.ohlc.close) if s.ohlc else None,
                _opt_str(s.ohlc.volume) if s.ohlc else None,
            )
            for s in snapshots
        ]
        await self._database.db.executemany(
            f"INSERT INTO price_snapshots (session_id, {_SNAPSHOT_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            rows,
        )
        await self._database.db.commit()
        logger.debug("snapshots_saved", session_id=session_id, count=len(rows))
        return len(rows)

    async def save_analyses(self, analyses: list[SettlementAnalysis]) -> int:
        if not analyses:
            return 0

        rows = [
            (
                a.session_id,
                a.symbol,
                str(a.funding_rate),
                str(a.price_change_percent),
                str(a.volume_change_percent),
                str(a.spread_change_percent),
                str(a.liquidity_change_percent),
                a.time_to_max_move,
                str(a.max_price_move),
                a.theory_test.value,
            )
            for a in analyses
        ]
        await self._database.db.executemany(
            "INSERT OR REPLACE INTO settlement_analysis "
            "(session_id, symbol, funding_rate, price_change_percent, "
            "volume_change_percent, spread_change_percent, liquidity_change_percent, "
            "time_to_max_move, max_price_move, theory_test) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            rows,
        )
        await self._database.db.commit()
        return len(rows)

    async def get_session(self, session_id: str) -> SettlementSession | None:
        """Read a session with all of its snapshots, or None."""
        cursor = await self._database.db.execute(
            "SELECT id, settlement_time, state, selected_symbols, selection_timestamp, "
            "funding_rates, created_at FROM settlement_sessions WHERE id = ?",
            (session_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None

        session = self._row_to_session(row)
        cursor = await self._database.db.execute(
            f"SELECT {_SNAPSHOT_COLUMNS} FROM price_snapshots "
            "WHERE session_id = ? ORDER BY timestamp_ms ASC, id ASC",
            (session_id,),
        )
        session.snapshots = [self._row_to_snapshot(r) for r in await cursor.fetchall()]
        return session

    async def get_recent_sessions(self, limit: int = 10) -> list[SettlementSession]:
        """Most recent session headers, newest settlement first, without snapshots."""
        cursor = await self._database.db.execute(
            "SELECT id, settlement_time, state, selected_symbols, selection_timestamp, "
            "funding_rates, created_at FROM settlement_sessions "
            "ORDER BY settlement_time DESC LIMIT ?",
            (limit,),
        )
        return [self._row_to_session(row) for row in await cursor.fetchall()]

    async def get_analyses(self, session_id: str) -> list[SettlementAnalysis]:
        cursor = await self._database.db.execute(
            "SELECT session_id, symbol, funding_rate, price_change_percent, "
            "volume_change_percent, spread_change_percent, liquidity_change_percent, "
            "time_to_max_move, max_price_move, theory_test "
            "FROM settlement_analysis WHERE session_id = ? ORDER BY symbol",
            (session_id,),
        )
        return [
            SettlementAnalysis(
                session_id=row[0],
                symbol=row[1],
                funding_rate=Decimal(row[2]),
                price_change_percent=Decimal(row[3]),
                volume_change_percent=Decimal(row[4]),
                spread_change_percent=Decimal(row[5]),
                liquidity_change_percent=Decimal(row[6]),
                time_to_max_move=row[7],
                max_price_move=Decimal(row[8]),
                theory_test=TheoryTest(row[9]),
            )
            for row in await cursor.fetchall()
        ]

    # ──────────────────────────────────────────────
    # Positions
    # ──────────────────────────────────────────────

    async def save_position(self, position: Position) -> None:
        """Upsert a position's full lifecycle state."""
        await self._database.db.execute(
            f"INSERT OR REPLACE INTO positions ({_POSITION_COLUMNS}, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                position.id,
                position.symbol,
                position.side.value,
                str(position.size),
                str(position.quantity),
                str(position.entry_price),
                position.entry_time,
                str(position.stop_loss),
                str(position.profit_target),
                position.status.value,
                position.order_id,
                position.stop_loss_order_id,
                str(position.pnl),
                str(position.funding_rate),
                str(position.expected_profit),
                str(position.fees),
                str(position.slippage),
                position.close_reason,
                position.closed_at,
                time.time(),
            ),
        )
        await self._database.db.commit()

    async def load_positions(
        self, statuses: list[PositionStatus] | None = None
    ) -> list[Position]:
        """Load persisted positions, optionally filtered by status."""
        query = f"SELECT {_POSITION_COLUMNS} FROM positions"
        params: list = []
        if statuses:
            placeholders = ", ".join("?" for _ in statuses)
            query += f" WHERE status IN ({placeholders})"
            params = [s.value for s in statuses]
        query += " ORDER BY entry_time ASC"

        cursor = await self._database.db.execute(query, params)
        return [
            Position(
                id=row[0],
                symbol=row[1],
                side=OrderSide(row[2]),
                size=Decimal(row[3]),
                quantity=Decimal(row[4]),
                entry_price=Decimal(row[5]),
                entry_time=row[6],
                stop_loss=Decimal(row[7]),
                profit_target=Decimal(row[8]),
                status=PositionStatus(row[9]),
                order_id=row[10],
                stop_loss_order_id=row[11],
                pnl=Decimal(row[12]),
                funding_rate=Decimal(row[13]),
                expected_profit=Decimal(row[14]),
                fees=Decimal(row[15]),
                slippage=Decimal(row[16]),
                close_reason=row[17],
                closed_at=row[18],
            )
            for row in await cursor.fetchall()
        ]

    # ──────────────────────────────────────────────
    # Aggregates
    # ──────────────────────────────────────────────

    async def get_stats(self) -> dict:
        """Row counts and theory-test pass count for status display."""
        db = self._database.db
        counts: dict[str, int] = {}
        for key, table in (
            ("sessions", "settlement_sessions"),
            ("snapshots", "price_snapshots"),
            ("analyses", "settlement_analysis"),
            ("positions", "positions"),
        ):
            cursor = await db.execute(f"SELECT COUNT(*) FROM {table}")
            counts[key] = (await cursor.fetchone())[0]

        cursor = await db.execute(
            "SELECT COUNT(*) FROM settlement_analysis WHERE theory_test = ?",
            (TheoryTest.PASS.value,),
        )
        counts["theory_passes"] = (await cursor.fetchone())[0]
        return counts

    @staticmethod
    def _row_to_session(row: tuple) -> SettlementSession:
        return SettlementSession(
            id=row[0],
            settlement_time=row[1],
            state=SessionState(row[2]),
            selected_symbols=json.loads(row[3]),
            selection_timestamp=row[4],
            funding_rates_at_selection={k: Decimal(v) for k, v in json.loads(row[5]).items()},
            created_at=row[6],
        )

    @staticmethod
    def _row_to_snapshot(row: tuple) -> PriceSnapshot:
        levels = tuple(
            OrderbookLevel(price=Decimal(p), volume=Decimal(v), side=side)
            for p, v, side in json.loads(row[11] or "[]")
        )
        ohlc = None
        if row[12] is not None:
            ohlc = OHLCData(
                open=Decimal(row[12]),
                high=Decimal(row[13]),
                low=Decimal(row[14]),
                close=Decimal(row[15]),
                volume=Decimal(row[16]),
            )
        return PriceSnapshot(
            symbol=row[0],
            timestamp=row[1],
            phase=SnapshotPhase(row[2]),
            bid_price=Decimal(row[3]),
            ask_price=Decimal(row[4]),
            bid_volume=Decimal(row[5]),
            ask_volume=Decimal(row[6]),
            spread=Decimal(row[7]),
            mark_price=_opt_dec(row[8]),
            index_price=_opt_dec(row[9]),
            volume_24h=_opt_dec(row[10]),
            orderbook_levels=levels,
            ohlc=ohlc,
        )
