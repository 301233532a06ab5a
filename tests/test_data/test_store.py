"""Tests for SettlementStore against a temporary SQLite file."""

from decimal import Decimal
from pathlib import Path

import pytest

from settlement_bot.data.database import SettlementDatabase
from settlement_bot.data.store import SettlementStore
from settlement_bot.exceptions import StoreNotConnectedError
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

SETTLEMENT = 1_704_096_000_000


def _session() -> SettlementSession:
    return SettlementSession(
        id=f"settlement_{SETTLEMENT}",
        settlement_time=SETTLEMENT,
        created_at=SETTLEMENT - 300_000,
        state=SessionState.ACTIVE,
        selected_symbols=["BTCUSDT", "SOLUSDT"],
        selection_timestamp=SETTLEMENT - 120_000,
        funding_rates_at_selection={
            "BTCUSDT": Decimal("-0.003"),
            "SOLUSDT": Decimal("0.004"),
        },
    )


def _snapshot(timestamp: int, symbol: str = "BTCUSDT", with_ohlc: bool = False) -> PriceSnapshot:
    return PriceSnapshot(
        symbol=symbol,
        timestamp=timestamp,
        phase=SnapshotPhase.PRE,
        bid_price=Decimal("42000.5"),
        ask_price=Decimal("42001.0"),
        bid_volume=Decimal("1.25"),
        ask_volume=Decimal("0.8"),
        spread=Decimal("0.0011904"),
        mark_price=Decimal("42000.7"),
        volume_24h=Decimal("98765.4321"),
        orderbook_levels=(
            OrderbookLevel(Decimal("42000.5"), Decimal("1.25"), "bid"),
            OrderbookLevel(Decimal("42001.0"), Decimal("0.8"), "ask"),
        ),
        ohlc=(
            OHLCData(
                open=Decimal("41990"),
                high=Decimal("42010"),
                low=Decimal("41980"),
                close=Decimal("42000"),
                volume=Decimal("12.5"),
            )
            if with_ohlc
            else None
        ),
    )


def _position(position_id: str, status: PositionStatus) -> Position:
    return Position(
        id=position_id,
        symbol="BTCUSDT",
        side=OrderSide.SELL,
        size=Decimal("100"),
        funding_rate=Decimal("-0.0015"),
        expected_profit=Decimal("0.2"),
        entry_time=1_704_095_990.5,
        status=status,
        quantity=Decimal("0.002"),
        entry_price=Decimal("50000"),
        stop_loss=Decimal("50500"),
        profit_target=Decimal("49900"),
        order_id="ord-1",
        stop_loss_order_id="sl-1",
    )


class TestSessions:
    @pytest.mark.asyncio
    async def test_session_with_snapshots_roundtrip(self, tmp_path: Path) -> None:
        async with SettlementDatabase(str(tmp_path / "settlement.db")) as database:
            store = SettlementStore(database)
            session = _session()
            await store.save_session(session)
            await store.save_snapshots(
                session.id,
                [_snapshot(SETTLEMENT - 120_000, with_ohlc=True), _snapshot(SETTLEMENT - 90_000)],
            )

            loaded = await store.get_session(session.id)

        assert loaded is not None
        assert loaded.state is SessionState.ACTIVE
        assert loaded.selected_symbols == ["BTCUSDT", "SOLUSDT"]
        assert loaded.funding_rates_at_selection["BTCUSDT"] == Decimal("-0.003")
        assert [s.timestamp for s in loaded.snapshots] == [SETTLEMENT - 120_000, SETTLEMENT - 90_000]
        first = loaded.snapshots[0]
        assert first.bid_price == Decimal("42000.5")
        assert first.volume_24h == Decimal("98765.4321")
        assert first.index_price is None
        assert first.ohlc is not None and first.ohlc.high == Decimal("42010")
        assert loaded.snapshots[1].ohlc is None
        assert first.orderbook_levels[1].side == "ask"

    @pytest.mark.asyncio
    async def test_update_state_and_recent(self, tmp_path: Path) -> None:
        async with SettlementDatabase(str(tmp_path / "settlement.db")) as database:
            store = SettlementStore(database)
            session = _session()
            await store.save_session(session)
            await store.update_session_state(session.id, SessionState.CLOSED)

            recent = await store.get_recent_sessions(limit=5)

        assert len(recent) == 1
        assert recent[0].state is SessionState.CLOSED
        assert recent[0].snapshots == []

    @pytest.mark.asyncio
    async def test_missing_session_returns_none(self, tmp_path: Path) -> None:
        async with SettlementDatabase(str(tmp_path / "settlement.db")) as database:
            store = SettlementStore(database)
            assert await store.get_session("nope") is None

    @pytest.mark.asyncio
    async def test_analyses_and_stats(self, tmp_path: Path) -> None:
        analysis = SettlementAnalysis(
            session_id="s1",
            symbol="BTCUSDT",
            funding_rate=Decimal("-0.003"),
            price_change_percent=Decimal("-0.2"),
            volume_change_percent=Decimal("10"),
            spread_change_percent=Decimal("0"),
            liquidity_change_percent=Decimal("-5.5"),
            time_to_max_move=120.0,
            max_price_move=Decimal("0.5"),
            theory_test=TheoryTest.PASS,
        )
        async with SettlementDatabase(str(tmp_path / "settlement.db")) as database:
            store = SettlementStore(database)
            assert await store.save_analyses([analysis]) == 1
            assert await store.save_analyses([]) == 0

            loaded = await store.get_analyses("s1")
            stats = await store.get_stats()

        assert loaded == [analysis]
        assert stats["analyses"] == 1
        assert stats["theory_passes"] == 1
        assert stats["sessions"] == 0


class TestPositions:
    @pytest.mark.asyncio
    async def test_upsert_and_filter_by_status(self, tmp_path: Path) -> None:
        async with SettlementDatabase(str(tmp_path / "settlement.db")) as database:
            store = SettlementStore(database)
            active = _position("BTCUSDT_1", PositionStatus.ACTIVE)
            closed = _position("BTCUSDT_2", PositionStatus.CLOSED)
            await store.save_position(active)
            await store.save_position(closed)

            active.pnl = Decimal("-0.35")
            active.transition_to(PositionStatus.CLOSING)
            await store.save_position(active)

            open_positions = await store.load_positions(
                [PositionStatus.OPENING, PositionStatus.ACTIVE, PositionStatus.CLOSING]
            )
            everything = await store.load_positions()

        assert len(everything) == 2
        assert len(open_positions) == 1
        restored = open_positions[0]
        assert restored.status is PositionStatus.CLOSING
        assert restored.pnl == Decimal("-0.35")
        assert restored.side is OrderSide.SELL
        assert restored.stop_loss == Decimal("50500")
        assert restored.stop_loss_order_id == "sl-1"
        assert restored.entry_time == 1_704_095_990.5


class TestConnection:
    def test_use_before_connect_raises(self, tmp_path: Path) -> None:
        database = SettlementDatabase(str(tmp_path / "settlement.db"))
        with pytest.raises(StoreNotConnectedError):
            _ = database.db

    @pytest.mark.asyncio
    async def test_creates_parent_directory(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "dir" / "settlement.db"
        async with SettlementDatabase(str(path)):
            pass
        assert path.exists()
