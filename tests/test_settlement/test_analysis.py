"""Tests for post-settlement analysis."""

from decimal import Decimal

from settlement_bot.models import (
    OrderbookLevel,
    PriceSnapshot,
    SettlementSession,
    SnapshotPhase,
    TheoryTest,
)
from settlement_bot.settlement.analysis import (
    analyze_session,
    analyze_symbol,
    book_liquidity,
    percent_change,
)

SETTLEMENT = 1_704_096_000_000


def _snap(
    phase: SnapshotPhase,
    offset_s: int,
    mid: str,
    symbol: str = "BTCUSDT",
    volume_24h: str = "1000",
    levels: tuple[OrderbookLevel, ...] = (),
) -> PriceSnapshot:
    m = Decimal(mid)
    return PriceSnapshot(
        symbol=symbol,
        timestamp=SETTLEMENT + offset_s * 1000,
        phase=phase,
        bid_price=m - Decimal("0.5"),
        ask_price=m + Decimal("0.5"),
        bid_volume=Decimal("1"),
        ask_volume=Decimal("1"),
        spread=Decimal("1") / m * 100,
        volume_24h=Decimal(volume_24h),
        orderbook_levels=levels,
    )


class TestPercentChange:
    def test_relative_change(self) -> None:
        assert percent_change(Decimal("100"), Decimal("101")) == Decimal("1")

    def test_zero_base(self) -> None:
        assert percent_change(Decimal("0"), Decimal("5")) == Decimal("0")


class TestBookLiquidity:
    def test_top_five_levels_per_side(self) -> None:
        bids = tuple(OrderbookLevel(Decimal("100"), Decimal("1"), "bid") for _ in range(7))
        asks = tuple(OrderbookLevel(Decimal("101"), Decimal("1"), "ask") for _ in range(2))
        snap = _snap(SnapshotPhase.PRE, -60, "100", levels=bids + asks)

        assert book_liquidity(snap) == Decimal("702")


class TestAnalyzeSymbol:
    def test_move_beyond_rate_passes(self) -> None:
        snapshots = [
            _snap(SnapshotPhase.PRE, -120, "100", volume_24h="1000"),
            _snap(SnapshotPhase.PRE, -60, "100.1"),
            _snap(SnapshotPhase.SETTLEMENT, 0, "99.5"),
            _snap(SnapshotPhase.POST, 60, "99.8", volume_24h="1100"),
        ]

        analysis = analyze_symbol("s1", "BTCUSDT", snapshots, Decimal("-0.003"))

        assert analysis is not None
        assert analysis.max_price_move == Decimal("0.5")
        assert analysis.time_to_max_move == 120.0
        assert analysis.price_change_percent == Decimal("-0.2")
        assert analysis.volume_change_percent == Decimal("10")
        # 0.5% > |-0.3%|
        assert analysis.theory_test is TheoryTest.PASS

    def test_small_move_fails(self) -> None:
        snapshots = [
            _snap(SnapshotPhase.PRE, -60, "100"),
            _snap(SnapshotPhase.POST, 60, "100.1"),
        ]

        analysis = analyze_symbol("s1", "BTCUSDT", snapshots, Decimal("0.004"))

        assert analysis is not None
        assert analysis.theory_test is TheoryTest.FAIL

    def test_single_snapshot_skipped(self) -> None:
        snapshots = [_snap(SnapshotPhase.PRE, -60, "100")]

        assert analyze_symbol("s1", "BTCUSDT", snapshots, Decimal("0.001")) is None

    def test_no_pre_snapshot_skipped(self) -> None:
        snapshots = [
            _snap(SnapshotPhase.SETTLEMENT, 0, "100"),
            _snap(SnapshotPhase.POST, 60, "101"),
        ]

        assert analyze_symbol("s1", "BTCUSDT", snapshots, Decimal("0.001")) is None

    def test_final_falls_back_to_settlement(self) -> None:
        snapshots = [
            _snap(SnapshotPhase.PRE, -60, "100"),
            _snap(SnapshotPhase.SETTLEMENT, 10, "102"),
        ]

        analysis = analyze_symbol("s1", "BTCUSDT", snapshots, Decimal("0.001"))

        assert analysis is not None
        assert analysis.price_change_percent == Decimal("2")


class TestAnalyzeSession:
    def test_skips_thin_symbols(self) -> None:
        session = SettlementSession(
            id="s1",
            settlement_time=SETTLEMENT,
            created_at=SETTLEMENT - 300_000,
            selected_symbols=["BTCUSDT", "ETHUSDT"],
            funding_rates_at_selection={
                "BTCUSDT": Decimal("-0.003"),
                "ETHUSDT": Decimal("0.001"),
            },
        )
        session.append_snapshots(
            [
                _snap(SnapshotPhase.PRE, -60, "100", symbol="BTCUSDT"),
                _snap(SnapshotPhase.PRE, -60, "2000", symbol="ETHUSDT"),
            ]
        )
        session.append_snapshots([_snap(SnapshotPhase.POST, 60, "99", symbol="BTCUSDT")])

        analyses = analyze_session(session)

        assert [a.symbol for a in analyses] == ["BTCUSDT"]
        assert analyses[0].session_id == "s1"
        assert analyses[0].funding_rate == Decimal("-0.003")
