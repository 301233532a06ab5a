"""Tests for RiskManager -- pre-trade gate and exposure metrics."""

from decimal import Decimal

import pytest

from settlement_bot.config import RiskSettings
from settlement_bot.models import DailyStats, OrderSide, Position, PositionStatus
from settlement_bot.risk.manager import RiskManager


def _make_position(
    position_id: str = "BTCUSDT_1",
    status: PositionStatus = PositionStatus.ACTIVE,
    size: str = "100",
    pnl: str = "0",
) -> Position:
    return Position(
        id=position_id,
        symbol=position_id.split("_")[0],
        side=OrderSide.SELL,
        size=Decimal(size),
        funding_rate=Decimal("-0.002"),
        expected_profit=Decimal("0.2"),
        status=status,
        pnl=Decimal(pnl),
    )


@pytest.fixture
def risk_manager() -> RiskManager:
    return RiskManager(RiskSettings(), position_size=Decimal("100"), leverage=Decimal("2"))


@pytest.fixture
def stats() -> DailyStats:
    return DailyStats(date="2024-01-01")


class TestCheckCanOpen:
    def test_allowed_when_flat(self, risk_manager: RiskManager, stats: DailyStats) -> None:
        assert risk_manager.check_can_open(Decimal("100"), [], stats) == (True, "")

    def test_max_positions(self, risk_manager: RiskManager, stats: DailyStats) -> None:
        positions = [_make_position(f"SYM{i}USDT_1", size="10") for i in range(3)]

        allowed, reason = risk_manager.check_can_open(Decimal("10"), positions, stats)

        assert allowed is False
        assert reason == "Maximum positions reached"

    def test_opening_and_closing_count_as_open(
        self, risk_manager: RiskManager, stats: DailyStats
    ) -> None:
        positions = [
            _make_position("AUSDT_1", PositionStatus.OPENING, size="10"),
            _make_position("BUSDT_1", PositionStatus.CLOSING, size="10"),
            _make_position("CUSDT_1", PositionStatus.ACTIVE, size="10"),
            _make_position("DUSDT_1", PositionStatus.CLOSED, size="10"),
        ]

        allowed, reason = risk_manager.check_can_open(Decimal("10"), positions, stats)

        assert allowed is False
        assert reason == "Maximum positions reached"

    def test_daily_trades_limit(self, risk_manager: RiskManager, stats: DailyStats) -> None:
        stats.total_trades = 5

        assert risk_manager.check_can_open(Decimal("100"), [], stats) == (
            False,
            "Daily trades limit reached",
        )

    def test_daily_stop_loss(self, risk_manager: RiskManager, stats: DailyStats) -> None:
        stats.total_pnl = Decimal("-10")

        assert risk_manager.check_can_open(Decimal("100"), [], stats) == (
            False,
            "Daily stop loss reached",
        )

    def test_exposure_ceiling(self, risk_manager: RiskManager, stats: DailyStats) -> None:
        positions = [_make_position("AUSDT_1", size="150"), _make_position("BUSDT_1", size="100")]

        allowed, reason = risk_manager.check_can_open(Decimal("100"), positions, stats)

        assert allowed is False
        assert reason == "Maximum exposure would be exceeded"

    def test_exposure_exactly_at_ceiling_allowed(
        self, risk_manager: RiskManager, stats: DailyStats
    ) -> None:
        positions = [_make_position("AUSDT_1"), _make_position("BUSDT_1")]

        assert risk_manager.check_can_open(Decimal("100"), positions, stats) == (True, "")

    def test_non_positive_size(self, risk_manager: RiskManager, stats: DailyStats) -> None:
        allowed, _ = risk_manager.check_can_open(Decimal("0"), [], stats)

        assert allowed is False


class TestRiskMetrics:
    def test_active_positions_only(self, risk_manager: RiskManager, stats: DailyStats) -> None:
        stats.total_pnl = Decimal("-1")
        stats.total_trades = 2
        positions = [
            _make_position("AUSDT_1", size="100", pnl="0.5"),
            _make_position("BUSDT_1", size="50", pnl="-0.25"),
            _make_position("CUSDT_1", PositionStatus.OPENING, size="100"),
        ]

        metrics = risk_manager.risk_metrics(positions, stats)

        assert metrics.total_exposure == Decimal("150")
        assert metrics.daily_pnl == Decimal("-0.75")
        assert metrics.daily_trades == 2
        assert metrics.max_position_size == Decimal("100")
        assert metrics.portfolio_risk_percent == Decimal("50")
        assert metrics.margin_used == Decimal("75")
