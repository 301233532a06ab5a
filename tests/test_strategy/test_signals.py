"""Tests for SignalGenerator and the trading-window gate."""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from settlement_bot.config import FeeSettings, LiquiditySettings, RiskSettings, TradingSettings
from settlement_bot.exchange.types import OrderBook
from settlement_bot.liquidity.analyzer import LiquidityAnalyzer
from settlement_bot.models import OrderSide, SettlementSchedule
from settlement_bot.pnl.fee_calculator import FeeCalculator
from settlement_bot.strategy.signals import (
    REJECT_BREAK_EVEN,
    REJECT_COST_TO_RISK,
    REJECT_LIQUIDITY,
    REJECT_SIZE,
    SignalGenerator,
    in_trading_window,
)

SETTLEMENT = 1_704_096_000_000

_DEEP = OrderBook(
    symbol="DEEP",
    bids=[(Decimal("100"), Decimal("50"))],
    asks=[(Decimal("100.01"), Decimal("30"))],
)
_MEDIUM = OrderBook(
    symbol="MEDIUM",
    bids=[(Decimal("100"), Decimal("3"))],
    asks=[(Decimal("100.01"), Decimal("3"))],
)
_EMPTY = OrderBook(symbol="EMPTY")


def _schedule(symbol: str, rate: str) -> SettlementSchedule:
    return SettlementSchedule(
        symbol=symbol, next_funding_time=SETTLEMENT, funding_rate=Decimal(rate)
    )


def _generator(mock_exchange: AsyncMock, clock, **trading_overrides) -> SignalGenerator:
    books = {"BTCUSDT": _DEEP, "ETHUSDT": _DEEP, "SOLUSDT": _EMPTY, "ADAUSDT": _MEDIUM}
    mock_exchange.fetch_order_book.side_effect = lambda symbol, depth: books[symbol]
    return SignalGenerator(
        LiquidityAnalyzer(mock_exchange, LiquiditySettings(), clock=clock),
        FeeCalculator(FeeSettings()),
        TradingSettings(**trading_overrides),
        RiskSettings(),
    )


class TestTradingWindow:
    def test_inside_window(self) -> None:
        assert in_trading_window(SETTLEMENT, SETTLEMENT - 30_000, 60) is True

    def test_boundaries_inclusive(self) -> None:
        assert in_trading_window(SETTLEMENT, SETTLEMENT - 60_000, 60) is True
        assert in_trading_window(SETTLEMENT, SETTLEMENT, 60) is True

    def test_outside_window(self) -> None:
        assert in_trading_window(SETTLEMENT, SETTLEMENT - 60_001, 60) is False
        assert in_trading_window(SETTLEMENT, SETTLEMENT + 1, 60) is False


class TestSelectCandidates:
    def test_negative_rates_within_band(self, mock_exchange: AsyncMock, clock) -> None:
        generator = _generator(mock_exchange, clock)
        schedules = [
            _schedule("BTCUSDT", "-0.003"),
            _schedule("ETHUSDT", "0.002"),
            _schedule("XRPUSDT", "-0.02"),
            _schedule("ADAUSDT", "-0.00005"),
            _schedule("SOLUSDT", "-0.0005"),
            _schedule("LINKUSDT", "-0.01"),
        ]

        selected = generator.select_candidates(schedules)

        assert [s.symbol for s in selected] == ["LINKUSDT", "BTCUSDT", "SOLUSDT"]


class TestEvaluate:
    @pytest.mark.asyncio
    async def test_deep_book_trades_full_size(self, mock_exchange: AsyncMock, clock) -> None:
        generator = _generator(mock_exchange, clock)

        signal = await generator.evaluate(_schedule("BTCUSDT", "-0.003"))

        assert signal.should_trade is True
        assert signal.side is OrderSide.SELL
        assert signal.recommended_size == Decimal("100")
        assert signal.settlement_time == SETTLEMENT
        assert signal.expected_profit == -signal.total_costs
        assert Decimal("0.055") < signal.total_costs < Decimal("0.07")

    @pytest.mark.asyncio
    async def test_test_mode_uses_test_size(self, mock_exchange: AsyncMock, clock) -> None:
        generator = _generator(mock_exchange, clock, test_mode=True)

        signal = await generator.evaluate(_schedule("BTCUSDT", "-0.003"))

        assert signal.recommended_size == Decimal("10")

    @pytest.mark.asyncio
    async def test_empty_book_rejected(self, mock_exchange: AsyncMock, clock) -> None:
        generator = _generator(mock_exchange, clock)

        signal = await generator.evaluate(_schedule("SOLUSDT", "-0.003"))

        assert signal.should_trade is False
        assert signal.reason == REJECT_LIQUIDITY

    @pytest.mark.asyncio
    async def test_liquidity_haircut_too_deep_rejected(self, mock_exchange: AsyncMock, clock) -> None:
        generator = _generator(mock_exchange, clock, position_size=Decimal("1000"))

        signal = await generator.evaluate(_schedule("ADAUSDT", "-0.003"))

        assert signal.recommended_size == Decimal("150.0075")
        assert signal.reason == REJECT_SIZE

    @pytest.mark.asyncio
    async def test_break_even_rejected(self, mock_exchange: AsyncMock, clock) -> None:
        generator = _generator(mock_exchange, clock, max_break_even_move_percent=Decimal("0.01"))

        signal = await generator.evaluate(_schedule("BTCUSDT", "-0.003"))

        assert signal.reason == REJECT_BREAK_EVEN

    @pytest.mark.asyncio
    async def test_cost_to_risk_rejected(self, mock_exchange: AsyncMock, clock) -> None:
        generator = _generator(mock_exchange, clock, max_cost_to_risk=Decimal("0.01"))

        signal = await generator.evaluate(_schedule("BTCUSDT", "-0.003"))

        assert signal.reason == REJECT_COST_TO_RISK


class TestGenerateSignals:
    @pytest.mark.asyncio
    async def test_only_tradable_candidates(self, mock_exchange: AsyncMock, clock) -> None:
        generator = _generator(mock_exchange, clock)
        schedules = [
            _schedule("BTCUSDT", "-0.003"),
            _schedule("ETHUSDT", "0.004"),
            _schedule("SOLUSDT", "-0.002"),
        ]

        signals = await generator.generate_signals(schedules)

        assert [s.symbol for s in signals] == ["BTCUSDT"]
        mock_exchange.fetch_order_book.assert_any_await("SOLUSDT", 50)
        assert mock_exchange.fetch_order_book.await_count == 2

    @pytest.mark.asyncio
    async def test_no_candidates(self, mock_exchange: AsyncMock, clock) -> None:
        generator = _generator(mock_exchange, clock)

        assert await generator.generate_signals([_schedule("ETHUSDT", "0.004")]) == []
        mock_exchange.fetch_order_book.assert_not_awaited()
