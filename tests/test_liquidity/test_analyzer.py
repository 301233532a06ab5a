"""Tests for LiquidityAnalyzer -- depth, slippage, optimal price and score."""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from settlement_bot.config import LiquiditySettings
from settlement_bot.exceptions import ExchangeUnavailableError
from settlement_bot.exchange.types import OrderBook
from settlement_bot.liquidity.analyzer import LiquidityAnalyzer
from settlement_bot.models import OrderSide


def _book(
    bids: list[tuple[str, str]],
    asks: list[tuple[str, str]],
    symbol: str = "BTCUSDT",
) -> OrderBook:
    return OrderBook(
        symbol=symbol,
        bids=[(Decimal(p), Decimal(v)) for p, v in bids],
        asks=[(Decimal(p), Decimal(v)) for p, v in asks],
    )


@pytest.fixture
def analyzer(mock_exchange: AsyncMock, clock) -> LiquidityAnalyzer:
    return LiquidityAnalyzer(mock_exchange, LiquiditySettings(), clock=clock)


class TestAnalyzeOrderBook:
    def test_deep_book_is_tradable(self, analyzer: LiquidityAnalyzer) -> None:
        """$5,000 bid depth and ~$3,000 ask depth, $100 sell."""
        book = _book(bids=[("100", "50")], asks=[("100.01", "30")])

        analysis = analyzer.analyze_order_book(book, Decimal("100"), OrderSide.SELL)

        assert analysis.bid_depth == Decimal("5000")
        assert analysis.ask_depth == Decimal("3000.30")
        assert analysis.can_trade is True
        assert analysis.estimated_slippage < Decimal("0.0005")
        assert analysis.optimal_order_price == Decimal("100")
        assert analysis.liquidity_score == 100

    def test_empty_book_cannot_trade(self, analyzer: LiquidityAnalyzer) -> None:
        analysis = analyzer.analyze_order_book(_book([], []), Decimal("100"), OrderSide.SELL)

        assert analysis.can_trade is False
        assert analysis.estimated_slippage == Decimal("1")
        assert analysis.liquidity_score == 0

    def test_one_sided_book_cannot_trade(self, analyzer: LiquidityAnalyzer) -> None:
        book = _book(bids=[("100", "50")], asks=[])

        analysis = analyzer.analyze_order_book(book, Decimal("100"), OrderSide.SELL)

        assert analysis.can_trade is False
        assert analysis.estimated_slippage == Decimal("1")

    def test_thin_book_penalized(self, analyzer: LiquidityAnalyzer) -> None:
        book = _book(bids=[("100", "1")], asks=[("100.01", "1")])

        analysis = analyzer.analyze_order_book(book, Decimal("100"), OrderSide.SELL)

        # -30 for depth below minimum, +10 for the tight spread
        assert analysis.liquidity_score == 80
        assert analysis.can_trade is False

    def test_optimal_price_clamped_to_deviation(self, analyzer: LiquidityAnalyzer) -> None:
        book = _book(bids=[("100", "0.5"), ("90", "100")], asks=[("100.2", "10")])
        mid = Decimal("100.1")

        analysis = analyzer.analyze_order_book(book, Decimal("1000"), OrderSide.SELL)

        assert analysis.optimal_order_price == mid * (1 - Decimal("0.002"))
        # -40 for slippage, -20 for a spread above 0.1%
        assert analysis.liquidity_score == 40
        assert analysis.can_trade is False

    def test_levels_outside_band_excluded_from_depth(self, analyzer: LiquidityAnalyzer) -> None:
        book = _book(bids=[("100", "10"), ("95", "1000")], asks=[("100.01", "10")])

        analysis = analyzer.analyze_order_book(book, Decimal("100"), OrderSide.SELL)

        assert analysis.bid_depth == Decimal("1000")

    def test_buy_walks_asks(self, analyzer: LiquidityAnalyzer) -> None:
        book = _book(bids=[("100", "50")], asks=[("100.02", "0.5"), ("100.04", "50")])

        analysis = analyzer.analyze_order_book(book, Decimal("100"), OrderSide.BUY)

        assert analysis.optimal_order_price > Decimal("100.02")

    def test_score_always_in_range(self, analyzer: LiquidityAnalyzer) -> None:
        books = [
            _book(bids=[("100", "1000")], asks=[("100.001", "1000")]),
            _book(bids=[("1", "0.001")], asks=[("2", "0.001")]),
            _book(bids=[("100", "0.01")], asks=[("150", "0.01")]),
        ]
        for book in books:
            analysis = analyzer.analyze_order_book(book, Decimal("100"), OrderSide.SELL)
            assert 0 <= analysis.liquidity_score <= 100


class TestAnalyze:
    @pytest.mark.asyncio
    async def test_fetches_configured_depth(
        self, analyzer: LiquidityAnalyzer, mock_exchange: AsyncMock
    ) -> None:
        mock_exchange.fetch_order_book.return_value = _book(
            bids=[("100", "50")], asks=[("100.01", "30")]
        )

        analysis = await analyzer.analyze("BTCUSDT", Decimal("100"), OrderSide.SELL)

        mock_exchange.fetch_order_book.assert_awaited_once_with("BTCUSDT", 50)
        assert analysis.can_trade is True

    @pytest.mark.asyncio
    async def test_transport_error_gives_failed_analysis(
        self, analyzer: LiquidityAnalyzer, mock_exchange: AsyncMock
    ) -> None:
        mock_exchange.fetch_order_book.side_effect = ExchangeUnavailableError("timeout")

        analysis = await analyzer.analyze("BTCUSDT", Decimal("100"), OrderSide.SELL)

        assert analysis.can_trade is False
        assert analysis.liquidity_score == 0

    @pytest.mark.asyncio
    async def test_analyze_many_sorted_by_score(
        self, analyzer: LiquidityAnalyzer, mock_exchange: AsyncMock
    ) -> None:
        books = {
            "THIN": _book(bids=[("100", "1")], asks=[("100.01", "1")], symbol="THIN"),
            "DEEP": _book(bids=[("100", "50")], asks=[("100.01", "30")], symbol="DEEP"),
        }

        async def fetch(symbol: str, depth: int) -> OrderBook:
            if symbol == "DOWN":
                raise RuntimeError("boom")
            return books[symbol]

        mock_exchange.fetch_order_book.side_effect = fetch

        analyses = await analyzer.analyze_many(["THIN", "DOWN", "DEEP"], Decimal("100"), OrderSide.SELL)

        assert [a.symbol for a in analyses] == ["DEEP", "THIN", "DOWN"]
        assert analyses[-1].can_trade is False


class TestRecommendedPositionSize:
    def test_full_size_with_ample_depth(self, analyzer: LiquidityAnalyzer) -> None:
        analysis = analyzer.analyze_order_book(
            _book(bids=[("100", "50")], asks=[("100.01", "30")]), Decimal("100"), OrderSide.SELL
        )

        assert analyzer.recommended_position_size(analysis, Decimal("100")) == Decimal("100")

    def test_zero_when_not_tradable(self, analyzer: LiquidityAnalyzer) -> None:
        analysis = analyzer.analyze_order_book(_book([], []), Decimal("100"), OrderSide.SELL)

        assert analyzer.recommended_position_size(analysis, Decimal("100")) == Decimal("0")

    def test_halved_when_depth_below_twice_target(self, analyzer: LiquidityAnalyzer) -> None:
        analysis = analyzer.analyze_order_book(
            _book(bids=[("100", "5")], asks=[("100.01", "5")]), Decimal("600"), OrderSide.SELL
        )
        assert analysis.can_trade is True

        size = analyzer.recommended_position_size(analysis, Decimal("600"))

        assert size == Decimal("250.0125")
