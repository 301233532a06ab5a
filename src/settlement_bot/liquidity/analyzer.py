"""Order-book liquidity model gating every trade decision.

Depth is measured inside a band around mid price, slippage by walking
the side an order would consume, and the result condensed into a 0-100
score plus a hard can_trade flag. analyze_order_book is a pure function
of its inputs; analyze() adds the exchange fetch around it.

All calculations use Decimal arithmetic.
"""

import asyncio
import time
from collections.abc import Callable
from decimal import Decimal

from settlement_bot.config import LiquiditySettings
from settlement_bot.exceptions import ExchangeUnavailableError
from settlement_bot.exchange.client import ExchangeClient
from settlement_bot.exchange.types import OrderBook
from settlement_bot.logging import get_logger
from settlement_bot.models import LiquidityAnalysis, OrderSide

logger = get_logger(__name__)

_HUNDRED = Decimal("100")

# Score adjustments
_PENALTY_LOW_DEPTH = 30
_PENALTY_HIGH_SLIPPAGE = 40
_PENALTY_WIDE_SPREAD = 20
_BONUS_DEEP_BOOK = 10
_BONUS_TIGHT_SPREAD = 10
_WIDE_SPREAD_PERCENT = Decimal("0.1")
_TIGHT_SPREAD_PERCENT = Decimal("0.02")
_DEEP_BOOK_MULTIPLE = 5


def failed_analysis(symbol: str, timestamp: int) -> LiquidityAnalysis:
    """Result used when no usable book is available."""
    return LiquidityAnalysis(
        symbol=symbol,
        timestamp=timestamp,
        available_liquidity=Decimal("0"),
        estimated_slippage=Decimal("1"),
        optimal_order_price=Decimal("0"),
        liquidity_score=0,
        bid_depth=Decimal("0"),
        ask_depth=Decimal("0"),
        spread=_HUNDRED,
        can_trade=False,
    )


class LiquidityAnalyzer:
    """Estimates depth, slippage and an optimal limit price for an order.

    Args:
        exchange: Source of order books.
        settings: Depth / slippage thresholds and band widths.
        clock: Returns Unix seconds; injected for tests.
    """

    def __init__(
        self,
        exchange: ExchangeClient,
        settings: LiquiditySettings,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._exchange = exchange
        self._settings = settings
        self._clock = clock

    def analyze_order_book(
        self,
        book: OrderBook,
        target_size: Decimal,
        side: OrderSide,
    ) -> LiquidityAnalysis:
        """Assess a book for an order of target_size USD notional on side."""
        now_ms = int(self._clock() * 1000)
        if not book.bids or not book.asks:
            return failed_analysis(book.symbol, now_ms)

        best_bid = book.bids[0][0]
        best_ask = book.asks[0][0]
        mid = (best_bid + best_ask) / 2
        if mid <= 0:
            return failed_analysis(book.symbol, now_ms)

        band = self._settings.depth_band
        bid_floor = mid * (1 - band)
        ask_ceiling = mid * (1 + band)
        bid_depth = sum(
            (price * volume for price, volume in book.bids if price >= bid_floor),
            Decimal("0"),
        )
        ask_depth = sum(
            (price * volume for price, volume in book.asks if price <= ask_ceiling),
            Decimal("0"),
        )
        total_depth = bid_depth + ask_depth

        levels = book.asks if side is OrderSide.BUY else book.bids
        avg_price, slippage = _walk_book(levels, target_size, mid)

        optimal = (levels[0][0] + avg_price) / 2
        deviation = self._settings.max_price_deviation
        optimal = min(max(optimal, mid * (1 - deviation)), mid * (1 + deviation))

        spread = (best_ask - best_bid) / mid * _HUNDRED

        score = 100
        if total_depth < self._settings.min_liquidity:
            score -= _PENALTY_LOW_DEPTH
        if slippage > self._settings.max_slippage:
            score -= _PENALTY_HIGH_SLIPPAGE
        if spread > _WIDE_SPREAD_PERCENT:
            score -= _PENALTY_WIDE_SPREAD
        if total_depth > self._settings.min_liquidity * _DEEP_BOOK_MULTIPLE:
            score += _BONUS_DEEP_BOOK
        if spread < _TIGHT_SPREAD_PERCENT:
            score += _BONUS_TIGHT_SPREAD
        score = max(0, min(100, score))

        can_trade = (
            total_depth >= self._settings.min_liquidity
            and slippage <= self._settings.max_slippage
            and spread <= self._settings.max_spread_percent
        )

        return LiquidityAnalysis(
            symbol=book.symbol,
            timestamp=now_ms,
            available_liquidity=total_depth,
            estimated_slippage=slippage,
            optimal_order_price=optimal,
            liquidity_score=score,
            bid_depth=bid_depth,
            ask_depth=ask_depth,
            spread=spread,
            can_trade=can_trade,
        )

    async def analyze(
        self,
        symbol: str,
        target_size: Decimal,
        side: OrderSide,
    ) -> LiquidityAnalysis:
        """Fetch the current book and analyze it.

        A transport failure yields a failed (non-tradable) analysis.
        """
        try:
            book = await self._exchange.fetch_order_book(symbol, self._settings.orderbook_depth)
        except ExchangeUnavailableError as exc:
            logger.warning("liquidity_fetch_failed", symbol=symbol, error=str(exc))
            return failed_analysis(symbol, int(self._clock() * 1000))

        analysis = self.analyze_order_book(book, target_size, side)
        logger.debug(
            "liquidity_analyzed",
            symbol=symbol,
            score=analysis.liquidity_score,
            depth=str(analysis.available_liquidity),
            slippage=str(analysis.estimated_slippage),
            can_trade=analysis.can_trade,
        )
        return analysis

    async def analyze_many(
        self,
        symbols: list[str],
        target_size: Decimal,
        side: OrderSide,
    ) -> list[LiquidityAnalysis]:
        """Analyze several symbols concurrently, best score first."""
        results = await asyncio.gather(
            *(self.analyze(symbol, target_size, side) for symbol in symbols),
            return_exceptions=True,
        )
        analyses: list[LiquidityAnalysis] = []
        now_ms = int(self._clock() * 1000)
        for symbol, result in zip(symbols, results):
            if isinstance(result, BaseException):
                logger.warning("liquidity_analysis_error", symbol=symbol, error=str(result))
                analyses.append(failed_analysis(symbol, now_ms))
            else:
                analyses.append(result)
        return sorted(analyses, key=lambda a: a.liquidity_score, reverse=True)

    def recommended_position_size(
        self,
        analysis: LiquidityAnalysis,
        target_size: Decimal,
    ) -> Decimal:
        """Scale the target notional down to what the book can absorb.

        Returns 0 for a non-tradable book, a quarter of depth (capped at
        half the target) for thin books, and 70% of target when expected
        slippage uses more than half the allowance.
        """
        if not analysis.can_trade:
            return Decimal("0")
        if analysis.available_liquidity < target_size * 2:
            return min(target_size * Decimal("0.5"), analysis.available_liquidity * Decimal("0.25"))
        if analysis.estimated_slippage > self._settings.max_slippage * Decimal("0.5"):
            return target_size * Decimal("0.7")
        return target_size


def _walk_book(
    levels: list[tuple[Decimal, Decimal]],
    target_size: Decimal,
    mid: Decimal,
) -> tuple[Decimal, Decimal]:
    """Volume-weighted fill price and slippage for target_size notional.

    Returns (mid, 1) when nothing on the side can be filled.
    """
    remaining = target_size
    filled_value = Decimal("0")
    filled_volume = Decimal("0")

    for price, volume in levels:
        if remaining <= 0:
            break
        if price <= 0 or volume <= 0:
            continue
        take = min(remaining, price * volume)
        filled_value += take
        filled_volume += take / price
        remaining -= take

    if filled_volume == 0:
        return mid, Decimal("1")

    avg_price = filled_value / filled_volume
    return avg_price, abs(avg_price - mid) / mid
