"""Trade decisions for instruments about to settle.

Shorts perpetuals whose funding rate sits between funding_rate_threshold
(negative) and max_negative_funding_rate, entering inside the trading
window just before settlement. Every candidate passes through the
liquidity model before it can trade.

Core formula per candidate:
  size            = recommended_position_size(liquidity, target)
  total_costs     = size * slippage + size * perp_taker
  break_even_pct  = total_costs / size * 100
  cost_to_risk    = total_costs / (size * stop_loss_percent)
  expected_profit = -total_costs  (the edge is the post-settlement move,
                                   which is not forecast here)
"""

import asyncio
from decimal import Decimal

from settlement_bot.config import RiskSettings, TradingSettings
from settlement_bot.liquidity.analyzer import LiquidityAnalyzer
from settlement_bot.logging import get_logger
from settlement_bot.models import OrderSide, SettlementSchedule, TradingSignal
from settlement_bot.pnl.fee_calculator import FeeCalculator

logger = get_logger(__name__)

REJECT_LIQUIDITY = "Insufficient liquidity"
REJECT_SIZE = "Position size too small due to liquidity constraints"
REJECT_BREAK_EVEN = "Break-even price move too high"
REJECT_COST_TO_RISK = "Cost-to-risk ratio too high"


def in_trading_window(settlement_time: int, now_ms: int, window_seconds: int) -> bool:
    """Trading-window gate: 0 <= settlement - now <= window."""
    remaining = settlement_time - now_ms
    return 0 <= remaining <= window_seconds * 1000


class SignalGenerator:
    """Builds TradingSignals from settlement candidates.

    Args:
        liquidity: Order-book liquidity model.
        fees: Trading cost estimates.
        trading: Thresholds and target notional.
        risk: Stop-loss percent used for the cost-to-risk check.
    """

    def __init__(
        self,
        liquidity: LiquidityAnalyzer,
        fees: FeeCalculator,
        trading: TradingSettings,
        risk: RiskSettings,
    ) -> None:
        self._liquidity = liquidity
        self._fees = fees
        self._trading = trading
        self._risk = risk

    def select_candidates(self, schedules: list[SettlementSchedule]) -> list[SettlementSchedule]:
        """Schedules whose rate qualifies for a short, most negative first."""
        return sorted(
            (
                s
                for s in schedules
                if self._trading.max_negative_funding_rate
                <= s.funding_rate
                < self._trading.funding_rate_threshold
            ),
            key=lambda s: (s.funding_rate, s.symbol),
        )

    async def evaluate(self, schedule: SettlementSchedule) -> TradingSignal:
        """Decide whether to short one candidate, and at what size."""
        target = self._trading.effective_position_size
        side = OrderSide.SELL
        analysis = await self._liquidity.analyze(schedule.symbol, target, side)
        size = self._liquidity.recommended_position_size(analysis, target)
        costs = self._fees.trading_costs(size, analysis.estimated_slippage)
        break_even = self._fees.break_even_move_percent(costs.total_costs, size)

        signal = TradingSignal(
            symbol=schedule.symbol,
            side=side,
            funding_rate=schedule.funding_rate,
            settlement_time=schedule.next_funding_time,
            recommended_size=size,
            expected_profit=-costs.total_costs,
            total_costs=costs.total_costs,
            break_even_move_percent=break_even,
            liquidity=analysis,
            should_trade=False,
        )

        if not analysis.can_trade:
            signal.reason = REJECT_LIQUIDITY
        elif size < target * self._trading.min_size_fraction:
            signal.reason = REJECT_SIZE
        elif break_even > self._trading.max_break_even_move_percent:
            signal.reason = REJECT_BREAK_EVEN
        elif costs.total_costs / (size * self._risk.stop_loss_percent) > self._trading.max_cost_to_risk:
            signal.reason = REJECT_COST_TO_RISK
        else:
            signal.should_trade = True

        logger.info(
            "signal_evaluated",
            symbol=schedule.symbol,
            funding_rate=str(schedule.funding_rate),
            size=str(size),
            total_costs=str(costs.total_costs),
            break_even_pct=str(break_even),
            liquidity_score=analysis.liquidity_score,
            should_trade=signal.should_trade,
            reason=signal.reason or None,
            funding_cost=str(self._fees.funding_cost(size, schedule.funding_rate)),
        )
        return signal

    async def generate_signals(self, schedules: list[SettlementSchedule]) -> list[TradingSignal]:
        """Tradable signals for the qualifying candidates, cheapest first."""
        candidates = self.select_candidates(schedules)
        if not candidates:
            return []
        signals = await asyncio.gather(*(self.evaluate(s) for s in candidates))
        return sorted(
            (s for s in signals if s.should_trade),
            key=lambda s: (s.total_costs, s.symbol),
        )
