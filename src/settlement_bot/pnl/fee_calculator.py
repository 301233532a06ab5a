"""Trading cost estimation for short-horizon settlement trades.

All calculations use Decimal arithmetic exclusively -- no float conversions anywhere.

Fee rates are sourced from FeeSettings (Bybit Non-VIP base tier defaults):
  - Perp taker: 0.055% (0.00055)
  - Perp maker: 0.02% (0.0002)

Bybit funding convention:
  - Positive funding rate = longs pay shorts
  - Negative funding rate = shorts pay longs
"""

from decimal import Decimal

from settlement_bot.config import FeeSettings
from settlement_bot.models import TradingCosts

_HUNDRED = Decimal("100")


class FeeCalculator:
    """Calculates fees, trading costs and break-even moves.

    All methods return Decimal values with full precision -- no rounding is applied.

    Args:
        fee_settings: Fee rate configuration (perp maker/taker rates).
    """

    def __init__(self, fee_settings: FeeSettings) -> None:
        self._fees = fee_settings

    def taker_fee(self, notional: Decimal) -> Decimal:
        """Fee for a taker execution of the given USD notional."""
        return notional * self._fees.perp_taker

    def maker_fee(self, notional: Decimal) -> Decimal:
        """Fee for a maker execution of the given USD notional."""
        return notional * self._fees.perp_maker

    def trading_costs(self, size: Decimal, slippage: Decimal) -> TradingCosts:
        """Slippage cost plus taker fee estimate for a position of size USD.

        Args:
            size: Position notional in USD.
            slippage: Expected slippage as a fraction of mid (0.001 = 0.1%).

        Returns:
            TradingCosts with cost_percentage expressed in percent of size.
        """
        slippage_cost = size * slippage
        fees = self.taker_fee(size)
        total = slippage_cost + fees
        percentage = total / size * _HUNDRED if size > 0 else Decimal("0")
        return TradingCosts(
            slippage_cost=slippage_cost,
            fees=fees,
            total_costs=total,
            cost_percentage=percentage,
        )

    @staticmethod
    def funding_cost(size: Decimal, funding_rate: Decimal) -> Decimal:
        """Magnitude of one funding payment on a position of size USD."""
        return abs(funding_rate) * size

    @staticmethod
    def break_even_move_percent(total_costs: Decimal, size: Decimal) -> Decimal:
        """Price move (percent) needed before costs are recovered."""
        if size <= 0:
            return Decimal("0")
        return total_costs / size * _HUNDRED
