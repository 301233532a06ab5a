"""Order quantity calculation with exchange constraints.

All calculations use Decimal arithmetic exclusively -- no float conversions.
Uses round_to_step from exchange/types.py for qty_step rounding (always down).

Sizing flow:
1. raw quantity = notional / price
2. Round down to instrument's qty_step
3. Validate against min_qty and min_notional
4. Return None if constraints not met
"""

from decimal import Decimal

from settlement_bot.exchange.types import InstrumentInfo, round_to_step


class PositionSizer:
    """Turns a USD notional into an exchange-valid order quantity."""

    def calculate_quantity(
        self,
        notional: Decimal,
        price: Decimal,
        instrument: InstrumentInfo,
    ) -> Decimal | None:
        """Largest valid quantity not exceeding notional at price.

        Args:
            notional: Target position size in quote currency.
            price: Expected execution price.
            instrument: Exchange instrument constraints.

        Returns:
            Valid quantity rounded to step, or None if constraints not met.
        """
        if price <= 0 or notional <= 0:
            return None

        rounded_qty = round_to_step(notional / price, instrument.qty_step)

        if rounded_qty <= 0 or rounded_qty < instrument.min_qty:
            return None
        if instrument.max_qty > 0 and rounded_qty > instrument.max_qty:
            rounded_qty = round_to_step(instrument.max_qty, instrument.qty_step)

        if rounded_qty * price < instrument.min_notional:
            return None

        return rounded_qty
