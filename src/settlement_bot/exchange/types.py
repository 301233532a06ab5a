"""Exchange-specific type definitions and utility functions.

All monetary values use Decimal. Never use float for prices, quantities, or fees.
"""

from dataclasses import dataclass, field
from decimal import Decimal

from settlement_bot.models import OrderSide, OrderType, TimeInForce


@dataclass
class InstrumentInfo:
    """Trading constraints for a perpetual instrument.

    Fetched from the exchange's market metadata. Used by PositionSizer
    to round quantities before order placement.
    """

    symbol: str
    min_qty: Decimal
    max_qty: Decimal
    qty_step: Decimal
    min_notional: Decimal = Decimal("0")
    tick_size: Decimal = Decimal("0.01")


@dataclass
class FundingRateInfo:
    """Current funding rate and next settlement time for one perpetual."""

    symbol: str
    rate: Decimal
    next_funding_time: int  # Unix milliseconds


@dataclass
class OrderBook:
    """Order-book ladders as (price, volume) pairs, best level first."""

    symbol: str
    bids: list[tuple[Decimal, Decimal]] = field(default_factory=list)
    asks: list[tuple[Decimal, Decimal]] = field(default_factory=list)
    timestamp: int = 0  # Unix milliseconds


@dataclass
class Ticker:
    """Best bid/ask plus optional reference prices."""

    symbol: str
    bid: Decimal
    ask: Decimal
    mark_price: Decimal | None = None
    index_price: Decimal | None = None
    volume_24h: Decimal | None = None


@dataclass
class OrderRequest:
    """Request to place an order.

    trigger_price turns the order into a conditional (stop) order.
    """

    symbol: str
    side: OrderSide
    order_type: OrderType
    quantity: Decimal
    link_id: str
    price: Decimal | None = None
    time_in_force: TimeInForce = TimeInForce.GTC
    reduce_only: bool = False
    trigger_price: Decimal | None = None


@dataclass
class OrderAck:
    """Exchange acknowledgement of an order submission."""

    success: bool
    order_id: str | None = None
    error: str | None = None


@dataclass
class OrderReport:
    """Fill state of a previously placed order."""

    order_id: str
    status: str  # exchange status: New, PartiallyFilled, Filled, Cancelled, Rejected...
    avg_price: Decimal
    cum_qty: Decimal
    cum_fee: Decimal


@dataclass
class ExchangePosition:
    """Authoritative position as reported by the exchange."""

    symbol: str
    side: OrderSide
    size: Decimal  # base quantity, unsigned
    entry_price: Decimal
    mark_price: Decimal
    unrealized_pnl: Decimal


@dataclass
class OpenOrder:
    """Resting order as reported by the exchange."""

    order_id: str
    symbol: str
    link_id: str
    created_time: int  # Unix milliseconds


def round_to_step(value: Decimal, step: Decimal) -> Decimal:
    """Round a value down to the nearest step increment.

    Always rounds DOWN so an order never exceeds the intended notional.

    Args:
        value: The raw quantity to round.
        step: The minimum increment (e.g., 0.001 for BTC).

    Returns:
        The value rounded down to the nearest step.
    """
    if step <= 0:
        return value
    return (value // step) * step
