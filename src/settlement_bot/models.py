"""Shared data models for the settlement bot.

CRITICAL: All monetary values use Decimal. Never use float for prices, quantities, or fees.

Time conventions:
  - Settlement, snapshot and session timestamps are Unix milliseconds (int).
  - Position entry times and durations are Unix seconds (float).
"""

import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from settlement_bot.exceptions import InvalidTransitionError


class OrderSide(str, Enum):
    """Order / position direction, using the exchange's spelling."""

    BUY = "Buy"
    SELL = "Sell"

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class OrderType(str, Enum):
    """Order type."""

    MARKET = "Market"
    LIMIT = "Limit"


class TimeInForce(str, Enum):
    """Order time-in-force."""

    GTC = "GTC"
    IOC = "IOC"
    POST_ONLY = "PostOnly"


class PositionStatus(str, Enum):
    """Lifecycle state of a speculative position."""

    OPENING = "opening"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PositionStatus.CLOSED, PositionStatus.FAILED)


# Allowed lifecycle edges. active -> closed is only taken by reconciliation,
# when the exchange no longer reports the position.
POSITION_TRANSITIONS: dict[PositionStatus, frozenset[PositionStatus]] = {
    PositionStatus.OPENING: frozenset({PositionStatus.ACTIVE, PositionStatus.FAILED}),
    PositionStatus.ACTIVE: frozenset({PositionStatus.CLOSING, PositionStatus.CLOSED}),
    PositionStatus.CLOSING: frozenset({PositionStatus.CLOSED, PositionStatus.ACTIVE}),
    PositionStatus.CLOSED: frozenset(),
    PositionStatus.FAILED: frozenset(),
}


class SessionState(str, Enum):
    """Settlement monitoring session state."""

    PENDING = "pending"
    ACTIVE = "active"
    ANALYZING = "analyzing"
    CLOSED = "closed"


class SnapshotPhase(str, Enum):
    """Where a snapshot sits relative to its settlement."""

    PRE = "pre"
    SETTLEMENT = "settlement"
    POST = "post"


class TheoryTest(str, Enum):
    """Did the realized move exceed the funding rate magnitude?"""

    PASS = "PASS"
    FAIL = "FAIL"


@dataclass
class SettlementSchedule:
    """Latest known funding schedule for one perpetual.

    interval_hours is inferred from time-to-next-funding and is only
    a heuristic.
    """

    symbol: str
    next_funding_time: int  # Unix milliseconds
    funding_rate: Decimal
    interval_hours: int = 8
    last_updated: int = 0  # Unix milliseconds


@dataclass(frozen=True)
class OrderbookLevel:
    """One price level of an order-book side."""

    price: Decimal
    volume: Decimal
    side: str  # "bid" or "ask"


@dataclass(frozen=True)
class OHLCData:
    """Most recent 1-minute candle at snapshot time."""

    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal


@dataclass(frozen=True)
class PriceSnapshot:
    """Top-of-book state of one symbol at one instant. Immutable once captured."""

    symbol: str
    timestamp: int  # Unix milliseconds
    phase: SnapshotPhase
    bid_price: Decimal
    ask_price: Decimal
    bid_volume: Decimal
    ask_volume: Decimal
    spread: Decimal  # percent of mid
    mark_price: Decimal | None = None
    index_price: Decimal | None = None
    volume_24h: Decimal | None = None
    orderbook_levels: tuple[OrderbookLevel, ...] = ()
    ohlc: OHLCData | None = None

    @property
    def mid_price(self) -> Decimal:
        return (self.bid_price + self.ask_price) / 2


@dataclass
class SettlementSession:
    """Monitoring session for one settlement tick.

    Snapshots are append-only and ordered by timestamp.
    """

    id: str
    settlement_time: int  # Unix milliseconds
    created_at: int  # Unix milliseconds
    state: SessionState = SessionState.PENDING
    selected_symbols: list[str] = field(default_factory=list)
    selection_timestamp: int | None = None
    funding_rates_at_selection: dict[str, Decimal] = field(default_factory=dict)
    snapshots: list[PriceSnapshot] = field(default_factory=list)

    def append_snapshots(self, snapshots: list[PriceSnapshot]) -> None:
        """Append a round of snapshots, keeping timestamps non-decreasing."""
        last = self.snapshots[-1].timestamp if self.snapshots else 0
        for snapshot in sorted(snapshots, key=lambda s: s.timestamp):
            if snapshot.timestamp < last:
                raise ValueError(
                    f"Snapshot at {snapshot.timestamp} precedes last snapshot at {last}"
                )
            self.snapshots.append(snapshot)
            last = snapshot.timestamp

    def snapshots_for(self, symbol: str) -> list[PriceSnapshot]:
        return [s for s in self.snapshots if s.symbol == symbol]


@dataclass(frozen=True)
class SettlementAnalysis:
    """Per-symbol outcome of a session. Never mutated after creation."""

    session_id: str
    symbol: str
    funding_rate: Decimal
    price_change_percent: Decimal
    volume_change_percent: Decimal
    spread_change_percent: Decimal
    liquidity_change_percent: Decimal
    time_to_max_move: float  # seconds after the baseline snapshot
    max_price_move: Decimal  # percent, absolute
    theory_test: TheoryTest


@dataclass
class Position:
    """A single-leg speculative perpetual position around a settlement."""

    id: str
    symbol: str
    side: OrderSide
    size: Decimal  # USD notional
    funding_rate: Decimal
    expected_profit: Decimal
    entry_time: float = field(default_factory=time.time)
    status: PositionStatus = PositionStatus.OPENING
    quantity: Decimal = Decimal("0")
    entry_price: Decimal = Decimal("0")
    stop_loss: Decimal = Decimal("0")
    profit_target: Decimal = Decimal("0")
    order_id: str | None = None
    stop_loss_order_id: str | None = None
    pnl: Decimal = Decimal("0")
    fees: Decimal = Decimal("0")
    slippage: Decimal = Decimal("0")
    close_reason: str | None = None
    closed_at: float | None = None

    def transition_to(self, status: PositionStatus) -> None:
        """Move to a new status along an allowed edge.

        Raises:
            InvalidTransitionError: If the edge is not in POSITION_TRANSITIONS.
        """
        if status not in POSITION_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Position {self.id}: {self.status.value} -> {status.value} not allowed"
            )
        self.status = status

    @property
    def is_open(self) -> bool:
        """True while the position occupies (or may occupy) exchange exposure."""
        return self.status in (
            PositionStatus.OPENING,
            PositionStatus.ACTIVE,
            PositionStatus.CLOSING,
        )


@dataclass(frozen=True)
class LiquidityAnalysis:
    """Order-book liquidity assessment for one prospective order."""

    symbol: str
    timestamp: int  # Unix milliseconds
    available_liquidity: Decimal
    estimated_slippage: Decimal
    optimal_order_price: Decimal
    liquidity_score: int
    bid_depth: Decimal
    ask_depth: Decimal
    spread: Decimal  # percent of mid
    can_trade: bool


@dataclass(frozen=True)
class TradingCosts:
    """Estimated round-trip costs for a candidate order."""

    slippage_cost: Decimal
    fees: Decimal
    total_costs: Decimal
    cost_percentage: Decimal


@dataclass
class DailyStats:
    """Realized statistics for one UTC day."""

    date: str  # YYYY-MM-DD
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    total_pnl: Decimal = Decimal("0")
    total_fees: Decimal = Decimal("0")
    gross_profit: Decimal = Decimal("0")
    gross_loss: Decimal = Decimal("0")

    @property
    def win_rate(self) -> Decimal:
        if self.total_trades == 0:
            return Decimal("0")
        return Decimal(self.winning_trades) / Decimal(self.total_trades) * 100

    @property
    def avg_profit(self) -> Decimal:
        if self.winning_trades == 0:
            return Decimal("0")
        return self.gross_profit / self.winning_trades

    @property
    def avg_loss(self) -> Decimal:
        if self.losing_trades == 0:
            return Decimal("0")
        return self.gross_loss / self.losing_trades


@dataclass
class TradingSignal:
    """Trade decision for one settlement candidate."""

    symbol: str
    side: OrderSide
    funding_rate: Decimal
    settlement_time: int  # Unix milliseconds
    recommended_size: Decimal
    expected_profit: Decimal
    total_costs: Decimal
    break_even_move_percent: Decimal
    liquidity: LiquidityAnalysis
    should_trade: bool
    reason: str = ""


@dataclass(frozen=True)
class RiskMetrics:
    """Point-in-time portfolio exposure summary."""

    total_exposure: Decimal
    daily_pnl: Decimal
    daily_trades: int
    max_position_size: Decimal
    portfolio_risk_percent: Decimal
    margin_used: Decimal
