"""Position lifecycle management for settlement trades.

Position flow:
1. create_position     gated by RiskManager; status opening
2. attach_order        entry order id recorded once the exchange accepts it
3. confirm_fill        entry/qty/fees from the fill report; stop-loss and
                       profit target derived; stop order placed; active
   mark_failed         entry rejected or cancelled; failed
4. monitor loop        unrealized PnL from mark price; exits on profit
                       target, stop loss or maximum duration. A position
                       the exchange no longer reports (its stop fired)
                       is settled as closed from the stop order fill
5. close_position      active -> closing -> closed with PnL and fees from
                       the close fill, or back to active with a fresh stop
                       order when the close order does not go through

Every transition is checked against POSITION_TRANSITIONS and persisted
when a store is attached. Transitions happen before any await, so a
monitoring tick that fires while a close is in flight sees "closing"
and leaves the position alone.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from decimal import Decimal
from typing import TYPE_CHECKING

from settlement_bot.config import RiskSettings, TradingSettings
from settlement_bot.exceptions import (
    ExchangeUnavailableError,
    PositionNotFoundError,
    RiskLimitExceeded,
)
from settlement_bot.exchange.client import ExchangeClient
from settlement_bot.exchange.types import ExchangePosition, OrderReport, OrderRequest
from settlement_bot.logging import get_logger
from settlement_bot.models import (
    DailyStats,
    OrderSide,
    OrderType,
    Position,
    PositionStatus,
    RiskMetrics,
    TimeInForce,
)
from settlement_bot.pnl.tracker import DailyStatsTracker
from settlement_bot.risk.manager import RiskManager

if TYPE_CHECKING:
    from settlement_bot.data.store import SettlementStore

logger = get_logger(__name__)

REASON_PROFIT_TARGET = "Profit target reached"
REASON_STOP_LOSS = "Stop loss triggered"
REASON_MAX_DURATION = "Maximum duration reached"
REASON_DAILY_STOP = "Daily stop loss reached"
REASON_CLOSED_ON_EXCHANGE = "Closed on exchange"


def position_id_for(symbol: str, now: float) -> str:
    """Short, exchange-safe id: BTC/USDT:USDT at t -> BTCUSDT_<ms>."""
    base = symbol.split(":")[0].replace("/", "")
    return f"{base}_{int(now * 1000)}"


def unrealized_pnl(position: Position, price: Decimal) -> Decimal:
    """Notional PnL at price, net of fees paid so far."""
    if position.entry_price <= 0:
        return Decimal("0")
    if position.side is OrderSide.BUY:
        move = (price - position.entry_price) / position.entry_price
    else:
        move = (position.entry_price - price) / position.entry_price
    return move * position.size - position.fees


class PositionManager:
    """Owns every position and drives it through its lifecycle.

    Args:
        exchange: Order placement and position source.
        risk_manager: Pre-trade limits and exposure metrics.
        stats_tracker: Realized daily statistics.
        risk_settings: Stop-loss, duration and monitoring parameters.
        trading_settings: Profit target and order tagging.
        store: Optional persistence; failures are logged only.
        clock: Returns Unix seconds; injected for tests.
    """

    def __init__(
        self,
        exchange: ExchangeClient,
        risk_manager: RiskManager,
        stats_tracker: DailyStatsTracker,
        risk_settings: RiskSettings,
        trading_settings: TradingSettings,
        store: SettlementStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._exchange = exchange
        self._risk_manager = risk_manager
        self._stats = stats_tracker
        self._risk = risk_settings
        self._trading = trading_settings
        self._store = store
        self._clock = clock
        self._positions: dict[str, Position] = {}
        self._daily_stop_triggered = False
        self._running = False
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]

    # ──────────────────────────────────────────────
    # Creation and fills
    # ──────────────────────────────────────────────

    def can_open_new_position(self, size: Decimal) -> tuple[bool, str]:
        return self._risk_manager.check_can_open(
            size, list(self._positions.values()), self._stats.stats
        )

    def has_open_position(self, symbol: str) -> bool:
        """True if symbol already holds an opening or active position."""
        return any(
            p.symbol == symbol and p.status in (PositionStatus.OPENING, PositionStatus.ACTIVE)
            for p in self._positions.values()
        )

    async def create_position(
        self,
        symbol: str,
        side: OrderSide,
        size: Decimal,
        funding_rate: Decimal,
        expected_profit: Decimal,
        slippage: Decimal = Decimal("0"),
    ) -> Position:
        """Register a new opening position.

        Raises:
            RiskLimitExceeded: If a portfolio limit blocks the position or
                the symbol already holds one.
        """
        if self.has_open_position(symbol):
            raise RiskLimitExceeded(f"Already have position in {symbol}")
        allowed, reason = self.can_open_new_position(size)
        if not allowed:
            raise RiskLimitExceeded(reason)

        now = self._clock()
        position = Position(
            id=position_id_for(symbol, now),
            symbol=symbol,
            side=side,
            size=size,
            funding_rate=funding_rate,
            expected_profit=expected_profit,
            entry_time=now,
            slippage=slippage,
        )
        self._positions[position.id] = position
        await self._persist(position)

        logger.info(
            "position_created",
            position_id=position.id,
            symbol=symbol,
            side=side.value,
            size=str(size),
            funding_rate=str(funding_rate),
        )
        return position

    async def attach_order(self, position_id: str, order_id: str) -> None:
        position = self._get(position_id)
        position.order_id = order_id
        await self._persist(position)

    async def confirm_fill(self, position_id: str, report: OrderReport) -> Position:
        """Apply a fill report: opening -> active, then protect with a stop order."""
        position = self._get(position_id)
        position.transition_to(PositionStatus.ACTIVE)

        position.entry_price = report.avg_price
        position.quantity = report.cum_qty
        position.fees = report.cum_fee
        self._set_exit_levels(position)
        await self._persist(position)

        logger.info(
            "position_filled",
            position_id=position.id,
            symbol=position.symbol,
            entry_price=str(position.entry_price),
            quantity=str(position.quantity),
            stop_loss=str(position.stop_loss),
            profit_target=str(position.profit_target),
        )

        await self._place_stop_loss(position)
        return position

    async def mark_failed(self, position_id: str, reason: str) -> None:
        position = self._get(position_id)
        position.transition_to(PositionStatus.FAILED)
        position.close_reason = reason
        position.closed_at = self._clock()
        await self._persist(position)
        logger.warning(
            "position_failed",
            position_id=position.id,
            symbol=position.symbol,
            reason=reason,
        )

    def _set_exit_levels(self, position: Position) -> None:
        entry = position.entry_price
        stop_distance = entry * self._risk.stop_loss_percent
        target_distance = entry * (self._trading.target_profit_percent + abs(position.funding_rate))
        if position.side is OrderSide.BUY:
            position.stop_loss = entry - stop_distance
            position.profit_target = entry + target_distance
        else:
            position.stop_loss = entry + stop_distance
            position.profit_target = entry - target_distance

    async def _place_stop_loss(self, position: Position) -> None:
        request = OrderRequest(
            symbol=position.symbol,
            side=position.side.opposite,
            order_type=OrderType.MARKET,
            quantity=position.quantity,
            link_id=f"{self._trading.order_link_prefix}sl_{position.id}",
            time_in_force=TimeInForce.IOC,
            reduce_only=True,
            trigger_price=position.stop_loss,
        )
        try:
            ack = await self._exchange.place_order(request)
        except ExchangeUnavailableError as exc:
            logger.error("stop_loss_order_error", position_id=position.id, error=str(exc))
            return

        if not ack.success:
            logger.error("stop_loss_order_rejected", position_id=position.id, error=ack.error)
            return

        position.stop_loss_order_id = ack.order_id
        await self._persist(position)
        logger.info(
            "stop_loss_placed",
            position_id=position.id,
            order_id=ack.order_id,
            trigger_price=str(position.stop_loss),
        )

    # ──────────────────────────────────────────────
    # Closing
    # ──────────────────────────────────────────────

    async def close_position(self, position_id: str, reason: str) -> bool:
        """Close an active position with a reduce-only market order.

        Returns False (and leaves or restores the position as active)
        when the position is not active or the close order fails.
        """
        position = self._positions.get(position_id)
        if position is None or position.status is not PositionStatus.ACTIVE:
            logger.debug(
                "close_skipped",
                position_id=position_id,
                status=position.status.value if position else None,
            )
            return False

        position.transition_to(PositionStatus.CLOSING)
        await self._persist(position)
        logger.info("position_closing", position_id=position.id, reason=reason)

        stop_cancelled = False
        try:
            if position.stop_loss_order_id:
                stop_cancelled = await self._cancel_stop_loss(position)
            ack = await self._exchange.place_order(
                OrderRequest(
                    symbol=position.symbol,
                    side=position.side.opposite,
                    order_type=OrderType.MARKET,
                    quantity=position.quantity,
                    link_id=f"{self._trading.order_link_prefix}close_{position.id}",
                    time_in_force=TimeInForce.IOC,
                    reduce_only=True,
                )
            )
        except Exception as exc:
            await self._revert_close(position, str(exc), stop_cancelled)
            return False

        if not ack.success:
            await self._revert_close(position, ack.error or "close order rejected", stop_cancelled)
            return False

        report = await self._fetch_exit_report(position, ack.order_id)
        if report is not None:
            self._apply_exit_fill(position, report)
        await self._finish_close(position, reason)
        return True

    async def settle_exchange_close(self, position_id: str) -> bool:
        """Close out an active position the exchange no longer reports.

        The usual cause is the exchange-side stop order firing. Realized
        PnL comes from the stop order's fill; without one, the stop price
        is the exit estimate.
        """
        position = self._positions.get(position_id)
        if position is None or position.status is not PositionStatus.ACTIVE:
            return False

        report = await self._fetch_exit_report(position, position.stop_loss_order_id)
        if position.status is not PositionStatus.ACTIVE:
            return False
        if report is not None:
            self._apply_exit_fill(position, report)
        elif position.stop_loss > 0:
            position.pnl = unrealized_pnl(position, position.stop_loss)
            logger.warning(
                "exit_price_estimated",
                position_id=position.id,
                price=str(position.stop_loss),
            )

        await self._finish_close(position, REASON_CLOSED_ON_EXCHANGE)
        return True

    async def _finish_close(self, position: Position, reason: str) -> None:
        position.transition_to(PositionStatus.CLOSED)
        position.close_reason = reason
        position.closed_at = self._clock()
        await self._persist(position)

        stats = self._stats.record_close(position)
        logger.info(
            "position_closed",
            position_id=position.id,
            symbol=position.symbol,
            reason=reason,
            pnl=str(position.pnl),
            fees=str(position.fees),
        )
        await self._check_daily_stop_loss(stats)

    async def _fetch_exit_report(self, position: Position, order_id: str | None) -> OrderReport | None:
        """Fill report of an exit order, or None when it has not filled or is unreachable."""
        if not order_id:
            return None
        try:
            report = await self._exchange.fetch_order(position.symbol, order_id)
        except ExchangeUnavailableError as exc:
            logger.warning("exit_fill_unavailable", position_id=position.id, error=str(exc))
            return None
        if report is None or report.cum_qty <= 0:
            return None
        return report

    def _apply_exit_fill(self, position: Position, report: OrderReport) -> None:
        position.fees += report.cum_fee
        position.pnl = unrealized_pnl(position, report.avg_price)

    async def _cancel_stop_loss(self, position: Position) -> bool:
        try:
            return await self._exchange.cancel_order(position.symbol, position.stop_loss_order_id)
        except ExchangeUnavailableError as exc:
            logger.warning(
                "stop_loss_cancel_failed",
                position_id=position.id,
                order_id=position.stop_loss_order_id,
                error=str(exc),
            )
            return False

    async def _revert_close(self, position: Position, error: str, stop_cancelled: bool) -> None:
        position.transition_to(PositionStatus.ACTIVE)
        await self._persist(position)
        logger.error(
            "position_close_failed",
            position_id=position.id,
            symbol=position.symbol,
            error=error,
        )
        # Still open on the exchange: restore its protection
        if stop_cancelled:
            position.stop_loss_order_id = None
            await self._persist(position)
            await self._place_stop_loss(position)

    async def close_all_positions(self, reason: str) -> list[str]:
        """Close every active position concurrently. Returns closed ids."""
        active = self.get_active_positions()
        if not active:
            return []
        logger.warning("closing_all_positions", reason=reason, count=len(active))

        results = await asyncio.gather(
            *(self.close_position(p.id, reason) for p in active),
            return_exceptions=True,
        )
        closed: list[str] = []
        for position, result in zip(active, results):
            if result is True:
                closed.append(position.id)
            elif isinstance(result, BaseException):
                logger.error("close_all_error", position_id=position.id, error=str(result))
        return closed

    async def _check_daily_stop_loss(self, stats: DailyStats) -> None:
        """Close everything once when realized PnL breaches the daily stop."""
        if stats.total_pnl > -self._risk.daily_stop_loss or self._daily_stop_triggered:
            return
        self._daily_stop_triggered = True
        logger.critical(
            "daily_stop_loss_reached",
            total_pnl=str(stats.total_pnl),
            limit=str(self._risk.daily_stop_loss),
        )
        await self.close_all_positions(REASON_DAILY_STOP)

    # ──────────────────────────────────────────────
    # Monitoring
    # ──────────────────────────────────────────────

    def check_exit(self, position: Position, price: Decimal, now: float) -> str | None:
        """Exit reason for an active position at price, or None to hold."""
        if position.side is OrderSide.BUY:
            if price >= position.profit_target:
                return REASON_PROFIT_TARGET
            if price <= position.stop_loss:
                return REASON_STOP_LOSS
        else:
            if price <= position.profit_target:
                return REASON_PROFIT_TARGET
            if price >= position.stop_loss:
                return REASON_STOP_LOSS
        if now - position.entry_time > self._risk.max_position_duration_seconds:
            return REASON_MAX_DURATION
        return None

    async def update_position(self, position_id: str, price: Decimal) -> str | None:
        """Refresh PnL at price and close if an exit condition holds.

        Returns the exit reason when a close was attempted.
        """
        position = self._positions.get(position_id)
        if position is None or position.status is not PositionStatus.ACTIVE:
            return None

        position.pnl = unrealized_pnl(position, price)
        reason = self.check_exit(position, price, self._clock())
        if reason is None:
            return None

        logger.info(
            "exit_condition_met",
            position_id=position.id,
            reason=reason,
            price=str(price),
            pnl=str(position.pnl),
        )
        await self.close_position(position.id, reason)
        return reason

    async def monitor_once(self) -> None:
        """One monitoring pass over active positions using exchange mark prices."""
        active = self.get_active_positions()
        if not active:
            return

        try:
            exchange_positions = await self._exchange.fetch_positions()
        except ExchangeUnavailableError as exc:
            logger.warning("monitor_positions_unavailable", error=str(exc))
            return

        live = {p.symbol for p in exchange_positions}
        marks = {p.symbol: p.mark_price for p in exchange_positions if p.mark_price > 0}
        for position in active:
            if position.symbol not in live:
                logger.warning("position_gone_from_exchange", position_id=position.id, symbol=position.symbol)
                await self.settle_exchange_close(position.id)
                continue
            mark = marks.get(position.symbol)
            if mark is not None:
                await self.update_position(position.id, mark)
            elif self._clock() - position.entry_time > self._risk.max_position_duration_seconds:
                await self.close_position(position.id, REASON_MAX_DURATION)

    async def start_monitoring(self) -> None:
        if self._running:
            logger.warning("position_monitor_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._monitor_loop())
        logger.info("position_monitor_started", interval=self._risk.monitor_interval_seconds)

    async def stop_monitoring(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("position_monitor_stopped")

    async def _monitor_loop(self) -> None:
        while self._running:
            try:
                await self.monitor_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error("position_monitor_error", exc_info=True)
            await asyncio.sleep(self._risk.monitor_interval_seconds)

    # ──────────────────────────────────────────────
    # Reconciliation hooks
    # ──────────────────────────────────────────────

    def restore(self, positions: list[Position]) -> None:
        """Load persisted positions into memory (startup only)."""
        for position in positions:
            self._positions[position.id] = position
        logger.info("positions_restored", count=len(positions))

    async def adopt_exchange_state(self, position: Position, live: ExchangePosition) -> None:
        """Make a local position mirror a live exchange position and mark it active."""
        if position.status is not PositionStatus.ACTIVE:
            position.transition_to(PositionStatus.ACTIVE)
        position.quantity = live.size
        position.entry_price = live.entry_price
        position.size = live.size * live.entry_price
        position.pnl = live.unrealized_pnl
        if position.stop_loss <= 0 or position.profit_target <= 0:
            self._set_exit_levels(position)
        await self._persist(position)

    async def track_external_position(self, live: ExchangePosition) -> Position:
        """Adopt an exchange position this process has no record of.

        Funding rate and expected profit are unknown and recorded as zero.
        """
        now = self._clock()
        position = Position(
            id=position_id_for(live.symbol, now),
            symbol=live.symbol,
            side=live.side,
            size=live.size * live.entry_price,
            funding_rate=Decimal("0"),
            expected_profit=Decimal("0"),
            entry_time=now,
            status=PositionStatus.ACTIVE,
            quantity=live.size,
            entry_price=live.entry_price,
            pnl=live.unrealized_pnl,
        )
        self._set_exit_levels(position)
        self._positions[position.id] = position
        await self._persist(position)
        return position

    async def mark_closed(self, position_id: str, reason: str) -> None:
        """Record a position as closed without placing an order."""
        position = self._get(position_id)
        position.transition_to(PositionStatus.CLOSED)
        position.close_reason = reason
        position.closed_at = self._clock()
        await self._persist(position)

    # ──────────────────────────────────────────────
    # Daily stats
    # ──────────────────────────────────────────────

    @property
    def daily_stats(self) -> DailyStats:
        return self._stats.stats

    def roll_daily_stats(self) -> bool:
        """Start a new day's stats when the UTC date changed."""
        if self._stats.roll_if_new_day():
            self._daily_stop_triggered = False
            return True
        return False

    def reset_daily_stats(self, date: str | None = None) -> DailyStats:
        self._daily_stop_triggered = False
        return self._stats.reset(date)

    # ──────────────────────────────────────────────
    # Queries
    # ──────────────────────────────────────────────

    def _get(self, position_id: str) -> Position:
        position = self._positions.get(position_id)
        if position is None:
            raise PositionNotFoundError(position_id)
        return position

    def get_position(self, position_id: str) -> Position | None:
        return self._positions.get(position_id)

    def get_all_positions(self) -> list[Position]:
        return list(self._positions.values())

    def get_active_positions(self) -> list[Position]:
        return [p for p in self._positions.values() if p.status is PositionStatus.ACTIVE]

    def get_positions_by_status(self, *statuses: PositionStatus) -> list[Position]:
        return [p for p in self._positions.values() if p.status in statuses]

    def get_risk_metrics(self) -> RiskMetrics:
        return self._risk_manager.risk_metrics(list(self._positions.values()), self._stats.stats)

    def get_position_summary(self) -> str:
        """One-line human summary for periodic status logs."""
        active = self.get_active_positions()
        stats = self._stats.stats
        open_pnl = sum((p.pnl for p in active), Decimal("0"))
        return (
            f"Active: {len(active)}, Open PnL: ${open_pnl:.2f}, "
            f"Daily PnL: ${stats.total_pnl:.2f}, Trades: {stats.total_trades}, "
            f"Win Rate: {stats.win_rate:.1f}%"
        )

    async def _persist(self, position: Position) -> None:
        if self._store is None:
            return
        try:
            await self._store.save_position(position)
        except Exception:
            logger.error("position_persist_failed", position_id=position.id, exc_info=True)
