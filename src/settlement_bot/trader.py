"""Funding-rate trader -- wires the settlement and position engines together.

Startup:
  1. Restore persisted positions and reconcile them with the exchange
  2. Start the scheduler, the session engine and position monitoring
  3. Run the trading loop until stop()

Each trading cycle:
  1. ROLL: reset daily stats when the UTC date changes
  2. GATE: only inside the trading window before the next settlement
  3. DECIDE: candidates settling at that tick -> liquidity-checked signals
  4. EXECUTE: PostOnly limit entry at the optimal price; a watcher task
     polls the order until it fills, fails or times out

Positions are left open on a graceful stop. Their stop-loss orders stay
on the exchange and the next startup reconciles them.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from typing import TYPE_CHECKING

from settlement_bot.config import AppSettings
from settlement_bot.exceptions import ExchangeUnavailableError, RiskLimitExceeded
from settlement_bot.exchange.client import ExchangeClient
from settlement_bot.exchange.types import OrderReport, OrderRequest
from settlement_bot.logging import get_logger, log_context
from settlement_bot.models import (
    OrderSide,
    OrderType,
    Position,
    PositionStatus,
    TimeInForce,
    TradingSignal,
)
from settlement_bot.position.manager import PositionManager
from settlement_bot.position.sizing import PositionSizer
from settlement_bot.recovery.reconciler import CrashRecoveryManager
from settlement_bot.strategy.signals import SignalGenerator, in_trading_window

if TYPE_CHECKING:
    from settlement_bot.data.store import SettlementStore
    from settlement_bot.market_data.scheduler import SettlementScheduler
    from settlement_bot.risk.emergency import EmergencyController
    from settlement_bot.settlement.session_engine import SessionEngine

logger = get_logger(__name__)

_PENDING_ORDER_STATUSES = frozenset({"New", "PartiallyFilled", "Untriggered", "Created"})


def round_price(price: Decimal, tick: Decimal, side: OrderSide) -> Decimal:
    """Round to tick away from the book so a PostOnly order stays passive."""
    if tick <= 0:
        return price
    rounding = ROUND_CEILING if side is OrderSide.SELL else ROUND_FLOOR
    return (price / tick).to_integral_value(rounding=rounding) * tick


class FundingRateTrader:
    """Top-level coordinator for settlement trading.

    Args:
        settings: Application-wide settings.
        exchange_client: Exchange API client.
        scheduler: Funding schedules.
        session_engine: Passive settlement monitoring.
        position_manager: Position lifecycle owner.
        signal_generator: Trade decisions.
        recovery: Startup reconciliation.
        store: Persistence for positions and the settlement audit trail.
        sizer: Order quantity rounding.
        clock: Returns Unix seconds; injected for tests.
    """

    def __init__(
        self,
        settings: AppSettings,
        exchange_client: ExchangeClient,
        scheduler: SettlementScheduler,
        session_engine: SessionEngine,
        position_manager: PositionManager,
        signal_generator: SignalGenerator,
        recovery: CrashRecoveryManager,
        store: SettlementStore,
        sizer: PositionSizer | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._exchange = exchange_client
        self._scheduler = scheduler
        self._session_engine = session_engine
        self._position_manager = position_manager
        self._signal_generator = signal_generator
        self._recovery = recovery
        self._store = store
        self._sizer = sizer or PositionSizer()
        self._clock = clock
        self._emergency_controller: EmergencyController | None = None
        self._running = False
        self._stop_event = asyncio.Event()
        self._cycle_lock = asyncio.Lock()
        self._fill_tasks: set[asyncio.Task] = set()  # type: ignore[type-arg]

    def set_emergency_controller(self, controller: EmergencyController) -> None:
        """Set after construction; the controller needs trader.stop as callback."""
        self._emergency_controller = controller

    @property
    def is_running(self) -> bool:
        return self._running

    # ──────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────

    async def initialize(self) -> None:
        """Restore persisted positions and reconcile them with the exchange."""
        try:
            positions = await self._store.load_positions(
                [PositionStatus.OPENING, PositionStatus.ACTIVE, PositionStatus.CLOSING]
            )
        except Exception:
            logger.error("position_restore_failed", exc_info=True)
            positions = []
        self._position_manager.restore(positions)
        await self._recovery.perform_recovery()

    async def start(self) -> None:
        """Initialize, start background engines, then run the trading loop."""
        trading = self._settings.trading
        logger.info(
            "trader_starting",
            position_size=str(trading.effective_position_size),
            test_mode=trading.test_mode,
            funding_rate_threshold=str(trading.funding_rate_threshold),
            trading_window_seconds=trading.trading_window_seconds,
        )
        await self.initialize()
        await self._scheduler.start()
        await self._session_engine.start()
        await self._position_manager.start_monitoring()

        self._running = True
        self._stop_event.clear()
        try:
            await self._run_loop()
        finally:
            await self._shutdown_components()
            logger.info("trader_stopped")

    async def stop(self) -> None:
        """Signal the trading loop to stop. Open positions are kept."""
        logger.info("trader_stopping_gracefully")
        self._running = False
        self._stop_event.set()

    async def _shutdown_components(self) -> None:
        for task in list(self._fill_tasks):
            task.cancel()
        if self._fill_tasks:
            await asyncio.gather(*self._fill_tasks, return_exceptions=True)
        await self._position_manager.stop_monitoring()
        await self._session_engine.stop()
        await self._scheduler.stop()

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("trading_cycle_error", error=str(e), exc_info=True)
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self._settings.trading.trading_check_interval
                )
            except asyncio.TimeoutError:
                pass

    # ──────────────────────────────────────────────
    # Trading cycle
    # ──────────────────────────────────────────────

    async def run_cycle(self) -> list[Position]:
        """One gate-decide-execute pass. Returns positions opened this cycle."""
        async with self._cycle_lock:
            self._position_manager.roll_daily_stats()
            if self._emergency_controller is not None and self._emergency_controller.triggered:
                return []

            settlement_time = self._scheduler.next_settlement_time()
            if settlement_time is None:
                return []

            now_ms = int(self._clock() * 1000)
            window = self._settings.trading.trading_window_seconds
            if not in_trading_window(settlement_time, now_ms, window):
                logger.debug(
                    "outside_trading_window",
                    seconds_to_settlement=round((settlement_time - now_ms) / 1000),
                )
                return []

            candidates = self._scheduler.top_by_abs_rate(
                settlement_time, self._settings.trading.candidate_pool_size
            )
            signals = await self._signal_generator.generate_signals(candidates)
            logger.info(
                "trading_window_open",
                settlement_time=settlement_time,
                candidates=len(candidates),
                signals=len(signals),
            )

            opened: list[Position] = []
            for signal in signals:
                position = await self.execute_signal(signal)
                if position is not None:
                    opened.append(position)

            logger.info("position_status", summary=self._position_manager.get_position_summary())
            return opened

    async def execute_signal(self, signal: TradingSignal) -> Position | None:
        """Create a position for a signal and submit its entry order."""
        if self._position_manager.has_open_position(signal.symbol):
            logger.info("signal_skipped_existing_position", symbol=signal.symbol)
            return None

        try:
            instrument = await self._exchange.get_instrument_info(signal.symbol)
        except (ExchangeUnavailableError, ValueError) as exc:
            logger.warning("instrument_unavailable", symbol=signal.symbol, error=str(exc))
            return None

        price = round_price(signal.liquidity.optimal_order_price, instrument.tick_size, signal.side)
        quantity = self._sizer.calculate_quantity(signal.recommended_size, price, instrument)
        if quantity is None:
            logger.info(
                "signal_skipped_below_minimums",
                symbol=signal.symbol,
                size=str(signal.recommended_size),
                price=str(price),
            )
            return None

        try:
            position = await self._position_manager.create_position(
                symbol=signal.symbol,
                side=signal.side,
                size=signal.recommended_size,
                funding_rate=signal.funding_rate,
                expected_profit=signal.expected_profit,
                slippage=signal.liquidity.estimated_slippage,
            )
        except RiskLimitExceeded as exc:
            logger.info("signal_blocked_by_risk", symbol=signal.symbol, reason=str(exc))
            return None

        link_id = f"{self._settings.trading.order_link_prefix}{position.id}"
        request = OrderRequest(
            symbol=signal.symbol,
            side=signal.side,
            order_type=OrderType.LIMIT,
            quantity=quantity,
            link_id=link_id,
            price=price,
            time_in_force=TimeInForce.POST_ONLY,
        )

        try:
            ack = await self._exchange.place_order(request)
        except ExchangeUnavailableError as exc:
            logger.error("entry_order_state_unknown", position_id=position.id, error=str(exc))
            order_id = await self._find_order_by_link_id(position, link_id)
            if order_id is None:
                return position if position.status is PositionStatus.OPENING else None
            await self._position_manager.attach_order(position.id, order_id)
            self._spawn_fill_watcher(position, order_id)
            return position

        if not ack.success or ack.order_id is None:
            await self._position_manager.mark_failed(position.id, ack.error or "Entry order rejected")
            return None

        await self._position_manager.attach_order(position.id, ack.order_id)
        logger.info(
            "entry_order_placed",
            position_id=position.id,
            order_id=ack.order_id,
            price=str(price),
            quantity=str(quantity),
        )
        self._spawn_fill_watcher(position, ack.order_id)
        return position

    async def _find_order_by_link_id(self, position: Position, link_id: str) -> str | None:
        """Resolve an entry whose submission result was lost.

        Marks the position failed only when the exchange positively reports
        no such order; if that lookup fails too, the position stays opening
        for recovery.
        """
        try:
            orders = await self._exchange.fetch_open_orders(position.symbol)
        except ExchangeUnavailableError:
            logger.error("entry_order_unresolved", position_id=position.id)
            return None
        for order in orders:
            if order.link_id == link_id:
                return order.order_id
        await self._position_manager.mark_failed(position.id, "Entry order not found after submit error")
        return None

    # ──────────────────────────────────────────────
    # Fill confirmation
    # ──────────────────────────────────────────────

    def _spawn_fill_watcher(self, position: Position, order_id: str) -> None:
        # The task copies the bound context at creation.
        with log_context(position_id=position.id, symbol=position.symbol):
            task = asyncio.create_task(self.watch_fill(position.id, position.symbol, order_id))
        self._fill_tasks.add(task)
        task.add_done_callback(self._fill_tasks.discard)

    async def watch_fill(self, position_id: str, symbol: str, order_id: str) -> PositionStatus | None:
        """Poll an entry order until it fills, fails or times out.

        Returns the position's resulting status, or None if it is still
        opening because the exchange could not be reached.
        """
        trading = self._settings.trading
        await asyncio.sleep(trading.fill_check_delay_seconds)
        deadline = self._clock() + trading.fill_timeout_seconds

        while True:
            try:
                report = await self._exchange.fetch_order(symbol, order_id)
            except ExchangeUnavailableError as exc:
                logger.warning("fill_check_unavailable", position_id=position_id, error=str(exc))
                report = None

            if report is not None:
                if report.status == "Filled":
                    await self._position_manager.confirm_fill(position_id, report)
                    return PositionStatus.ACTIVE
                if report.status not in _PENDING_ORDER_STATUSES:
                    await self._position_manager.mark_failed(position_id, f"Entry order {report.status}")
                    return PositionStatus.FAILED

            if self._clock() >= deadline:
                return await self._expire_entry(position_id, symbol, order_id)
            await asyncio.sleep(trading.fill_recheck_seconds)

    async def _expire_entry(self, position_id: str, symbol: str, order_id: str) -> PositionStatus | None:
        """Cancel an unfilled entry and settle on whatever did fill."""
        try:
            await self._exchange.cancel_order(symbol, order_id)
            report: OrderReport | None = await self._exchange.fetch_order(symbol, order_id)
        except ExchangeUnavailableError as exc:
            logger.error("entry_expiry_unresolved", position_id=position_id, error=str(exc))
            return None

        if report is not None and report.cum_qty > 0:
            await self._position_manager.confirm_fill(position_id, report)
            return PositionStatus.ACTIVE

        await self._position_manager.mark_failed(position_id, "Entry order not filled in time")
        return PositionStatus.FAILED

    # ──────────────────────────────────────────────
    # Control and status
    # ──────────────────────────────────────────────

    async def emergency_stop(self, reason: str) -> tuple[list[str], list[str]]:
        if self._emergency_controller is None:
            logger.error("emergency_controller_missing")
            return [], []
        return await self._emergency_controller.trigger(reason)

    async def get_status(self) -> dict:
        stats = self._position_manager.daily_stats
        metrics = self._position_manager.get_risk_metrics()
        try:
            store_stats = await self._store.get_stats()
        except Exception:
            logger.warning("store_stats_unavailable", exc_info=True)
            store_stats = {}

        return {
            "running": self._running,
            "emergency_triggered": (
                self._emergency_controller.triggered if self._emergency_controller else False
            ),
            "test_mode": self._settings.trading.test_mode,
            "summary": self._position_manager.get_position_summary(),
            "positions": [
                {
                    "id": p.id,
                    "symbol": p.symbol,
                    "side": p.side.value,
                    "status": p.status.value,
                    "size": str(p.size),
                    "entry_price": str(p.entry_price),
                    "pnl": str(p.pnl),
                }
                for p in self._position_manager.get_all_positions()
                if not p.status.is_terminal
            ],
            "daily_stats": {
                "date": stats.date,
                "total_trades": stats.total_trades,
                "total_pnl": str(stats.total_pnl),
                "win_rate": str(stats.win_rate),
                "avg_profit": str(stats.avg_profit),
                "avg_loss": str(stats.avg_loss),
            },
            "risk": {
                "total_exposure": str(metrics.total_exposure),
                "portfolio_risk_percent": str(metrics.portfolio_risk_percent),
                "margin_used": str(metrics.margin_used),
            },
            "settlement": self._session_engine.get_status(),
            "recovery": self._recovery.get_recovery_status(),
            "store": store_stats,
        }
