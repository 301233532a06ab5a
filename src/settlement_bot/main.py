"""Entry point for the funding settlement bot.

Wires all components together and starts the trader.

Handles SIGINT/SIGTERM for graceful shutdown and SIGUSR1 for emergency stop.

Component wiring order (in _build_components):
1. BybitClient (exchange access)
2. SettlementDatabase / SettlementStore (persistence)
3. SettlementScheduler (funding schedules)
4. PriceCollector + SessionEngine (settlement monitoring)
5. LiquidityAnalyzer + FeeCalculator + SignalGenerator (trade decisions)
6. RiskManager + DailyStatsTracker + PositionManager (position lifecycle)
7. CrashRecoveryManager (startup reconciliation)
8. FundingRateTrader (trading loop)
9. EmergencyController (emergency stop with retry)
"""

import asyncio
import signal
from typing import Any

from settlement_bot.config import AppSettings
from settlement_bot.data.database import SettlementDatabase
from settlement_bot.data.store import SettlementStore
from settlement_bot.exchange.bybit_client import BybitClient
from settlement_bot.liquidity.analyzer import LiquidityAnalyzer
from settlement_bot.logging import get_logger, setup_logging
from settlement_bot.market_data.price_collector import PriceCollector
from settlement_bot.market_data.scheduler import SettlementScheduler
from settlement_bot.pnl.fee_calculator import FeeCalculator
from settlement_bot.pnl.tracker import DailyStatsTracker
from settlement_bot.position.manager import PositionManager
from settlement_bot.position.sizing import PositionSizer
from settlement_bot.recovery.reconciler import CrashRecoveryManager
from settlement_bot.risk.emergency import EmergencyController
from settlement_bot.risk.manager import RiskManager
from settlement_bot.settlement.session_engine import SessionEngine
from settlement_bot.strategy.signals import SignalGenerator
from settlement_bot.trader import FundingRateTrader


def _build_components(settings: AppSettings) -> dict[str, Any]:
    """Build all bot components from settings.

    Does NOT connect the exchange client or the database; run() does that.

    Returns:
        Dict mapping component names to instances.
    """
    logger = get_logger("settlement_bot.main")

    exchange_client = BybitClient(settings.exchange)
    if not settings.exchange.api_key.get_secret_value():
        logger.warning(
            "no_api_keys_configured",
            note="Market data and settlement monitoring work. Order placement will fail.",
        )

    database = SettlementDatabase(settings.storage.db_path)
    store = SettlementStore(database)

    scheduler = SettlementScheduler(
        exchange_client,
        refresh_interval=settings.settlement.schedule_refresh_seconds,
        settlement_window_seconds=settings.settlement.settlement_window_seconds,
    )
    collector = PriceCollector(exchange_client, orderbook_depth=settings.settlement.orderbook_depth)
    session_engine = SessionEngine(scheduler, collector, store, settings.settlement)

    liquidity = LiquidityAnalyzer(exchange_client, settings.liquidity)
    fee_calculator = FeeCalculator(settings.fees)
    signal_generator = SignalGenerator(liquidity, fee_calculator, settings.trading, settings.risk)

    risk_manager = RiskManager(
        settings.risk,
        position_size=settings.trading.effective_position_size,
        leverage=settings.trading.leverage,
    )
    stats_tracker = DailyStatsTracker()
    position_manager = PositionManager(
        exchange=exchange_client,
        risk_manager=risk_manager,
        stats_tracker=stats_tracker,
        risk_settings=settings.risk,
        trading_settings=settings.trading,
        store=store,
    )

    recovery = CrashRecoveryManager(
        exchange_client,
        position_manager,
        settings.recovery,
        order_link_prefix=settings.trading.order_link_prefix,
    )

    trader = FundingRateTrader(
        settings=settings,
        exchange_client=exchange_client,
        scheduler=scheduler,
        session_engine=session_engine,
        position_manager=position_manager,
        signal_generator=signal_generator,
        recovery=recovery,
        store=store,
        sizer=PositionSizer(),
    )

    # Needs trader.stop as callback
    emergency_controller = EmergencyController(
        position_manager=position_manager,
        recovery=recovery,
        stop_callback=trader.stop,
        max_retries=settings.recovery.emergency_max_retries,
    )
    trader.set_emergency_controller(emergency_controller)

    return {
        "exchange_client": exchange_client,
        "database": database,
        "store": store,
        "scheduler": scheduler,
        "session_engine": session_engine,
        "position_manager": position_manager,
        "recovery": recovery,
        "trader": trader,
        "emergency_controller": emergency_controller,
    }


def _setup_signal_handlers(
    trader: FundingRateTrader, emergency_controller: EmergencyController
) -> None:
    """Register OS signal handlers for graceful and emergency shutdown.

    SIGINT/SIGTERM stop the loops and leave positions to their stop orders.
    SIGUSR1 closes everything immediately.

    Must be called after the asyncio event loop is running.
    """
    logger = get_logger("settlement_bot.main")
    loop = asyncio.get_running_loop()

    def _graceful_handler() -> None:
        logger.info("graceful_shutdown_signal")
        asyncio.create_task(trader.stop())

    def _emergency_handler() -> None:
        logger.critical("emergency_stop_signal_received")
        asyncio.create_task(emergency_controller.trigger("user_signal_SIGUSR1"))

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _graceful_handler)

    loop.add_signal_handler(signal.SIGUSR1, _emergency_handler)


async def run() -> None:
    """Run the funding settlement bot until a shutdown signal."""
    settings = AppSettings()

    setup_logging(settings.log_level)
    logger = get_logger("settlement_bot.main")

    components = _build_components(settings)
    _setup_signal_handlers(components["trader"], components["emergency_controller"])

    logger.info(
        "starting_settlement_bot",
        test_mode=settings.trading.test_mode,
        position_size=str(settings.trading.effective_position_size),
        max_positions=settings.risk.max_positions,
        daily_stop_loss=str(settings.risk.daily_stop_loss),
        db_path=settings.storage.db_path,
    )

    try:
        await components["database"].connect()
        await components["exchange_client"].connect()
        await components["trader"].start()
    finally:
        await components["exchange_client"].close()
        await components["database"].close()
        logger.info("settlement_bot_stopped")


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
