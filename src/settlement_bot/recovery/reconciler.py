"""Startup reconciliation of local positions against the exchange.

The exchange is authoritative. There is no write-ahead log, so recovery
is best-effort repair, not replay. Steps, in order:

1. Orphans: every opening/closing position is looked up on the exchange.
   A live position is adopted (status active); otherwise opening becomes
   failed and closing becomes closed.
2. Sync: exchange positions nobody tracks are adopted as active with
   funding rate and expected profit zero-filled; local active positions
   the exchange no longer reports are marked closed.
3. Stale orders: open orders carrying this system's link-id prefix and
   older than the age limit are cancelled, except live stop-loss orders.
4. Validation: structural problems are reported as warnings.

A transport failure leaves the affected positions untouched; it is
never read as "no position on the exchange".
"""

import time
from collections.abc import Callable
from dataclasses import dataclass, field

from settlement_bot.config import RecoverySettings
from settlement_bot.exceptions import ExchangeUnavailableError
from settlement_bot.exchange.client import ExchangeClient
from settlement_bot.logging import get_logger
from settlement_bot.models import Position, PositionStatus
from settlement_bot.position.manager import PositionManager

logger = get_logger(__name__)


@dataclass
class RecoveryReport:
    """What one recovery run changed."""

    recovered: list[str] = field(default_factory=list)  # orphan -> active
    failed: list[str] = field(default_factory=list)  # opening -> failed
    closed: list[str] = field(default_factory=list)  # closing -> closed
    adopted: list[str] = field(default_factory=list)  # untracked exchange positions
    externally_closed: list[str] = field(default_factory=list)  # active -> closed
    unresolved: list[str] = field(default_factory=list)  # left untouched after errors
    cancelled_orders: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    started_at: float = 0.0
    finished_at: float = 0.0


class CrashRecoveryManager:
    """Repairs local position state from the exchange's ground truth.

    Args:
        exchange: Authoritative positions and open orders.
        position_manager: Owner of local positions; all repairs go through it.
        settings: Stale-order and stale-position thresholds.
        order_link_prefix: Link-id prefix identifying this system's orders.
        clock: Returns Unix seconds; injected for tests.
    """

    def __init__(
        self,
        exchange: ExchangeClient,
        position_manager: PositionManager,
        settings: RecoverySettings,
        order_link_prefix: str = "fr_",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._exchange = exchange
        self._positions = position_manager
        self._settings = settings
        self._prefix = order_link_prefix
        self._clock = clock
        self._last_report: RecoveryReport | None = None

    async def perform_recovery(self) -> RecoveryReport:
        """Run all recovery steps. Never raises for per-position problems."""
        report = RecoveryReport(started_at=self._clock())
        logger.info("recovery_started")

        await self._recover_orphans(report)
        await self._sync_with_exchange(report)
        report.cancelled_orders = await self.cancel_system_orders(
            self._settings.max_order_age_seconds
        )
        report.warnings = self.validate_positions()

        report.finished_at = self._clock()
        self._last_report = report
        logger.info(
            "recovery_complete",
            recovered=len(report.recovered),
            failed=len(report.failed),
            closed=len(report.closed),
            adopted=len(report.adopted),
            externally_closed=len(report.externally_closed),
            unresolved=len(report.unresolved),
            cancelled_orders=len(report.cancelled_orders),
            warnings=len(report.warnings),
        )
        return report

    async def _recover_orphans(self, report: RecoveryReport) -> None:
        orphans = self._positions.get_positions_by_status(
            PositionStatus.OPENING, PositionStatus.CLOSING
        )
        for position in orphans:
            try:
                await self._recover_orphan(position, report)
            except ExchangeUnavailableError as exc:
                report.unresolved.append(position.id)
                logger.warning(
                    "orphan_state_unknown",
                    position_id=position.id,
                    symbol=position.symbol,
                    error=str(exc),
                )
            except Exception:
                report.unresolved.append(position.id)
                logger.error("orphan_recovery_error", position_id=position.id, exc_info=True)

    async def _recover_orphan(self, position: Position, report: RecoveryReport) -> None:
        live = [p for p in await self._exchange.fetch_positions(position.symbol) if p.size > 0]
        previous = position.status

        if live:
            await self._positions.adopt_exchange_state(position, live[0])
            report.recovered.append(position.id)
            logger.info(
                "orphan_recovered",
                position_id=position.id,
                previous_status=previous.value,
                size=str(live[0].size),
                entry_price=str(live[0].entry_price),
            )
        elif previous is PositionStatus.OPENING:
            await self._positions.mark_failed(position.id, "Entry not found on exchange during recovery")
            report.failed.append(position.id)
        else:
            await self._positions.mark_closed(position.id, "Close completed during crash")
            report.closed.append(position.id)
            logger.info("orphan_closed", position_id=position.id)

    async def _sync_with_exchange(self, report: RecoveryReport) -> None:
        try:
            live_positions = [p for p in await self._exchange.fetch_positions() if p.size > 0]
        except ExchangeUnavailableError as exc:
            logger.warning("position_sync_skipped", error=str(exc))
            return

        local_active = {p.symbol: p for p in self._positions.get_active_positions()}
        # Unresolved orphans still claim their symbol
        tracked = {p.symbol for p in self._positions.get_all_positions() if p.is_open}
        live_symbols = {p.symbol for p in live_positions}

        for live in live_positions:
            if live.symbol in tracked:
                continue
            try:
                position = await self._positions.track_external_position(live)
            except Exception:
                logger.error("position_adopt_error", symbol=live.symbol, exc_info=True)
                continue
            report.adopted.append(position.id)
            logger.warning(
                "untracked_position_adopted",
                position_id=position.id,
                symbol=live.symbol,
                side=live.side.value,
                size=str(position.size),
            )

        for symbol, position in local_active.items():
            if symbol in live_symbols:
                continue
            try:
                await self._positions.mark_closed(position.id, "Position not found on exchange")
            except Exception:
                logger.error("position_close_mark_error", position_id=position.id, exc_info=True)
                continue
            report.externally_closed.append(position.id)
            logger.warning("position_closed_externally", position_id=position.id, symbol=symbol)

    async def cancel_system_orders(
        self,
        max_age_seconds: float,
        include_stop_orders: bool = False,
    ) -> list[str]:
        """Cancel this system's open orders older than max_age_seconds.

        Stop-loss orders of active positions are kept unless
        include_stop_orders is set. Returns the cancelled order ids.
        """
        try:
            orders = await self._exchange.fetch_open_orders()
        except ExchangeUnavailableError as exc:
            logger.warning("open_orders_unavailable", error=str(exc))
            return []

        protected: set[str] = set()
        if not include_stop_orders:
            protected = {
                p.stop_loss_order_id
                for p in self._positions.get_active_positions()
                if p.stop_loss_order_id
            }

        now_ms = int(self._clock() * 1000)
        cancelled: list[str] = []
        for order in orders:
            if not order.link_id.startswith(self._prefix) or order.order_id in protected:
                continue
            age_seconds = (now_ms - order.created_time) / 1000
            if age_seconds < max_age_seconds:
                continue
            try:
                if await self._exchange.cancel_order(order.symbol, order.order_id):
                    cancelled.append(order.order_id)
                    logger.info(
                        "stale_order_cancelled",
                        order_id=order.order_id,
                        link_id=order.link_id,
                        age_seconds=round(age_seconds),
                    )
            except ExchangeUnavailableError as exc:
                logger.warning("stale_order_cancel_failed", order_id=order.order_id, error=str(exc))
        return cancelled

    def validate_positions(self) -> list[str]:
        """Structural checks on non-terminal positions; problems are warnings only."""
        warnings: list[str] = []
        now = self._clock()
        stale_after = self._settings.stale_position_hours * 3600

        for position in self._positions.get_all_positions():
            if position.status.is_terminal:
                continue
            if not position.id or not position.symbol or position.size <= 0:
                warnings.append(f"{position.id or '<no id>'}: missing required fields")
            if position.status is PositionStatus.ACTIVE and position.entry_price <= 0:
                warnings.append(f"{position.id}: active without entry price")
            if now - position.entry_time > stale_after:
                hours = (now - position.entry_time) / 3600
                warnings.append(f"{position.id}: open for {hours:.1f}h")

        for warning in warnings:
            logger.warning("position_integrity_warning", detail=warning)
        return warnings

    def get_recovery_status(self) -> dict:
        """Position counts per status and the last run's summary."""
        counts = {status.value: 0 for status in PositionStatus}
        for position in self._positions.get_all_positions():
            counts[position.status.value] += 1

        last = self._last_report
        return {
            "positions": counts,
            "last_recovery_at": last.finished_at if last else None,
            "last_recovery": None
            if last is None
            else {
                "recovered": len(last.recovered),
                "failed": len(last.failed),
                "closed": len(last.closed),
                "adopted": len(last.adopted),
                "externally_closed": len(last.externally_closed),
                "unresolved": len(last.unresolved),
                "cancelled_orders": len(last.cancelled_orders),
                "warnings": list(last.warnings),
            },
        }
