"""Emergency stop controller with order cleanup and retried closes.

Cancels every open order carrying this system's link-id prefix (stop
orders included), then closes all active positions concurrently. A
position that fails to close is retried up to max_retries times with
linear backoff; positions still open afterwards are logged at CRITICAL
level so they can be closed by hand.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from settlement_bot.logging import get_logger
from settlement_bot.models import PositionStatus

if TYPE_CHECKING:
    from settlement_bot.models import Position
    from settlement_bot.position.manager import PositionManager
    from settlement_bot.recovery.reconciler import CrashRecoveryManager

logger = get_logger(__name__)


class EmergencyController:
    """Emergency stop: cancel system orders, close all positions, halt.

    Args:
        position_manager: For closing positions.
        recovery: For cancelling this system's open orders.
        stop_callback: Async callable that halts the trader.
        max_retries: Maximum close attempts per position.
        retry_delay: Base delay in seconds for linear backoff.
    """

    def __init__(
        self,
        position_manager: PositionManager,
        recovery: CrashRecoveryManager,
        stop_callback: Callable[[], Awaitable[None]],
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        self._position_manager = position_manager
        self._recovery = recovery
        self._stop_callback = stop_callback
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._triggered: bool = False

    async def trigger(self, reason: str) -> tuple[list[str], list[str]]:
        """Run the emergency procedure once.

        Returns:
            Tuple of (closed_ids, failed_ids).
        """
        if self._triggered:
            logger.warning("emergency_stop_already_triggered")
            return [], []

        self._triggered = True
        logger.critical("emergency_stop_triggered", reason=reason)

        cancelled = await self._recovery.cancel_system_orders(
            max_age_seconds=0, include_stop_orders=True
        )
        logger.info("emergency_orders_cancelled", count=len(cancelled))

        positions = self._position_manager.get_active_positions()
        results = await asyncio.gather(
            *(self._close_with_retry(p, reason) for p in positions),
            return_exceptions=True,
        )

        closed_ids: list[str] = []
        failed_ids: list[str] = []
        for position, result in zip(positions, results):
            if result is True:
                closed_ids.append(position.id)
                continue
            failed_ids.append(position.id)
            logger.critical(
                "emergency_close_failed_all_retries",
                position_id=position.id,
                symbol=position.symbol,
                quantity=str(position.quantity),
                error=str(result) if isinstance(result, BaseException) else None,
            )

        await self._stop_callback()

        logger.info(
            "emergency_stop_complete",
            closed=len(closed_ids),
            failed=len(failed_ids),
        )
        return closed_ids, failed_ids

    async def _close_with_retry(self, position: Position, reason: str) -> bool:
        for attempt in range(self._max_retries):
            closed = await self._position_manager.close_position(position.id, f"Emergency: {reason}")
            if closed or position.status is PositionStatus.CLOSED:
                logger.info(
                    "emergency_position_closed",
                    position_id=position.id,
                    attempt=attempt + 1,
                )
                return True
            logger.warning(
                "emergency_close_retry",
                position_id=position.id,
                attempt=attempt + 1,
                max_retries=self._max_retries,
            )
            if attempt < self._max_retries - 1:
                await asyncio.sleep(self._retry_delay * (attempt + 1))
        return False

    @property
    def triggered(self) -> bool:
        """Whether the emergency stop has been triggered."""
        return self._triggered

    def reset(self) -> None:
        """Reset the triggered flag (for testing / recovery)."""
        self._triggered = False
