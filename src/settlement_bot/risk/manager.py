"""Pre-trade portfolio risk gate and exposure metrics.

Limits enforced before a new position is created:
  - open position count below max_positions
  - today's trade count below max_daily_trades
  - today's realized PnL above -daily_stop_loss
  - exposure plus the new size within position_size x max_positions
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

from settlement_bot.config import RiskSettings
from settlement_bot.logging import get_logger
from settlement_bot.models import PositionStatus, RiskMetrics

if TYPE_CHECKING:
    from settlement_bot.models import DailyStats, Position

logger = get_logger(__name__)


class RiskManager:
    """Portfolio limits for speculative settlement positions.

    Args:
        settings: Risk settings containing all thresholds.
        position_size: Configured per-position notional; with max_positions
            it defines the exposure ceiling.
        leverage: Used to derive margin in risk metrics.
    """

    def __init__(
        self,
        settings: RiskSettings,
        position_size: Decimal,
        leverage: Decimal = Decimal("1"),
    ) -> None:
        self._settings = settings
        self._position_size = position_size
        self._leverage = leverage

    @property
    def max_exposure(self) -> Decimal:
        return self._position_size * self._settings.max_positions

    def check_can_open(
        self,
        size: Decimal,
        positions: list[Position],
        daily_stats: DailyStats,
    ) -> tuple[bool, str]:
        """Check if a new position of `size` USD can be opened.

        Positions still opening or closing count as open: their exposure
        is live on the exchange.

        Returns:
            Tuple of (allowed, reason). If allowed is True, reason is "".
        """
        if size <= Decimal("0"):
            return False, "Position size must be positive"

        open_positions = [p for p in positions if p.is_open]

        if len(open_positions) >= self._settings.max_positions:
            return False, "Maximum positions reached"

        if daily_stats.total_trades >= self._settings.max_daily_trades:
            return False, "Daily trades limit reached"

        if daily_stats.total_pnl <= -self._settings.daily_stop_loss:
            return False, "Daily stop loss reached"

        exposure = sum((p.size for p in open_positions), Decimal("0"))
        if exposure + size > self.max_exposure:
            return False, "Maximum exposure would be exceeded"

        return True, ""

    def risk_metrics(
        self,
        positions: list[Position],
        daily_stats: DailyStats,
    ) -> RiskMetrics:
        """Exposure and PnL summary across active positions."""
        active = [p for p in positions if p.status is PositionStatus.ACTIVE]
        exposure = sum((p.size for p in active), Decimal("0"))
        open_pnl = sum((p.pnl for p in active), Decimal("0"))
        max_exposure = self.max_exposure

        return RiskMetrics(
            total_exposure=exposure,
            daily_pnl=daily_stats.total_pnl + open_pnl,
            daily_trades=daily_stats.total_trades,
            max_position_size=max((p.size for p in active), default=Decimal("0")),
            portfolio_risk_percent=(
                exposure / max_exposure * 100 if max_exposure > 0 else Decimal("0")
            ),
            margin_used=exposure / self._leverage if self._leverage > 0 else exposure,
        )
