"""Realized daily statistics for closed positions.

One DailyStats per UTC day. Rolling over to a new day is driven by the
caller (the trader checks the date every cycle); the tracker never
reads the clock on its own except through the injected clock.
"""

import time
from collections.abc import Callable
from datetime import datetime, timezone
from decimal import Decimal

from settlement_bot.logging import get_logger
from settlement_bot.models import DailyStats, Position

logger = get_logger(__name__)


def utc_date(timestamp: float) -> str:
    """YYYY-MM-DD for a Unix-seconds timestamp."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d")


class DailyStatsTracker:
    """Accumulates realized PnL, fees and win/loss counts for the current day.

    Args:
        clock: Returns Unix seconds; injected for tests.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._stats = DailyStats(date=utc_date(clock()))

    @property
    def stats(self) -> DailyStats:
        return self._stats

    def record_close(self, position: Position) -> DailyStats:
        """Fold a closed position's realized PnL into today's stats."""
        stats = self._stats
        stats.total_trades += 1
        stats.total_pnl += position.pnl
        stats.total_fees += position.fees
        if position.pnl > 0:
            stats.winning_trades += 1
            stats.gross_profit += position.pnl
        else:
            stats.losing_trades += 1
            stats.gross_loss += position.pnl

        logger.info(
            "daily_stats_updated",
            date=stats.date,
            trades=stats.total_trades,
            total_pnl=str(stats.total_pnl),
            win_rate=str(stats.win_rate.quantize(Decimal("0.01"))),
        )
        return stats

    def reset(self, date: str | None = None) -> DailyStats:
        """Start a fresh day, returning the stats of the day just ended."""
        finished = self._stats
        self._stats = DailyStats(date=date or utc_date(self._clock()))
        logger.info(
            "daily_stats_reset",
            previous_date=finished.date,
            previous_pnl=str(finished.total_pnl),
            previous_trades=finished.total_trades,
            date=self._stats.date,
        )
        return finished

    def roll_if_new_day(self) -> bool:
        """Reset when the UTC date has changed. Returns True if it rolled."""
        today = utc_date(self._clock())
        if today == self._stats.date:
            return False
        self.reset(today)
        return True
