"""Settlement scheduler -- tracks next funding time and rate per perpetual.

Uses REST polling. Funding schedules change at most once per settlement,
so refreshing every minute is ample. Each refresh overwrites the
schedule of every symbol the exchange reports; symbols missing from a
refresh keep their previous schedule until it falls into the past.

The exchange does not expose the funding interval directly, so it is
bucketed from time-to-next-funding (see infer_interval_hours).
"""

import asyncio
import time
from collections.abc import Callable

from settlement_bot.exchange.client import ExchangeClient
from settlement_bot.logging import get_logger
from settlement_bot.models import SettlementSchedule

logger = get_logger(__name__)

_MS_PER_HOUR = 3_600_000


def infer_interval_hours(time_to_next_ms: int) -> int:
    """Bucket time-to-next-funding into 1, 2, 4 or 8 hours.

    Only an approximation: a symbol on an 8h schedule that settles in
    30 minutes is reported as 1h.
    """
    hours = time_to_next_ms / _MS_PER_HOUR
    if hours <= 1.1:
        return 1
    if hours <= 2.1:
        return 2
    if hours <= 4.1:
        return 4
    return 8


class SettlementScheduler:
    """Maintains the latest SettlementSchedule for every perpetual.

    Args:
        exchange: Source of funding rates and next funding times.
        refresh_interval: Seconds between background refreshes.
        settlement_window_seconds: Symbols within this many seconds of a
            settlement time are treated as settling on the same tick.
        clock: Returns Unix seconds; injected for tests.
    """

    def __init__(
        self,
        exchange: ExchangeClient,
        refresh_interval: float = 60.0,
        settlement_window_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._exchange = exchange
        self._refresh_interval = refresh_interval
        self._window_ms = settlement_window_seconds * 1000
        self._clock = clock
        self._schedules: dict[str, SettlementSchedule] = {}
        self._running = False
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def start(self) -> None:
        """Refresh once, then keep refreshing in the background."""
        if self._running:
            logger.warning("scheduler_already_running")
            return
        self._running = True
        await self._safe_refresh()
        self._task = asyncio.create_task(self._refresh_loop())
        logger.info("scheduler_started", refresh_interval=self._refresh_interval)

    async def stop(self) -> None:
        """Stop the background refresh."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("scheduler_stopped")

    async def _refresh_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._refresh_interval)
            if self._running:
                await self._safe_refresh()

    async def _safe_refresh(self) -> None:
        try:
            await self.refresh()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("schedule_refresh_error", exc_info=True)

    async def refresh(self) -> int:
        """Re-query all funding rates and overwrite schedules.

        Returns:
            Number of schedules updated.
        """
        rates = await self._exchange.fetch_funding_rates()
        now_ms = self._now_ms()

        for info in rates:
            self._schedules[info.symbol] = SettlementSchedule(
                symbol=info.symbol,
                next_funding_time=info.next_funding_time,
                funding_rate=info.rate,
                interval_hours=infer_interval_hours(info.next_funding_time - now_ms),
                last_updated=now_ms,
            )

        logger.info("schedules_updated", count=len(rates), tracked=len(self._schedules))
        self._log_upcoming()
        return len(rates)

    def _log_upcoming(self) -> None:
        next_time = self.next_settlement_time()
        if next_time is None:
            return
        upcoming = self.upcoming(within_minutes=60)
        logger.debug(
            "upcoming_settlements",
            next_settlement=next_time,
            minutes_until=round((next_time - self._now_ms()) / 60_000, 1),
            within_hour=len(upcoming),
            first=[s.symbol for s in upcoming[:5]],
        )

    def update(self, schedule: SettlementSchedule) -> None:
        """Overwrite one symbol's schedule directly."""
        self._schedules[schedule.symbol] = schedule

    def get_schedule(self, symbol: str) -> SettlementSchedule | None:
        return self._schedules.get(symbol)

    def all_schedules(self) -> list[SettlementSchedule]:
        return list(self._schedules.values())

    def upcoming(self, within_minutes: float) -> list[SettlementSchedule]:
        """Schedules settling in (now, now + within_minutes], soonest first."""
        now_ms = self._now_ms()
        horizon = now_ms + int(within_minutes * 60_000)
        return sorted(
            (s for s in self._schedules.values() if now_ms < s.next_funding_time <= horizon),
            key=lambda s: (s.next_funding_time, s.symbol),
        )

    def next_settlement_time(self) -> int | None:
        """Earliest future funding time across all symbols, or None."""
        now_ms = self._now_ms()
        future = [s.next_funding_time for s in self._schedules.values() if s.next_funding_time > now_ms]
        return min(future) if future else None

    def settling_at(self, settlement_time: int) -> list[SettlementSchedule]:
        """Schedules within the settlement window of settlement_time."""
        return [
            s
            for s in self._schedules.values()
            if abs(s.next_funding_time - settlement_time) <= self._window_ms
        ]

    def top_by_abs_rate(self, settlement_time: int, n: int) -> list[SettlementSchedule]:
        """The n symbols settling at settlement_time with the largest |rate|.

        Ties are broken by symbol so the result is deterministic.
        """
        candidates = sorted(
            self.settling_at(settlement_time),
            key=lambda s: (-abs(s.funding_rate), s.symbol),
        )
        return candidates[:n]

    def top_for_next_settlement(self, n: int) -> list[SettlementSchedule]:
        next_time = self.next_settlement_time()
        if next_time is None:
            return []
        return self.top_by_abs_rate(next_time, n)

