"""Market data layer -- funding schedules and price snapshots."""

from settlement_bot.market_data.price_collector import PriceCollector, classify_phase
from settlement_bot.market_data.scheduler import SettlementScheduler, infer_interval_hours

__all__ = [
    "PriceCollector",
    "SettlementScheduler",
    "classify_phase",
    "infer_interval_hours",
]
