"""Persistence layer -- settlement audit trail and positions in SQLite."""

from settlement_bot.data.database import SettlementDatabase
from settlement_bot.data.store import SettlementStore

__all__ = ["SettlementDatabase", "SettlementStore"]
