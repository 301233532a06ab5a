"""Settlement monitoring -- session state machine and post-settlement analysis."""

from settlement_bot.settlement.analysis import analyze_session, analyze_symbol
from settlement_bot.settlement.session_engine import SessionEngine

__all__ = ["SessionEngine", "analyze_session", "analyze_symbol"]
