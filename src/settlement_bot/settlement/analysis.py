"""Post-settlement analysis of a session's snapshots.

Pure functions: nothing here touches the exchange, the store or the clock.

Per symbol:
  baseline = first "pre" snapshot
  final    = last "post", else last "settlement", else last "pre"
  max move = largest |mid - baseline mid| / baseline mid over every
             "settlement" and "post" snapshot
  theory   = PASS when max move (percent) exceeds |funding rate| in percent
"""

from decimal import Decimal

from settlement_bot.logging import get_logger
from settlement_bot.models import (
    PriceSnapshot,
    SettlementAnalysis,
    SettlementSession,
    SnapshotPhase,
    TheoryTest,
)

logger = get_logger(__name__)

_HUNDRED = Decimal("100")
_LIQUIDITY_LEVELS = 5


def percent_change(before: Decimal, after: Decimal) -> Decimal:
    """Relative change in percent; 0 when the starting value is 0."""
    if before == 0:
        return Decimal("0")
    return (after - before) / before * _HUNDRED


def book_liquidity(snapshot: PriceSnapshot, levels: int = _LIQUIDITY_LEVELS) -> Decimal:
    """Notional resting in the top `levels` of each side."""
    bids = [lvl for lvl in snapshot.orderbook_levels if lvl.side == "bid"][:levels]
    asks = [lvl for lvl in snapshot.orderbook_levels if lvl.side == "ask"][:levels]
    return sum((lvl.price * lvl.volume for lvl in bids + asks), Decimal("0"))


def max_price_move(
    snapshots: list[PriceSnapshot],
    baseline: PriceSnapshot,
) -> tuple[Decimal, float]:
    """Largest absolute mid-price move (percent) and its offset in seconds."""
    base_mid = baseline.mid_price
    best = Decimal("0")
    offset = 0.0
    if base_mid == 0:
        return best, offset
    for snapshot in snapshots:
        move = abs(snapshot.mid_price - base_mid) / base_mid * _HUNDRED
        if move > best:
            best = move
            offset = (snapshot.timestamp - baseline.timestamp) / 1000
    return best, offset


def analyze_symbol(
    session_id: str,
    symbol: str,
    snapshots: list[PriceSnapshot],
    funding_rate: Decimal,
) -> SettlementAnalysis | None:
    """Analyze one symbol's snapshots, or None if there is too little data."""
    if len(snapshots) < 2:
        logger.warning(
            "analysis_skipped_insufficient_snapshots",
            session_id=session_id,
            symbol=symbol,
            snapshots=len(snapshots),
        )
        return None

    pre = [s for s in snapshots if s.phase is SnapshotPhase.PRE]
    at_settlement = [s for s in snapshots if s.phase is SnapshotPhase.SETTLEMENT]
    post = [s for s in snapshots if s.phase is SnapshotPhase.POST]
    if not pre:
        logger.warning("analysis_skipped_no_baseline", session_id=session_id, symbol=symbol)
        return None

    baseline = pre[0]
    final = (post or at_settlement or pre)[-1]

    move, time_to_move = max_price_move(at_settlement + post, baseline)
    theory = TheoryTest.PASS if move > abs(funding_rate * _HUNDRED) else TheoryTest.FAIL

    return SettlementAnalysis(
        session_id=session_id,
        symbol=symbol,
        funding_rate=funding_rate,
        price_change_percent=percent_change(baseline.mid_price, final.mid_price),
        volume_change_percent=percent_change(
            baseline.volume_24h or Decimal("0"), final.volume_24h or Decimal("0")
        ),
        spread_change_percent=percent_change(baseline.spread, final.spread),
        liquidity_change_percent=percent_change(book_liquidity(baseline), book_liquidity(final)),
        time_to_max_move=time_to_move,
        max_price_move=move,
        theory_test=theory,
    )


def analyze_session(session: SettlementSession) -> list[SettlementAnalysis]:
    """Analyze every selected symbol of a session, skipping thin ones."""
    analyses: list[SettlementAnalysis] = []
    for symbol in session.selected_symbols:
        analysis = analyze_symbol(
            session.id,
            symbol,
            session.snapshots_for(symbol),
            session.funding_rates_at_selection.get(symbol, Decimal("0")),
        )
        if analysis is not None:
            analyses.append(analysis)
    return analyses
