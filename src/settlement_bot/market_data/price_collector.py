"""Price snapshot collection for settlement monitoring sessions.

One collection round fans out to every requested symbol concurrently and
joins the results. A symbol whose ticker or order book cannot be fetched
is logged and left out of that round; the round itself never fails.
All snapshots of a round share one timestamp so a session's sequence
stays ordered.
"""

import asyncio
from decimal import Decimal

from settlement_bot.exchange.client import ExchangeClient
from settlement_bot.logging import get_logger
from settlement_bot.models import OHLCData, OrderbookLevel, PriceSnapshot, SnapshotPhase

logger = get_logger(__name__)


def classify_phase(timestamp: int, settlement_time: int, window_seconds: int = 30) -> SnapshotPhase:
    """Label a timestamp relative to its settlement.

    "pre" more than window_seconds before, "settlement" within
    +/- window_seconds, "post" afterwards.
    """
    window_ms = window_seconds * 1000
    if timestamp < settlement_time - window_ms:
        return SnapshotPhase.PRE
    if timestamp <= settlement_time + window_ms:
        return SnapshotPhase.SETTLEMENT
    return SnapshotPhase.POST


class PriceCollector:
    """Builds PriceSnapshots from ticker, order book and latest candle.

    Args:
        exchange: Market data source.
        orderbook_depth: Levels requested per side.
        include_ohlc: Attach the latest 1-minute candle when available.
    """

    def __init__(
        self,
        exchange: ExchangeClient,
        orderbook_depth: int = 10,
        include_ohlc: bool = True,
    ) -> None:
        self._exchange = exchange
        self._orderbook_depth = orderbook_depth
        self._include_ohlc = include_ohlc

    async def collect(
        self,
        symbols: list[str],
        timestamp: int,
        phase: SnapshotPhase,
    ) -> list[PriceSnapshot]:
        """Capture one snapshot per symbol; failed symbols are absent."""
        results = await asyncio.gather(
            *(self._snapshot(symbol, timestamp, phase) for symbol in symbols),
            return_exceptions=True,
        )

        snapshots: list[PriceSnapshot] = []
        for symbol, result in zip(symbols, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "snapshot_failed",
                    symbol=symbol,
                    phase=phase.value,
                    error=str(result),
                )
                continue
            snapshots.append(result)

        logger.debug(
            "snapshot_round_collected",
            phase=phase.value,
            requested=len(symbols),
            collected=len(snapshots),
        )
        return snapshots

    async def _snapshot(self, symbol: str, timestamp: int, phase: SnapshotPhase) -> PriceSnapshot:
        ticker, book = await asyncio.gather(
            self._exchange.fetch_ticker(symbol),
            self._exchange.fetch_order_book(symbol, self._orderbook_depth),
        )
        ohlc = await self._latest_candle(symbol) if self._include_ohlc else None

        bid = ticker.bid or (book.bids[0][0] if book.bids else Decimal("0"))
        ask = ticker.ask or (book.asks[0][0] if book.asks else Decimal("0"))
        if bid <= 0 or ask <= 0:
            raise ValueError(f"No usable bid/ask for {symbol}")

        mid = (bid + ask) / 2
        levels = tuple(
            [OrderbookLevel(price=p, volume=v, side="bid") for p, v in book.bids]
            + [OrderbookLevel(price=p, volume=v, side="ask") for p, v in book.asks]
        )

        return PriceSnapshot(
            symbol=symbol,
            timestamp=timestamp,
            phase=phase,
            bid_price=bid,
            ask_price=ask,
            bid_volume=book.bids[0][1] if book.bids else Decimal("0"),
            ask_volume=book.asks[0][1] if book.asks else Decimal("0"),
            spread=(ask - bid) / mid * 100,
            mark_price=ticker.mark_price,
            index_price=ticker.index_price,
            volume_24h=ticker.volume_24h,
            orderbook_levels=levels,
            ohlc=ohlc,
        )

    async def _latest_candle(self, symbol: str) -> OHLCData | None:
        try:
            return await self._exchange.fetch_recent_candle(symbol, "1m")
        except Exception as exc:
            logger.debug("ohlc_unavailable", symbol=symbol, error=str(exc))
            return None
