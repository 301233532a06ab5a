"""Abstract exchange client interface.

Settlement, position and recovery code depends only on this interface,
keeping Bybit-specific details isolated in the concrete implementation.

Every coroutine may raise ExchangeUnavailableError on transport failure.
That means "state unknown", never "empty".
"""

from abc import ABC, abstractmethod

from settlement_bot.exchange.types import (
    ExchangePosition,
    FundingRateInfo,
    InstrumentInfo,
    OpenOrder,
    OrderAck,
    OrderBook,
    OrderReport,
    OrderRequest,
    Ticker,
)
from settlement_bot.models import OHLCData


class ExchangeClient(ABC):
    """Abstract base class for exchange API clients."""

    @abstractmethod
    async def connect(self) -> None:
        """Initialize connection and load markets/instruments."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Clean up resources (CRITICAL for ccxt async)."""
        ...

    @abstractmethod
    async def fetch_funding_rates(self) -> list[FundingRateInfo]:
        """Current funding rate and next funding time for every linear perpetual."""
        ...

    @abstractmethod
    async def fetch_order_book(self, symbol: str, depth: int) -> OrderBook:
        """Order-book ladders, best level first."""
        ...

    @abstractmethod
    async def fetch_ticker(self, symbol: str) -> Ticker:
        """Best bid/ask with optional mark/index price and 24h volume."""
        ...

    @abstractmethod
    async def fetch_recent_candle(self, symbol: str, timeframe: str = "1m") -> OHLCData | None:
        """Most recent OHLC candle, or None when the exchange has none."""
        ...

    @abstractmethod
    async def get_instrument_info(self, symbol: str) -> InstrumentInfo:
        """Get trading constraints for a symbol (lot size, tick size, etc.)."""
        ...

    @abstractmethod
    async def place_order(self, request: OrderRequest) -> OrderAck:
        """Submit an order.

        Exchange-side rejections come back as OrderAck(success=False);
        only transport failures raise.
        """
        ...

    @abstractmethod
    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        """Cancel a resting order. Returns False if the exchange refused."""
        ...

    @abstractmethod
    async def fetch_order(self, symbol: str, order_id: str) -> OrderReport | None:
        """Fill report for an order, or None if the exchange does not know it."""
        ...

    @abstractmethod
    async def fetch_positions(self, symbol: str | None = None) -> list[ExchangePosition]:
        """Open positions with nonzero size, optionally for one symbol."""
        ...

    @abstractmethod
    async def fetch_open_orders(self, symbol: str | None = None) -> list[OpenOrder]:
        """Resting orders, optionally for one symbol."""
        ...
