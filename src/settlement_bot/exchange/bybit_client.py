"""Bybit exchange client implementation via ccxt async.

Wraps ccxt.async_support.bybit with market loading, typed parsing of
the unified ccxt structures, and async cleanup. ccxt failures are
translated at this boundary:

  - network / exchange-side failures -> ExchangeUnavailableError
  - order-level refusals              -> OrderAck(success=False)
"""

from decimal import Decimal, InvalidOperation

import ccxt.async_support as ccxt_async
from ccxt.base.errors import BaseError, InsufficientFunds, InvalidOrder, OrderNotFound

from settlement_bot.config import ExchangeSettings
from settlement_bot.exceptions import ExchangeUnavailableError
from settlement_bot.exchange.client import ExchangeClient
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
from settlement_bot.logging import get_logger
from settlement_bot.models import OHLCData, OrderSide, TimeInForce

logger = get_logger(__name__)

_LINEAR = {"category": "linear"}

# ccxt unified order status -> Bybit order status
_STATUS_FALLBACK = {
    "open": "New",
    "closed": "Filled",
    "canceled": "Cancelled",
    "rejected": "Rejected",
    "expired": "Cancelled",
}


def _to_decimal(value: object, default: Decimal | None = None) -> Decimal | None:
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


class BybitClient(ExchangeClient):
    """Concrete Bybit exchange client using ccxt async."""

    def __init__(self, settings: ExchangeSettings) -> None:
        self._settings = settings

        config: dict = {
            "apiKey": settings.api_key.get_secret_value(),
            "secret": settings.api_secret.get_secret_value(),
            "enableRateLimit": True,
            "options": {
                "defaultType": "swap",
            },
        }

        if settings.demo_trading:
            config["urls"] = {
                "api": {
                    "public": "https://api-demo.bybit.com",
                    "private": "https://api-demo.bybit.com",
                },
            }

        self._exchange = ccxt_async.bybit(config)
        if settings.testnet:
            self._exchange.set_sandbox_mode(True)
        self._markets: dict = {}

    @property
    def exchange(self) -> ccxt_async.bybit:
        """Access the underlying ccxt exchange instance."""
        return self._exchange

    async def connect(self) -> None:
        """Initialize connection by loading markets."""
        logger.info(
            "connecting_to_bybit",
            demo=self._settings.demo_trading,
            testnet=self._settings.testnet,
        )
        try:
            self._markets = await self._exchange.load_markets()
        except BaseError as exc:
            raise ExchangeUnavailableError(f"load_markets failed: {exc}") from exc
        logger.info("bybit_connected", market_count=len(self._markets))

    async def close(self) -> None:
        """Clean up ccxt async resources. CRITICAL: must be called to avoid resource leaks."""
        logger.info("closing_bybit_connection")
        await self._exchange.close()
        logger.info("bybit_connection_closed")

    async def fetch_funding_rates(self) -> list[FundingRateInfo]:
        """Read funding rate and next funding time from linear tickers."""
        try:
            tickers = await self._exchange.fetch_tickers(params=_LINEAR)
        except BaseError as exc:
            raise ExchangeUnavailableError(f"fetch_tickers failed: {exc}") from exc

        rates: list[FundingRateInfo] = []
        for symbol, ticker in tickers.items():
            info = ticker.get("info", {})
            rate = _to_decimal(info.get("fundingRate"))
            next_time = info.get("nextFundingTime")
            if rate is None or not next_time:
                continue
            rates.append(
                FundingRateInfo(
                    symbol=symbol,
                    rate=rate,
                    next_funding_time=int(next_time),
                )
            )
        logger.debug("fetched_funding_rates", count=len(rates))
        return rates

    async def fetch_order_book(self, symbol: str, depth: int) -> OrderBook:
        try:
            raw = await self._exchange.fetch_order_book(symbol, limit=depth, params=_LINEAR)
        except BaseError as exc:
            raise ExchangeUnavailableError(f"fetch_order_book {symbol}: {exc}") from exc

        return OrderBook(
            symbol=symbol,
            bids=[(Decimal(str(level[0])), Decimal(str(level[1]))) for level in raw.get("bids", [])],
            asks=[(Decimal(str(level[0])), Decimal(str(level[1]))) for level in raw.get("asks", [])],
            timestamp=int(raw.get("timestamp") or 0),
        )

    async def fetch_ticker(self, symbol: str) -> Ticker:
        try:
            raw = await self._exchange.fetch_ticker(symbol, params=_LINEAR)
        except BaseError as exc:
            raise ExchangeUnavailableError(f"fetch_ticker {symbol}: {exc}") from exc

        info = raw.get("info", {})
        return Ticker(
            symbol=symbol,
            bid=_to_decimal(raw.get("bid"), Decimal("0")),
            ask=_to_decimal(raw.get("ask"), Decimal("0")),
            mark_price=_to_decimal(info.get("markPrice")),
            index_price=_to_decimal(info.get("indexPrice")),
            volume_24h=_to_decimal(info.get("volume24h")),
        )

    async def fetch_recent_candle(self, symbol: str, timeframe: str = "1m") -> OHLCData | None:
        try:
            candles = await self._exchange.fetch_ohlcv(symbol, timeframe, limit=1, params=_LINEAR)
        except BaseError as exc:
            raise ExchangeUnavailableError(f"fetch_ohlcv {symbol}: {exc}") from exc
        if not candles:
            return None
        _, open_, high, low, close, volume = candles[-1][:6]
        return OHLCData(
            open=Decimal(str(open_)),
            high=Decimal(str(high)),
            low=Decimal(str(low)),
            close=Decimal(str(close)),
            volume=Decimal(str(volume)),
        )

    async def get_instrument_info(self, symbol: str) -> InstrumentInfo:
        """Extract instrument constraints from cached market data.

        All numeric values are converted to Decimal for precision.
        """
        if not self._markets:
            await self.connect()

        market = self._markets.get(symbol)
        if not market:
            raise ValueError(f"Symbol {symbol} not found in loaded markets")

        limits = market.get("limits", {})
        precision = market.get("precision", {})
        amount_limits = limits.get("amount", {})
        cost_limits = limits.get("cost", {})

        return InstrumentInfo(
            symbol=symbol,
            min_qty=Decimal(str(amount_limits.get("min") or 0)),
            max_qty=Decimal(str(amount_limits.get("max") or 0)),
            qty_step=Decimal(str(precision.get("amount") or 0)),
            min_notional=Decimal(str(cost_limits.get("min") or 0)),
            tick_size=Decimal(str(precision.get("price") or 0)),
        )

    async def place_order(self, request: OrderRequest) -> OrderAck:
        params: dict = {**_LINEAR, "clientOrderId": request.link_id}
        if request.time_in_force is TimeInForce.POST_ONLY:
            params["postOnly"] = True
        else:
            params["timeInForce"] = request.time_in_force.value
        if request.reduce_only:
            params["reduceOnly"] = True
        if request.trigger_price is not None:
            params["triggerPrice"] = str(request.trigger_price)
            # 1: fires on rise (stop for a short), 2: fires on fall (stop for a long)
            params["triggerDirection"] = 1 if request.side is OrderSide.BUY else 2

        logger.info(
            "placing_order",
            symbol=request.symbol,
            side=request.side.value,
            order_type=request.order_type.value,
            quantity=str(request.quantity),
            price=str(request.price) if request.price is not None else None,
            link_id=request.link_id,
        )
        try:
            raw = await self._exchange.create_order(
                request.symbol,
                request.order_type.value.lower(),
                request.side.value.lower(),
                float(request.quantity),
                float(request.price) if request.price is not None else None,
                params=params,
            )
        except (InvalidOrder, InsufficientFunds) as exc:
            logger.warning("order_rejected", symbol=request.symbol, error=str(exc))
            return OrderAck(success=False, error=str(exc))
        except BaseError as exc:
            raise ExchangeUnavailableError(f"create_order {request.symbol}: {exc}") from exc

        return OrderAck(success=True, order_id=str(raw.get("id")))

    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        logger.info("cancelling_order", order_id=order_id, symbol=symbol)
        try:
            await self._exchange.cancel_order(order_id, symbol, params=_LINEAR)
        except (OrderNotFound, InvalidOrder) as exc:
            logger.warning("cancel_refused", order_id=order_id, symbol=symbol, error=str(exc))
            return False
        except BaseError as exc:
            raise ExchangeUnavailableError(f"cancel_order {order_id}: {exc}") from exc
        return True

    async def fetch_order(self, symbol: str, order_id: str) -> OrderReport | None:
        try:
            raw = await self._exchange.fetch_order(
                order_id, symbol, params={**_LINEAR, "acknowledged": True}
            )
        except OrderNotFound:
            return None
        except BaseError as exc:
            raise ExchangeUnavailableError(f"fetch_order {order_id}: {exc}") from exc

        info = raw.get("info", {})
        status = info.get("orderStatus") or _STATUS_FALLBACK.get(raw.get("status"), "Unknown")
        fee = raw.get("fee") or {}
        return OrderReport(
            order_id=order_id,
            status=status,
            avg_price=_to_decimal(raw.get("average") or info.get("avgPrice"), Decimal("0")),
            cum_qty=_to_decimal(raw.get("filled") or info.get("cumExecQty"), Decimal("0")),
            cum_fee=_to_decimal(fee.get("cost") or info.get("cumExecFee"), Decimal("0")),
        )

    async def fetch_positions(self, symbol: str | None = None) -> list[ExchangePosition]:
        symbols = [symbol] if symbol else None
        try:
            raw_positions = await self._exchange.fetch_positions(symbols, params=_LINEAR)
        except BaseError as exc:
            raise ExchangeUnavailableError(f"fetch_positions: {exc}") from exc

        positions: list[ExchangePosition] = []
        for raw in raw_positions:
            size = _to_decimal(raw.get("contracts"), Decimal("0"))
            if size == 0:
                continue
            positions.append(
                ExchangePosition(
                    symbol=raw["symbol"],
                    side=OrderSide.BUY if raw.get("side") == "long" else OrderSide.SELL,
                    size=abs(size),
                    entry_price=_to_decimal(raw.get("entryPrice"), Decimal("0")),
                    mark_price=_to_decimal(raw.get("markPrice"), Decimal("0")),
                    unrealized_pnl=_to_decimal(raw.get("unrealizedPnl"), Decimal("0")),
                )
            )
        return positions

    async def fetch_open_orders(self, symbol: str | None = None) -> list[OpenOrder]:
        try:
            raw_orders = await self._exchange.fetch_open_orders(symbol, params=_LINEAR)
        except BaseError as exc:
            raise ExchangeUnavailableError(f"fetch_open_orders: {exc}") from exc

        return [
            OpenOrder(
                order_id=str(raw["id"]),
                symbol=raw["symbol"],
                link_id=raw.get("clientOrderId") or "",
                created_time=int(raw.get("timestamp") or 0),
            )
            for raw in raw_orders
        ]
