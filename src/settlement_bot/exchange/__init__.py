"""Exchange client layer -- Bybit API integration via ccxt."""

from settlement_bot.exchange.bybit_client import BybitClient
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
    round_to_step,
)

__all__ = [
    "BybitClient",
    "ExchangeClient",
    "ExchangePosition",
    "FundingRateInfo",
    "InstrumentInfo",
    "OpenOrder",
    "OrderAck",
    "OrderBook",
    "OrderReport",
    "OrderRequest",
    "Ticker",
    "round_to_step",
]
