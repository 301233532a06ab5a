"""Shared test fixtures for the settlement bot."""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from settlement_bot.config import (
    AppSettings,
    ExchangeSettings,
    FeeSettings,
    LiquiditySettings,
    RecoverySettings,
    RiskSettings,
    SettlementSettings,
    TradingSettings,
)
from settlement_bot.exchange.client import ExchangeClient

# 2024-01-01T08:00:00Z, a regular 8h funding tick
SETTLEMENT_MS = 1_704_096_000_000


class FakeClock:
    """Manually advanced clock returning Unix seconds."""

    def __init__(self, now: float = SETTLEMENT_MS / 1000) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mock_exchange() -> AsyncMock:
    return AsyncMock(spec=ExchangeClient)


@pytest.fixture
def mock_settings() -> AppSettings:
    """Return AppSettings with test defaults (dummy API keys, test mode off)."""
    return AppSettings(
        log_level="DEBUG",
        exchange=ExchangeSettings(
            api_key="test-api-key",  # type: ignore[arg-type]
            api_secret="test-api-secret",  # type: ignore[arg-type]
            testnet=True,
            demo_trading=False,
        ),
        settlement=SettlementSettings(),
        trading=TradingSettings(position_size=Decimal("100")),
        risk=RiskSettings(),
        liquidity=LiquiditySettings(),
        fees=FeeSettings(),
        recovery=RecoverySettings(),
    )
