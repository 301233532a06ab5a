"""Configuration system using pydantic-settings with environment variable loading."""

from decimal import Decimal

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class ExchangeSettings(BaseSettings):
    """Bybit exchange connection settings."""

    model_config = SettingsConfigDict(env_prefix="BYBIT_")

    api_key: SecretStr = SecretStr("")
    api_secret: SecretStr = SecretStr("")
    testnet: bool = False
    demo_trading: bool = False


class SettlementSettings(BaseSettings):
    """Settlement scheduling and monitoring-session parameters.

    Minutes are relative to the settlement timestamp. All fields
    configurable via SETTLEMENT_ environment variable prefix.
    """

    model_config = SettingsConfigDict(env_prefix="SETTLEMENT_")

    pre_monitoring_minutes: int = 5
    post_monitoring_minutes: int = 15
    snapshot_interval_seconds: int = 30
    top3_selection_minutes: int = 2
    orderbook_depth: int = 10
    selection_pool_size: int = 50  # symbols re-queried at selection time
    max_selected_symbols: int = 3
    min_abs_funding_rate: Decimal = Decimal("0.0001")  # 0.01% significance threshold
    settlement_window_seconds: int = 60  # +/- tolerance when clustering ticks
    phase_window_seconds: int = 30  # +/- around settlement labelled "settlement"
    schedule_refresh_seconds: int = 60
    tick_interval_seconds: float = 1.0


class TradingSettings(BaseSettings):
    """Trading decision and order execution parameters."""

    model_config = SettingsConfigDict(env_prefix="TRADING_")

    position_size: Decimal = Decimal("100")  # USD notional per position
    leverage: Decimal = Decimal("1")
    funding_rate_threshold: Decimal = Decimal("-0.0001")  # short below this rate
    max_negative_funding_rate: Decimal = Decimal("-0.01")  # ignore extreme outliers
    target_profit_percent: Decimal = Decimal("0.002")  # 0.2%
    test_mode: bool = False
    test_position_size: Decimal = Decimal("10")
    trading_window_seconds: int = 60  # trade only this close to settlement
    trading_check_interval: float = 30.0
    candidate_pool_size: int = 10
    max_break_even_move_percent: Decimal = Decimal("2.0")
    max_cost_to_risk: Decimal = Decimal("0.5")
    min_size_fraction: Decimal = Decimal("0.5")  # of target, after liquidity haircut
    fill_check_delay_seconds: float = 5.0
    fill_recheck_seconds: float = 10.0
    fill_timeout_seconds: float = 120.0
    order_link_prefix: str = "fr_"

    @property
    def effective_position_size(self) -> Decimal:
        """Target notional, honouring test mode."""
        if self.test_mode:
            return self.test_position_size
        return self.position_size


class RiskSettings(BaseSettings):
    """Portfolio risk limits and position-monitoring parameters."""

    model_config = SettingsConfigDict(env_prefix="RISK_")

    max_positions: int = 3
    max_daily_trades: int = 5
    daily_stop_loss: Decimal = Decimal("10")  # USD
    stop_loss_percent: Decimal = Decimal("0.01")  # 1%
    max_position_duration_seconds: float = 600.0
    monitor_interval_seconds: float = 5.0


class LiquiditySettings(BaseSettings):
    """Order-book liquidity model thresholds."""

    model_config = SettingsConfigDict(env_prefix="LIQUIDITY_")

    min_liquidity: Decimal = Decimal("500")  # USD depth within band
    max_slippage: Decimal = Decimal("0.0005")  # 0.05%
    depth_band: Decimal = Decimal("0.005")  # +/- 0.5% around mid
    max_price_deviation: Decimal = Decimal("0.002")  # optimal price clamp, 0.2%
    max_spread_percent: Decimal = Decimal("0.2")
    orderbook_depth: int = 50


class FeeSettings(BaseSettings):
    """Bybit fee structure (Non-VIP base tier)."""

    model_config = SettingsConfigDict(env_prefix="FEES_")

    perp_taker: Decimal = Decimal("0.00055")  # 0.055%
    perp_maker: Decimal = Decimal("0.0002")  # 0.02%


class RecoverySettings(BaseSettings):
    """Startup reconciliation and emergency cleanup parameters."""

    model_config = SettingsConfigDict(env_prefix="RECOVERY_")

    max_order_age_seconds: float = 600.0
    stale_position_hours: float = 24.0
    emergency_max_retries: int = 3


class StorageSettings(BaseSettings):
    """SQLite storage location."""

    model_config = SettingsConfigDict(env_prefix="STORAGE_")

    db_path: str = "data/settlement_monitor.db"


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    exchange: ExchangeSettings = ExchangeSettings()
    settlement: SettlementSettings = SettlementSettings()
    trading: TradingSettings = TradingSettings()
    risk: RiskSettings = RiskSettings()
    liquidity: LiquiditySettings = LiquiditySettings()
    fees: FeeSettings = FeeSettings()
    recovery: RecoverySettings = RecoverySettings()
    storage: StorageSettings = StorageSettings()
