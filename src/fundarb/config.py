"""Configuration system using pydantic-settings with environment variable loading."""

from dataclasses import dataclass
from decimal import Decimal

from pydantic import BaseModel, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class ExchangeCredentials(BaseModel):
    """API credentials for a single exchange."""

    api_key: SecretStr = SecretStr("")
    api_secret: SecretStr = SecretStr("")
    password: SecretStr = SecretStr("")  # OKX passphrase
    testnet: bool = False


class ExchangesSettings(BaseSettings):
    """Which exchanges to scan and how to authenticate against them.

    Credentials are nested, e.g. EXCHANGES_BYBIT__API_KEY=...
    """

    model_config = SettingsConfigDict(
        env_prefix="EXCHANGES_",
        env_nested_delimiter="__",
    )

    enabled: list[str] = ["binance", "bybit", "okx"]
    binance: ExchangeCredentials = ExchangeCredentials()
    bybit: ExchangeCredentials = ExchangeCredentials()
    okx: ExchangeCredentials = ExchangeCredentials()

    def credentials_for(self, exchange_id: str) -> ExchangeCredentials:
        """Return credentials for an exchange id, empty if none configured."""
        creds = getattr(self, exchange_id, None)
        if isinstance(creds, ExchangeCredentials):
            return creds
        return ExchangeCredentials()


class EngineSettings(BaseSettings):
    """Driver loop timing, execution window and entry sizing."""

    model_config = SettingsConfigDict(env_prefix="ENGINE_")

    enabled_on_start: bool = True
    scan_interval_seconds: float = 10.0
    symbols: list[str] | None = None  # None = every symbol the exchanges list

    # Execution window around funding settlement
    admission_window_seconds: float = 30.0
    watch_tick_seconds: float = 1.0
    fire_lead_seconds: float = 1.0
    unwind_delay_seconds: float = 2.0

    # Ranking limits
    broadcast_limit: int = 50
    execution_limit: int = 15
    max_positions_per_scenario: int = 3

    # Entry sizing: margin = min(free * fraction, cap); size = margin * leverage
    target_leverage: int = 5
    entry_margin_fraction: Decimal = Decimal("0.01")
    max_margin_per_trade: Decimal = Decimal("100")

    completed_history_size: int = 200


class RiskSettings(BaseSettings):
    """Default portfolio risk limits. Mutable at runtime via update_limits."""

    model_config = SettingsConfigDict(env_prefix="RISK_")

    max_leverage: Decimal = Decimal("10")
    max_position_size: Decimal = Decimal("100000")  # USD notional
    max_portfolio_risk: Decimal = Decimal("0.05")  # 5% of portfolio per trade
    max_daily_loss: Decimal = Decimal("1000")  # USD
    max_open_positions: int = 20
    correlation_limit: Decimal = Decimal("0.7")


class ScenarioSettings(BaseSettings):
    """Per-scenario profit thresholds and classifier parameters."""

    model_config = SettingsConfigDict(env_prefix="SCENARIO_")

    opposite_sign_min_profit: Decimal = Decimal("0.001")  # 0.1%
    same_sign_spread_min_profit: Decimal = Decimal("0.0025")  # 0.25%
    price_gap_min_profit: Decimal = Decimal("0.0025")  # 0.25%
    timing_desync_min_profit: Decimal = Decimal("0.0005")  # 0.05%
    same_direction_high_rate_min_profit: Decimal = Decimal("0.004")  # 0.4%

    price_gap_threshold: Decimal = Decimal("0.0025")
    timing_desync_window_seconds: float = 600.0  # 10 minutes
    high_rate_floor: Decimal = Decimal("0.004")


class NotificationSettings(BaseSettings):
    """Telegram alert channel. Falls back to log-only when disabled."""

    model_config = SettingsConfigDict(env_prefix="NOTIFY_")

    telegram_enabled: bool = False
    telegram_bot_token: SecretStr = SecretStr("")
    telegram_chat_id: str = ""
    timeout_seconds: float = 10.0


class ApiSettings(BaseSettings):
    """Control API server configuration."""

    model_config = SettingsConfigDict(env_prefix="API_")

    host: str = "0.0.0.0"
    port: int = 8080
    enabled: bool = True


@dataclass
class RiskLimitsUpdate:
    """Partial risk limits overlay. Non-None fields replace current values.

    Used by the control API to change limits without restarting.
    Validated as a whole when applied, see RiskLimits.merged().
    """

    max_leverage: Decimal | None = None
    max_position_size: Decimal | None = None
    max_portfolio_risk: Decimal | None = None
    max_daily_loss: Decimal | None = None
    max_open_positions: int | None = None
    correlation_limit: Decimal | None = None

    def as_dict(self) -> dict:
        """Return only the fields that were set."""
        return {k: v for k, v in self.__dict__.items() if v is not None}


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    exchanges: ExchangesSettings = ExchangesSettings()
    engine: EngineSettings = EngineSettings()
    risk: RiskSettings = RiskSettings()
    scenario: ScenarioSettings = ScenarioSettings()
    notify: NotificationSettings = NotificationSettings()
    api: ApiSettings = ApiSettings()
