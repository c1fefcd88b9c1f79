"""Configuration system using pydantic-settings with environment variable loading.

AppSettings is constructed once at startup; each component receives only the
sub-settings object it needs through its constructor.
"""

from decimal import Decimal
from typing import Literal

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

APT_COIN = "0x1::aptos_coin::AptosCoin"
USDC_COIN = (
    "0xf22bede237a07e121b56d91a491eb7bcdfd1f5907926a9e58338f964a01b17fa"
    "::asset::USDC"
)


class ChainSettings(BaseSettings):
    """Chain executor settings (live Aptos adapter or in-memory mock)."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_")

    mode: Literal["mock", "live"] = "mock"
    node_url: str = "https://fullnode.mainnet.aptoslabs.com/v1"
    private_key: SecretStr = SecretStr("")

    # Conversion pair: stable source asset -> target asset
    source_asset: str = USDC_COIN
    target_asset: str = APT_COIN
    source_decimals: int = 6
    target_decimals: int = 8

    swap_module: str = (
        "0xa5d3ac4d429052674ed38adc62d010e52d7c24ca159194d17ddc196ddb7e480b::pool"
    )
    swap_function: str = "swap_x_to_y"
    lending_module: str = (
        "0x2fe576faa841347a9b1b32c869685deb75a15e3f62dfe37cbd6d52cc403a16f6::pool"
    )
    lending_position_id: str = "1"

    call_timeout_seconds: float = 30.0

    # Mock executor only
    mock_price: Decimal = Decimal("5")  # source units per target unit
    mock_initial_balance: Decimal = Decimal("1000")


class SchedulerSettings(BaseSettings):
    """Plan runner parameters."""

    model_config = SettingsConfigDict(env_prefix="SCHEDULER_")

    tick_interval_seconds: float = 5.0
    max_concurrent_plans: int = 10
    amount_precision: Decimal = Decimal("0.000001")  # source asset has 6 decimals


class PriceFeedSettings(BaseSettings):
    """Historical price source for momentum sizing.

    All fields configurable via PRICE_ environment variable prefix.
    """

    model_config = SettingsConfigDict(env_prefix="PRICE_")

    provider: Literal["coingecko", "exchange"] = "coingecko"
    asset_id: str = "aptos"
    history_days: int = 31  # covers both the 7-day and the 30-day average
    interval: str | None = "daily"

    # CoinGecko
    base_url: str = "https://api.coingecko.com/api/v3"
    api_key: SecretStr = SecretStr("")

    # Exchange OHLCV (ccxt)
    exchange_id: str = "binance"
    symbol_map: dict[str, str] = {"aptos": "APT/USDT"}

    timeout_seconds: float = 10.0
    max_retries: int = 3
    retry_base_delay: float = 1.0


class MarketSettings(BaseSettings):
    """Lending market feed and best-market cache policy.

    All fields configurable via MARKET_ environment variable prefix.
    """

    model_config = SettingsConfigDict(env_prefix="MARKET_")

    api_url: str = "https://price-api.joule.finance/api/market"
    cache_ttl_seconds: int = 900
    refresh_interval_seconds: int = 300
    cache_path: str | None = "data/best_market.json"
    allow_fallback: bool = False

    timeout_seconds: float = 10.0
    max_retries: int = 3
    retry_base_delay: float = 1.0


class StoreSettings(BaseSettings):
    """Plan and transaction persistence."""

    model_config = SettingsConfigDict(env_prefix="STORE_")

    db_path: str = "data/dca.db"


class ApiSettings(BaseSettings):
    """HTTP API server configuration."""

    model_config = SettingsConfigDict(env_prefix="API_")

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8080


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"
    chain: ChainSettings = ChainSettings()
    scheduler: SchedulerSettings = SchedulerSettings()
    price_feed: PriceFeedSettings = PriceFeedSettings()
    market: MarketSettings = MarketSettings()
    store: StoreSettings = StoreSettings()
    api: ApiSettings = ApiSettings()
