"""Process configuration loaded from env and .env files."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    """Server, exchange and notification settings (prefix ``CROSSBOT_``)."""

    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")

    max_observers: int = Field(default=10, ge=1)
    observer_queue_size: int = Field(default=64, ge=1)
    # also the SMA lookback: must hold the longest slow period (100)
    chart_history_limit: int = Field(default=500, ge=100)
    default_live_interval_ms: int = Field(default=60_000, gt=0)

    coinbase_api_url: str = "https://api.coinbase.com/v2"
    coinbase_exchange_url: str = "https://api.exchange.coinbase.com"
    coinbase_api_key: str = ""
    coinbase_api_secret: str = ""
    coinbase_passphrase: str = ""
    http_timeout_s: float = Field(default=10.0, gt=0)

    candle_chunk_limit: int = Field(default=300, ge=1)
    candle_max_retries: int = Field(default=5, ge=1)
    candle_retry_delay_s: float = Field(default=0.5, ge=0)
    candle_page_delay_s: float = Field(default=0.25, ge=0)

    telegram_api_url: str = "https://api.telegram.org"

    model_config = SettingsConfigDict(env_file=".env", env_prefix="CROSSBOT_", extra="ignore")


@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    return AppConfig()
