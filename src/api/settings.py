from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    LOG_LEVEL: str = "INFO"

    # Chain node
    RPC_HTTP_URL: str = "https://bsc-dataseed.binance.org"
    RPC_WS_URL: Optional[str] = None
    PAIR_ADDRESS: str = "0x1df65d3a75aecd000a9c17c97e99993af01dbcd1"
    CURVE_RPC_URL: str = "https://data-seed-prebsc-1-s1.binance.org:8545"

    # Partner transaction stream (disabled when unset)
    EXTERNAL_STREAM_URL: Optional[str] = None

    # Feed tuning
    HISTORY_CAPACITY: int = 30
    RECONNECT_DELAY_SECONDS: float = 3.0
    ATTACH_DEBOUNCE_SECONDS: float = 5.0
    LOOKBACK_BLOCKS: int = 500
    SUBSCRIBER_QUEUE_SIZE: int = 100
    # Only behind a reverse proxy that sets X-Forwarded-For itself
    TRUST_FORWARDED_FOR: bool = False

    # Tracked token
    TOKEN_DECIMALS: int = 6
    BASE_DECIMALS: int = 18
    TOKEN_TICKER: Optional[str] = "OCICAT"
    TOKEN_IMAGE: Optional[str] = None

    # Snapshot durability: Redis wins over the file when both are set
    REDIS_URL: Optional[str] = None
    SNAPSHOT_PATH: Optional[str] = None

    # Synthetic feed instead of a node
    USE_MOCK_SOURCE: bool = False

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    return Settings()
