"""Application configuration via environment variables.

Uses pydantic-settings to load config from env vars with PRICERELAY_ prefix.
No YAML files, no file-based config — just env vars (12-factor app style).

Learn: Every component also takes its values as constructor arguments, so
tests build their own objects instead of leaning on the singleton below.
"""

from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All app configuration. Set via PRICERELAY_* env vars."""

    # Server
    environment: str = "development"
    host: str = "0.0.0.0"
    port: int = 3000

    # Broker (Redis pub/sub). redis_host="memory" selects the in-process broker.
    redis_host: str = "redis"
    redis_port: int = 6379
    redis_db: int = 0
    redis_connect_timeout: float = 2.0
    channel: str = "stock_prices"

    # Per-client send bounds
    send_timeout_seconds: float = 5.0
    send_queue_size: int = 256

    # Subscription reconnect policy (exponential backoff + jitter)
    reconnect_min_delay: float = 0.5
    reconnect_max_delay: float = 30.0
    reconnect_factor: float = 2.0
    reconnect_jitter: float = 0.25

    # Event source
    publish_interval_seconds: float = 1.0
    symbols: list[str] = ["AAPL", "GOOG", "MSFT", "AMZN", "TSLA"]

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    model_config = {"env_prefix": "PRICERELAY_"}

    @property
    def redis_url(self) -> str:
        if self.redis_host == "memory":
            return "memory://"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    @property
    def redis_client_options(self) -> dict:
        # Connect timeout only: a read timeout would end an idle SUBSCRIBE
        return {"socket_connect_timeout": self.redis_connect_timeout}

    @model_validator(mode="after")
    def validate_bounds(self):
        """Reject settings that would make the relay stall or spin."""
        if self.send_timeout_seconds <= 0:
            raise ValueError("PRICERELAY_SEND_TIMEOUT_SECONDS must be positive")
        if self.redis_connect_timeout <= 0:
            raise ValueError("PRICERELAY_REDIS_CONNECT_TIMEOUT must be positive")
        if self.send_queue_size < 1:
            raise ValueError("PRICERELAY_SEND_QUEUE_SIZE must be at least 1")
        if self.publish_interval_seconds <= 0:
            raise ValueError("PRICERELAY_PUBLISH_INTERVAL_SECONDS must be positive")
        if self.reconnect_min_delay <= 0 or self.reconnect_factor < 1:
            raise ValueError(
                "PRICERELAY_RECONNECT_MIN_DELAY must be positive and "
                "PRICERELAY_RECONNECT_FACTOR at least 1"
            )
        if self.reconnect_max_delay < self.reconnect_min_delay:
            raise ValueError(
                "PRICERELAY_RECONNECT_MAX_DELAY must not be smaller than "
                "PRICERELAY_RECONNECT_MIN_DELAY"
            )
        if not self.channel:
            raise ValueError("PRICERELAY_CHANNEL must not be empty")
        return self


# Singleton — import this everywhere
settings = Settings()
