"""Settings tests — defaults, env overrides, validation."""

import pytest
from pydantic import ValidationError

from pricerelay.config import Settings


def test_defaults_match_reference_deployment(monkeypatch):
    for name in ("PRICERELAY_PORT", "PRICERELAY_REDIS_HOST", "PRICERELAY_CHANNEL"):
        monkeypatch.delenv(name, raising=False)

    s = Settings()

    assert s.host == "0.0.0.0"
    assert s.port == 3000
    assert s.channel == "stock_prices"
    assert s.redis_url == "redis://redis:6379/0"


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("PRICERELAY_PORT", "8080")
    monkeypatch.setenv("PRICERELAY_REDIS_HOST", "cache.internal")
    monkeypatch.setenv("PRICERELAY_REDIS_PORT", "6380")
    monkeypatch.setenv("PRICERELAY_SYMBOLS", '["BTC", "ETH"]')

    s = Settings()

    assert s.port == 8080
    assert s.redis_url == "redis://cache.internal:6380/0"
    assert s.symbols == ["BTC", "ETH"]


def test_memory_broker_url():
    assert Settings(redis_host="memory").redis_url == "memory://"


def test_redis_client_gets_a_connect_timeout(monkeypatch):
    monkeypatch.setenv("PRICERELAY_REDIS_CONNECT_TIMEOUT", "0.5")

    s = Settings()

    assert s.redis_client_options == {"socket_connect_timeout": 0.5}


@pytest.mark.parametrize(
    "overrides",
    [
        {"send_queue_size": 0},
        {"send_timeout_seconds": 0},
        {"redis_connect_timeout": 0},
        {"publish_interval_seconds": -1},
        {"reconnect_min_delay": 5.0, "reconnect_max_delay": 1.0},
        {"reconnect_factor": 0.5},
        {"channel": ""},
    ],
)
def test_invalid_settings_rejected(overrides):
    with pytest.raises(ValidationError):
        Settings(**overrides)
