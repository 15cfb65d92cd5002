"""Shared test fixtures for the funding sniper."""

import logging
from datetime import datetime, timedelta

import pytest
import structlog

from sniper.config import (
    AppSettings,
    ExchangeSettings,
    ProtectionSettings,
    StreamSettings,
    TimingSettings,
    TradingSettings,
)
from sniper.logging import setup_logging


class FakeClock:
    """Aware wall clock that only moves when told to (or when slept on)."""

    def __init__(self, start: datetime) -> None:
        self.current = start
        self.sleeps: list[float] = []

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


@pytest.fixture
def mock_settings() -> AppSettings:
    """Return AppSettings with test defaults and dummy API keys."""
    return AppSettings(
        log_level="DEBUG",
        exchange=ExchangeSettings(
            api_key="test-api-key",  # type: ignore[arg-type]
            api_secret="test-api-secret",  # type: ignore[arg-type]
            base_url="https://fapi.test",
            expiry_retry_delay=0,
        ),
        trading=TradingSettings(symbol="BTCUSDT", leverage=10),
        protection=ProtectionSettings(backoff_ms=[0]),
        timing=TimingSettings(),
        stream=StreamSettings(reconnect_initial_delay=0.01, reconnect_max_delay=0.02),
    )


@pytest.fixture
def make_clock():
    """Factory for FakeClock instances starting at a given datetime."""
    return FakeClock


@pytest.fixture
def configured_logging():
    """Run the test with the production structlog pipeline installed."""
    setup_logging("DEBUG", log_format="json")
    yield
    structlog.reset_defaults()
    logging.getLogger().handlers = []
