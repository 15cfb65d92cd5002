"""Configuration system using pydantic-settings with environment variable loading."""

from datetime import time, timedelta
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, SecretStr, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ExchangeSettings(BaseSettings):
    """Binance USD-M futures connection and request-signing settings."""

    model_config = SettingsConfigDict(env_prefix="BINANCE_")

    api_key: SecretStr = SecretStr("")
    api_secret: SecretStr = SecretStr("")
    base_url: str = "https://fapi.binance.com"
    ws_url: str = "wss://fstream.binance.com/ws"
    recv_window_ms: int = 5000
    request_timeout: float = 5.0
    # -1021: timestamp outside recvWindow
    expired_signature_codes: list[str] = ["-1021"]
    expiry_retry_delay: float = 0.1


class TradingSettings(BaseSettings):
    """Entry sizing and symbol selection parameters."""

    model_config = SettingsConfigDict(env_prefix="TRADING_")

    symbol: str = ""
    entry_side: Literal["BUY", "SELL"] = "BUY"
    leverage: int = 10
    balance_buffer_ratio: Decimal = Decimal("0.95")
    quote_asset: str = "USDT"
    # None accepts quotes of any age (see DESIGN.md, staleness policy)
    max_quote_age_ms: int | None = None
    select_by_funding: bool = False
    funding_threshold: Decimal = Decimal("0.006")  # 0.6% per funding period
    force_close_enabled: bool = False

    @field_validator("balance_buffer_ratio")
    @classmethod
    def _buffer_below_one(cls, value: Decimal) -> Decimal:
        if not Decimal("0") < value < Decimal("1"):
            raise ValueError("balance_buffer_ratio must be in (0, 1)")
        return value


class ProtectionSettings(BaseSettings):
    """Protective stop-limit order parameters."""

    model_config = SettingsConfigDict(env_prefix="PROTECTION_")

    stop_loss_percent: Decimal = Decimal("0.002")  # 0.2% trigger distance
    limit_loss_percent: Decimal = Decimal("0.003")  # 0.3% worst fill
    max_attempts: int = 8
    backoff_ms: list[int] = [200]
    time_in_force: str = "GTC"
    handoff_timeout: float = 30.0
    mailbox_ttl: float = 120.0
    # Post the protective order to the mailbox for the scheduled protection job
    handoff: bool = False

    @field_validator("limit_loss_percent")
    @classmethod
    def _limit_beyond_stop(cls, value: Decimal, info: ValidationInfo) -> Decimal:
        stop = info.data.get("stop_loss_percent")
        if stop is not None and value < stop:
            raise ValueError("limit_loss_percent must be >= stop_loss_percent")
        return value


class TimingSettings(BaseSettings):
    """Wall-clock offsets for entry and protection submission."""

    model_config = SettingsConfigDict(env_prefix="TIMING_")

    timezone: str = "Asia/Kolkata"
    entry_second: int = 59
    entry_millisecond: int = 780
    # 60 targets the boundary into the next minute
    protection_second: int = 60
    protection_millisecond: int = 250

    @field_validator("entry_second", "protection_second")
    @classmethod
    def _second_in_minute(cls, value: int) -> int:
        if not 0 <= value <= 60:
            raise ValueError("second offsets must be in [0, 60]")
        return value

    @field_validator("entry_millisecond", "protection_millisecond")
    @classmethod
    def _millisecond_in_second(cls, value: int) -> int:
        if not 0 <= value < 1000:
            raise ValueError("millisecond offsets must be in [0, 999]")
        return value


class StreamSettings(BaseSettings):
    """Websocket stream behaviour."""

    model_config = SettingsConfigDict(env_prefix="STREAM_")

    reconnect_initial_delay: float = 2.0
    reconnect_max_delay: float = 30.0
    ping_interval: float = 20.0
    account_stream_enabled: bool = False
    listen_key_keepalive_seconds: int = 30 * 60


class ScheduledJob(BaseModel):
    """A job fired at a wall-clock time, daily or every `every` from it.

    With every="PT8H" and at=17:29:57 the job fires at 01:29:57, 09:29:57
    and 17:29:57, once per funding interval.
    """

    name: str
    at: time
    every: timedelta | None = None
    handler: Literal["cycle", "protection"] = "cycle"
    timezone: str | None = None

    @field_validator("every")
    @classmethod
    def _every_within_day(cls, value: timedelta | None) -> timedelta | None:
        if value is not None and not timedelta(0) < value <= timedelta(days=1):
            raise ValueError("every must be positive and at most one day")
        return value


class SchedulerSettings(BaseSettings):
    """Job registrations.

    Jobs are supplied as JSON, e.g.
    SCHEDULER_JOBS='[{"name": "entry", "at": "17:29:57", "every": "PT8H", "handler": "cycle"}]'
    """

    model_config = SettingsConfigDict(env_prefix="SCHEDULER_")

    enabled: bool = True
    jobs: list[ScheduledJob] = []


class ApiSettings(BaseSettings):
    """Control API server configuration."""

    model_config = SettingsConfigDict(env_prefix="API_")

    host: str = "0.0.0.0"
    port: int = 8080
    enabled: bool = True


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    exchange: ExchangeSettings = ExchangeSettings()
    trading: TradingSettings = TradingSettings()
    protection: ProtectionSettings = ProtectionSettings()
    timing: TimingSettings = TimingSettings()
    stream: StreamSettings = StreamSettings()
    scheduler: SchedulerSettings = SchedulerSettings()
    api: ApiSettings = ApiSettings()
