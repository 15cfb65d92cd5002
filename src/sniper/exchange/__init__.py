"""Exchange client layer -- signed Binance USD-M futures REST integration."""

from sniper.exchange.binance_client import BinanceFuturesClient
from sniper.exchange.client import ExchangeClient
from sniper.exchange.signer import RequestSigner
from sniper.exchange.types import round_to_step, round_to_tick

__all__ = [
    "BinanceFuturesClient",
    "ExchangeClient",
    "RequestSigner",
    "round_to_step",
    "round_to_tick",
]
