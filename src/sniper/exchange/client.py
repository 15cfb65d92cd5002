"""Abstract exchange client interface.

Defines the contract for all exchange implementations.
Execution code depends only on this interface, keeping
exchange-specific endpoints and payloads in the concrete client.
"""

from abc import ABC, abstractmethod
from decimal import Decimal

from sniper.models import OrderResult, OrderSide, ProtectiveOrderRequest, TradingRules


class ExchangeClient(ABC):
    """Abstract base class for futures exchange REST clients."""

    @abstractmethod
    async def close(self) -> None:
        """Release HTTP resources."""
        ...

    @abstractmethod
    async def fetch_available_balance(self, asset: str) -> Decimal:
        """Return the available balance of a margin asset."""
        ...

    @abstractmethod
    async def fetch_trading_rules(self, symbol: str) -> TradingRules:
        """Return step size and tick size for a symbol."""
        ...

    @abstractmethod
    async def change_leverage(self, symbol: str, leverage: int) -> int:
        """Set leverage for a symbol and return the leverage now in effect."""
        ...

    @abstractmethod
    async def place_market_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        reduce_only: bool = False,
    ) -> OrderResult:
        """Submit a market order and return its fill acknowledgement."""
        ...

    @abstractmethod
    async def place_stop_order(self, request: ProtectiveOrderRequest) -> OrderResult:
        """Submit a reduce-only stop-limit order."""
        ...

    @abstractmethod
    async def create_listen_key(self) -> str:
        """Create a key authorizing the private account-update stream."""
        ...

    @abstractmethod
    async def keepalive_listen_key(self) -> None:
        """Extend the validity of the current listen key."""
        ...
