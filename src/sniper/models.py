"""Shared data models for the timed-entry futures bot.

CRITICAL: All monetary values use Decimal. Never use float for prices, quantities, or balances.
"""

import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class OrderSide(str, Enum):
    """Order direction, using the exchange's spelling."""

    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class CycleState(str, Enum):
    """States of a single trading cycle."""

    IDLE = "idle"
    RULES_FETCHED = "rules_fetched"
    FEED_ACTIVE = "feed_active"
    SIZED = "sized"
    ENTRY_SUBMITTED = "entry_submitted"
    PROTECTION_SUBMITTED = "protection_submitted"
    CLOSED = "closed"
    FAILED = "failed"


@dataclass
class Quote:
    """Latest top-of-book for one symbol plus the quantity derived from it."""

    bid: Decimal
    ask: Decimal
    observed_at_ms: int
    derived_quantity: Decimal


@dataclass(frozen=True)
class SizingInput:
    """Inputs to a single quantity calculation."""

    available_balance: Decimal
    leverage: int
    reference_price: Decimal
    step_size: Decimal
    balance_buffer_ratio: Decimal


@dataclass(frozen=True)
class ProtectivePrice:
    """Stop trigger and limit price for a protective stop-limit order."""

    stop_price: Decimal
    limit_price: Decimal


@dataclass(frozen=True)
class SignedRequest:
    """Authentication parameters generated immediately before dispatch."""

    timestamp: int
    recv_window_ms: int
    signature: str

    def as_query(self) -> str:
        """Render the authentication fields as query-string parameters.

        The signature must come last: it covers everything before it.
        """
        return (
            f"timestamp={self.timestamp}&recvWindow={self.recv_window_ms}"
            f"&signature={self.signature}"
        )


@dataclass(frozen=True)
class TradingRules:
    """Exchange quantization rules for one symbol."""

    symbol: str
    step_size: Decimal
    tick_size: Decimal
    min_qty: Decimal = Decimal("0")


@dataclass
class OrderResult:
    """Acknowledgement of an order accepted by the exchange."""

    order_id: str
    symbol: str
    side: OrderSide
    filled_qty: Decimal
    avg_price: Decimal
    status: str
    raw: dict = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class ProtectiveOrderRequest:
    """A protective order waiting to be submitted (mailbox payload)."""

    symbol: str
    side: OrderSide
    quantity: Decimal
    stop_price: Decimal
    limit_price: Decimal
    reduce_only: bool = True
    time_in_force: str = "GTC"
    cycle_id: str = ""


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful outcome of a bounded operation."""

    value: T
    attempts: int = 1


@dataclass(frozen=True)
class Err:
    """Failed outcome of a bounded operation."""

    kind: str
    error: str
    attempts: int = 1


Result = Ok[T] | Err


@dataclass
class CycleOutcome:
    """What happened in one trading cycle. Not persisted."""

    cycle_id: str
    symbol: str
    state: CycleState = CycleState.IDLE
    entry: OrderResult | None = None
    protection: OrderResult | None = None
    protective_prices: ProtectivePrice | None = None
    quantity: Decimal | None = None
    protection_handed_off: bool = False
    error_kind: str | None = None
    error: str | None = None
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly view with Decimals rendered as strings."""

        def _order(order: OrderResult | None) -> dict | None:
            if order is None:
                return None
            return {
                "order_id": order.order_id,
                "side": order.side.value,
                "filled_qty": str(order.filled_qty),
                "avg_price": str(order.avg_price),
                "status": order.status,
            }

        prices = self.protective_prices
        return {
            "cycle_id": self.cycle_id,
            "symbol": self.symbol,
            "state": self.state.value,
            "quantity": str(self.quantity) if self.quantity is not None else None,
            "entry": _order(self.entry),
            "protection": _order(self.protection),
            "protection_handed_off": self.protection_handed_off,
            "protective_prices": (
                {"stop_price": str(prices.stop_price), "limit_price": str(prices.limit_price)}
                if prices
                else None
            ),
            "error_kind": self.error_kind,
            "error": self.error,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }
