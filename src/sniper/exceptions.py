"""Custom exceptions for the timed-entry futures bot.

All exchange, feed and execution exceptions live here to avoid circular
imports between modules. Each class maps to one failure kind recorded on
the cycle outcome, so logs and alerts can tell them apart.
"""


class SniperError(Exception):
    """Base exception for all bot errors."""

    kind = "error"


class ExchangeApiError(SniperError):
    """Raised when the exchange rejects a request or cannot be reached.

    Args:
        code: Exchange error code (e.g. "-2019"), or "network"/"http_<status>".
        message: Exchange error message or transport error text.
    """

    kind = "exchange_api"

    def __init__(self, code: str, message: str = "") -> None:
        self.code = code
        self.message = message
        super().__init__(f"Exchange API error: {code}" + (f" ({message})" if message else ""))


class AuthExpired(ExchangeApiError):
    """Raised when a request signature is rejected as expired after the retry."""

    kind = "auth_expired"


class RuleFetchFailed(SniperError):
    """Raised when balance, exchange rules or leverage could not be fetched."""

    kind = "rule_fetch_failed"


class FeedNotReady(SniperError):
    """Raised when no quote is cached for the symbol at sizing time."""

    kind = "feed_not_ready"


class StaleQuote(FeedNotReady):
    """Raised when the cached quote is older than the configured limit."""

    kind = "stale_quote"


class InsufficientSize(FeedNotReady):
    """Raised when the derived quantity rounds down to zero."""

    kind = "insufficient_size"


class EntryRejected(SniperError):
    """Raised when the exchange rejects the entry market order."""

    kind = "entry_rejected"


class ProtectionFailed(SniperError):
    """Raised when the protective order failed after all retries.

    The entry is filled and the position is now UNPROTECTED.
    """

    kind = "protection_failed"


class NoSymbolSelected(SniperError):
    """Raised when no override, configured symbol or funding candidate exists."""

    kind = "no_symbol"


class ProtectionPending(SniperError):
    """Raised when a cycle starts while a handed-off protective order is still unplaced."""

    kind = "protection_pending"
