"""HMAC-SHA256 request signing for authenticated Binance futures calls.

A signature is only valid for the exchange's recv-window after its
timestamp, so sign() reads the clock itself and must be called right
before the request goes out. Nothing here caches timestamps.

The signed message is the exact query string sent, with timestamp and
recvWindow appended, followed by any request body.
"""

import hashlib
import hmac
import time
from collections.abc import Callable

from sniper.models import SignedRequest

DEFAULT_RECV_WINDOW_MS = 5000


def generate_signature(secret: str, message: str) -> str:
    """Return the hex HMAC-SHA256 of message keyed with secret."""
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


class RequestSigner:
    """Builds timestamp/recvWindow/signature for one request.

    Stateless apart from the credential secret.

    Args:
        secret: API secret used as the HMAC key.
        recv_window_ms: Exchange tolerance for timestamp skew.
        clock: Returns the current Unix time in seconds (injectable for tests).
    """

    def __init__(
        self,
        secret: str,
        recv_window_ms: int = DEFAULT_RECV_WINDOW_MS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret = secret
        self._recv_window_ms = recv_window_ms
        self._clock = clock

    @property
    def recv_window_ms(self) -> int:
        return self._recv_window_ms

    def canonical_string(self, query: str, body: str, timestamp: int) -> str:
        """Build the exact string covered by the signature."""
        auth = f"timestamp={timestamp}&recvWindow={self._recv_window_ms}"
        signed_query = f"{query}&{auth}" if query else auth
        return signed_query + body

    def sign(self, method: str, path: str, query: str = "", body: str = "") -> SignedRequest:
        """Sign a request with a fresh millisecond timestamp.

        Binance signs the parameters only, so method and path do not
        enter the message.
        """
        timestamp = int(self._clock() * 1000)
        message = self.canonical_string(query, body, timestamp)
        return SignedRequest(
            timestamp=timestamp,
            recv_window_ms=self._recv_window_ms,
            signature=generate_signature(self._secret, message),
        )
