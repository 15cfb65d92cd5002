"""Binance USD-M futures REST client over httpx.

Every signed call is signed immediately before dispatch. When the exchange
rejects a signature as expired the request is re-signed and retried
exactly once; a second expiry raises AuthExpired carrying the exchange
error code. All numeric fields are converted through Decimal(str(value)).
"""

import asyncio
from decimal import Decimal
from typing import Any
from urllib.parse import urlencode

import httpx

from sniper.config import ExchangeSettings
from sniper.exceptions import AuthExpired, ExchangeApiError
from sniper.exchange.client import ExchangeClient
from sniper.exchange.signer import RequestSigner
from sniper.exchange.types import format_decimal
from sniper.logging import get_logger
from sniper.models import OrderResult, OrderSide, ProtectiveOrderRequest, TradingRules

logger = get_logger(__name__)

API_KEY_HEADER = "X-MBX-APIKEY"


def _to_decimal(value: Any) -> Decimal:
    if value in (None, ""):
        return Decimal("0")
    return Decimal(str(value))


def _parse_error(response: httpx.Response) -> ExchangeApiError:
    """Extract the exchange error code from a failed response.

    Binance error bodies look like {"code": -2019, "msg": ...}; anything
    else maps to the HTTP status.
    """
    try:
        payload = response.json()
    except ValueError:
        return ExchangeApiError(f"http_{response.status_code}", response.text[:200])

    if isinstance(payload, dict) and payload.get("code") is not None:
        return ExchangeApiError(str(payload["code"]), str(payload.get("msg", "")))
    return ExchangeApiError(f"http_{response.status_code}", response.text[:200])


class BinanceFuturesClient(ExchangeClient):
    """Concrete Binance USD-M futures client.

    Args:
        settings: Exchange credentials, endpoints and recv-window.
        http_client: Optional pre-built httpx client (tests inject a MockTransport).
        signer: Optional signer; built from settings when omitted.
    """

    def __init__(
        self,
        settings: ExchangeSettings,
        http_client: httpx.AsyncClient | None = None,
        signer: RequestSigner | None = None,
    ) -> None:
        self._settings = settings
        self._api_key = settings.api_key.get_secret_value()
        self._signer = signer or RequestSigner(
            settings.api_secret.get_secret_value(),
            recv_window_ms=settings.recv_window_ms,
        )
        self._http = http_client or httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=settings.request_timeout,
        )
        self._expired_codes = set(settings.expired_signature_codes)

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._http.aclose()
        logger.info("exchange_client_closed")

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        *,
        signed: bool = True,
        api_key: bool | None = None,
    ) -> Any:
        """Send one request, re-signing and retrying once on signature expiry.

        Args:
            method: HTTP method.
            path: Endpoint path (joined to base_url).
            params: Query parameters, in the order they will be signed.
            signed: Attach timestamp/recvWindow/signature.
            api_key: Send the API-key header (defaults to `signed`).

        Returns:
            Decoded JSON body.

        Raises:
            AuthExpired: Signature rejected as expired twice.
            ExchangeApiError: Any other exchange or transport failure.
        """
        query = urlencode(params or {})
        send_key = signed if api_key is None else api_key

        for attempt in range(2):
            headers = {API_KEY_HEADER: self._api_key} if send_key else {}
            full_query = query
            if signed:
                # Sign as late as possible: the timestamp ages from here
                auth = self._signer.sign(method, path, query).as_query()
                full_query = f"{query}&{auth}" if query else auth
            url = f"{path}?{full_query}" if full_query else path

            try:
                response = await self._http.request(method, url, headers=headers)
            except httpx.TimeoutException as exc:
                raise ExchangeApiError("timeout", str(exc)) from exc
            except httpx.RequestError as exc:
                raise ExchangeApiError("network", str(exc)) from exc

            if response.is_success:
                try:
                    return response.json()
                except ValueError as exc:
                    logger.warning("exchange_bad_response", method=method, path=path)
                    raise ExchangeApiError("bad_response", response.text[:200]) from exc

            error = _parse_error(response)
            if signed and error.code in self._expired_codes:
                if attempt == 0:
                    logger.warning("signature_expired_retrying", path=path, code=error.code)
                    await asyncio.sleep(self._settings.expiry_retry_delay)
                    continue
                logger.error("signature_expired_after_retry", path=path, code=error.code)
                raise AuthExpired(error.code, error.message)

            logger.warning(
                "exchange_request_failed",
                method=method,
                path=path,
                status=response.status_code,
                code=error.code,
                message=error.message,
            )
            raise error

        # Unreachable: the loop either returns or raises
        raise AuthExpired("expired_signature")

    async def fetch_available_balance(self, asset: str) -> Decimal:
        """Return availableBalance of the asset from the futures wallet."""
        balances = await self._request("GET", "/fapi/v3/balance")
        for entry in balances:
            if entry.get("asset") == asset:
                available = _to_decimal(entry.get("availableBalance"))
                logger.info("balance_fetched", asset=asset, available=str(available))
                return available
        raise ExchangeApiError("missing_asset", f"{asset} not in futures wallet")

    async def fetch_trading_rules(self, symbol: str) -> TradingRules:
        """Extract LOT_SIZE and PRICE_FILTER rules from the public exchange info."""
        info = await self._request("GET", "/fapi/v1/exchangeInfo", signed=False)
        for entry in info.get("symbols", []):
            if entry.get("symbol") != symbol:
                continue
            filters = {f.get("filterType"): f for f in entry.get("filters", [])}
            lot_size = filters.get("LOT_SIZE", {})
            price_filter = filters.get("PRICE_FILTER", {})
            rules = TradingRules(
                symbol=symbol,
                step_size=_to_decimal(lot_size.get("stepSize")),
                tick_size=_to_decimal(price_filter.get("tickSize")),
                min_qty=_to_decimal(lot_size.get("minQty")),
            )
            if rules.step_size <= 0 or rules.tick_size <= 0:
                raise ExchangeApiError("invalid_filters", f"{symbol} has no step/tick size")
            logger.info(
                "trading_rules_fetched",
                symbol=symbol,
                step_size=str(rules.step_size),
                tick_size=str(rules.tick_size),
            )
            return rules
        raise ExchangeApiError("unknown_symbol", symbol)

    async def change_leverage(self, symbol: str, leverage: int) -> int:
        """Set leverage and return the value the exchange applied."""
        result = await self._request(
            "POST", "/fapi/v1/leverage", {"symbol": symbol, "leverage": leverage}
        )
        applied = int(result.get("leverage", leverage))
        logger.info("leverage_set", symbol=symbol, leverage=applied)
        return applied

    async def place_market_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        reduce_only: bool = False,
    ) -> OrderResult:
        """Submit a MARKET order with a RESULT acknowledgement (includes avgPrice)."""
        params: dict[str, Any] = {
            "symbol": symbol,
            "side": side.value,
            "type": "MARKET",
            "quantity": format_decimal(quantity),
            "newOrderRespType": "RESULT",
        }
        if reduce_only:
            params["reduceOnly"] = "true"

        logger.info(
            "creating_market_order",
            symbol=symbol,
            side=side.value,
            quantity=str(quantity),
            reduce_only=reduce_only,
        )
        result = await self._request("POST", "/fapi/v1/order", params)
        return self._parse_order(result, symbol, side)

    async def place_stop_order(self, request: ProtectiveOrderRequest) -> OrderResult:
        """Submit a STOP (stop-limit) order."""
        params: dict[str, Any] = {
            "symbol": request.symbol,
            "side": request.side.value,
            "type": "STOP",
            "quantity": format_decimal(request.quantity),
            "price": format_decimal(request.limit_price),
            "stopPrice": format_decimal(request.stop_price),
            "timeInForce": request.time_in_force,
            "newOrderRespType": "RESULT",
        }
        if request.reduce_only:
            params["reduceOnly"] = "true"

        logger.info(
            "creating_stop_order",
            symbol=request.symbol,
            side=request.side.value,
            quantity=str(request.quantity),
            stop_price=str(request.stop_price),
            limit_price=str(request.limit_price),
        )
        result = await self._request("POST", "/fapi/v1/order", params)
        return self._parse_order(result, request.symbol, request.side)

    async def create_listen_key(self) -> str:
        """Create a user-data stream listen key (API key only, unsigned)."""
        result = await self._request("POST", "/fapi/v1/listenKey", signed=False, api_key=True)
        listen_key = str(result["listenKey"])
        logger.info("listen_key_created")
        return listen_key

    async def keepalive_listen_key(self) -> None:
        """Extend the listen key's validity by another hour."""
        await self._request("PUT", "/fapi/v1/listenKey", signed=False, api_key=True)
        logger.debug("listen_key_kept_alive")

    @staticmethod
    def _parse_order(result: dict, symbol: str, side: OrderSide) -> OrderResult:
        order = OrderResult(
            order_id=str(result.get("orderId", "")),
            symbol=symbol,
            side=side,
            filled_qty=_to_decimal(result.get("executedQty")),
            avg_price=_to_decimal(result.get("avgPrice")),
            status=str(result.get("status", "")),
            raw=result,
        )
        logger.info(
            "order_acknowledged",
            order_id=order.order_id,
            symbol=symbol,
            side=side.value,
            status=order.status,
            filled_qty=str(order.filled_qty),
            avg_price=str(order.avg_price),
        )
        return order
