"""Private account-update stream feeding funding-fee notifications.

Creates a listen key, keeps it alive on a timer, and listens on
<ws_url>/<listenKey>. Only ACCOUNT_UPDATE events whose reason is
FUNDING_FEE are forwarded, to FundingState; nothing here touches sizing.
"""

import asyncio
import json
from collections.abc import Callable
from typing import Any

import websockets

from sniper.config import StreamSettings
from sniper.events.funding_state import FundingState
from sniper.exchange.client import ExchangeClient
from sniper.logging import get_logger

logger = get_logger(__name__)

FUNDING_FEE_REASON = "FUNDING_FEE"


class AccountStream:
    """Background listener for the user-data stream.

    Args:
        exchange: Client used to create and refresh the listen key.
        funding_state: Receives FUNDING_FEE account updates.
        ws_url: Base websocket URL.
        settings: Reconnect and keepalive behaviour.
        connect: Websocket connect factory (injectable for tests).
    """

    def __init__(
        self,
        exchange: ExchangeClient,
        funding_state: FundingState,
        ws_url: str,
        settings: StreamSettings,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        self._exchange = exchange
        self._funding_state = funding_state
        self._ws_url = ws_url.rstrip("/")
        self._settings = settings
        self._connect = connect
        self._running = False
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]
        self._keepalive_task: asyncio.Task | None = None  # type: ignore[type-arg]

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Begin listening in the background."""
        if self._running:
            logger.warning("account_stream_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._stream_loop())
        self._keepalive_task = asyncio.create_task(self._keepalive_loop())
        logger.info("account_stream_started")

    async def stop(self) -> None:
        """Stop listening and cancel the keepalive timer."""
        self._running = False
        for task in (self._task, self._keepalive_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._keepalive_task = None
        logger.info("account_stream_stopped")

    async def _stream_loop(self) -> None:
        delay = self._settings.reconnect_initial_delay
        while self._running:
            try:
                listen_key = await self._exchange.create_listen_key()
                url = f"{self._ws_url}/{listen_key}"
                async with self._connect(url, ping_interval=self._settings.ping_interval) as ws:
                    logger.info("account_stream_connected")
                    delay = self._settings.reconnect_initial_delay
                    async for raw in ws:
                        await self.handle_message(raw)
                logger.warning("account_stream_closed")
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("account_stream_error", exc_info=True)

            if self._running:
                await asyncio.sleep(delay)
                delay = min(delay * 2, self._settings.reconnect_max_delay)

    async def _keepalive_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._settings.listen_key_keepalive_seconds)
            try:
                await self._exchange.keepalive_listen_key()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("listen_key_keepalive_failed", exc_info=True)

    async def handle_message(self, raw: str | bytes) -> bool:
        """Forward a FUNDING_FEE account update to FundingState.

        Returns:
            True if the message was a funding-fee update.
        """
        try:
            event = json.loads(raw)
        except ValueError:
            logger.warning("account_stream_bad_message", raw=str(raw)[:200])
            return False

        if event.get("e") != "ACCOUNT_UPDATE":
            return False

        reason = (event.get("a") or {}).get("m") or event.get("m")
        logger.debug("account_update_received", reason=reason)
        if reason != FUNDING_FEE_REASON:
            return False

        await self._funding_state.on_account_update(event)
        return True
