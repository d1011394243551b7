"""Websocket price feed from the Polymarket CLOB market channel.

Pushes a ``PriceTick`` for every price-relevant message on a subscribed
outcome token:
  - ``last_trade_price``  the traded price
  - ``price_change``      best bid when present, else the changed level
  - ``book``              best bid of the snapshot

Tokens can be added and removed while connected. The connection is
re-established with exponential backoff and all current subscriptions
are replayed on reconnect.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Coroutine

import websockets

from copytrader.observability.logger import get_logger, short_id

log = get_logger(__name__)

WS_URL = "wss://ws-subscriptions-clob.polymarket.com/ws/market"


@dataclass
class PriceTick:
    """A single pushed price for one outcome token."""
    token_id: str
    price: float
    side: str = ""
    timestamp: float = 0.0


TickCallback = Callable[[PriceTick], Coroutine[Any, Any, None]]


class WebSocketFeed:
    """Manage the websocket connection to the CLOB market channel."""

    def __init__(self, url: str = WS_URL):
        self._url = url
        self._subscribed_tokens: set[str] = set()
        self._tick_callbacks: list[TickCallback] = []
        self._running = False
        self._reconnect_delay = 1.0
        self._max_reconnect_delay = 60.0
        self._last_prices: dict[str, PriceTick] = {}
        self._ws: Any = None

    def on_tick(self, callback: TickCallback) -> None:
        """Register a callback for price ticks."""
        self._tick_callbacks.append(callback)

    @property
    def subscribed_tokens(self) -> frozenset[str]:
        return frozenset(self._subscribed_tokens)

    def is_subscribed(self, token_id: str) -> bool:
        return token_id in self._subscribed_tokens

    async def subscribe(self, token_id: str) -> None:
        """Subscribe to a token, live if the socket is open."""
        if token_id in self._subscribed_tokens:
            return
        self._subscribed_tokens.add(token_id)
        await self._send_operation("subscribe", token_id)
        log.info("ws_feed.subscribed", token_id=short_id(token_id))

    async def unsubscribe(self, token_id: str) -> None:
        """Unsubscribe from a token and forget its last price."""
        if token_id not in self._subscribed_tokens:
            return
        self._subscribed_tokens.discard(token_id)
        self._last_prices.pop(token_id, None)
        await self._send_operation("unsubscribe", token_id)
        log.info("ws_feed.unsubscribed", token_id=short_id(token_id))

    def get_last_price(self, token_id: str, max_age_secs: float | None = None) -> PriceTick | None:
        """Last pushed price for a token, optionally only if fresh enough."""
        tick = self._last_prices.get(token_id)
        if tick is None:
            return None
        if max_age_secs is not None and time.time() - tick.timestamp > max_age_secs:
            return None
        return tick

    async def _send_operation(self, operation: str, token_id: str) -> None:
        if self._ws is None:
            return
        try:
            await self._ws.send(json.dumps({
                "assets_ids": [token_id],
                "operation": operation,
            }))
        except websockets.ConnectionClosed:
            log.debug("ws_feed.send_on_closed_socket", operation=operation)

    async def start(self) -> None:
        """Run the feed with auto-reconnection until ``stop()``."""
        self._running = True
        while self._running:
            try:
                await self._connect()
            except (OSError, websockets.WebSocketException) as e:
                if not self._running:
                    break
                log.warning(
                    "ws_feed.disconnected",
                    error=str(e),
                    reconnect_delay=self._reconnect_delay,
                )
            self._ws = None
            if not self._running:
                break
            await asyncio.sleep(self._reconnect_delay)
            self._reconnect_delay = min(self._reconnect_delay * 2, self._max_reconnect_delay)

    async def stop(self) -> None:
        self._running = False
        if self._ws is not None:
            await self._ws.close()

    async def _connect(self) -> None:
        log.info("ws_feed.connecting", url=self._url)
        async with websockets.connect(self._url, ping_interval=10) as ws:
            self._ws = ws
            self._reconnect_delay = 1.0
            await ws.send(json.dumps({
                "assets_ids": sorted(self._subscribed_tokens),
                "type": "market",
            }))
            log.info("ws_feed.connected", tokens=len(self._subscribed_tokens))

            async for raw_msg in ws:
                if not self._running:
                    break
                try:
                    payload = json.loads(raw_msg)
                except ValueError:
                    log.debug("ws_feed.parse_error", raw=str(raw_msg)[:80])
                    continue
                messages = payload if isinstance(payload, list) else [payload]
                for msg in messages:
                    if not isinstance(msg, dict):
                        continue
                    try:
                        await self.handle_message(msg)
                    except (ValueError, TypeError, AttributeError) as e:
                        log.warning(
                            "ws_feed.parse_error",
                            event_type=str(msg.get("event_type", "")),
                            error=str(e),
                        )

    async def handle_message(self, msg: dict[str, Any]) -> None:
        """Route one market-channel message to tick callbacks."""
        for tick in parse_ticks(msg):
            if tick.token_id not in self._subscribed_tokens:
                continue
            self._last_prices[tick.token_id] = tick
            for cb in self._tick_callbacks:
                try:
                    await cb(tick)
                except Exception as e:
                    log.error(
                        "ws_feed.tick_callback_error",
                        token_id=short_id(tick.token_id),
                        error=str(e),
                        exc_info=True,
                    )


def _ts(msg: dict[str, Any]) -> float:
    """Venue timestamps are epoch milliseconds; fall back to now."""
    try:
        raw = float(msg.get("timestamp", 0))
    except (TypeError, ValueError):
        raw = 0.0
    if raw <= 0:
        return time.time()
    return raw / 1000.0 if raw > 1e11 else raw


def _bid_prices(levels: Any) -> list[float]:
    """Prices of the well-formed bid levels; malformed levels are skipped."""
    prices: list[float] = []
    if not isinstance(levels, list):
        return prices
    for level in levels:
        if not isinstance(level, dict):
            continue
        try:
            prices.append(float(level.get("price")))
        except (TypeError, ValueError):
            continue
    return prices


def parse_ticks(msg: dict[str, Any]) -> list[PriceTick]:
    """Extract zero or more price ticks from a market-channel message."""
    event_type = msg.get("event_type", msg.get("type", ""))
    ts = _ts(msg)
    ticks: list[PriceTick] = []

    if event_type == "last_trade_price":
        token_id = str(msg.get("asset_id", ""))
        try:
            price = float(msg.get("price"))
        except (TypeError, ValueError):
            return []
        if token_id:
            ticks.append(PriceTick(token_id, price, str(msg.get("side", "")), ts))

    elif event_type == "price_change":
        changes = msg.get("price_changes") or msg.get("changes") or []
        if not isinstance(changes, list):
            changes = []
        default_asset = str(msg.get("asset_id", ""))
        for change in changes:
            if not isinstance(change, dict):
                continue
            token_id = str(change.get("asset_id", default_asset))
            raw_price = change.get("best_bid") or change.get("price")
            try:
                price = float(raw_price)
            except (TypeError, ValueError):
                continue
            if token_id:
                ticks.append(PriceTick(token_id, price, str(change.get("side", "")), ts))

    elif event_type == "book":
        token_id = str(msg.get("asset_id", ""))
        bids = _bid_prices(msg.get("bids"))
        if token_id and bids:
            ticks.append(PriceTick(token_id, max(bids), "BUY", ts))

    return [t for t in ticks if 0.0 <= t.price <= 1.0]
