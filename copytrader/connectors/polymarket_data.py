"""Polymarket Data API connector.

The Data API provides user-level activity and positions plus a small
market lookup. The copy-trader uses it to:

  - poll the tracked wallet's recent activity (the copy source)
  - read how many shares the tracked wallet still holds in a token
    (proportional SELL copying)
  - read the managed account's positions (startup cap check)
  - check whether a market has resolved (settlement / stop-loss)

Base URL: https://data-api.polymarket.com
Endpoints:
  - GET /activity?user={address}&limit=25&offset=0
  - GET /positions?user={address}
  - GET /markets?conditionId={condition_id}

Raw activity records are normalised exactly once, here, into immutable
``TradeEvent`` objects. Nothing downstream touches raw dicts.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from copytrader.connectors.rate_limiter import rate_limiter
from copytrader.observability.logger import get_logger, short_id

log = get_logger(__name__)

DATA_API_BASE = "https://data-api.polymarket.com"

_TIMEOUT = httpx.Timeout(15.0, connect=10.0)
_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "polymarket-copytrader/1.0",
}

ORDER_TYPE_MARKET = "MARKET"
ORDER_TYPE_LIMIT = "LIMIT"
ORDER_TYPE_UNKNOWN = "UNKNOWN"

_RESOLVED_STATUSES = frozenset({"Resolved", "Closed"})


class FeedUnavailable(Exception):
    """The activity feed could not be read this cycle (transient)."""


# ── Data Models ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class TradeEvent:
    """One trade by the tracked wallet, normalised from the activity feed."""
    transaction_hash: str
    condition_id: str
    asset: str
    side: str                 # "BUY" | "SELL"
    price: float              # outcome price in [0, 1]
    size: float = 0.0         # shares
    usdc_size: float = 0.0    # notional
    title: str = ""
    slug: str = ""
    event_slug: str = ""
    outcome: str = ""
    timestamp: float = 0.0
    order_type: str = ORDER_TYPE_UNKNOWN

    @property
    def token_id(self) -> str:
        """Outcome token id, falling back to the condition id."""
        return self.asset or self.condition_id

    @property
    def market_label(self) -> str:
        return self.title or self.slug or self.condition_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_hash": self.transaction_hash,
            "condition_id": self.condition_id,
            "asset": self.asset,
            "side": self.side,
            "price": round(self.price, 4),
            "size": round(self.size, 4),
            "usdc_size": round(self.usdc_size, 2),
            "title": self.title,
            "slug": self.slug,
            "event_slug": self.event_slug,
            "outcome": self.outcome,
            "timestamp": self.timestamp,
            "order_type": self.order_type,
        }


@dataclass
class WalletPosition:
    """A position held by a wallet, as reported by the Data API."""
    asset: str = ""
    condition_id: str = ""
    title: str = ""
    outcome: str = ""
    size: float = 0.0
    avg_price: float = 0.0
    initial_value: float = 0.0
    current_value: float = 0.0


@dataclass
class MarketResolution:
    """Resolution status of a market (by condition id)."""
    condition_id: str
    resolved: bool = False
    outcomes: tuple[str, ...] = ()
    outcome_prices: tuple[float, ...] = ()
    resolved_price: float | None = None

    def settlement_price(self, outcome: str = "") -> float | None:
        """Final price of ``outcome``; the first listed price otherwise.

        Returns None unless the market is resolved with a price in [0, 1].
        """
        if not self.resolved:
            return None
        price: float | None = None
        if outcome and outcome in self.outcomes:
            idx = self.outcomes.index(outcome)
            if idx < len(self.outcome_prices):
                price = self.outcome_prices[idx]
        if price is None and self.outcome_prices:
            price = self.outcome_prices[0]
        if price is None:
            price = self.resolved_price
        if price is None or not 0.0 <= price <= 1.0:
            return None
        return price


# ── Client ───────────────────────────────────────────────────────────

class DataAPIClient:
    """Async client for Polymarket's Data API."""

    def __init__(
        self,
        base_url: str = DATA_API_BASE,
        timeout: httpx.Timeout = _TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._base,
                timeout=self._timeout,
                headers=_HEADERS,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _get_json(self, path: str, params: dict[str, Any]) -> Any:
        await rate_limiter.get("data_api").acquire()
        client = await self._ensure_client()
        resp = await client.get(path, params=params)
        resp.raise_for_status()
        return resp.json()

    # ── Activity (the copy source) ───────────────────────────────

    async def fetch_activity(
        self,
        address: str,
        *,
        limit: int = 25,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Fetch the wallet's most recent activity records, newest first.

        Raises FeedUnavailable on a non-success status, a transport
        failure or timeout, or a body that is not a JSON list.
        """
        params = {"user": address.lower(), "limit": limit, "offset": offset}
        try:
            data = await self._get_json("/activity", params)
        except (httpx.HTTPError, ValueError) as e:
            raise FeedUnavailable(f"activity request failed: {e}") from e

        if not isinstance(data, list):
            raise FeedUnavailable(
                f"activity response is not a list (got {type(data).__name__})"
            )
        log.debug("data_api.activity_fetched", address=address[:10], count=len(data))
        return data

    async def fetch_trades(self, address: str, *, limit: int = 25) -> list[TradeEvent]:
        """Fetch activity and keep only well-formed BUY/SELL trades."""
        raw = await self.fetch_activity(address, limit=limit)
        events: list[TradeEvent] = []
        for item in raw:
            event = parse_trade_event(item)
            if event is not None:
                events.append(event)
        return events

    # ── Positions ────────────────────────────────────────────────

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=8),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def get_positions(self, address: str, *, limit: int = 500) -> list[WalletPosition]:
        """Fetch open positions for a wallet address."""
        data = await self._get_json(
            "/positions",
            {"user": address.lower(), "limit": limit, "sizeThreshold": 0},
        )
        items = data if isinstance(data, list) else data.get("positions", data.get("data", []))
        positions = [_parse_position(item) for item in items]
        log.debug("data_api.positions_fetched", address=address[:10], count=len(positions))
        return positions

    async def get_token_shares(self, address: str, token_id: str) -> float | None:
        """Shares ``address`` still holds in ``token_id``.

        Returns 0.0 when the wallet holds none, None when the lookup failed.
        """
        try:
            positions = await self.get_positions(address)
        except (httpx.HTTPError, ValueError) as e:
            log.warning(
                "data_api.token_shares_failed",
                token_id=short_id(token_id),
                error=str(e),
            )
            return None
        for pos in positions:
            if pos.asset == token_id:
                return pos.size
        return 0.0

    # ── Markets ──────────────────────────────────────────────────

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(min=1, max=4),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def get_market_resolution(self, condition_id: str) -> MarketResolution | None:
        """Look up a market by condition id. None when the API has no record."""
        data = await self._get_json("/markets", {"conditionId": condition_id})
        if isinstance(data, dict):
            data = data.get("data", [data])
        if not isinstance(data, list) or not data:
            return None
        return _parse_resolution(condition_id, data[0])


# ── Parsers ──────────────────────────────────────────────────────────

def detect_order_type(raw: dict[str, Any]) -> str:
    """Derive MARKET / LIMIT / UNKNOWN from whichever hint the record carries."""
    hint = raw.get("orderType") or raw.get("fillType")
    if isinstance(hint, str) and hint:
        upper = hint.upper()
        if "MARKET" in upper or upper in ("FOK", "FAK"):
            return ORDER_TYPE_MARKET
        if "LIMIT" in upper or upper in ("GTC", "GTD"):
            return ORDER_TYPE_LIMIT
    for key in ("isMarketOrder", "marketOrder"):
        if key in raw and raw[key] is not None:
            return ORDER_TYPE_MARKET if raw[key] else ORDER_TYPE_LIMIT
    return ORDER_TYPE_UNKNOWN


def _float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def parse_trade_event(raw: dict[str, Any]) -> TradeEvent | None:
    """Normalise one raw activity record.

    Returns None for anything that is not a BUY/SELL trade, or a trade
    whose price falls outside [0, 1].
    """
    if str(raw.get("type", "")).upper() != "TRADE":
        return None
    side = str(raw.get("side", "")).upper()
    if side not in ("BUY", "SELL"):
        return None

    price = _float(raw.get("price"), default=-1.0)
    if not 0.0 <= price <= 1.0:
        log.warning(
            "data_api.malformed_trade",
            tx=short_id(str(raw.get("transactionHash", ""))),
            price=raw.get("price"),
        )
        return None

    size = _float(raw.get("size"))
    usdc = _float(raw.get("usdcSize", raw.get("value")))
    if usdc == 0 and size > 0:
        usdc = size * price

    event = TradeEvent(
        transaction_hash=str(raw.get("transactionHash", raw.get("transaction_hash")) or ""),
        condition_id=str(raw.get("conditionId", raw.get("condition_id")) or ""),
        asset=str(raw.get("asset") or ""),
        side=side,
        price=price,
        size=size,
        usdc_size=usdc,
        title=str(raw.get("title") or ""),
        slug=str(raw.get("slug") or ""),
        event_slug=str(raw.get("eventSlug", raw.get("event_slug")) or ""),
        outcome=str(raw.get("outcome") or ""),
        timestamp=_float(raw.get("timestamp")),
        order_type=detect_order_type(raw),
    )
    if not event.asset and event.condition_id:
        log.warning(
            "data_api.missing_asset",
            condition_id=short_id(event.condition_id),
            note="falling back to condition id as token id",
        )
    return event


def _parse_position(raw: dict[str, Any]) -> WalletPosition:
    return WalletPosition(
        asset=str(raw.get("asset", "")),
        condition_id=str(raw.get("conditionId", raw.get("condition_id", ""))),
        title=str(raw.get("title", "")),
        outcome=str(raw.get("outcome", "")),
        size=_float(raw.get("size")),
        avg_price=_float(raw.get("avgPrice", raw.get("avg_price"))),
        initial_value=_float(raw.get("initialValue", raw.get("initial_value"))),
        current_value=_float(raw.get("currentValue", raw.get("current_value"))),
    )


def _json_list(value: Any) -> list[Any]:
    """Gamma-style fields arrive either as lists or as JSON-encoded strings."""
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return []
    return value if isinstance(value, list) else []


def _parse_resolution(condition_id: str, raw: dict[str, Any]) -> MarketResolution:
    resolved = bool(raw.get("resolved")) or raw.get("status") in _RESOLVED_STATUSES
    prices = tuple(_float(p, default=-1.0) for p in _json_list(raw.get("outcomePrices")))
    resolved_price = raw.get("resolvedPrice")
    return MarketResolution(
        condition_id=condition_id,
        resolved=resolved,
        outcomes=tuple(str(o) for o in _json_list(raw.get("outcomes"))),
        outcome_prices=prices,
        resolved_price=_float(resolved_price) if resolved_price is not None else None,
    )
