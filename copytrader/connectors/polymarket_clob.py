"""Polymarket CLOB (Central-Limit Order Book) connector.

Handles:
  - Current prices for stop-loss checks (``/midpoint``)
  - Market token lookup (``/markets/{condition_id}``), used to verify
    which outcome token a position really belongs to
  - Signed order placement and order status via py-clob-client

py-clob-client is synchronous, so signed calls run in a worker thread.
Responses are returned as the venue's raw dicts; the execution router
turns them into ``OrderResult`` objects.
"""

from __future__ import annotations

import asyncio
import os
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

CLOB_BASE = "https://clob.polymarket.com"


@dataclass
class MarketToken:
    """One outcome token of a CLOB market."""
    token_id: str
    outcome: str
    price: float = 0.0
    winner: bool = False


class CLOBClient:
    """Async client for the Polymarket CLOB REST API."""

    def __init__(
        self,
        base_url: str = CLOB_BASE,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._base,
            timeout=timeout,
            headers={"Accept": "application/json"},
            transport=transport,
        )
        self._signing_client: Any = None
        self._init_error: str = ""

    async def close(self) -> None:
        await self._client.aclose()

    # ── Signing client ───────────────────────────────────────────────

    def _ensure_signing_client(self) -> Any:
        """Lazy-load the py-clob-client for authenticated operations."""
        if self._signing_client is not None:
            return self._signing_client

        from py_clob_client.client import ClobClient  # type: ignore[import-untyped]
        from py_clob_client.clob_types import ApiCreds  # type: ignore[import-untyped]

        api_key = os.environ.get("POLYMARKET_API_KEY", "")
        api_secret = os.environ.get("POLYMARKET_API_SECRET", "")
        api_passphrase = os.environ.get("POLYMARKET_API_PASSPHRASE", "")
        private_key = os.environ.get("POLYMARKET_PRIVATE_KEY", "")
        funder = os.environ.get("POLYMARKET_FUNDER_ADDRESS") or None
        chain_id = int(os.environ.get("POLYMARKET_CHAIN_ID", "137"))
        signature_type = int(os.environ.get("POLYMARKET_SIGNATURE_TYPE", "0"))

        if not all([api_key, api_secret, api_passphrase, private_key]):
            raise RuntimeError(
                "CLOB signing requires POLYMARKET_API_KEY, POLYMARKET_API_SECRET, "
                "POLYMARKET_API_PASSPHRASE, and POLYMARKET_PRIVATE_KEY env vars."
            )

        # SECURITY: Never log the private key
        log.info("clob.init_signing_client", chain_id=chain_id, key_prefix=api_key[:8] + "***")

        self._signing_client = ClobClient(
            host=self._base,
            key=private_key,
            chain_id=chain_id,
            creds=ApiCreds(
                api_key=api_key,
                api_secret=api_secret,
                api_passphrase=api_passphrase,
            ),
            signature_type=signature_type,
            funder=funder,
        )
        return self._signing_client

    def initialize(self) -> bool:
        """Build the signing client. Returns True when orders can be placed."""
        try:
            self._ensure_signing_client()
        except (ImportError, RuntimeError, ValueError) as e:
            self._init_error = str(e)
            log.error("clob.init_failed", error=self._init_error)
            return False
        return True

    @property
    def is_ready(self) -> bool:
        return self._signing_client is not None

    @property
    def init_error(self) -> str:
        return self._init_error

    # ── Public read endpoints ────────────────────────────────────────

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=8),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        await rate_limiter.get("clob").acquire()
        resp = await self._client.get(path, params=params)
        resp.raise_for_status()
        return resp.json()

    async def get_midpoint(self, token_id: str) -> float | None:
        """Current midpoint price for a token, or None if unavailable."""
        try:
            data = await self._get("/midpoint", params={"token_id": token_id})
        except httpx.HTTPStatusError as e:
            log.debug(
                "clob.midpoint_unavailable",
                token_id=short_id(token_id),
                status=e.response.status_code,
            )
            return None
        except ValueError:
            log.warning("clob.midpoint_bad_body", token_id=short_id(token_id))
            return None
        if not isinstance(data, dict):
            log.warning("clob.midpoint_bad_body", token_id=short_id(token_id))
            return None
        try:
            return float(data.get("mid", data.get("price")))
        except (TypeError, ValueError):
            return None

    async def get_market_tokens(self, condition_id: str) -> list[MarketToken]:
        """Outcome tokens for a market (empty when the market is unknown)."""
        try:
            data = await self._get(f"/markets/{condition_id}")
        except httpx.HTTPStatusError:
            return []
        except ValueError:
            log.warning("clob.market_bad_body", condition_id=short_id(condition_id))
            return []
        raw_tokens = data.get("tokens") if isinstance(data, dict) else None
        if not isinstance(raw_tokens, list):
            return []
        tokens: list[MarketToken] = []
        for t in raw_tokens:
            if not isinstance(t, dict):
                continue
            try:
                price = float(t.get("price", 0) or 0)
            except (TypeError, ValueError):
                price = 0.0
            tokens.append(MarketToken(
                token_id=str(t.get("token_id", "")),
                outcome=str(t.get("outcome", "")),
                price=price,
                winner=bool(t.get("winner", False)),
            ))
        return tokens

    # ── Signed endpoints ─────────────────────────────────────────────

    async def post_limit_order(
        self, token_id: str, side: str, price: float, size: float,
    ) -> dict[str, Any]:
        """Sign and post a GTC limit order. Returns the venue response."""
        from py_clob_client.clob_types import OrderArgs, OrderType  # type: ignore[import-untyped]

        client = self._ensure_signing_client()
        args = OrderArgs(token_id=token_id, price=price, size=size, side=side)

        def _send() -> dict[str, Any]:
            signed = client.create_order(args)
            return client.post_order(signed, OrderType.GTC)

        await rate_limiter.get("clob").acquire()
        return await asyncio.to_thread(_send)

    async def post_market_order(
        self, token_id: str, side: str, amount: float,
    ) -> dict[str, Any]:
        """Sign and post a fill-or-kill market order.

        ``amount`` is USD for BUY and shares for SELL.
        """
        from py_clob_client.clob_types import MarketOrderArgs, OrderType  # type: ignore[import-untyped]

        client = self._ensure_signing_client()
        args = MarketOrderArgs(token_id=token_id, amount=amount, side=side)

        def _send() -> dict[str, Any]:
            signed = client.create_market_order(args)
            return client.post_order(signed, OrderType.FOK)

        await rate_limiter.get("clob").acquire()
        return await asyncio.to_thread(_send)

    async def get_order(self, order_id: str) -> dict[str, Any]:
        """Fetch an order's current status from the venue."""
        client = self._ensure_signing_client()
        await rate_limiter.get("clob").acquire()
        result = await asyncio.to_thread(client.get_order, order_id)
        return result if isinstance(result, dict) else {}
