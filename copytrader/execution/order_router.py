"""Order router — sends each order to exactly one venue.

Paper mode: the order fills instantly in the paper ledger.
Real mode: the order is signed and posted to the CLOB with a timeout.

Both paths return the same ``OrderResult`` shape, so callers never need
to know which venue they are talking to. Venue errors are classified
into a small set of kinds, each with its own user-facing hint.

Real orders are never retried here: a timed-out post may still have
reached the book, and a blind retry could double the position.
"""

from __future__ import annotations

import asyncio
import datetime as dt
from dataclasses import dataclass, field
from typing import Any

from copytrader.config import ExecutionConfig
from copytrader.connectors.polymarket_clob import CLOBClient
from copytrader.execution.order_builder import (
    ORDER_KIND_MARKET,
    PURPOSE_STOP_LOSS,
    OrderSpec,
)
from copytrader.execution.paper_ledger import (
    TRADE_SELL,
    TRADE_STOP_LOSS,
    PaperTradingError,
    PaperTradingLedger,
)
from copytrader.observability.logger import get_logger, short_id
from copytrader.observability.metrics import metrics

log = get_logger(__name__)

STATUS_FILLED = "filled"
STATUS_OPEN = "open"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

ERROR_INSUFFICIENT_FUNDS = "insufficient_funds"
ERROR_ORDERBOOK_MISSING = "orderbook_missing"
ERROR_TIMEOUT = "timeout"
ERROR_REJECTED = "rejected"

ERROR_HINTS = {
    ERROR_INSUFFICIENT_FUNDS: "Add USDC to the trading account and approve the exchange allowance.",
    ERROR_ORDERBOOK_MISSING: "The market has closed or resolved; there is no order book to trade.",
    ERROR_TIMEOUT: "The venue did not answer in time; check open orders before retrying manually.",
    ERROR_REJECTED: "The venue rejected the order.",
}

_FILLED_VENUE_STATUSES = frozenset({"MATCHED", "FILLED"})
_DEAD_VENUE_STATUSES = frozenset({"CANCELED", "CANCELLED", "EXPIRED", "UNMATCHED", "REJECTED"})


def classify_order_error(message: str) -> str:
    """Map a venue error message to an error kind."""
    text = (message or "").lower()
    if "balance" in text or "allowance" in text:
        return ERROR_INSUFFICIENT_FUNDS
    if "orderbook" in text and "does not exist" in text:
        return ERROR_ORDERBOOK_MISSING
    return ERROR_REJECTED


@dataclass
class OrderResult:
    """Result of order submission, identical for paper and real venues."""
    order_id: str
    status: str          # "filled" | "open" | "failed"
    side: str = ""
    fill_price: float = 0.0
    fill_size: float = 0.0
    value: float = 0.0
    error: str = ""
    error_kind: str = ""
    paper: bool = False
    timestamp: str = ""
    raw_response: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status in (STATUS_FILLED, STATUS_OPEN)

    @property
    def is_filled(self) -> bool:
        return self.status == STATUS_FILLED

    @property
    def hint(self) -> str:
        return ERROR_HINTS.get(self.error_kind, "")

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "status": self.status,
            "side": self.side,
            "fill_price": self.fill_price,
            "fill_size": self.fill_size,
            "value": round(self.value, 4),
            "error": self.error,
            "error_kind": self.error_kind,
            "paper": self.paper,
            "timestamp": self.timestamp,
        }


def _now() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


def _payload_float(data: dict[str, Any], *keys: str) -> float:
    """First positive number among ``keys`` of a venue payload."""
    for key in keys:
        try:
            value = float(data.get(key) or 0)
        except (TypeError, ValueError):
            continue
        if value > 0:
            return value
    return 0.0


class ExecutionRouter:
    """Route orders to the paper ledger or to the CLOB."""

    def __init__(
        self,
        *,
        paper_mode: bool,
        ledger: PaperTradingLedger,
        clob: CLOBClient | None,
        config: ExecutionConfig,
    ):
        self._paper_mode = paper_mode
        self._ledger = ledger
        self._clob = clob
        self._config = config

    @property
    def paper_mode(self) -> bool:
        return self._paper_mode

    @property
    def is_ready(self) -> bool:
        """Paper execution is always ready; real needs a signing client."""
        if self._paper_mode:
            return True
        return self._clob is not None and self._clob.is_ready

    async def submit(self, order: OrderSpec) -> OrderResult:
        if self._paper_mode:
            return self._submit_paper(order)
        return await self._submit_real(order)

    # ── Paper ────────────────────────────────────────────────────────

    def _submit_paper(self, order: OrderSpec) -> OrderResult:
        ts = _now()
        try:
            if order.side == "BUY":
                trade = self._ledger.buy(
                    order.token_id,
                    order.value,
                    order.price,
                    market=order.market,
                    condition_id=order.condition_id,
                    outcome=order.outcome,
                )
            else:
                label = TRADE_STOP_LOSS if order.purpose == PURPOSE_STOP_LOSS else TRADE_SELL
                trade = self._ledger.sell(order.token_id, order.size, order.price, label=label)
        except PaperTradingError as e:
            kind = classify_order_error(str(e))
            log.warning(
                "order_router.paper_rejected",
                token_id=short_id(order.token_id),
                side=order.side,
                error=str(e),
                error_kind=kind,
            )
            metrics.incr("orders.failed", venue="paper")
            return OrderResult(
                order_id=order.client_order_id,
                status=STATUS_FAILED,
                side=order.side,
                error=str(e),
                error_kind=kind,
                paper=True,
                timestamp=ts,
            )

        metrics.incr("orders.paper")
        return OrderResult(
            order_id=trade.order_id,
            status=STATUS_FILLED,
            side=order.side,
            fill_price=trade.price,
            fill_size=trade.shares,
            value=trade.value,
            paper=True,
            timestamp=ts,
        )

    # ── Real ─────────────────────────────────────────────────────────

    @staticmethod
    async def _post(clob: CLOBClient, order: OrderSpec) -> dict[str, Any]:
        if order.order_kind == ORDER_KIND_MARKET:
            amount = order.value if order.side == "BUY" else order.size
            return await clob.post_market_order(order.token_id, order.side, amount)
        return await clob.post_limit_order(
            order.token_id, order.side, order.price, order.size,
        )

    async def _submit_real(self, order: OrderSpec) -> OrderResult:
        ts = _now()
        if self._clob is None or not self._clob.is_ready:
            return self._real_failure(order, "execution client not ready", ERROR_REJECTED, ts)

        try:
            resp = await asyncio.wait_for(
                self._post(self._clob, order),
                timeout=self._config.order_timeout_secs,
            )
        except asyncio.TimeoutError:
            return self._real_failure(
                order,
                f"no response within {self._config.order_timeout_secs:.0f}s",
                ERROR_TIMEOUT,
                ts,
            )
        except Exception as e:
            return self._real_failure(order, str(e), classify_order_error(str(e)), ts)

        resp = resp if isinstance(resp, dict) else {"raw": str(resp)}
        error_msg = str(resp.get("errorMsg") or resp.get("error") or "")
        if resp.get("success") is False or error_msg:
            msg = error_msg or "order not accepted"
            return self._real_failure(order, msg, classify_order_error(msg), ts, resp)

        venue_status = str(resp.get("status", "")).upper()
        status = STATUS_FILLED if venue_status in _FILLED_VENUE_STATUSES else STATUS_OPEN
        if order.order_kind == ORDER_KIND_MARKET:
            # FOK: accepted means matched
            status = STATUS_FILLED

        order_id = str(resp.get("orderID") or resp.get("orderId") or order.client_order_id)
        log.info(
            "order_router.submitted",
            order_id=short_id(order_id),
            token_id=short_id(order.token_id),
            side=order.side,
            kind=order.order_kind,
            price=order.price,
            size=order.size,
            status=status,
        )
        metrics.incr("orders.submitted", kind=order.order_kind)
        return OrderResult(
            order_id=order_id,
            status=status,
            side=order.side,
            fill_price=order.price,
            fill_size=order.size,
            value=order.value,
            timestamp=ts,
            raw_response=resp,
        )

    def _real_failure(
        self,
        order: OrderSpec,
        error: str,
        kind: str,
        ts: str,
        resp: dict[str, Any] | None = None,
    ) -> OrderResult:
        log.error(
            "order_router.failed",
            token_id=short_id(order.token_id),
            side=order.side,
            kind=order.order_kind,
            error=error[:200],
            error_kind=kind,
        )
        metrics.incr("orders.failed", venue="clob", error_kind=kind)
        return OrderResult(
            order_id=order.client_order_id,
            status=STATUS_FAILED,
            side=order.side,
            error=error,
            error_kind=kind,
            timestamp=ts,
            raw_response=resp or {},
        )

    async def lookup_order(self, order_id: str) -> OrderResult:
        """Current state of a previously submitted order.

        Paper orders fill on submission. Real orders are looked up on
        the venue; lookup failures report "open" so the caller retries.
        The fill price is the venue's average price when it reports one,
        else the order's price; 0.0 when neither is readable.
        """
        if self._paper_mode or self._clob is None:
            return OrderResult(order_id=order_id, status=STATUS_FILLED, paper=self._paper_mode)
        try:
            data = await asyncio.wait_for(
                self._clob.get_order(order_id),
                timeout=self._config.order_timeout_secs,
            )
        except Exception as e:
            log.warning("order_router.status_failed", order_id=short_id(order_id), error=str(e))
            return OrderResult(order_id=order_id, status=STATUS_OPEN)
        data = data if isinstance(data, dict) else {}
        venue_status = str(data.get("status", "")).upper()
        if venue_status in _FILLED_VENUE_STATUSES:
            status = STATUS_FILLED
        elif venue_status in _DEAD_VENUE_STATUSES:
            status = STATUS_CANCELLED
        else:
            status = STATUS_OPEN
        return OrderResult(
            order_id=order_id,
            status=status,
            side=str(data.get("side", "")).upper(),
            fill_price=_payload_float(data, "avg_price", "average_price", "price"),
            fill_size=_payload_float(data, "size_matched", "original_size"),
            timestamp=_now(),
            raw_response=data,
        )

    async def order_status(self, order_id: str) -> str:
        """Status string of a previously submitted order."""
        return (await self.lookup_order(order_id)).status
        venue_status = str(data.get("status", "")).upper()
        if venue_status in _FILLED_VENUE_STATUSES:
            return STATUS_FILLED
        if venue_status in _DEAD_VENUE_STATUSES:
            return STATUS_CANCELLED
        return STATUS_OPEN
