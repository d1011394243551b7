"""Order builder — turns sizing decisions and stop-loss triggers into orders.

An ``OrderSpec`` is venue-agnostic: the router sends the same spec to
the paper ledger or to the CLOB.

Order kinds:
  - market  fill-or-kill; BUY is sized in USD, SELL in shares
  - limit   GTC resting order at ``price`` for ``size`` shares
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any

from copytrader.connectors.polymarket_data import ORDER_TYPE_MARKET, TradeEvent
from copytrader.policy.position_sizer import SizingDecision

ORDER_KIND_MARKET = "market"
ORDER_KIND_LIMIT = "limit"

PURPOSE_COPY = "copy"
PURPOSE_STOP_LOSS = "stop_loss"


@dataclass
class OrderSpec:
    """Specification for an order to be placed."""
    token_id: str
    side: str            # "BUY" | "SELL"
    order_kind: str      # "market" | "limit"
    price: float         # reference / limit price
    size: float          # shares
    value: float         # USD notional (size × price)
    market: str = ""
    condition_id: str = ""
    outcome: str = ""
    purpose: str = PURPOSE_COPY
    client_order_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "client_order_id": self.client_order_id,
            "token_id": self.token_id,
            "side": self.side,
            "order_kind": self.order_kind,
            "price": self.price,
            "size": self.size,
            "value": round(self.value, 4),
            "market": self.market,
            "condition_id": self.condition_id,
            "outcome": self.outcome,
            "purpose": self.purpose,
        }


def use_market_order(event: TradeEvent, always_market: bool) -> bool:
    """Market order when configured, or when the tracked trade was one."""
    return always_market or event.order_type == ORDER_TYPE_MARKET


def build_copy_order(
    event: TradeEvent,
    decision: SizingDecision,
    *,
    market_order: bool,
) -> OrderSpec:
    """Build the order that mirrors a tracked trade."""
    return OrderSpec(
        token_id=event.token_id,
        side=decision.side,
        order_kind=ORDER_KIND_MARKET if market_order else ORDER_KIND_LIMIT,
        price=event.price,
        size=decision.shares,
        value=decision.value,
        market=event.market_label,
        condition_id=event.condition_id,
        outcome=event.outcome,
        purpose=PURPOSE_COPY,
        metadata={
            "tracked_tx": event.transaction_hash,
            "confidence_label": decision.confidence_label,
            "high_confidence_add": decision.is_high_confidence_add,
        },
    )


def build_exit_order(
    *,
    token_id: str,
    shares: float,
    price: float,
    order_kind: str,
    market: str = "",
    condition_id: str = "",
    outcome: str = "",
) -> OrderSpec:
    """Build a stop-loss SELL that closes ``shares`` of a position."""
    return OrderSpec(
        token_id=token_id,
        side="SELL",
        order_kind=order_kind,
        price=price,
        size=shares,
        value=shares * price,
        market=market,
        condition_id=condition_id,
        outcome=outcome,
        purpose=PURPOSE_STOP_LOSS,
    )
