"""Paper trading ledger — simulated execution with real bookkeeping.

Simulated fills happen instantly at the requested price. Everything
else mirrors a funded account:
  - BUY debits the balance and fails when the balance is short
  - SELL credits proceeds and realises P&L against the average price;
    asking to sell more than is held sells what is held
  - settlement closes a position at the market's resolution price
  - trade history is append-only

The ledger is the single owner of PaperTradingState. Other components
read it through the accessors below. All methods are synchronous, so
no two ledger mutations can interleave on the event loop.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from copytrader.observability.logger import get_logger, short_id

log = get_logger(__name__)

_DUST_SHARES = 1e-6

TRADE_BUY = "BUY"
TRADE_SELL = "SELL"
TRADE_STOP_LOSS = "STOP_LOSS"
TRADE_SETTLEMENT = "SETTLEMENT"


class PaperTradingError(Exception):
    """A simulated order the venue would have rejected."""


@dataclass
class PaperPosition:
    """An open simulated position in one outcome token."""
    token_id: str
    shares: float
    avg_price: float
    entry_value: float
    market: str = ""
    condition_id: str = ""
    outcome: str = ""
    opened_at: float = field(default_factory=time.time)
    last_checked: float = 0.0
    stop_loss_pending: bool = False

    def unrealized_pnl(self, price: float) -> float:
        return self.shares * (price - self.avg_price)

    def to_dict(self) -> dict[str, Any]:
        return {
            "token_id": self.token_id,
            "shares": round(self.shares, 4),
            "avg_price": round(self.avg_price, 4),
            "entry_value": round(self.entry_value, 4),
            "market": self.market,
            "condition_id": self.condition_id,
            "outcome": self.outcome,
            "opened_at": self.opened_at,
            "stop_loss_pending": self.stop_loss_pending,
        }


@dataclass
class PaperTrade:
    """One entry in the append-only trade history."""
    side: str  # BUY | SELL | STOP_LOSS | SETTLEMENT
    token_id: str
    shares: float
    price: float
    value: float
    pnl: float = 0.0
    market: str = ""
    order_id: str = field(default_factory=lambda: f"paper-{uuid.uuid4().hex[:12]}")
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


class PaperTradingLedger:
    """Simulated balance, positions, realised P&L and trade history."""

    def __init__(self, starting_balance: float = 1000.0):
        self._starting_balance = starting_balance
        self._balance = starting_balance
        self._realized_pnl = 0.0
        self._positions: dict[str, PaperPosition] = {}
        self._history: list[PaperTrade] = []

    # ── Read accessors ───────────────────────────────────────────────

    @property
    def balance(self) -> float:
        return self._balance

    @property
    def realized_pnl(self) -> float:
        return self._realized_pnl

    @property
    def starting_balance(self) -> float:
        return self._starting_balance

    @property
    def history(self) -> tuple[PaperTrade, ...]:
        return tuple(self._history)

    def positions(self) -> list[PaperPosition]:
        return list(self._positions.values())

    def get_position(self, token_id: str) -> PaperPosition | None:
        return self._positions.get(token_id)

    def shares_held(self, token_id: str) -> float:
        pos = self._positions.get(token_id)
        return pos.shares if pos else 0.0

    def exposure_for(self, token_id: str) -> float:
        pos = self._positions.get(token_id)
        return pos.entry_value if pos else 0.0

    def total_exposure(self) -> float:
        return sum(p.entry_value for p in self._positions.values())

    def open_position_count(self) -> int:
        return len(self._positions)

    # ── Mutations ────────────────────────────────────────────────────

    def buy(
        self,
        token_id: str,
        order_value: float,
        price: float,
        *,
        market: str = "",
        condition_id: str = "",
        outcome: str = "",
    ) -> PaperTrade:
        """Spend ``order_value`` USD on shares at ``price``."""
        if not 0 < price <= 1:
            raise PaperTradingError(f"invalid price {price}")
        if order_value <= 0:
            raise PaperTradingError(f"invalid order value {order_value}")
        if order_value > self._balance + 1e-9:
            raise PaperTradingError(
                f"insufficient balance: need ${order_value:.2f}, have ${self._balance:.2f}"
            )

        shares = order_value / price
        pos = self._positions.get(token_id)
        if pos is None:
            pos = PaperPosition(
                token_id=token_id,
                shares=shares,
                avg_price=price,
                entry_value=order_value,
                market=market,
                condition_id=condition_id,
                outcome=outcome,
            )
            self._positions[token_id] = pos
        else:
            total_shares = pos.shares + shares
            pos.avg_price = (pos.shares * pos.avg_price + shares * price) / total_shares
            pos.shares = total_shares
            pos.entry_value += order_value

        self._balance -= order_value
        trade = PaperTrade(
            side=TRADE_BUY,
            token_id=token_id,
            shares=shares,
            price=price,
            value=order_value,
            market=market or pos.market,
        )
        self._history.append(trade)
        log.info(
            "paper_ledger.buy",
            token_id=short_id(token_id),
            shares=round(shares, 4),
            price=price,
            value=round(order_value, 4),
            balance=round(self._balance, 2),
        )
        return trade

    def sell(
        self,
        token_id: str,
        shares: float,
        price: float,
        *,
        label: str = TRADE_SELL,
    ) -> PaperTrade:
        """Sell up to ``shares`` at ``price``, realising P&L."""
        if not 0 <= price <= 1:
            raise PaperTradingError(f"invalid price {price}")
        pos = self._positions.get(token_id)
        if pos is None or pos.shares <= _DUST_SHARES:
            raise PaperTradingError("no paper position to sell")
        if shares <= 0:
            raise PaperTradingError(f"invalid share amount {shares}")

        shares = min(shares, pos.shares)
        proceeds = shares * price
        pnl = shares * (price - pos.avg_price)
        self._close_shares(pos, shares)
        self._balance += proceeds
        self._realized_pnl += pnl

        trade = PaperTrade(
            side=label,
            token_id=token_id,
            shares=shares,
            price=price,
            value=proceeds,
            pnl=pnl,
            market=pos.market,
        )
        self._history.append(trade)
        log.info(
            "paper_ledger.sell",
            token_id=short_id(token_id),
            label=label,
            shares=round(shares, 4),
            price=price,
            pnl=round(pnl, 4),
            balance=round(self._balance, 2),
        )
        return trade

    def settle(self, token_id: str, price: float) -> PaperTrade:
        """Close the whole position at a market resolution price."""
        if not 0 <= price <= 1:
            raise PaperTradingError(f"invalid settlement price {price}")
        pos = self._positions.get(token_id)
        if pos is None:
            raise PaperTradingError("no paper position to settle")

        shares = pos.shares
        proceeds = shares * price
        pnl = shares * (price - pos.avg_price)
        del self._positions[token_id]
        self._balance += proceeds
        self._realized_pnl += pnl

        trade = PaperTrade(
            side=TRADE_SETTLEMENT,
            token_id=token_id,
            shares=shares,
            price=price,
            value=proceeds,
            pnl=pnl,
            market=pos.market,
        )
        self._history.append(trade)
        log.info(
            "paper_ledger.settled",
            token_id=short_id(token_id),
            market=pos.market[:60],
            price=price,
            pnl=round(pnl, 4),
            was_stop_pending=pos.stop_loss_pending,
        )
        return trade

    def mark_stop_loss_pending(self, token_id: str, pending: bool = True) -> None:
        pos = self._positions.get(token_id)
        if pos is not None:
            pos.stop_loss_pending = pending

    def mark_checked(self, token_id: str, ts: float | None = None) -> None:
        pos = self._positions.get(token_id)
        if pos is not None:
            pos.last_checked = ts if ts is not None else time.time()

    def _close_shares(self, pos: PaperPosition, shares: float) -> None:
        remaining = pos.shares - shares
        if remaining <= _DUST_SHARES:
            del self._positions[pos.token_id]
            return
        pos.entry_value *= remaining / pos.shares
        pos.shares = remaining

    # ── Reporting ────────────────────────────────────────────────────

    def summary(self) -> dict[str, Any]:
        exposure = self.total_exposure()
        return {
            "starting_balance": round(self._starting_balance, 2),
            "balance": round(self._balance, 2),
            "open_positions": len(self._positions),
            "total_exposure": round(exposure, 2),
            "realized_pnl": round(self._realized_pnl, 2),
            "equity_at_cost": round(self._balance + exposure, 2),
            "trades": len(self._history),
        }
