"""Position book — our own exposure per outcome token.

Tracks, per token:
  - the TrackedPosition (USD committed + shares) for real execution;
    in paper mode the ledger is the source of truth and is read instead
  - whether the initial copy BUY and the high-confidence add were placed
  - the tracked wallet's latest BUY per market (used to check which
    outcome a stop-loss position really belongs to)

The markers are cleared when our position in the token is fully exited,
which re-opens the market for a fresh initial trade and one more add.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from copytrader.connectors.polymarket_data import TradeEvent, WalletPosition
from copytrader.execution.paper_ledger import PaperTradingLedger
from copytrader.observability.logger import get_logger
from copytrader.policy.risk_limits import ExposureSnapshot

log = get_logger(__name__)

_DUST_SHARES = 1e-6


@dataclass
class TrackedPosition:
    """Accumulated real-execution exposure in one token."""
    token_id: str
    usdc_value: float = 0.0
    shares: float = 0.0
    market: str = ""
    condition_id: str = ""
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class TrackedBuy:
    """Last BUY the tracked wallet made in a market."""
    condition_id: str
    token_id: str
    outcome: str
    price: float
    timestamp: float


class PositionBook:
    """Own exposure and per-market copy markers."""

    def __init__(self, ledger: PaperTradingLedger, *, paper_mode: bool):
        self._ledger = ledger
        self._paper_mode = paper_mode
        self._tracked: dict[str, TrackedPosition] = {}
        self._initial_placed: set[str] = set()
        self._hc_add_placed: set[str] = set()
        self._tracked_buys: dict[str, TrackedBuy] = {}

    # ── Exposure ─────────────────────────────────────────────────────

    def exposure_for(self, token_id: str) -> float:
        if self._paper_mode:
            return self._ledger.exposure_for(token_id)
        pos = self._tracked.get(token_id)
        return pos.usdc_value if pos else 0.0

    def shares_held(self, token_id: str) -> float:
        if self._paper_mode:
            return self._ledger.shares_held(token_id)
        pos = self._tracked.get(token_id)
        return pos.shares if pos else 0.0

    def total_exposure(self) -> float:
        if self._paper_mode:
            return self._ledger.total_exposure()
        return sum(p.usdc_value for p in self._tracked.values())

    def open_position_count(self) -> int:
        if self._paper_mode:
            return self._ledger.open_position_count()
        return len(self._tracked)

    def held_tokens(self) -> list[str]:
        if self._paper_mode:
            return [p.token_id for p in self._ledger.positions()]
        return list(self._tracked)

    def snapshot(self, token_id: str) -> ExposureSnapshot:
        return ExposureSnapshot(
            open_positions=self.open_position_count(),
            total_exposure=self.total_exposure(),
            market_exposure=self.exposure_for(token_id),
            holds_token=self.shares_held(token_id) > _DUST_SHARES,
        )

    def tokens_at_or_over(self, cap: float) -> list[tuple[str, float]]:
        """Tokens whose exposure already meets ``cap``."""
        return [
            (token_id, self.exposure_for(token_id))
            for token_id in self.held_tokens()
            if self.exposure_for(token_id) >= cap
        ]

    def get_tracked(self, token_id: str) -> TrackedPosition | None:
        return self._tracked.get(token_id)

    # ── Fills ────────────────────────────────────────────────────────

    def record_buy(
        self,
        token_id: str,
        value: float,
        shares: float,
        *,
        market: str = "",
        condition_id: str = "",
    ) -> None:
        pos = self._tracked.get(token_id)
        if pos is None:
            pos = TrackedPosition(token_id=token_id, market=market, condition_id=condition_id)
            self._tracked[token_id] = pos
        pos.usdc_value += value
        pos.shares += shares
        pos.updated_at = time.time()

    def record_sell(self, token_id: str, shares: float) -> bool:
        """Reduce the position; returns True when it is fully exited."""
        pos = self._tracked.get(token_id)
        if pos is not None:
            remaining = pos.shares - shares
            if remaining <= _DUST_SHARES:
                del self._tracked[token_id]
            else:
                pos.usdc_value *= remaining / pos.shares
                pos.shares = remaining
                pos.updated_at = time.time()
        exited = self.shares_held(token_id) <= _DUST_SHARES
        if exited:
            self.clear_markers(token_id)
        return exited

    def forget(self, token_id: str) -> None:
        """Drop everything known about a token (settled / closed externally)."""
        self._tracked.pop(token_id, None)
        self.clear_markers(token_id)

    def seed_from_account(self, positions: list[WalletPosition]) -> int:
        """Load existing account positions at startup (real execution)."""
        seeded = 0
        for wp in positions:
            if not wp.asset or wp.size <= _DUST_SHARES:
                continue
            value = wp.initial_value or wp.size * wp.avg_price
            self._tracked[wp.asset] = TrackedPosition(
                token_id=wp.asset,
                usdc_value=value,
                shares=wp.size,
                market=wp.title,
                condition_id=wp.condition_id,
            )
            # Existing holdings count as the initial trade.
            self._initial_placed.add(wp.asset)
            seeded += 1
        log.info("positions.seeded", count=seeded)
        return seeded

    # ── Markers ──────────────────────────────────────────────────────

    def initial_placed(self, token_id: str) -> bool:
        return token_id in self._initial_placed

    def high_confidence_add_placed(self, token_id: str) -> bool:
        return token_id in self._hc_add_placed

    def mark_initial(self, token_id: str) -> None:
        self._initial_placed.add(token_id)

    def mark_high_confidence_add(self, token_id: str) -> None:
        self._hc_add_placed.add(token_id)

    def clear_markers(self, token_id: str) -> None:
        self._initial_placed.discard(token_id)
        self._hc_add_placed.discard(token_id)

    # ── Tracked wallet's buys ────────────────────────────────────────

    def record_tracked_buy(self, event: TradeEvent) -> None:
        if event.side != "BUY" or not event.condition_id:
            return
        self._tracked_buys[event.condition_id] = TrackedBuy(
            condition_id=event.condition_id,
            token_id=event.token_id,
            outcome=event.outcome,
            price=event.price,
            timestamp=event.timestamp or time.time(),
        )

    def last_tracked_buy(self, condition_id: str) -> TrackedBuy | None:
        return self._tracked_buys.get(condition_id)

    def summary(self) -> dict[str, Any]:
        return {
            "open_positions": self.open_position_count(),
            "total_exposure": round(self.total_exposure(), 2),
            "initial_markers": len(self._initial_placed),
            "high_confidence_adds": len(self._hc_add_placed),
        }

    def __repr__(self) -> str:
        mode = "paper" if self._paper_mode else "real"
        return f"PositionBook({mode}, positions={self.open_position_count()})"
