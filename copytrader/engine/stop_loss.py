"""Stop-loss monitor — protects copied BUYs from large drawdowns.

Per token the monitor runs a small state machine:

    NONE ──register──▶ ACTIVE ──trigger──▶ PENDING ──fill──▶ CLOSED
                         ▲                    │
                         └──order failed / cancelled

Two independent paths can trigger the same position:
  - polled: ``sweep()`` on the engine's cycle, throttled per position,
    with the "winning" safeguard and optional outcome-token
    verification; real positions exit with a GTC limit at the stop
    price and stay PENDING until the venue reports the fill
  - pushed: ``on_tick()`` from the websocket feed; exits with a market
    order straight to CLOSED

Both paths take the token's asyncio.Lock and set ``pending`` before
awaiting anything, so a position can only ever trigger once.

Every removal goes through ``release()``, which also drops the price
subscription.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx

from copytrader.config import BotConfig
from copytrader.connectors.polymarket_clob import CLOBClient
from copytrader.connectors.polymarket_data import DataAPIClient, MarketResolution, TradeEvent
from copytrader.connectors.ws_feed import PriceTick, WebSocketFeed
from copytrader.engine.positions import PositionBook
from copytrader.execution.order_builder import (
    ORDER_KIND_LIMIT,
    ORDER_KIND_MARKET,
    build_exit_order,
)
from copytrader.execution.order_router import (
    STATUS_CANCELLED,
    STATUS_FILLED,
    ExecutionRouter,
    OrderResult,
)
from copytrader.execution.paper_ledger import PaperTradingError, PaperTradingLedger
from copytrader.observability import notifications as notif
from copytrader.observability.logger import get_logger, short_id
from copytrader.observability.metrics import metrics
from copytrader.policy.trade_filter import matches_market_filter

log = get_logger(__name__)

STATE_ACTIVE = "ACTIVE"
STATE_PENDING = "PENDING"

# Per-position failures that skip one check instead of the whole sweep:
# transport errors plus malformed venue payloads.
_CHECK_ERRORS = (httpx.HTTPError, asyncio.TimeoutError, ValueError, TypeError, AttributeError)

Notify = Callable[[notif.Notification], Awaitable[None]]


@dataclass
class StopLossPosition:
    """A covered position and its stop level."""
    token_id: str
    entry_price: float
    shares: float
    stop_price: float
    condition_id: str = ""
    market: str = ""
    outcome: str = ""
    entry_timestamp: float = field(default_factory=time.time)
    pending: bool = False
    pending_order_id: str = ""
    last_checked: float = 0.0
    last_resolution_check: float = 0.0

    @property
    def state(self) -> str:
        return STATE_PENDING if self.pending else STATE_ACTIVE

    def loss_pct(self, price: float) -> float:
        if self.entry_price <= 0:
            return 0.0
        return (self.entry_price - price) / self.entry_price * 100

    def to_dict(self) -> dict[str, Any]:
        d = dict(self.__dict__)
        d["state"] = self.state
        return d


# ── Pure rules ───────────────────────────────────────────────────────

def stop_price_for(entry_price: float, percentage: float) -> float:
    return entry_price * (1 - percentage / 100)


def should_trigger(
    pos: StopLossPosition,
    price: float,
    *,
    percentage: float,
    min_hold_secs: float,
    now: float,
) -> bool:
    """Held long enough, at or below the stop, and down at least ``percentage``."""
    if now - pos.entry_timestamp < min_hold_secs:
        return False
    if price > pos.stop_price:
        return False
    return pos.loss_pct(price) >= percentage


def is_winning(entry_price: float, price: float, threshold: float) -> bool:
    """A position this far in the money is never stopped out."""
    return price > threshold or (price > entry_price and price > 0.5)


def seems_wrong_token(entry_price: float, price: float, opposite_price: float) -> bool:
    """Both outcomes of a binary market cannot win (or lose) at once.

    If the price we read and the opposite outcome's price agree, the
    price most likely belongs to the wrong token.
    """
    both_winning = (
        opposite_price > entry_price and opposite_price > 0.5
        and price > entry_price and price > 0.5
    )
    both_losing = (
        opposite_price < entry_price and opposite_price < 0.5
        and price < entry_price and price < 0.5
    )
    return both_winning or both_losing


def market_type(title: str) -> str:
    """Series key of a rotating market: the title before the first ``-``."""
    return title.split("-", 1)[0].strip().lower()


# ── Monitor ──────────────────────────────────────────────────────────

class StopLossMonitor:
    """Owns the StopLossPosition table."""

    def __init__(
        self,
        cfg: BotConfig,
        *,
        router: ExecutionRouter,
        book: PositionBook,
        ledger: PaperTradingLedger,
        data_api: DataAPIClient,
        clob: CLOBClient | None,
        feed: WebSocketFeed | None,
        notify: Notify,
    ):
        self._cfg = cfg
        self._sl = cfg.stop_loss
        self._router = router
        self._book = book
        self._ledger = ledger
        self._data_api = data_api
        self._clob = clob
        self._feed = feed
        self._notify = notify
        self._positions: dict[str, StopLossPosition] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._verified_tokens: set[str] = set()

    # ── Table access ─────────────────────────────────────────────────

    @property
    def enabled(self) -> bool:
        return self._sl.enabled

    def get(self, token_id: str) -> StopLossPosition | None:
        return self._positions.get(token_id)

    def positions(self) -> list[StopLossPosition]:
        return list(self._positions.values())

    def __len__(self) -> int:
        return len(self._positions)

    def _lock(self, token_id: str) -> asyncio.Lock:
        return self._locks.setdefault(token_id, asyncio.Lock())

    def covers(self, *, condition_id: str, market: str) -> bool:
        return self._sl.enabled and matches_market_filter(
            self._sl.market_filter, condition_id=condition_id, title=market,
        )

    # ── NONE → ACTIVE ────────────────────────────────────────────────

    async def register(
        self,
        token_id: str,
        *,
        entry_price: float,
        shares: float,
        condition_id: str = "",
        market: str = "",
        outcome: str = "",
    ) -> StopLossPosition | None:
        """Cover a filled BUY. Returns None when coverage does not apply."""
        if not self.covers(condition_id=condition_id, market=market):
            return None
        if entry_price <= 0 or shares <= 0:
            return None

        series = market_type(market)
        if series:
            for other in list(self._positions.values()):
                if (
                    other.token_id != token_id
                    and other.condition_id
                    and other.condition_id.lower() != condition_id.lower()
                    and market_type(other.market) == series
                ):
                    await self.release(other.token_id, "market_rotated")

        pos = self._positions.get(token_id)
        if pos is None:
            pos = StopLossPosition(
                token_id=token_id,
                entry_price=entry_price,
                shares=shares,
                stop_price=stop_price_for(entry_price, self._sl.percentage),
                condition_id=condition_id,
                market=market,
                outcome=outcome,
            )
            self._positions[token_id] = pos
        else:
            total = pos.shares + shares
            pos.entry_price = (pos.entry_price * pos.shares + entry_price * shares) / total
            pos.shares = total
            pos.stop_price = stop_price_for(pos.entry_price, self._sl.percentage)

        if self._feed is not None:
            await self._feed.subscribe(token_id)

        log.info(
            "stop_loss.registered",
            token_id=short_id(token_id),
            entry=round(pos.entry_price, 4),
            stop=round(pos.stop_price, 4),
            shares=round(pos.shares, 4),
        )
        await self._notify(notif.Notification(
            kind=notif.STOP_LOSS_REGISTERED,
            title="Stop-loss armed",
            fields={
                "market": market,
                "outcome": outcome,
                "entry_price": round(pos.entry_price, 4),
                "stop_price": round(pos.stop_price, 4),
                "shares": round(pos.shares, 2),
            },
        ))
        return pos

    # ── Removal ──────────────────────────────────────────────────────

    async def release(self, token_id: str, reason: str) -> bool:
        """Remove a token's entry and its price subscription."""
        pos = self._positions.pop(token_id, None)
        self._locks.pop(token_id, None)
        self._verified_tokens.discard(token_id)
        if self._feed is not None:
            await self._feed.unsubscribe(token_id)
        if pos is not None:
            log.info("stop_loss.released", token_id=short_id(token_id), reason=reason)
        return pos is not None

    def sync_shares(self, token_id: str, shares_held: float) -> None:
        """Shrink coverage after a partial copy SELL."""
        pos = self._positions.get(token_id)
        if pos is not None and shares_held < pos.shares:
            pos.shares = shares_held

    async def sweep_resolved(self) -> int:
        """Release entries whose market has resolved."""
        released = 0
        now = time.time()
        interval = self._cfg.stop_loss_check_interval_secs
        for pos in list(self._positions.values()):
            if not pos.condition_id or now - pos.last_resolution_check < interval:
                continue
            pos.last_resolution_check = now
            try:
                resolution = await self._resolution(pos.condition_id)
                if resolution is not None and resolution.resolved:
                    if await self.release(pos.token_id, "market_resolved"):
                        released += 1
            except _CHECK_ERRORS as e:
                log.warning(
                    "stop_loss.resolution_check_failed",
                    token_id=short_id(pos.token_id),
                    error=str(e),
                )
        return released

    async def cleanup_rotated_markets(self, events: list[TradeEvent]) -> int:
        """Release entries superseded by a newer market of the same series."""
        released = 0
        for pos in list(self._positions.values()):
            series = market_type(pos.market)
            if not series or not pos.condition_id:
                continue
            for event in events:
                if (
                    event.condition_id
                    and event.condition_id.lower() != pos.condition_id.lower()
                    and market_type(event.title) == series
                    and event.timestamp > pos.entry_timestamp
                ):
                    if await self.release(pos.token_id, "market_rotated"):
                        released += 1
                    break
        return released

    # ── Pushed path ──────────────────────────────────────────────────

    async def on_tick(self, tick: PriceTick) -> None:
        """React to a pushed price for a covered token."""
        pos = self._positions.get(tick.token_id)
        if pos is None or pos.pending:
            return
        async with self._lock(tick.token_id):
            pos = self._positions.get(tick.token_id)
            if pos is None or pos.pending:
                return
            if not self.covers(condition_id=pos.condition_id, market=pos.market):
                await self.release(pos.token_id, "filter_mismatch")
                return
            if not should_trigger(
                pos,
                tick.price,
                percentage=self._sl.percentage,
                min_hold_secs=self._sl.min_hold_secs,
                now=time.time(),
            ):
                return

            self._set_pending(pos, True)
            await self._announce_trigger(pos, tick.price, path="pushed")
            shares = self._sellable_shares(pos)
            if shares <= 0:
                await self.release(pos.token_id, "no_shares_held")
                return
            order = build_exit_order(
                token_id=pos.token_id,
                shares=shares,
                price=tick.price,
                order_kind=ORDER_KIND_MARKET,
                market=pos.market,
                condition_id=pos.condition_id,
                outcome=pos.outcome,
            )
            result = await self._router.submit(order)
            if result.is_filled:
                await self._close(pos, result.fill_price or tick.price, result.fill_size or shares, "stop_loss")
            else:
                await self._order_failed(pos, result)

    # ── Polled path ──────────────────────────────────────────────────

    async def sweep(self) -> int:
        """Check every ACTIVE position and confirm every PENDING one.

        Returns the number of positions closed during the sweep.
        """
        if not self._sl.enabled:
            return 0
        closed = 0
        now = time.time()
        interval = self._cfg.stop_loss_check_interval_secs
        for pos in list(self._positions.values()):
            try:
                if pos.pending:
                    if pos.pending_order_id and await self._confirm_pending(pos):
                        closed += 1
                    continue
                if now - pos.last_checked < interval:
                    continue
                if await self._check_polled(pos, now):
                    closed += 1
            except _CHECK_ERRORS as e:
                log.warning(
                    "stop_loss.check_failed",
                    token_id=short_id(pos.token_id),
                    error=str(e),
                )
        return closed

    async def _check_polled(self, pos: StopLossPosition, now: float) -> bool:
        async with self._lock(pos.token_id):
            if self._positions.get(pos.token_id) is not pos or pos.pending:
                return False
            pos.last_checked = now
            if self._router.paper_mode:
                self._ledger.mark_checked(pos.token_id, now)

            price = await self._current_price(pos)
            if price is None:
                return False
            if is_winning(pos.entry_price, price, self._sl.winning_price_threshold):
                return False
            if not should_trigger(
                pos,
                price,
                percentage=self._sl.percentage,
                min_hold_secs=self._sl.min_hold_secs,
                now=now,
            ):
                return False

            self._set_pending(pos, True)
            await self._announce_trigger(pos, price, path="polled")

            resolution = await self._resolution(pos.condition_id)
            settle_price = resolution.settlement_price(pos.outcome) if resolution else None
            if settle_price is not None:
                return await self._close_resolved(pos, settle_price)

            shares = self._sellable_shares(pos)
            if shares <= 0:
                await self.release(pos.token_id, "no_shares_held")
                return False
            order = build_exit_order(
                token_id=pos.token_id,
                shares=shares,
                price=pos.stop_price,
                order_kind=ORDER_KIND_LIMIT,
                market=pos.market,
                condition_id=pos.condition_id,
                outcome=pos.outcome,
            )
            result = await self._router.submit(order)
            if result.is_filled:
                await self._close(pos, result.fill_price, result.fill_size, "stop_loss")
                return True
            if result.success:
                pos.pending_order_id = result.order_id
                log.info(
                    "stop_loss.order_resting",
                    token_id=short_id(pos.token_id),
                    order_id=short_id(result.order_id),
                    stop=round(pos.stop_price, 4),
                )
                return False
            await self._order_failed(pos, result)
            return False

    async def _confirm_pending(self, pos: StopLossPosition) -> bool:
        """PENDING → CLOSED once the venue reports the exit filled."""
        result = await self._router.lookup_order(pos.pending_order_id)
        if result.status == STATUS_FILLED:
            fill_price = result.fill_price if 0.0 < result.fill_price <= 1.0 else pos.stop_price
            await self._close(pos, fill_price, self._sellable_shares(pos), "stop_loss")
            return True
        if result.status == STATUS_CANCELLED:
            log.warning(
                "stop_loss.order_cancelled",
                token_id=short_id(pos.token_id),
                order_id=short_id(pos.pending_order_id),
            )
            pos.pending_order_id = ""
            self._set_pending(pos, False)
        return False

    # ── Prices ───────────────────────────────────────────────────────

    async def _price_of(self, token_id: str) -> float | None:
        if self._feed is not None:
            tick = self._feed.get_last_price(token_id, self._sl.ws_price_max_age_secs)
            if tick is not None:
                return tick.price
        if self._clob is None:
            return None
        price = await self._clob.get_midpoint(token_id)
        if price is None or not 0.0 <= price <= 1.0:
            return None
        return price

    async def _current_price(self, pos: StopLossPosition) -> float | None:
        """Price for the stop-loss check, or None to skip this round."""
        token_id, opposite_token = await self._resolve_tokens(pos)
        price = await self._price_of(token_id)
        if price is None or opposite_token is None:
            return price

        opposite = await self._price_of(opposite_token)
        if opposite is not None and seems_wrong_token(pos.entry_price, price, opposite):
            log.warning(
                "stop_loss.price_unverified",
                token_id=short_id(pos.token_id),
                price=price,
                opposite_price=opposite,
                entry=pos.entry_price,
            )
            return None
        return price

    async def _resolve_tokens(self, pos: StopLossPosition) -> tuple[str, str | None]:
        """Which token to price, plus an opposite token to sanity-check against.

        When the market lists our outcome, its token id wins and no
        cross-check is needed. Otherwise fall back to the stored token
        and compare against the other side of the market.
        """
        if (
            not self._sl.verify_outcome_token
            or self._clob is None
            or not pos.condition_id
            or pos.token_id in self._verified_tokens
        ):
            return pos.token_id, None

        tokens = await self._clob.get_market_tokens(pos.condition_id)
        if pos.outcome:
            for t in tokens:
                if t.outcome.lower() == pos.outcome.lower():
                    if t.token_id != pos.token_id:
                        log.warning(
                            "stop_loss.token_mismatch",
                            stored=short_id(pos.token_id),
                            correct=short_id(t.token_id),
                            outcome=pos.outcome,
                        )
                        return t.token_id, None
                    self._verified_tokens.add(pos.token_id)
                    return pos.token_id, None

        others = [t.token_id for t in tokens if t.token_id and t.token_id != pos.token_id]
        if len(others) == 1:
            return pos.token_id, others[0]
        last_buy = self._book.last_tracked_buy(pos.condition_id)
        if last_buy is not None and last_buy.token_id != pos.token_id:
            return pos.token_id, last_buy.token_id
        return pos.token_id, None

    async def _resolution(self, condition_id: str) -> MarketResolution | None:
        if not condition_id:
            return None
        try:
            return await self._data_api.get_market_resolution(condition_id)
        except (httpx.HTTPError, ValueError, TypeError, AttributeError) as e:
            log.warning("stop_loss.resolution_lookup_failed", condition_id=short_id(condition_id), error=str(e))
            return None

    # ── Transitions ──────────────────────────────────────────────────

    def _set_pending(self, pos: StopLossPosition, pending: bool) -> None:
        pos.pending = pending
        if self._router.paper_mode:
            self._ledger.mark_stop_loss_pending(pos.token_id, pending)

    def _sellable_shares(self, pos: StopLossPosition) -> float:
        held = self._book.shares_held(pos.token_id)
        return min(pos.shares, held) if held > 0 else 0.0

    async def _announce_trigger(self, pos: StopLossPosition, price: float, *, path: str) -> None:
        metrics.incr("stop_loss.triggered", path=path)
        log.warning(
            "stop_loss.triggered",
            token_id=short_id(pos.token_id),
            path=path,
            entry=round(pos.entry_price, 4),
            stop=round(pos.stop_price, 4),
            price=price,
            loss_pct=round(pos.loss_pct(price), 2),
        )
        await self._notify(notif.Notification(
            kind=notif.STOP_LOSS_TRIGGERED,
            title="Stop-loss triggered",
            level="warning",
            fields={
                "market": pos.market,
                "outcome": pos.outcome,
                "entry_price": round(pos.entry_price, 4),
                "stop_price": round(pos.stop_price, 4),
                "price": price,
                "loss_pct": round(pos.loss_pct(price), 2),
                "path": path,
            },
        ))

    async def _close(self, pos: StopLossPosition, fill_price: float, shares: float, reason: str) -> None:
        pnl = shares * (fill_price - pos.entry_price)
        self._book.record_sell(pos.token_id, shares)
        await self.release(pos.token_id, reason)
        log.info(
            "stop_loss.closed",
            token_id=short_id(pos.token_id),
            price=fill_price,
            shares=round(shares, 4),
            pnl=round(pnl, 4),
        )
        await self._notify(notif.Notification(
            kind=notif.ORDER_PLACED,
            title="Stop-loss exit filled",
            fields={
                "market": pos.market,
                "side": "SELL",
                "shares": round(shares, 2),
                "price": fill_price,
                "pnl": round(pnl, 4),
            },
        ))

    async def _close_resolved(self, pos: StopLossPosition, settle_price: float) -> bool:
        """The market resolved while we were stopping out: settle instead."""
        if self._router.paper_mode and self._ledger.get_position(pos.token_id) is not None:
            try:
                trade = self._ledger.settle(pos.token_id, settle_price)
            except PaperTradingError as e:
                log.error("stop_loss.settle_failed", token_id=short_id(pos.token_id), error=str(e))
                self._set_pending(pos, False)
                return False
            self._book.forget(pos.token_id)
            await self.release(pos.token_id, "settled")
            metrics.incr("positions.settled")
            await self._notify(notif.Notification(
                kind=notif.POSITION_SETTLED,
                title="Position settled at resolution",
                fields={
                    "market": pos.market,
                    "outcome": pos.outcome,
                    "settlement_price": settle_price,
                    "pnl": round(trade.pnl, 4),
                    "note": "market resolved before the stop-loss exit",
                },
            ))
            return True

        # Real positions in a resolved market are redeemed, not sold.
        await self.release(pos.token_id, "market_resolved")
        return False

    async def _order_failed(self, pos: StopLossPosition, result: OrderResult) -> None:
        self._set_pending(pos, False)
        await self._notify(notif.Notification(
            kind=notif.ORDER_FAILED,
            title="Stop-loss exit failed",
            level="critical",
            message=result.error,
            fields={
                "market": pos.market,
                "error_kind": result.error_kind,
                "hint": result.hint,
            },
        ))
