"""Copy-trade engine — the poll scheduler and per-trade pipeline.

One monitoring session follows one wallet. Each cycle:
  1. Fetch the wallet's latest activity page
  2. Release stop-loss coverage on rotated (superseded) markets
  3. Dedup: the first page is a silent baseline, later pages yield new
     trades oldest-first
  4. Per new trade: eligibility → sizing → risk → execute
  5. Stop-loss sweep (polled path), then settlement (paper) or the
     resolved-market sweep (real)
  6. Schedule the next cycle, only after this one has finished

A failure in one trade is logged and never stops its siblings or the
next cycle. ``stop()`` cancels the pending timer only: a cycle already
running completes, and anything it reports after the session ended is
written to the log instead of the (gone) destination.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from copytrader.config import BotConfig, is_valid_wallet
from copytrader.connectors.polymarket_clob import CLOBClient
from copytrader.connectors.polymarket_data import DataAPIClient, FeedUnavailable, TradeEvent
from copytrader.connectors.rate_limiter import rate_limiter
from copytrader.connectors.ws_feed import WebSocketFeed
from copytrader.engine.dedup import Deduplicator
from copytrader.engine.positions import PositionBook
from copytrader.engine.settlement import SettlementChecker
from copytrader.engine.stop_loss import StopLossMonitor
from copytrader.execution.order_builder import OrderSpec, build_copy_order, use_market_order
from copytrader.execution.order_router import ExecutionRouter, OrderResult
from copytrader.execution.paper_ledger import PaperTradingLedger
from copytrader.observability import notifications as notif
from copytrader.observability.logger import bind_cycle_context, get_logger, short_id
from copytrader.observability.metrics import metrics
from copytrader.policy.position_sizer import SizingContext, SizingDecision, size_buy, size_sell
from copytrader.policy.risk_limits import RiskCheckResult, check_position_limits
from copytrader.policy.trade_filter import EligibilityResult, evaluate_eligibility

log = get_logger(__name__)


@dataclass
class PollingState:
    """The active monitoring session, if any."""
    is_polling: bool = False
    wallet: str = ""
    destination: notif.NotificationSink | None = None
    session_id: int = 0
    started_at: float = 0.0


@dataclass
class CycleResult:
    """Summary of one poll cycle."""
    cycle_id: int
    started_at: float
    ended_at: float = 0.0
    duration_secs: float = 0.0
    baseline: bool = False
    trades_detected: int = 0
    trades_copied: int = 0
    trades_skipped: int = 0
    trades_failed: int = 0
    stop_losses_closed: int = 0
    positions_settled: int = 0
    errors: list[str] = field(default_factory=list)
    status: str = "pending"

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class TradeContext:
    """Carries one tracked trade through the pipeline stages."""
    event: TradeEvent
    cycle_id: int
    eligibility: EligibilityResult | None = None
    sizing: SizingDecision | None = None
    order: OrderSpec | None = None
    risk: RiskCheckResult | None = None
    result: OrderResult | None = None
    status: str = "pending"  # "pending" | "skipped" | "executed" | "failed"
    skip_reasons: list[str] = field(default_factory=list)


class CopyTradeEngine:
    """Coordinates feed, policy, execution and stop-loss for one wallet."""

    def __init__(
        self,
        config: BotConfig,
        *,
        data_api: DataAPIClient | None = None,
        clob: CLOBClient | None = None,
        feed: WebSocketFeed | None = None,
        ledger: PaperTradingLedger | None = None,
    ):
        self.config = config
        paper = config.engine.paper_mode
        timeout = config.execution.request_timeout_secs

        self._data_api = data_api or DataAPIClient(
            timeout=httpx.Timeout(timeout, connect=min(timeout, 10.0)),
        )
        self._clob = clob if clob is not None else CLOBClient(timeout=timeout)
        if feed is None and config.stop_loss.enabled:
            feed = WebSocketFeed()
        self._feed = feed

        self.ledger = ledger or PaperTradingLedger(config.paper.starting_balance)
        self.book = PositionBook(self.ledger, paper_mode=paper)
        self.router = ExecutionRouter(
            paper_mode=paper,
            ledger=self.ledger,
            clob=self._clob,
            config=config.execution,
        )
        self.stop_loss = StopLossMonitor(
            config,
            router=self.router,
            book=self.book,
            ledger=self.ledger,
            data_api=self._data_api,
            clob=self._clob,
            feed=self._feed,
            notify=self._notify,
        )
        self.settlement = SettlementChecker(
            ledger=self.ledger,
            book=self.book,
            stop_loss=self.stop_loss,
            data_api=self._data_api,
            notify=self._notify,
            check_interval_secs=config.stop_loss_check_interval_secs,
        )
        self.dedup = Deduplicator(require_tx_hash=config.engine.require_tx_hash)
        self.state = PollingState()

        if self._feed is not None:
            self._feed.on_tick(self.stop_loss.on_tick)

        self._cycle_lock = asyncio.Lock()
        self._feed_task: asyncio.Task[None] | None = None
        self._timer: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._cycle_count = 0
        self._cycle_history: list[CycleResult] = []

    @property
    def paper_mode(self) -> bool:
        return self.config.engine.paper_mode

    @property
    def feed(self) -> WebSocketFeed | None:
        return self._feed

    @property
    def cycle_history(self) -> list[CycleResult]:
        return list(self._cycle_history)

    # ── Session control ──────────────────────────────────────────────

    async def start(
        self,
        wallet: str | None = None,
        destination: notif.NotificationSink | None = None,
    ) -> bool:
        """Begin (or switch) monitoring. Returns False for an invalid wallet."""
        wallet = (wallet or self.config.engine.default_wallet or "").strip()
        sink = destination or notif.LogSink()
        if not is_valid_wallet(wallet):
            log.warning("engine.invalid_wallet", wallet=wallet[:12])
            await sink(notif.Notification(
                kind=notif.ORDER_FAILED,
                title="Invalid wallet address",
                level="warning",
                message="Expected 0x followed by 40 hex characters.",
                fields={"wallet": wallet},
            ))
            return False

        self._cancel_timer()
        self.state.session_id += 1
        self.state.is_polling = True
        self.state.wallet = wallet
        self.state.destination = sink
        self.state.started_at = time.time()
        self.dedup.reset()
        session = self.state.session_id

        if not self.paper_mode and not self._clob.is_ready:
            self._clob.initialize()
        await self._startup_checks()
        self._start_feed()

        log.info(
            "engine.monitoring_started",
            wallet=wallet[:10],
            paper=self.paper_mode,
            interval_secs=self.config.engine.poll_interval_secs,
            session=session,
        )
        await self._notify(notif.Notification(
            kind=notif.MONITORING_STARTED,
            title="Copy-trading started",
            fields={
                "wallet": wallet,
                "mode": "paper" if self.paper_mode else "real",
                "poll_interval_secs": self.config.engine.poll_interval_secs,
                "stop_loss": self.config.stop_loss.enabled,
            },
        ))

        await self.run_cycle()
        if self.state.is_polling and self.state.session_id == session:
            self._schedule(session)
        return True

    async def stop(self, destination: notif.NotificationSink | None = None) -> bool:
        """End monitoring. Returns False if not polling or not the owner."""
        if not self.state.is_polling:
            return False
        if destination is not None and destination is not self.state.destination:
            log.info("engine.stop_rejected", reason="destination_mismatch")
            return False

        self._cancel_timer()
        sink = self.state.destination
        wallet = self.state.wallet
        self.state.is_polling = False
        self.state.destination = None
        log.info("engine.monitoring_stopped", wallet=wallet[:10], cycles=self._cycle_count)
        if sink is not None:
            await self._deliver(sink, notif.Notification(
                kind=notif.MONITORING_STOPPED,
                title="Copy-trading stopped",
                fields={"wallet": wallet, **self.ledger.summary()} if self.paper_mode
                else {"wallet": wallet},
            ))
        return True

    async def close(self) -> None:
        """Stop everything and release network resources."""
        await self.stop()
        for task in list(self._tasks):
            if not task.done():
                await asyncio.wait({task}, timeout=self.config.execution.order_timeout_secs)
        if self._feed is not None:
            await self._feed.stop()
        if self._feed_task is not None:
            await asyncio.wait({self._feed_task}, timeout=5)
            if not self._feed_task.done():
                self._feed_task.cancel()
            self._feed_task = None
        await self._data_api.close()
        await self._clob.close()

    def _start_feed(self) -> None:
        if self._feed is None or not self.stop_loss.enabled:
            return
        if self._feed_task is None or self._feed_task.done():
            self._feed_task = asyncio.create_task(self._feed.start())
            log.info("engine.ws_feed_started")

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    def _spawn(self, coro: Any) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _schedule(self, session: int) -> None:
        self._timer = self._spawn(self._sleep_then_cycle(session))

    async def _sleep_then_cycle(self, session: int) -> None:
        await asyncio.sleep(self.config.engine.poll_interval_secs)
        if not self.state.is_polling or self.state.session_id != session:
            return
        # The cycle runs in its own task so stop() cannot cancel it midway.
        self._spawn(self._cycle_then_reschedule(session))

    async def _cycle_then_reschedule(self, session: int) -> None:
        await self.run_cycle()
        if self.state.is_polling and self.state.session_id == session:
            self._schedule(session)

    async def _startup_checks(self) -> None:
        """Seed real positions and flag any market already at its cap."""
        account = self.config.engine.account_address
        if not self.paper_mode and account:
            try:
                positions = await self._data_api.get_positions(account)
            except (httpx.HTTPError, ValueError) as e:
                log.warning("engine.startup_positions_failed", error=str(e))
            else:
                self.book.seed_from_account(positions)

        cap = self.config.per_market_cap
        if cap is None:
            return
        for token_id, exposure in self.book.tokens_at_or_over(cap):
            log.warning(
                "engine.position_at_cap",
                token_id=short_id(token_id),
                exposure=round(exposure, 2),
                cap=cap,
            )
            await self._notify(notif.Notification(
                kind=notif.STARTUP_CAP_WARNING,
                title="Position already at market cap",
                level="warning",
                message="New BUYs in this market will be skipped.",
                fields={"token_id": token_id, "exposure": round(exposure, 2), "cap": cap},
            ))

    # ── Notifications ────────────────────────────────────────────────

    async def _deliver(self, sink: notif.NotificationSink, notification: notif.Notification) -> None:
        try:
            await sink(notification)
        except Exception as e:
            log.warning("engine.notify_failed", kind=notification.kind, error=str(e))

    async def _notify(self, notification: notif.Notification) -> None:
        sink = self.state.destination
        if sink is None:
            log.info(
                "engine.notification_undelivered",
                kind=notification.kind,
                title=notification.title,
            )
            return
        await self._deliver(sink, notification)

    # ── Cycle ────────────────────────────────────────────────────────

    async def run_cycle(self) -> CycleResult:
        """Run one poll cycle. Cycles never overlap."""
        async with self._cycle_lock:
            self._cycle_count += 1
            cycle = CycleResult(cycle_id=self._cycle_count, started_at=time.time())
            bind_cycle_context(cycle_id=cycle.cycle_id, wallet=self.state.wallet[:10])
            log.debug("engine.cycle_start")

            events: list[TradeEvent] | None = None
            try:
                events = await self._data_api.fetch_trades(
                    self.state.wallet, limit=self.config.engine.activity_limit,
                )
            except FeedUnavailable as e:
                log.warning("engine.feed_unavailable", error=str(e))
                cycle.errors.append(f"feed: {e}")
                cycle.status = "feed_unavailable"

            if events is not None:
                await self._process_events(events, cycle)

            await self._run_sweeps(cycle)
            self._finish_cycle(cycle)
            return cycle

    async def _process_events(self, events: list[TradeEvent], cycle: CycleResult) -> None:
        if self.stop_loss.enabled and self.dedup.is_initialized:
            await self.stop_loss.cleanup_rotated_markets(events)

        batch = self.dedup.classify(events)
        if batch.baseline:
            cycle.baseline = True
            return

        for event in batch.new:
            cycle.trades_detected += 1
            metrics.incr("trades.detected", side=event.side)
            self.book.record_tracked_buy(event)
            try:
                ctx = await self._process_trade(event, cycle.cycle_id)
            except Exception as e:
                log.error(
                    "engine.trade_error",
                    tx=short_id(event.transaction_hash),
                    error=str(e),
                    exc_info=True,
                )
                cycle.errors.append(f"{short_id(event.transaction_hash)}: {e}")
                cycle.trades_failed += 1
                continue
            if ctx.status == "executed":
                cycle.trades_copied += 1
            elif ctx.status == "skipped":
                cycle.trades_skipped += 1
            else:
                cycle.trades_failed += 1

    async def _run_sweeps(self, cycle: CycleResult) -> None:
        """Stop-loss and settlement sweeps; one failing never skips the other."""
        if self.stop_loss.enabled:
            try:
                cycle.stop_losses_closed = await self.stop_loss.sweep()
            except Exception as e:
                self._sweep_failed(cycle, "stop_loss", e)
        try:
            if self.paper_mode:
                report = await self.settlement.sweep()
                cycle.positions_settled = len(report.settled)
            elif self.stop_loss.enabled:
                await self.stop_loss.sweep_resolved()
        except Exception as e:
            self._sweep_failed(cycle, "settlement", e)

    def _sweep_failed(self, cycle: CycleResult, sweep: str, error: Exception) -> None:
        log.error("engine.sweep_error", sweep=sweep, error=str(error), exc_info=True)
        cycle.errors.append(f"{sweep} sweep: {error}")

    def _finish_cycle(self, cycle: CycleResult) -> None:
        cycle.ended_at = time.time()
        cycle.duration_secs = round(cycle.ended_at - cycle.started_at, 3)
        if cycle.status == "pending":
            cycle.status = "completed"
        self._cycle_history.append(cycle)
        if len(self._cycle_history) > 100:
            self._cycle_history = self._cycle_history[-50:]

        metrics.incr("cycles.completed")
        metrics.histogram("cycle.duration_secs", cycle.duration_secs)
        metrics.gauge("positions.open", self.book.open_position_count())
        metrics.gauge("exposure.total_usd", self.book.total_exposure())
        log.info(
            "engine.cycle_complete",
            duration=cycle.duration_secs,
            baseline=cycle.baseline,
            detected=cycle.trades_detected,
            copied=cycle.trades_copied,
            skipped=cycle.trades_skipped,
            failed=cycle.trades_failed,
            status=cycle.status,
        )

    # ── Per-trade pipeline ───────────────────────────────────────────

    async def _process_trade(self, event: TradeEvent, cycle_id: int) -> TradeContext:
        ctx = TradeContext(event=event, cycle_id=cycle_id)
        log.info(
            "engine.trade_detected",
            tx=short_id(event.transaction_hash),
            side=event.side,
            price=event.price,
            usdc=round(event.usdc_size, 2),
            market=event.market_label[:60],
        )
        await self._notify(notif.Notification(
            kind=notif.TRADE_DETECTED,
            title=f"Tracked wallet {event.side}",
            fields={
                "market": event.market_label,
                "outcome": event.outcome,
                "side": event.side,
                "price": event.price,
                "shares": round(event.size, 2),
                "usdc": round(event.usdc_size, 2),
                "order_type": event.order_type,
            },
        ))

        if not self._stage_eligibility(ctx):
            return await self._skip(ctx)
        sized = await self._stage_sizing(ctx)
        if sized is None:
            return await self._skip(ctx)
        order, decision = sized
        if not self._stage_risk(ctx, order):
            return await self._skip(ctx)
        await self._stage_execute(ctx, order, decision)
        return ctx

    def _stage_eligibility(self, ctx: TradeContext) -> bool:
        ctx.eligibility = evaluate_eligibility(
            ctx.event,
            self.config.copy_trade,
            paper_mode=self.paper_mode,
            execution_ready=self.router.is_ready,
        )
        ctx.skip_reasons = list(ctx.eligibility.reasons)
        return ctx.eligibility.eligible

    async def _stage_sizing(self, ctx: TradeContext) -> tuple[OrderSpec, SizingDecision] | None:
        """Size the copy; returns the order to place, or None to skip."""
        event = ctx.event
        token_id = event.token_id
        market_order = use_market_order(event, self.config.copy_trade.use_market_orders)

        if event.side == "BUY":
            sizing_ctx = SizingContext(
                current_exposure=self.book.exposure_for(token_id),
                initial_placed=self.book.initial_placed(token_id),
                high_confidence_add_placed=self.book.high_confidence_add_placed(token_id),
                use_market_order=market_order,
            )
            decision = size_buy(event, sizing_ctx, self.config)
        else:
            own = self.book.shares_held(token_id)
            remaining = None
            if own > 0:
                remaining = await self._data_api.get_token_shares(self.state.wallet, token_id)
            sizing_ctx = SizingContext(
                own_shares=own,
                tracked_remaining_shares=remaining,
                use_market_order=market_order,
            )
            decision = size_sell(event, sizing_ctx, self.config)

        ctx.sizing = decision
        if not decision.should_order:
            ctx.skip_reasons = [decision.skip_reason]
            return None

        order = build_copy_order(event, decision, market_order=market_order)
        ctx.order = order
        if decision.capped:
            await self._notify(notif.Notification(
                kind=notif.ORDER_CAPPED,
                title="Order reduced to market cap",
                fields={
                    "market": event.market_label,
                    "requested": round(decision.requested_value, 2),
                    "value": round(decision.value, 2),
                    "exposure": round(decision.current_exposure, 2),
                    "cap": decision.per_market_cap,
                },
            ))
        elif decision.adjusted_to_minimum:
            await self._notify(notif.Notification(
                kind=notif.ORDER_ADJUSTED,
                title="Order raised to venue minimum",
                fields={
                    "market": event.market_label,
                    "side": decision.side,
                    "shares": decision.shares,
                    "value": round(decision.value, 2),
                },
            ))
        return order, decision

    def _stage_risk(self, ctx: TradeContext, order: OrderSpec) -> bool:
        ctx.risk = check_position_limits(
            order.value,
            order.side,
            order.token_id,
            self.book.snapshot(order.token_id),
            self.config,
        )
        if not ctx.risk.allowed:
            ctx.skip_reasons = [f"{ctx.risk.reason}: {ctx.risk.message}"]
        return ctx.risk.allowed

    async def _stage_execute(self, ctx: TradeContext, order: OrderSpec, decision: SizingDecision) -> None:
        result = await self.router.submit(order)
        ctx.result = result

        if not result.success:
            ctx.status = "failed"
            await self._notify(notif.Notification(
                kind=notif.ORDER_FAILED,
                title=f"Copy {order.side} failed",
                level="critical" if result.error_kind == "insufficient_funds" else "warning",
                message=result.error,
                fields={
                    "market": order.market,
                    "error_kind": result.error_kind,
                    "hint": result.hint,
                    "value": round(order.value, 2),
                },
            ))
            return

        ctx.status = "executed"
        shares = result.fill_size or order.size
        price = result.fill_price or order.price
        if order.side == "BUY":
            self.book.record_buy(
                order.token_id,
                result.value or order.value,
                shares,
                market=order.market,
                condition_id=order.condition_id,
            )
            if decision.is_high_confidence_add:
                self.book.mark_high_confidence_add(order.token_id)
            else:
                self.book.mark_initial(order.token_id)
            await self.stop_loss.register(
                order.token_id,
                entry_price=price,
                shares=shares,
                condition_id=order.condition_id,
                market=order.market,
                outcome=order.outcome,
            )
        else:
            if self.book.record_sell(order.token_id, shares):
                await self.stop_loss.release(order.token_id, "position_sold")
            else:
                self.stop_loss.sync_shares(order.token_id, self.book.shares_held(order.token_id))

        await self._notify(notif.Notification(
            kind=notif.ORDER_PLACED,
            title=f"Copied {order.side}" + (" (paper)" if result.paper else ""),
            fields={
                "market": order.market,
                "outcome": order.outcome,
                "side": order.side,
                "kind": order.order_kind,
                "shares": round(shares, 2),
                "price": price,
                "value": round(result.value or order.value, 2),
                "label": decision.confidence_label,
                "status": result.status,
                "open_positions": self.book.open_position_count(),
                "total_exposure": round(self.book.total_exposure(), 2),
            },
        ))

    async def _skip(self, ctx: TradeContext) -> TradeContext:
        ctx.status = "skipped"
        metrics.incr("trades.skipped")
        log.info(
            "engine.trade_skipped",
            tx=short_id(ctx.event.transaction_hash),
            reasons=ctx.skip_reasons,
        )
        await self._notify(notif.Notification(
            kind=notif.ORDER_SKIPPED,
            title=f"Skipped {ctx.event.side}",
            message="; ".join(ctx.skip_reasons),
            fields={"market": ctx.event.market_label, "price": ctx.event.price},
        ))
        return ctx

    # ── Status ───────────────────────────────────────────────────────

    def get_status(self) -> dict[str, Any]:
        return {
            "polling": self.state.is_polling,
            "wallet": self.state.wallet,
            "mode": "paper" if self.paper_mode else "real",
            "session_id": self.state.session_id,
            "cycles": self._cycle_count,
            "seen_trades": len(self.dedup),
            "baseline_done": self.dedup.is_initialized,
            "positions": self.book.summary(),
            "stop_loss_positions": len(self.stop_loss),
            "paper": self.ledger.summary() if self.paper_mode else None,
            "last_cycle": self._cycle_history[-1].to_dict() if self._cycle_history else None,
            "metrics": metrics.snapshot(),
            "rate_limits": rate_limiter.stats(),
        }
