"""Settlement checker — closes paper positions whose market resolved.

Runs once per cycle in paper mode. Each open position is looked up at
most once per stop-loss check interval; a resolved market with a valid
price settles the position at that price, whatever its stop-loss state
(a pending stop-loss exit is superseded by the resolution).
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import httpx

from copytrader.connectors.polymarket_data import DataAPIClient
from copytrader.engine.positions import PositionBook
from copytrader.engine.stop_loss import StopLossMonitor
from copytrader.execution.paper_ledger import PaperTradingError, PaperTradingLedger
from copytrader.observability import notifications as notif
from copytrader.observability.logger import get_logger, short_id
from copytrader.observability.metrics import metrics

log = get_logger(__name__)


@dataclass
class SettlementReport:
    checked: int = 0
    settled: list[str] = field(default_factory=list)
    realized_pnl: float = 0.0


class SettlementChecker:
    """Settle resolved paper positions."""

    def __init__(
        self,
        *,
        ledger: PaperTradingLedger,
        book: PositionBook,
        stop_loss: StopLossMonitor,
        data_api: DataAPIClient,
        notify: Callable[[notif.Notification], Awaitable[None]],
        check_interval_secs: float = 60.0,
    ):
        self._ledger = ledger
        self._book = book
        self._stop_loss = stop_loss
        self._data_api = data_api
        self._notify = notify
        self._interval = check_interval_secs
        self._last_checked: dict[str, float] = {}

    async def sweep(self, now: float | None = None) -> SettlementReport:
        now = now if now is not None else time.time()
        report = SettlementReport()
        for pos in self._ledger.positions():
            if not pos.condition_id or now - self._last_checked.get(pos.token_id, 0.0) < self._interval:
                continue
            self._last_checked[pos.token_id] = now
            report.checked += 1
            try:
                resolution = await self._data_api.get_market_resolution(pos.condition_id)
            except (httpx.HTTPError, ValueError) as e:
                log.warning(
                    "settlement.lookup_failed",
                    condition_id=short_id(pos.condition_id),
                    error=str(e),
                )
                continue
            if resolution is None:
                continue
            price = resolution.settlement_price(pos.outcome)
            if price is None:
                continue

            try:
                trade = self._ledger.settle(pos.token_id, price)
            except PaperTradingError as e:
                log.error("settlement.failed", token_id=short_id(pos.token_id), error=str(e))
                continue

            self._last_checked.pop(pos.token_id, None)
            self._book.forget(pos.token_id)
            await self._stop_loss.release(pos.token_id, "settled")
            metrics.incr("positions.settled")
            report.settled.append(pos.token_id)
            report.realized_pnl += trade.pnl
            await self._notify(notif.Notification(
                kind=notif.POSITION_SETTLED,
                title="Position settled",
                message=f'Market "{pos.market}" resolved; position closed automatically.',
                fields={
                    "market": pos.market,
                    "outcome": pos.outcome,
                    "shares": round(trade.shares, 2),
                    "avg_price": round(pos.avg_price, 4),
                    "settlement_price": price,
                    "proceeds": round(trade.value, 2),
                    "pnl": round(trade.pnl, 4),
                    "superseded_stop_loss": pos.stop_loss_pending,
                },
            ))

        if report.settled:
            log.info(
                "settlement.swept",
                checked=report.checked,
                settled=len(report.settled),
                pnl=round(report.realized_pnl, 4),
            )
        return report
