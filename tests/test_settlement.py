"""Tests for paper position settlement on market resolution."""

from __future__ import annotations

from unittest.mock import AsyncMock

import httpx
import pytest

from conftest import CONDITION
from test_stop_loss import TOKEN, Harness

from copytrader.connectors.polymarket_data import MarketResolution
from copytrader.engine.settlement import SettlementChecker
from copytrader.execution.paper_ledger import TRADE_SETTLEMENT
from copytrader.observability import notifications as notif


def _resolved(prices=(1.0, 0.0), resolved=True) -> MarketResolution:
    return MarketResolution(
        condition_id=CONDITION,
        resolved=resolved,
        outcomes=("Up", "Down"),
        outcome_prices=prices,
    )


def _checker(h: Harness, interval: float = 60.0) -> SettlementChecker:
    return SettlementChecker(
        ledger=h.ledger,
        book=h.book,
        stop_loss=h.monitor,
        data_api=h.data_api,
        notify=h.sink,
        check_interval_secs=interval,
    )


class TestSettlement:
    @pytest.mark.asyncio
    async def test_resolved_market_settles_at_outcome_price(self):
        h = Harness()
        await h.open(value=10.0, price=0.50)
        h.data_api.get_market_resolution.return_value = _resolved((1.0, 0.0))

        report = await _checker(h).sweep(now=1000.0)
        assert report.settled == [TOKEN]
        assert report.realized_pnl == pytest.approx(10.0)
        assert h.ledger.get_position(TOKEN) is None
        assert h.ledger.history[-1].side == TRADE_SETTLEMENT
        assert h.ledger.balance == pytest.approx(110.0)
        assert h.monitor.get(TOKEN) is None
        assert notif.POSITION_SETTLED in h.sink.kinds()

    @pytest.mark.asyncio
    async def test_pending_stop_loss_is_superseded(self):
        h = Harness()
        await h.open(value=10.0, price=0.70)
        pos = h.monitor.get(TOKEN)
        pos.pending = True
        h.ledger.mark_stop_loss_pending(TOKEN)
        h.data_api.get_market_resolution.return_value = _resolved((1.0, 0.0))

        await _checker(h).sweep(now=1000.0)
        trade = h.ledger.history[-1]
        assert trade.side == TRADE_SETTLEMENT
        assert trade.price == 1.0
        assert trade.price != pytest.approx(pos.stop_price)
        note = h.sink.of_kind(notif.POSITION_SETTLED)[0]
        assert note.fields["superseded_stop_loss"] is True

    @pytest.mark.asyncio
    async def test_unresolved_market_left_open(self):
        h = Harness()
        await h.open()
        h.data_api.get_market_resolution.return_value = _resolved(resolved=False)
        report = await _checker(h).sweep(now=1000.0)
        assert report.checked == 1
        assert report.settled == []
        assert h.ledger.get_position(TOKEN) is not None

    @pytest.mark.asyncio
    async def test_invalid_resolution_price_ignored(self):
        h = Harness()
        await h.open()
        h.data_api.get_market_resolution.return_value = _resolved((-1.0, 2.0))
        report = await _checker(h).sweep(now=1000.0)
        assert report.settled == []

    @pytest.mark.asyncio
    async def test_lookups_throttled_per_position(self):
        h = Harness()
        await h.open()
        checker = _checker(h, interval=60.0)
        await checker.sweep(now=1000.0)
        await checker.sweep(now=1030.0)
        await checker.sweep(now=1061.0)
        assert h.data_api.get_market_resolution.await_count == 2

    @pytest.mark.asyncio
    async def test_lookup_failure_is_skipped(self):
        h = Harness()
        await h.open()
        h.data_api.get_market_resolution = AsyncMock(side_effect=httpx.ConnectError("down"))
        report = await _checker(h).sweep(now=1000.0)
        assert report.settled == []
        assert h.ledger.get_position(TOKEN) is not None
