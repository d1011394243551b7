"""Tests for the copy-trade engine: session control and the per-trade pipeline."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import CONDITION, TOKEN_NO, TOKEN_YES, WALLET, FakeFeed, make_config, make_event

from copytrader.connectors.polymarket_data import FeedUnavailable, MarketResolution
from copytrader.engine.loop import CopyTradeEngine
from copytrader.execution.paper_ledger import TRADE_SETTLEMENT, PaperTradingLedger
from copytrader.observability import notifications as notif
from copytrader.observability.metrics import metrics

BASELINE = [make_event(transaction_hash="0xold2"), make_event(transaction_hash="0xold1")]


def _data_api(*pages) -> MagicMock:
    api = MagicMock()
    api.fetch_trades = AsyncMock(side_effect=list(pages))
    api.get_token_shares = AsyncMock(return_value=None)
    api.get_positions = AsyncMock(return_value=[])
    api.get_market_resolution = AsyncMock(return_value=None)
    api.close = AsyncMock()
    return api


def _clob() -> MagicMock:
    clob = MagicMock()
    clob.is_ready = True
    clob.get_midpoint = AsyncMock(return_value=None)
    clob.get_market_tokens = AsyncMock(return_value=[])
    clob.close = AsyncMock()
    return clob


def _engine(*pages, ledger=None, feed=None, **sections) -> CopyTradeEngine:
    return CopyTradeEngine(
        make_config(**sections),
        data_api=_data_api(*pages),
        clob=_clob(),
        feed=feed,
        ledger=ledger,
    )


def _page(*new, baseline=BASELINE):
    """Newest-first page: new trades on top of the baseline."""
    return list(reversed(new)) + list(baseline)


# ─── session control ───────────────────────────────────────────────────

class TestSession:
    @pytest.mark.asyncio
    async def test_baseline_poll_copies_nothing(self):
        eng = _engine(BASELINE)
        sink = notif.MemorySink()
        assert await eng.start(WALLET, sink)
        try:
            assert eng.state.is_polling
            assert eng.dedup.is_initialized
            assert len(eng.dedup) == 2
            assert eng.ledger.history == ()
            assert sink.kinds() == [notif.MONITORING_STARTED]
            assert eng.cycle_history[-1].baseline
        finally:
            await eng.stop()

    @pytest.mark.asyncio
    async def test_invalid_wallet_rejected(self):
        eng = _engine(BASELINE)
        sink = notif.MemorySink()
        assert not await eng.start("0x1234", sink)
        assert not eng.state.is_polling
        assert sink.kinds() == [notif.ORDER_FAILED]
        eng._data_api.fetch_trades.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stop_rules(self):
        eng = _engine(BASELINE)
        sink = notif.MemorySink()
        assert not await eng.stop()
        await eng.start(WALLET, sink)
        assert not await eng.stop(notif.MemorySink())
        assert eng.state.is_polling
        assert await eng.stop(sink)
        assert not eng.state.is_polling
        assert eng.state.destination is None
        assert sink.kinds()[-1] == notif.MONITORING_STOPPED
        assert not await eng.stop()

    @pytest.mark.asyncio
    async def test_restart_reseeds_baseline(self):
        eng = _engine(BASELINE, BASELINE, _page(make_event(transaction_hash="0xnew")))
        await eng.start(WALLET, notif.MemorySink())
        await eng.stop()
        await eng.start(WALLET, notif.MemorySink())
        assert eng.cycle_history[-1].baseline
        cycle = await eng.run_cycle()
        await eng.stop()
        assert cycle.trades_copied == 1

    @pytest.mark.asyncio
    async def test_notifications_after_stop_go_to_log(self):
        eng = _engine(BASELINE, _page(make_event(transaction_hash="0xnew")))
        sink = notif.MemorySink()
        await eng.start(WALLET, sink)
        await eng.stop()
        count = len(sink.notifications)
        cycle = await eng.run_cycle()
        assert cycle.trades_copied == 1
        assert len(sink.notifications) == count


# ─── pipeline ──────────────────────────────────────────────────────────

class TestPipeline:
    @pytest.mark.asyncio
    async def test_new_buy_is_copied_in_paper_mode(self):
        eng = _engine(BASELINE, _page(make_event(transaction_hash="0xnew", price=0.50)))
        sink = notif.MemorySink()
        await eng.start(WALLET, sink)
        cycle = await eng.run_cycle()
        await eng.stop()

        assert cycle.trades_detected == 1
        assert cycle.trades_copied == 1
        pos = eng.ledger.get_position(TOKEN_YES)
        assert pos is not None
        assert pos.entry_value == pytest.approx(1.0)
        assert eng.book.initial_placed(TOKEN_YES)
        assert notif.TRADE_DETECTED in sink.kinds()
        assert notif.ORDER_PLACED in sink.kinds()
        assert metrics.counter("trades.detected") == 1

    @pytest.mark.asyncio
    async def test_trades_processed_oldest_first(self):
        first = make_event(transaction_hash="0xa", asset=TOKEN_YES)
        second = make_event(transaction_hash="0xb", asset=TOKEN_NO, outcome="Down")
        eng = _engine(BASELINE, _page(first, second))
        await eng.start(WALLET, notif.MemorySink())
        await eng.run_cycle()
        await eng.stop()
        assert [t.token_id for t in eng.ledger.history] == [TOKEN_YES, TOKEN_NO]

    @pytest.mark.asyncio
    async def test_second_initial_buy_in_same_token_skipped(self):
        eng = _engine(
            BASELINE,
            _page(make_event(transaction_hash="0x1")),
            _page(make_event(transaction_hash="0x2"), baseline=[]),
        )
        sink = notif.MemorySink()
        await eng.start(WALLET, sink)
        await eng.run_cycle()
        cycle = await eng.run_cycle()
        await eng.stop()
        assert cycle.trades_skipped == 1
        skipped = sink.of_kind(notif.ORDER_SKIPPED)
        assert "initial_trade_already_placed" in skipped[-1].message

    @pytest.mark.asyncio
    async def test_high_confidence_add_only_once(self):
        eng = _engine(
            BASELINE,
            _page(
                make_event(transaction_hash="0x1", price=0.50),
                make_event(transaction_hash="0x2", price=0.90),
                make_event(transaction_hash="0x3", price=0.91),
            ),
            copy_trade={"add_high_confidence_enabled": True, "add_high_confidence_size_usd": 2.0},
        )
        await eng.start(WALLET, notif.MemorySink())
        cycle = await eng.run_cycle()
        await eng.stop()
        assert cycle.trades_copied == 2
        assert cycle.trades_skipped == 1
        assert eng.book.high_confidence_add_placed(TOKEN_YES)

    @pytest.mark.asyncio
    async def test_sell_copies_tracked_fraction(self):
        eng = _engine(
            BASELINE,
            _page(
                make_event(transaction_hash="0x1", price=0.50),
                make_event(transaction_hash="0x2", side="SELL", price=0.60, size=100.0),
            ),
        )
        eng._data_api.get_token_shares.return_value = 0.0   # tracked wallet fully exited
        await eng.start(WALLET, notif.MemorySink())
        cycle = await eng.run_cycle()
        await eng.stop()
        assert cycle.trades_copied == 2
        assert eng.ledger.get_position(TOKEN_YES) is None
        assert eng.ledger.realized_pnl == pytest.approx(0.20)
        assert not eng.book.initial_placed(TOKEN_YES)

    @pytest.mark.asyncio
    async def test_sell_without_position_skipped(self):
        eng = _engine(BASELINE, _page(make_event(transaction_hash="0x1", side="SELL")))
        sink = notif.MemorySink()
        await eng.start(WALLET, sink)
        cycle = await eng.run_cycle()
        await eng.stop()
        assert cycle.trades_skipped == 1
        assert "no_position" in sink.of_kind(notif.ORDER_SKIPPED)[0].message
        eng._data_api.get_token_shares.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_position_count_limit(self):
        eng = _engine(
            BASELINE,
            _page(
                make_event(transaction_hash="0x1", asset=TOKEN_YES),
                make_event(transaction_hash="0x2", asset=TOKEN_NO, outcome="Down"),
            ),
            risk={"max_positions": 1},
        )
        sink = notif.MemorySink()
        await eng.start(WALLET, sink)
        cycle = await eng.run_cycle()
        await eng.stop()
        assert cycle.trades_copied == 1
        assert cycle.trades_skipped == 1
        assert "position_count" in sink.of_kind(notif.ORDER_SKIPPED)[0].message

    @pytest.mark.asyncio
    async def test_ineligible_trade_skipped_with_reasons(self):
        eng = _engine(
            BASELINE,
            _page(make_event(transaction_hash="0x1")),
            copy_trade={"market_filter": ["election"]},
        )
        sink = notif.MemorySink()
        await eng.start(WALLET, sink)
        await eng.run_cycle()
        await eng.stop()
        assert eng.ledger.history == ()
        assert "market does not match filter" in sink.of_kind(notif.ORDER_SKIPPED)[0].message

    @pytest.mark.asyncio
    async def test_capped_order_notifies(self):
        eng = _engine(
            BASELINE,
            _page(
                make_event(transaction_hash="0x1", price=0.50),
                make_event(transaction_hash="0x2", price=0.90),
            ),
            copy_trade={"add_high_confidence_enabled": True, "add_high_confidence_size_usd": 5.0},
            risk={"max_bet_per_market_usd": 4.0},
        )
        sink = notif.MemorySink()
        await eng.start(WALLET, sink)
        await eng.run_cycle()
        await eng.stop()
        assert notif.ORDER_CAPPED in sink.kinds()
        assert eng.ledger.exposure_for(TOKEN_YES) <= 4.0 + 1e-9


# ─── fault isolation ───────────────────────────────────────────────────

class TestFaults:
    @pytest.mark.asyncio
    async def test_feed_failure_does_not_stop_the_loop(self):
        eng = _engine(
            BASELINE,
            FeedUnavailable("503"),
            _page(make_event(transaction_hash="0x1")),
        )
        await eng.start(WALLET, notif.MemorySink())
        failed = await eng.run_cycle()
        recovered = await eng.run_cycle()
        await eng.stop()
        assert failed.status == "feed_unavailable"
        assert recovered.trades_copied == 1

    @pytest.mark.asyncio
    async def test_one_failing_trade_does_not_block_others(self):
        eng = _engine(
            BASELINE,
            _page(
                make_event(transaction_hash="0x1", asset=TOKEN_YES),
                make_event(transaction_hash="0x2", asset=TOKEN_NO, outcome="Down"),
            ),
        )
        submit = eng.router.submit
        calls = []

        async def flaky(order):
            calls.append(order.token_id)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return await submit(order)

        eng.router.submit = flaky
        await eng.start(WALLET, notif.MemorySink())
        cycle = await eng.run_cycle()
        await eng.stop()
        assert cycle.trades_failed == 1
        assert cycle.trades_copied == 1
        assert cycle.errors
        assert eng.ledger.get_position(TOKEN_NO) is not None

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_break_cycle(self):
        eng = _engine(BASELINE, _page(make_event(transaction_hash="0x1")))

        async def broken_sink(notification):
            raise RuntimeError("chat down")

        await eng.start(WALLET, broken_sink)
        cycle = await eng.run_cycle()
        await eng.stop()
        assert cycle.trades_copied == 1


# ─── stop-loss and settlement wiring ───────────────────────────────────

class TestRiskWiring:
    @pytest.mark.asyncio
    async def test_filled_buy_arms_stop_loss(self):
        feed = FakeFeed()
        eng = _engine(
            BASELINE,
            _page(make_event(transaction_hash="0x1", price=0.70)),
            feed=feed,
            stop_loss={"enabled": True, "percentage": 20, "verify_outcome_token": False},
        )
        sink = notif.MemorySink()
        await eng.start(WALLET, sink)
        await eng.run_cycle()
        await eng.stop()
        pos = eng.stop_loss.get(TOKEN_YES)
        assert pos is not None
        assert pos.stop_price == pytest.approx(0.56)
        assert TOKEN_YES in feed.subscribed
        assert feed.callbacks == [eng.stop_loss.on_tick]
        assert notif.STOP_LOSS_REGISTERED in sink.kinds()
        await eng.close()

    @pytest.mark.asyncio
    async def test_resolved_paper_position_settled_during_cycle(self):
        eng = _engine(BASELINE, _page(make_event(transaction_hash="0x1", price=0.50, outcome="Up")))
        eng._data_api.get_market_resolution.return_value = MarketResolution(
            condition_id=CONDITION, resolved=True, outcomes=("Up", "Down"), outcome_prices=(1.0, 0.0),
        )
        sink = notif.MemorySink()
        await eng.start(WALLET, sink)
        cycle = await eng.run_cycle()
        await eng.stop()
        assert cycle.positions_settled == 1
        assert eng.ledger.history[-1].side == TRADE_SETTLEMENT
        assert eng.ledger.realized_pnl == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_bad_price_body_does_not_block_settlement(self):
        eng = _engine(
            BASELINE,
            _page(make_event(transaction_hash="0x1", price=0.50, outcome="Up")),
            feed=FakeFeed(),
            stop_loss={"enabled": True, "percentage": 20, "verify_outcome_token": False},
        )
        eng._clob.get_midpoint = AsyncMock(side_effect=ValueError("Expecting value"))
        eng._data_api.get_market_resolution.return_value = MarketResolution(
            condition_id=CONDITION, resolved=True, outcomes=("Up", "Down"), outcome_prices=(1.0, 0.0),
        )
        await eng.start(WALLET, notif.MemorySink())
        cycle = await eng.run_cycle()
        await eng.stop()
        eng._clob.get_midpoint.assert_awaited()
        assert cycle.positions_settled == 1
        assert cycle.errors == []
        assert eng.ledger.history[-1].side == TRADE_SETTLEMENT

    @pytest.mark.asyncio
    async def test_failing_stop_loss_sweep_still_settles(self):
        eng = _engine(
            BASELINE,
            _page(make_event(transaction_hash="0x1", price=0.50, outcome="Up")),
            feed=FakeFeed(),
            stop_loss={"enabled": True, "percentage": 20, "verify_outcome_token": False},
        )
        eng._data_api.get_market_resolution.return_value = MarketResolution(
            condition_id=CONDITION, resolved=True, outcomes=("Up", "Down"), outcome_prices=(1.0, 0.0),
        )
        await eng.start(WALLET, notif.MemorySink())
        eng.stop_loss.sweep = AsyncMock(side_effect=RuntimeError("boom"))
        cycle = await eng.run_cycle()
        await eng.stop()
        assert cycle.positions_settled == 1
        assert cycle.errors == ["stop_loss sweep: boom"]

    @pytest.mark.asyncio
    async def test_startup_warns_about_positions_at_cap(self):
        ledger = PaperTradingLedger(100.0)
        ledger.buy(TOKEN_YES, 10.0, 0.50)
        eng = _engine(BASELINE, ledger=ledger, risk={"max_bet_per_market_usd": 10.0})
        sink = notif.MemorySink()
        await eng.start(WALLET, sink)
        await eng.stop()
        warnings = sink.of_kind(notif.STARTUP_CAP_WARNING)
        assert len(warnings) == 1
        assert warnings[0].fields["token_id"] == TOKEN_YES

    @pytest.mark.asyncio
    async def test_status_snapshot(self):
        eng = _engine(BASELINE)
        await eng.start(WALLET, notif.MemorySink())
        status = eng.get_status()
        await eng.stop()
        assert status["polling"] is True
        assert status["mode"] == "paper"
        assert status["baseline_done"] is True
        assert status["paper"]["balance"] == 1000.0
