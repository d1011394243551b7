"""Tests for the paper trading ledger."""

from __future__ import annotations

import pytest

from copytrader.execution.paper_ledger import (
    TRADE_SETTLEMENT,
    TRADE_STOP_LOSS,
    PaperTradingError,
    PaperTradingLedger,
)


class TestBuy:
    def test_buy_debits_balance_and_opens_position(self):
        ledger = PaperTradingLedger(100.0)
        trade = ledger.buy("tok", 10.0, 0.50, market="M", condition_id="0xc", outcome="Yes")
        assert trade.shares == pytest.approx(20.0)
        assert trade.order_id.startswith("paper-")
        assert ledger.balance == pytest.approx(90.0)
        pos = ledger.get_position("tok")
        assert pos is not None
        assert pos.avg_price == pytest.approx(0.50)
        assert pos.entry_value == pytest.approx(10.0)
        assert ledger.open_position_count() == 1

    def test_second_buy_averages_price(self):
        ledger = PaperTradingLedger(100.0)
        ledger.buy("tok", 10.0, 0.50)
        ledger.buy("tok", 10.0, 0.25)
        pos = ledger.get_position("tok")
        assert pos.shares == pytest.approx(60.0)
        assert pos.avg_price == pytest.approx(20.0 / 60.0)
        assert ledger.exposure_for("tok") == pytest.approx(20.0)

    def test_insufficient_balance(self):
        ledger = PaperTradingLedger(5.0)
        with pytest.raises(PaperTradingError, match="insufficient balance"):
            ledger.buy("tok", 10.0, 0.5)
        assert ledger.balance == 5.0
        assert ledger.positions() == []

    @pytest.mark.parametrize("price", [0.0, -0.1, 1.5])
    def test_invalid_price_rejected(self, price):
        with pytest.raises(PaperTradingError):
            PaperTradingLedger().buy("tok", 1.0, price)


class TestSell:
    def test_round_trip_profit(self):
        ledger = PaperTradingLedger(1000.0)
        bought = ledger.buy("tok", 10.0, 0.50)
        sold = ledger.sell("tok", bought.shares, 0.60)
        assert sold.pnl == pytest.approx(2.00)
        assert sold.value == pytest.approx(12.00)
        assert ledger.balance == pytest.approx(1002.00)
        assert ledger.realized_pnl == pytest.approx(2.00)
        assert ledger.get_position("tok") is None

    def test_partial_sell_scales_entry_value(self):
        ledger = PaperTradingLedger()
        ledger.buy("tok", 10.0, 0.50)
        ledger.sell("tok", 5.0, 0.50)
        pos = ledger.get_position("tok")
        assert pos.shares == pytest.approx(15.0)
        assert pos.entry_value == pytest.approx(7.5)

    def test_sell_clamped_to_held_shares(self):
        ledger = PaperTradingLedger()
        ledger.buy("tok", 10.0, 0.50)
        trade = ledger.sell("tok", 500.0, 0.50)
        assert trade.shares == pytest.approx(20.0)
        assert ledger.get_position("tok") is None

    def test_sell_without_position(self):
        with pytest.raises(PaperTradingError, match="no paper position"):
            PaperTradingLedger().sell("tok", 1.0, 0.5)

    def test_stop_loss_label(self):
        ledger = PaperTradingLedger()
        ledger.buy("tok", 10.0, 0.50)
        trade = ledger.sell("tok", 20.0, 0.40, label=TRADE_STOP_LOSS)
        assert trade.side == TRADE_STOP_LOSS
        assert trade.pnl == pytest.approx(-2.0)


class TestSettle:
    def test_settle_winning_position(self):
        ledger = PaperTradingLedger(100.0)
        ledger.buy("tok", 10.0, 0.50)
        trade = ledger.settle("tok", 1.0)
        assert trade.side == TRADE_SETTLEMENT
        assert trade.pnl == pytest.approx(10.0)
        assert ledger.balance == pytest.approx(110.0)
        assert ledger.open_position_count() == 0

    def test_settle_losing_position(self):
        ledger = PaperTradingLedger(100.0)
        ledger.buy("tok", 10.0, 0.50)
        trade = ledger.settle("tok", 0.0)
        assert trade.pnl == pytest.approx(-10.0)
        assert ledger.balance == pytest.approx(90.0)

    def test_settle_ignores_pending_stop_loss(self):
        ledger = PaperTradingLedger()
        ledger.buy("tok", 10.0, 0.50)
        ledger.mark_stop_loss_pending("tok")
        assert ledger.get_position("tok").stop_loss_pending
        trade = ledger.settle("tok", 1.0)
        assert trade.price == 1.0

    def test_invalid_settlement_price(self):
        ledger = PaperTradingLedger()
        ledger.buy("tok", 10.0, 0.50)
        with pytest.raises(PaperTradingError):
            ledger.settle("tok", 1.2)


class TestSummary:
    def test_summary_fields(self):
        ledger = PaperTradingLedger(100.0)
        ledger.buy("a", 10.0, 0.50)
        ledger.buy("b", 5.0, 0.25)
        s = ledger.summary()
        assert s["balance"] == 85.0
        assert s["open_positions"] == 2
        assert s["total_exposure"] == 15.0
        assert s["equity_at_cost"] == 100.0
        assert s["trades"] == 2
        assert len(ledger.history) == 2
