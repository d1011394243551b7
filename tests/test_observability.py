"""Tests for metrics series, log redaction and notification sinks."""

from __future__ import annotations

import pytest
from rich.console import Console

from copytrader.observability import logger as logger_mod
from copytrader.observability import notifications as notif
from copytrader.observability.metrics import MetricsCollector, series_key


class TestMetrics:
    def test_tagged_series_and_totals(self):
        m = MetricsCollector()
        m.incr("orders.failed", venue="clob", error_kind="timeout")
        m.incr("orders.failed", venue="clob", error_kind="timeout")
        m.incr("orders.failed", venue="paper")
        m.incr("orders.failed_total_unrelated")
        assert m.counter("orders.failed") == 3
        assert m.counter("orders.failed", venue="clob", error_kind="timeout") == 2
        assert "orders.failed{error_kind=timeout,venue=clob}" in m.snapshot()["counters"]

    def test_series_key_sorts_tags(self):
        assert series_key("x", {}) == "x"
        assert series_key("x", {"b": 1, "a": 2}) == "x{a=2,b=1}"

    def test_histogram_summary(self):
        m = MetricsCollector()
        for v in (1.0, 2.0, 3.0, 4.0):
            m.histogram("cycle.duration_secs", v)
        h = m.snapshot()["histograms"]["cycle.duration_secs"]
        assert h["count"] == 4
        assert h["p50"] == pytest.approx(2.5)
        assert h["max"] == 4.0

    def test_reset(self):
        m = MetricsCollector()
        m.incr("a")
        m.gauge("b", 1.0)
        m.reset()
        assert m.snapshot() == {"counters": {}, "gauges": {}, "histograms": {}}


class TestRedaction:
    def test_secret_named_fields_masked(self):
        event = logger_mod._redact_processor(None, "info", {
            "event": "clob.init",
            "api_secret": "abc",
            "POLYMARKET_PRIVATE_KEY": "0xdead",
            "token_id": "1234",
        })
        assert event["api_secret"] == "***REDACTED***"
        assert event["POLYMARKET_PRIVATE_KEY"] == "***REDACTED***"
        assert event["token_id"] == "1234"

    def test_configured_secret_values_scrubbed(self, monkeypatch):
        monkeypatch.setattr(logger_mod, "_secret_values", ("supersecretvalue",))
        event = logger_mod._redact_processor(None, "error", {
            "event": "order_router.failed",
            "error": "bad request: key=supersecretvalue rejected",
        })
        assert "supersecretvalue" not in event["error"]
        assert "***REDACTED***" in event["error"]

    def test_short_id(self):
        assert logger_mod.short_id("abc") == "abc"
        assert logger_mod.short_id("1" * 40) == "1" * 12 + "..."


class TestSinks:
    @pytest.mark.asyncio
    async def test_memory_sink(self):
        sink = notif.MemorySink()
        await sink(notif.Notification(kind=notif.ORDER_PLACED, title="Copied BUY"))
        await sink(notif.Notification(kind=notif.ORDER_SKIPPED, title="Skipped BUY"))
        assert sink.kinds() == [notif.ORDER_PLACED, notif.ORDER_SKIPPED]
        assert sink.of_kind(notif.ORDER_SKIPPED)[0].title == "Skipped BUY"

    @pytest.mark.asyncio
    async def test_console_sink_renders_fields(self):
        console = Console(record=True, width=100)
        sink = notif.ConsoleSink(console)
        await sink(notif.Notification(
            kind=notif.STOP_LOSS_TRIGGERED,
            title="Stop-loss triggered",
            level="warning",
            message="price fell through stop",
            fields={"market": "BTC Up or Down", "price": 0.55},
        ))
        text = console.export_text()
        assert "Stop-loss triggered" in text
        assert "BTC Up or Down" in text
        assert "0.55" in text

    @pytest.mark.asyncio
    async def test_log_sink_accepts_every_level(self):
        sink = notif.LogSink()
        for level in ("info", "warning", "critical"):
            await sink(notif.Notification(kind=notif.ORDER_FAILED, title="x", level=level))

    def test_notification_to_dict(self):
        n = notif.Notification(kind=notif.POSITION_SETTLED, title="Settled", fields={"pnl": 1.0})
        d = n.to_dict()
        assert d["kind"] == notif.POSITION_SETTLED
        assert d["fields"] == {"pnl": 1.0}
        assert d["timestamp"] > 0
