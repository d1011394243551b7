"""Tests for seen-set deduplication and baseline seeding."""

from __future__ import annotations

from conftest import make_event

from copytrader.engine.dedup import Deduplicator


def _page(*hashes: str):
    """A newest-first activity page."""
    return [make_event(transaction_hash=h) for h in hashes]


class TestBaseline:
    def test_first_page_is_baseline_with_no_new_trades(self):
        dedup = Deduplicator()
        batch = dedup.classify(_page("0xc", "0xb", "0xa"))
        assert batch.baseline is True
        assert batch.new == []
        assert batch.seen_count == 3
        assert dedup.is_initialized

    def test_empty_first_page_still_initializes(self):
        dedup = Deduplicator()
        batch = dedup.classify([])
        assert batch.baseline is True
        assert dedup.is_initialized
        assert len(dedup) == 0

    def test_reset_makes_next_page_a_baseline_again(self):
        dedup = Deduplicator()
        dedup.classify(_page("0xa"))
        dedup.reset()
        assert not dedup.is_initialized
        batch = dedup.classify(_page("0xb", "0xa"))
        assert batch.baseline is True
        assert batch.new == []


class TestNewTrades:
    def test_only_unseen_trades_are_new(self):
        dedup = Deduplicator()
        dedup.classify(_page("0xb", "0xa"))
        batch = dedup.classify(_page("0xc", "0xb", "0xa"))
        assert not batch.baseline
        assert [e.transaction_hash for e in batch.new] == ["0xc"]

    def test_new_trades_are_emitted_oldest_first(self):
        dedup = Deduplicator()
        dedup.classify(_page("0xa"))
        batch = dedup.classify(_page("0xd", "0xc", "0xb", "0xa"))
        assert [e.transaction_hash for e in batch.new] == ["0xb", "0xc", "0xd"]

    def test_seen_trade_is_never_emitted_twice(self):
        dedup = Deduplicator()
        dedup.classify([])
        first = dedup.classify(_page("0xa"))
        second = dedup.classify(_page("0xa"))
        third = dedup.classify(_page("0xb", "0xa"))
        assert [e.transaction_hash for e in first.new] == ["0xa"]
        assert second.new == []
        assert [e.transaction_hash for e in third.new] == ["0xb"]
        assert "0xa" in dedup

    def test_duplicate_hash_within_one_page_emitted_once(self):
        dedup = Deduplicator()
        dedup.classify([])
        batch = dedup.classify(_page("0xa", "0xa"))
        assert len(batch.new) == 1


class TestMissingHash:
    def test_trades_without_hash_are_dropped(self):
        dedup = Deduplicator(require_tx_hash=True)
        dedup.classify([])
        batch = dedup.classify(_page("", "0xa"))
        assert [e.transaction_hash for e in batch.new] == ["0xa"]

    def test_trades_without_hash_are_dropped_when_not_required(self):
        dedup = Deduplicator(require_tx_hash=False)
        dedup.classify([])
        batch = dedup.classify(_page(""))
        assert batch.new == []
        assert len(dedup) == 0
