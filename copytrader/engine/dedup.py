"""Seen-set deduplication of tracked-wallet trades.

The first page fetched after a (re)start is the *baseline*: every trade
on it is marked as seen and nothing is copied, so history the wallet
made before monitoring began is never replayed. Every later page yields
only the trades not seen before, reordered oldest-first so copies go out
in the order the wallet made them.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from copytrader.connectors.polymarket_data import TradeEvent
from copytrader.observability.logger import get_logger, short_id

log = get_logger(__name__)


@dataclass
class PollBatch:
    """Outcome of classifying one fetched page."""
    baseline: bool = False
    new: list[TradeEvent] = field(default_factory=list)
    seen_count: int = 0


class Deduplicator:
    """Owns the SeenSet of transaction hashes for one monitoring session."""

    def __init__(self, require_tx_hash: bool = True):
        self._seen: set[str] = set()
        self._initialized = False
        self._require_tx_hash = require_tx_hash

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, tx_hash: object) -> bool:
        return tx_hash in self._seen

    def reset(self) -> None:
        """Forget everything. The next page becomes a new baseline."""
        self._seen.clear()
        self._initialized = False

    def classify(self, events: list[TradeEvent]) -> PollBatch:
        """Split a newest-first page into baseline / new trades."""
        hashed: list[TradeEvent] = []
        for event in events:
            if event.transaction_hash:
                hashed.append(event)
            elif self._require_tx_hash:
                continue
            else:
                # Nothing to key it on; copying it would repeat every cycle.
                log.warning(
                    "dedup.missing_tx_hash",
                    condition_id=short_id(event.condition_id),
                    side=event.side,
                )

        if not self._initialized:
            for event in hashed:
                self._seen.add(event.transaction_hash)
            self._initialized = True
            log.info("dedup.baseline_seeded", seen=len(self._seen))
            return PollBatch(baseline=True, seen_count=len(self._seen))

        new: list[TradeEvent] = []
        for event in reversed(hashed):
            if event.transaction_hash in self._seen:
                continue
            self._seen.add(event.transaction_hash)
            new.append(event)

        if new:
            log.info("dedup.new_trades", count=len(new), seen=len(self._seen))
        return PollBatch(new=new, seen_count=len(self._seen))
