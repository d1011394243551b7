"""Trade eligibility filter — decides whether a tracked trade is copied.

Every rule is evaluated (no short-circuit) so a skipped trade carries
the full list of reasons in the log and in the skip notification.

Rules:
  1. Auto-trade enabled
  2. Copy-trade enabled
  3. Condition id present
  4. SELLs only when sell copying is on
  5. Market keyword / condition-id filter
  6. Minimum tracked trade notional
  7. Confidence floor (plain, or the optimal-band floor)
  8. Execution ready (real mode only)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from copytrader.config import CopyTradeConfig
from copytrader.connectors.polymarket_data import TradeEvent
from copytrader.observability.logger import get_logger, short_id

log = get_logger(__name__)


@dataclass
class EligibilityResult:
    """Result of the eligibility checks for one trade."""
    eligible: bool
    reasons: list[str] = field(default_factory=list)
    checks_passed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "eligible": self.eligible,
            "reasons": self.reasons,
            "checks_passed": self.checks_passed,
        }


def matches_market_filter(
    filters: Iterable[str],
    *,
    condition_id: str = "",
    title: str = "",
    slug: str = "",
    event_slug: str = "",
) -> bool:
    """True if the market matches any filter entry (or the filter is empty).

    ``0x…`` entries match the condition id exactly (case-insensitive);
    any other entry is a case-insensitive substring of the title, slug
    or event slug.
    """
    entries = [f.strip() for f in filters if f and f.strip()]
    if not entries:
        return True
    haystack = " ".join((title, slug, event_slug)).lower()
    cid = condition_id.lower()
    for entry in entries:
        needle = entry.lower()
        if needle.startswith("0x"):
            if cid and cid == needle:
                return True
        elif needle in haystack:
            return True
    return False


def event_matches_filter(event: TradeEvent, filters: Iterable[str]) -> bool:
    return matches_market_filter(
        filters,
        condition_id=event.condition_id,
        title=event.title,
        slug=event.slug,
        event_slug=event.event_slug,
    )


def meets_min_trade_size(event: TradeEvent, cfg: CopyTradeConfig) -> bool:
    if cfg.min_tracked_trade_size_usd <= 0:
        return True
    return event.usdc_size >= cfg.min_tracked_trade_size_usd


def confidence_floor(cfg: CopyTradeConfig) -> float:
    """Minimum tracked price a trade needs to be copied (0 = no floor)."""
    if cfg.use_optimal_confidence_filter:
        return cfg.optimal_confidence_min
    return cfg.min_tracked_confidence


def in_optimal_range(price: float, cfg: CopyTradeConfig) -> bool:
    return cfg.optimal_confidence_min <= price <= cfg.optimal_confidence_max


def evaluate_eligibility(
    event: TradeEvent,
    cfg: CopyTradeConfig,
    *,
    paper_mode: bool,
    execution_ready: bool,
) -> EligibilityResult:
    """Run every eligibility rule against one trade."""
    reasons: list[str] = []
    passed: list[str] = []

    def _check(ok: bool, name: str, reason: str) -> None:
        if ok:
            passed.append(name)
        else:
            reasons.append(reason)

    _check(cfg.auto_trade_enabled, "auto_trade", "auto-trading disabled")
    _check(cfg.copy_trade_enabled, "copy_trade", "copy-trading disabled")
    _check(bool(event.condition_id), "condition_id", "missing condition id")
    if event.side == "SELL":
        _check(cfg.copy_sell_orders, "sell_copying", "SELL copying disabled")

    _check(
        event_matches_filter(event, cfg.market_filter),
        "market_filter",
        "market does not match filter",
    )
    _check(
        meets_min_trade_size(event, cfg),
        "min_trade_size",
        f"tracked trade ${event.usdc_size:.2f} below minimum "
        f"${cfg.min_tracked_trade_size_usd:.2f}",
    )

    floor = confidence_floor(cfg)
    _check(
        floor <= 0 or event.price >= floor,
        "confidence",
        f"price {event.price:.3f} below confidence floor {floor:.3f}",
    )
    _check(
        paper_mode or execution_ready,
        "execution_ready",
        "execution client not ready",
    )

    result = EligibilityResult(eligible=not reasons, reasons=reasons, checks_passed=passed)
    if not result.eligible:
        log.info(
            "trade_filter.skipped",
            tx=short_id(event.transaction_hash),
            side=event.side,
            price=event.price,
            reasons=reasons,
        )
    return result
