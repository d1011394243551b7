"""Position sizer — how much of a tracked trade we copy.

BUY sizing, in order:
  1. Per-market cap (max_bet_per_market_usd, else max_order_value_usd):
     already at or over the cap → skip
  2. High-confidence add band → one extra add per market, sized to
     min(add size, headroom)
  3. Otherwise the default tier: one initial BUY per market at
     auto_trade_amount_usd, × multiplier in the optimal price band,
     halved when half-size initial trades are on
  4. Clamp to headroom; bump up to the minimum order notional if that
     still fits under the cap, skip otherwise
  5. Limit orders: the venue rejects fewer than min_order_shares
  6. Round shares to cents, recompute value from shares (rounding down
     whenever the cap binds, so value never exceeds the headroom)

SELL sizing copies the *fraction* of its position the tracked wallet
sold, falling back to the raw share count when the wallet's remaining
holding is unknown. A SELL never exceeds the shares we hold.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from copytrader.config import BotConfig
from copytrader.connectors.polymarket_data import TradeEvent
from copytrader.observability.logger import get_logger, short_id
from copytrader.policy.trade_filter import in_optimal_range

log = get_logger(__name__)

LABEL_HIGH_CONFIDENCE_ADD = "HIGH CONFIDENCE ADD"
LABEL_OPTIMAL = "HIGH SIZE (OPTIMAL PRICE RANGE)"
LABEL_HIGH = "HIGH SIZE"
LABEL_MEDIUM = "MEDIUM SIZE"
LABEL_LOW = "LOW SIZE"
LABEL_SELL = "SELL"


@dataclass
class SizingContext:
    """What the sizer needs to know about our own book for one token."""
    current_exposure: float = 0.0        # USD already committed to the token
    initial_placed: bool = False
    high_confidence_add_placed: bool = False
    own_shares: float = 0.0              # SELL only
    tracked_remaining_shares: float | None = None  # SELL only; None = unknown
    use_market_order: bool = False


@dataclass
class SizingDecision:
    """Computed order size (or the reason there is none)."""
    action: str  # "order" | "skip"
    side: str
    shares: float = 0.0
    value: float = 0.0
    confidence_label: str = ""
    is_high_confidence_add: bool = False
    is_optimal_range: bool = False
    capped: bool = False
    adjusted_to_minimum: bool = False
    skip_reason: str = ""
    requested_value: float = 0.0
    per_market_cap: float | None = None
    current_exposure: float = 0.0
    sell_fraction: float | None = None

    @property
    def should_order(self) -> bool:
        return self.action == "order"

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


def _floor_cents(x: float) -> float:
    return math.floor(x * 100) / 100


def _fit_shares(shares: float, price: float, headroom: float | None) -> float:
    """Round to cents; round down instead if rounding up would breach headroom."""
    rounded = round(shares, 2)
    if headroom is None or rounded * price <= headroom:
        return rounded
    fitted = _floor_cents(headroom / price)
    while fitted > 0 and fitted * price > headroom:
        fitted = round(fitted - 0.01, 2)
    return max(fitted, 0.0)


def size_label(usdc_size: float, cfg: BotConfig) -> str:
    """Informational tier from the tracked wallet's own notional."""
    if usdc_size >= cfg.copy_trade.high_confidence_threshold_usd:
        return LABEL_HIGH
    if usdc_size <= cfg.copy_trade.low_confidence_threshold_usd:
        return LABEL_LOW
    return LABEL_MEDIUM


def is_high_confidence_add(price: float, cfg: BotConfig) -> bool:
    copy = cfg.copy_trade
    return (
        copy.add_high_confidence_enabled
        and copy.add_high_confidence_min <= price <= copy.add_high_confidence_max
    )


def _skip(side: str, reason: str, **kwargs: Any) -> SizingDecision:
    return SizingDecision(action="skip", side=side, skip_reason=reason, **kwargs)


def size_buy(event: TradeEvent, ctx: SizingContext, cfg: BotConfig) -> SizingDecision:
    """Size a copy of a tracked BUY."""
    copy = cfg.copy_trade
    price = event.price
    cap = cfg.per_market_cap
    exposure = ctx.current_exposure
    common = {"per_market_cap": cap, "current_exposure": exposure}

    if price <= 0:
        return _skip("BUY", "invalid_price", **common)
    if cap is not None and exposure >= cap:
        return _skip("BUY", "at_market_cap", **common)

    headroom = None if cap is None else max(0.0, cap - exposure)
    hc_add = is_high_confidence_add(price, cfg)
    optimal = in_optimal_range(price, copy)

    if hc_add:
        if ctx.high_confidence_add_placed:
            return _skip("BUY", "high_confidence_add_already_placed", **common)
        value = copy.add_high_confidence_size_usd
        if headroom is not None:
            if headroom < min(copy.add_high_confidence_size_usd, 1.0):
                return _skip("BUY", "no_room_for_high_confidence_add", **common)
            value = min(value, headroom)
        label = LABEL_HIGH_CONFIDENCE_ADD
    else:
        if ctx.initial_placed:
            return _skip("BUY", "initial_trade_already_placed", **common)
        value = copy.auto_trade_amount_usd
        if optimal:
            value *= copy.optimal_confidence_bet_multiplier
            label = LABEL_OPTIMAL
        else:
            label = size_label(event.usdc_size, cfg)
        if cap is not None:
            value = min(value, cap)
        if copy.use_half_size_initial_trades:
            value /= 2
            label += " (HALF-SIZE)"

    requested = value
    capped = False
    adjusted = False

    if headroom is not None and value > headroom:
        value = headroom
        capped = True

    if not hc_add:
        min_value = copy.auto_trade_amount_usd
        if copy.use_half_size_initial_trades:
            min_value /= 2
        if value < min_value:
            if headroom is not None and min_value > headroom:
                return _skip("BUY", "minimum_exceeds_market_cap", requested_value=requested, **common)
            value = min_value
            adjusted = True

    shares = value / price
    min_shares = cfg.risk.min_order_shares
    if not ctx.use_market_order and min_shares > 0 and shares < min_shares:
        if headroom is not None and min_shares * price > headroom:
            return _skip("BUY", "below_minimum_shares", requested_value=requested, **common)
        shares = min_shares
        adjusted = True

    shares = _fit_shares(shares, price, headroom)
    if shares <= 0:
        return _skip("BUY", "rounds_to_zero", requested_value=requested, **common)
    value = shares * price

    decision = SizingDecision(
        action="order",
        side="BUY",
        shares=shares,
        value=value,
        confidence_label=label,
        is_high_confidence_add=hc_add,
        is_optimal_range=optimal,
        capped=capped,
        adjusted_to_minimum=adjusted,
        requested_value=requested,
        **common,
    )
    log.info(
        "position_sizer.buy_sized",
        token_id=short_id(event.token_id),
        price=price,
        shares=shares,
        value=round(value, 4),
        label=label,
        capped=capped,
        adjusted=adjusted,
        exposure=round(exposure, 4),
        cap=cap,
    )
    return decision


def size_sell(event: TradeEvent, ctx: SizingContext, cfg: BotConfig) -> SizingDecision:
    """Size a copy of a tracked SELL against the shares we hold."""
    price = event.price
    own = ctx.own_shares
    if price <= 0:
        return _skip("SELL", "invalid_price")
    if own <= 0:
        return _skip("SELL", "no_position")

    min_value = cfg.copy_trade.auto_trade_amount_usd
    if event.size > 0:
        sold = event.size
    elif event.usdc_size > 0:
        sold = event.usdc_size / price
    else:
        sold = 0.0

    fraction: float | None = None
    adjusted = False
    remaining = ctx.tracked_remaining_shares
    if sold > 0 and remaining is not None and remaining + sold > 0:
        fraction = sold / (remaining + sold)
        shares = own * fraction
        if shares * price < min_value:
            shares = min_value / price
            adjusted = True
        shares = min(shares, own)
    elif sold > 0:
        shares = min(sold, own)
    else:
        shares = min(min_value / price, own)
        adjusted = True

    shares = round(shares, 2)
    if shares > own:
        shares = _floor_cents(own)
    if shares <= 0:
        return _skip("SELL", "rounds_to_zero")

    decision = SizingDecision(
        action="order",
        side="SELL",
        shares=shares,
        value=shares * price,
        confidence_label=LABEL_SELL,
        adjusted_to_minimum=adjusted,
        sell_fraction=fraction,
    )
    log.info(
        "position_sizer.sell_sized",
        token_id=short_id(event.token_id),
        price=price,
        shares=shares,
        own_shares=round(own, 4),
        tracked_sold=round(sold, 4),
        tracked_remaining=remaining,
        fraction=round(fraction, 4) if fraction is not None else None,
    )
    return decision
