"""Risk limits — account-level gates checked right before execution.

Rules (a limit of 0 disables it; SELLs always pass since they only
reduce risk):
  1. position_count  — a BUY into a token we do not yet hold when the
                       open-position count is already at the maximum
  2. total_exposure  — current total exposure + order > maximum
  3. per_market_cap  — exposure in this token + order > per-market cap

Pure function: reads a snapshot of the book, never mutates anything.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from copytrader.config import BotConfig
from copytrader.observability.logger import get_logger, short_id

log = get_logger(__name__)

REASON_POSITION_COUNT = "position_count"
REASON_TOTAL_EXPOSURE = "total_exposure"
REASON_PER_MARKET_CAP = "per_market_cap"

# Allow for float noise from share rounding
_EPS = 1e-9


@dataclass
class ExposureSnapshot:
    """The book as the risk check sees it."""
    open_positions: int = 0
    total_exposure: float = 0.0
    market_exposure: float = 0.0
    holds_token: bool = False


@dataclass
class RiskCheckResult:
    """Result of the position-limit check."""
    allowed: bool
    reason: str = ""
    message: str = ""
    current_positions: int = 0
    max_positions: int = 0
    current_exposure: float = 0.0
    new_total_exposure: float = 0.0
    max_exposure: float = 0.0
    current_market_exposure: float = 0.0
    max_bet_amount: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


def check_position_limits(
    order_value: float,
    side: str,
    token_id: str,
    snapshot: ExposureSnapshot,
    cfg: BotConfig,
) -> RiskCheckResult:
    """Check a prospective order against the account limits."""
    risk = cfg.risk
    cap = cfg.per_market_cap or 0.0
    new_total = snapshot.total_exposure + order_value
    result = RiskCheckResult(
        allowed=True,
        current_positions=snapshot.open_positions,
        max_positions=risk.max_positions,
        current_exposure=snapshot.total_exposure,
        new_total_exposure=new_total,
        max_exposure=risk.max_total_exposure_usd,
        current_market_exposure=snapshot.market_exposure,
        max_bet_amount=cap,
    )
    if side.upper() != "BUY":
        return result

    if (
        risk.max_positions > 0
        and not snapshot.holds_token
        and snapshot.open_positions >= risk.max_positions
    ):
        result.allowed = False
        result.reason = REASON_POSITION_COUNT
        result.message = (
            f"Maximum open positions reached ({snapshot.open_positions}/{risk.max_positions})"
        )
    elif risk.max_total_exposure_usd > 0 and new_total > risk.max_total_exposure_usd + _EPS:
        result.allowed = False
        result.reason = REASON_TOTAL_EXPOSURE
        result.message = (
            f"Total exposure ${new_total:.2f} would exceed ${risk.max_total_exposure_usd:.2f}"
        )
    elif cap > 0 and snapshot.market_exposure + order_value > cap + _EPS:
        result.allowed = False
        result.reason = REASON_PER_MARKET_CAP
        result.message = (
            f"Market exposure ${snapshot.market_exposure + order_value:.2f} "
            f"would exceed cap ${cap:.2f}"
        )

    if not result.allowed:
        log.warning(
            "risk_limits.blocked",
            token_id=short_id(token_id),
            reason=result.reason,
            order_value=round(order_value, 4),
            positions=snapshot.open_positions,
            total_exposure=round(snapshot.total_exposure, 4),
        )
    return result
