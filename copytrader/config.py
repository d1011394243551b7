"""Configuration loader and Pydantic settings for the copy-trader.

Supports:
  - YAML file loading (``config.yaml`` at the project root by default)
  - Env var overrides for the tracked wallet, the managed account and
    the execution mode
  - Startup validation: problems that make trading unsafe raise
    ``ConfigurationError`` before the engine is built

Configuration is read once at startup and never mutated afterwards.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


_PROJECT_ROOT = Path(__file__).resolve().parent.parent

WALLET_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")

MIN_POLL_INTERVAL_SECS = 5
MAX_STOP_LOSS_CHECK_SECS = 300

_CLOB_CREDENTIAL_VARS = (
    "POLYMARKET_PRIVATE_KEY",
    "POLYMARKET_API_KEY",
    "POLYMARKET_API_SECRET",
    "POLYMARKET_API_PASSPHRASE",
)


class ConfigurationError(Exception):
    """Raised when the configuration makes it unsafe to start trading."""


class EngineConfig(BaseModel):
    """Poll scheduler settings."""
    poll_interval_secs: float = 15.0
    default_wallet: str = ""
    activity_limit: int = 25
    require_tx_hash: bool = True
    paper_mode: bool = True
    account_address: str = ""   # managed account, used for the startup cap check


class CopyTradeConfig(BaseModel):
    """Which tracked trades get copied and how large the copies are."""
    auto_trade_enabled: bool = True
    copy_trade_enabled: bool = True
    copy_sell_orders: bool = True
    market_filter: list[str] = Field(default_factory=list)
    use_market_orders: bool = False
    auto_trade_amount_usd: float = 1.0
    min_tracked_trade_size_usd: float = 0.0
    min_tracked_confidence: float = 0.0
    # Optimal price band: bigger bets and (optionally) a confidence floor
    use_optimal_confidence_filter: bool = False
    optimal_confidence_min: float = 0.6
    optimal_confidence_max: float = 0.85
    optimal_confidence_bet_multiplier: float = 1.0
    # Informational size labels derived from the tracked wallet's notional
    high_confidence_threshold_usd: float = 100.0
    low_confidence_threshold_usd: float = 10.0
    # One extra "add" per market when the price is very confident
    add_high_confidence_enabled: bool = False
    add_high_confidence_min: float = 0.85
    add_high_confidence_max: float = 0.95
    add_high_confidence_size_usd: float = 1.0
    use_half_size_initial_trades: bool = False


class RiskConfig(BaseModel):
    """Account-level limits. A value of 0 disables the limit."""
    max_bet_per_market_usd: float = 0.0
    max_order_value_usd: float = 0.0
    max_positions: int = 0
    max_total_exposure_usd: float = 0.0
    min_order_shares: float = 5.0   # venue minimum for resting limit orders


class StopLossConfig(BaseModel):
    enabled: bool = False
    percentage: float = 20.0
    check_interval_secs: float = 60.0
    min_hold_secs: float = 0.0
    market_filter: list[str] = Field(default_factory=list)
    winning_price_threshold: float = 0.9
    verify_outcome_token: bool = True
    ws_price_max_age_secs: float = 60.0


class PaperTradingConfig(BaseModel):
    starting_balance: float = 1000.0


class ExecutionConfig(BaseModel):
    order_timeout_secs: float = 20.0
    request_timeout_secs: float = 15.0


class ObservabilityConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "console"
    log_file: str = ""


class BotConfig(BaseModel):
    engine: EngineConfig = Field(default_factory=EngineConfig)
    copy_trade: CopyTradeConfig = Field(default_factory=CopyTradeConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    stop_loss: StopLossConfig = Field(default_factory=StopLossConfig)
    paper: PaperTradingConfig = Field(default_factory=PaperTradingConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    @property
    def per_market_cap(self) -> float | None:
        """The USD cap applied to a single market, or None when uncapped."""
        if self.risk.max_bet_per_market_usd > 0:
            return self.risk.max_bet_per_market_usd
        if self.risk.max_order_value_usd > 0:
            return self.risk.max_order_value_usd
        return None

    @property
    def stop_loss_check_interval_secs(self) -> float:
        return min(self.stop_loss.check_interval_secs, MAX_STOP_LOSS_CHECK_SECS)


def _apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    engine = raw.setdefault("engine", {})
    wallet = os.environ.get("COPY_WALLET_ADDRESS")
    if wallet:
        engine["default_wallet"] = wallet.strip()
    account = os.environ.get("POLYMARKET_FUNDER_ADDRESS")
    if account:
        engine["account_address"] = account.strip()
    paper = os.environ.get("PAPER_TRADING_ENABLED")
    if paper:
        engine["paper_mode"] = paper.strip().lower() != "false"
    return raw


def load_config(path: str | Path | None = None) -> BotConfig:
    """Load config from YAML file, falling back to defaults."""
    if path is None:
        path = _PROJECT_ROOT / "config.yaml"
    path = Path(path)
    raw: dict[str, Any] = {}
    if path.exists():
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    return BotConfig(**_apply_env_overrides(raw))


def is_live_trading_enabled() -> bool:
    """Check if live trading is explicitly enabled via env var."""
    return os.environ.get("ENABLE_LIVE_TRADING", "").lower() == "true"


def is_valid_wallet(address: str) -> bool:
    return bool(WALLET_ADDRESS_RE.match(address or ""))


def validate_config(cfg: BotConfig, wallet: str | None = None) -> None:
    """Raise ConfigurationError for settings the engine must not start with."""
    problems: list[str] = []
    target = wallet if wallet is not None else cfg.engine.default_wallet
    if target and not is_valid_wallet(target):
        problems.append(f"invalid wallet address: {target!r}")
    if cfg.engine.poll_interval_secs < MIN_POLL_INTERVAL_SECS:
        problems.append(
            f"poll_interval_secs must be >= {MIN_POLL_INTERVAL_SECS} "
            f"(got {cfg.engine.poll_interval_secs})"
        )
    if cfg.copy_trade.auto_trade_amount_usd <= 0:
        problems.append("auto_trade_amount_usd must be positive")
    if not 0 < cfg.stop_loss.percentage < 100:
        problems.append("stop_loss.percentage must be between 0 and 100")
    if not cfg.engine.paper_mode:
        if not is_live_trading_enabled():
            problems.append("real execution requires ENABLE_LIVE_TRADING=true")
        missing = [v for v in _CLOB_CREDENTIAL_VARS if not os.environ.get(v)]
        if missing:
            problems.append(f"missing CLOB credentials: {', '.join(missing)}")
    if problems:
        raise ConfigurationError("; ".join(problems))
