"""Shared test fixtures."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable

import pytest

# Ensure copytrader is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from copytrader.config import BotConfig  # noqa: E402
from copytrader.connectors.polymarket_data import TradeEvent  # noqa: E402
from copytrader.observability.metrics import metrics  # noqa: E402

WALLET = "0x" + "ab" * 20
CONDITION = "0x" + "c1" * 32
TOKEN_YES = "1111111111111111111111"
TOKEN_NO = "2222222222222222222222"


def make_event(**overrides: Any) -> TradeEvent:
    defaults: dict[str, Any] = dict(
        transaction_hash="0xtx1",
        condition_id=CONDITION,
        asset=TOKEN_YES,
        side="BUY",
        price=0.50,
        size=100.0,
        usdc_size=50.0,
        title="Bitcoin Up or Down - March 3, 10AM ET",
        slug="btc-up-or-down",
        outcome="Up",
        timestamp=1_700_000_000.0,
    )
    defaults.update(overrides)
    return TradeEvent(**defaults)


def make_config(**sections: dict[str, Any]) -> BotConfig:
    """BotConfig with paper execution and no venue minimum unless overridden."""
    raw: dict[str, Any] = {
        "engine": {"paper_mode": True, "poll_interval_secs": 15},
        "risk": {"min_order_shares": 0},
    }
    for name, values in sections.items():
        raw.setdefault(name, {}).update(values)
    return BotConfig(**raw)


@pytest.fixture
def event_factory() -> Callable[..., TradeEvent]:
    return make_event


@pytest.fixture
def config_factory() -> Callable[..., BotConfig]:
    return make_config


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


class FakeFeed:
    """Stands in for the websocket feed: records subscriptions, serves set prices."""

    def __init__(self) -> None:
        self.subscribed: set[str] = set()
        self.callbacks: list[Any] = []
        self.prices: dict[str, Any] = {}
        self.started = False

    def on_tick(self, callback: Any) -> None:
        self.callbacks.append(callback)

    async def subscribe(self, token_id: str) -> None:
        self.subscribed.add(token_id)

    async def unsubscribe(self, token_id: str) -> None:
        self.subscribed.discard(token_id)

    def get_last_price(self, token_id: str, max_age_secs: float | None = None) -> Any:
        return self.prices.get(token_id)

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.started = False
