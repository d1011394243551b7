"""Outbound notifications from the copy-trade engine.

The engine never formats chat messages itself. It emits a structured
``Notification`` (kind, level, title, message, fields) to the sink that
belongs to the active monitoring session. Sinks decide how to render:

  - LogSink      structlog only (default when nothing else is attached)
  - ConsoleSink  rich panel on the terminal (used by the CLI)
  - MemorySink   keeps every notification in a list (tests, dry runs)

A sink is any async callable accepting a ``Notification``.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Protocol

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from copytrader.observability.logger import get_logger

log = get_logger(__name__)

# Notification kinds
TRADE_DETECTED = "trade_detected"
ORDER_PLACED = "order_placed"
ORDER_FAILED = "order_failed"
ORDER_SKIPPED = "order_skipped"
ORDER_CAPPED = "order_capped"
ORDER_ADJUSTED = "order_adjusted"
STOP_LOSS_REGISTERED = "stop_loss_registered"
STOP_LOSS_TRIGGERED = "stop_loss_triggered"
POSITION_SETTLED = "position_settled"
MONITORING_STARTED = "monitoring_started"
MONITORING_STOPPED = "monitoring_stopped"
STARTUP_CAP_WARNING = "startup_cap_warning"


@dataclass
class Notification:
    """A single structured event for the user."""
    kind: str
    title: str
    message: str = ""
    level: str = "info"  # "info" | "warning" | "critical"
    fields: dict[str, Any] = field(default_factory=dict)
    timestamp: float = 0.0

    def __post_init__(self) -> None:
        if self.timestamp == 0.0:
            self.timestamp = time.time()

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "title": self.title,
            "message": self.message,
            "level": self.level,
            "fields": dict(self.fields),
            "timestamp": self.timestamp,
        }


class NotificationSink(Protocol):
    def __call__(self, notification: Notification) -> Awaitable[None]: ...


class LogSink:
    """Write notifications to the structured log."""

    async def __call__(self, notification: Notification) -> None:
        log_fn = log.info if notification.level == "info" else (
            log.warning if notification.level == "warning" else log.critical
        )
        log_fn(
            "notification.sent",
            kind=notification.kind,
            title=notification.title,
            message=notification.message[:200],
            **notification.fields,
        )


class MemorySink:
    """Collect notifications in memory."""

    def __init__(self) -> None:
        self.notifications: list[Notification] = []

    async def __call__(self, notification: Notification) -> None:
        self.notifications.append(notification)

    def kinds(self) -> list[str]:
        return [n.kind for n in self.notifications]

    def of_kind(self, kind: str) -> list[Notification]:
        return [n for n in self.notifications if n.kind == kind]


_LEVEL_STYLES = {"info": "cyan", "warning": "yellow", "critical": "red"}


class ConsoleSink:
    """Render notifications as rich panels."""

    def __init__(self, console: Console | None = None):
        self._console = console or Console()

    async def __call__(self, notification: Notification) -> None:
        body = Table.grid(padding=(0, 2))
        body.add_column(style="dim")
        body.add_column()
        if notification.message:
            body.add_row("", notification.message)
        for key, value in notification.fields.items():
            if isinstance(value, float):
                value = f"{value:,.4f}".rstrip("0").rstrip(".")
            body.add_row(key, str(value))
        self._console.print(Panel(
            body,
            title=notification.title,
            border_style=_LEVEL_STYLES.get(notification.level, "white"),
        ))
