"""CLI entry point for the Polymarket copy-trader.

Commands:
  copytrader run [--wallet]        — Mirror a wallet's trades until interrupted
  copytrader check-config          — Validate and show the effective settings
  copytrader activity --wallet     — Print a wallet's recent trades
"""

from __future__ import annotations

import asyncio
import signal
import sys
from typing import Any

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from copytrader.config import (
    BotConfig,
    ConfigurationError,
    is_live_trading_enabled,
    load_config,
    validate_config,
)
from copytrader.observability.logger import configure_logging, get_logger

load_dotenv()

console = Console()
log = get_logger(__name__)


def _run(coro: Any) -> Any:
    """Run an async coroutine from sync CLI."""
    return asyncio.run(coro)


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config.yaml")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None) -> None:
    """Polymarket copy-trading engine."""
    ctx.ensure_object(dict)
    cfg = load_config(config_path)
    ctx.obj["config"] = cfg
    configure_logging(
        level=cfg.observability.log_level,
        fmt=cfg.observability.log_format,
        log_file=cfg.observability.log_file or None,
        force=True,
    )


def _validate_or_exit(cfg: BotConfig, wallet: str | None) -> None:
    try:
        validate_config(cfg, wallet)
    except ConfigurationError as e:
        console.print(f"[red]❌ Configuration error:[/red] {e}")
        sys.exit(2)


# ─── RUN ─────────────────────────────────────────────────────────────

@cli.command()
@click.option("--wallet", default=None, help="Wallet to mirror (defaults to engine.default_wallet)")
@click.pass_context
def run(ctx: click.Context, wallet: str | None) -> None:
    """Mirror a wallet's trades until SIGINT / SIGTERM."""
    cfg: BotConfig = ctx.obj["config"]
    wallet = wallet or cfg.engine.default_wallet
    if not wallet:
        console.print("[red]❌ No wallet given. Use --wallet or set COPY_WALLET_ADDRESS.[/red]")
        sys.exit(2)
    _validate_or_exit(cfg, wallet)

    mode = "paper" if cfg.engine.paper_mode else "REAL"
    console.print("[bold cyan]🤖 Starting copy-trader[/bold cyan]")
    console.print(f"  Wallet: {wallet}")
    console.print(f"  Mode: {mode}")
    console.print(f"  Poll interval: {cfg.engine.poll_interval_secs}s")
    console.print(f"  Stop-loss: {'on' if cfg.stop_loss.enabled else 'off'}")
    cap = cfg.per_market_cap
    console.print(f"  Per-market cap: {'none' if cap is None else f'${cap:,.2f}'}")
    console.print()

    async def _run_engine() -> None:
        from copytrader.engine.loop import CopyTradeEngine
        from copytrader.observability.notifications import ConsoleSink

        eng = CopyTradeEngine(cfg)
        done = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, done.set)
            except (NotImplementedError, RuntimeError):
                pass  # Windows

        try:
            if not await eng.start(wallet, ConsoleSink(console)):
                sys.exit(2)
            await done.wait()
        finally:
            await eng.close()
            console.print("\n[yellow]Copy-trader stopped.[/yellow]")
            if cfg.engine.paper_mode:
                _print_summary("📊 Paper Trading Summary", eng.ledger.summary())

    _run(_run_engine())


def _print_summary(title: str, data: dict[str, Any]) -> None:
    table = Table(title=title)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    for key, value in data.items():
        table.add_row(key.replace("_", " ").title(), str(value))
    console.print(table)


# ─── CHECK-CONFIG ────────────────────────────────────────────────────

@cli.command("check-config")
@click.pass_context
def check_config(ctx: click.Context) -> None:
    """Validate the configuration and print the effective settings."""
    cfg: BotConfig = ctx.obj["config"]
    _validate_or_exit(cfg, None)

    table = Table(title="⚙️  Effective Configuration")
    table.add_column("Setting", style="bold")
    table.add_column("Value", justify="right")

    cap = cfg.per_market_cap
    rows = [
        ("Mode", "paper" if cfg.engine.paper_mode else "real"),
        ("Live trading flag", str(is_live_trading_enabled())),
        ("Default wallet", cfg.engine.default_wallet or "—"),
        ("Poll interval", f"{cfg.engine.poll_interval_secs}s"),
        ("Copy amount", f"${cfg.copy_trade.auto_trade_amount_usd:,.2f}"),
        ("Copy SELLs", str(cfg.copy_trade.copy_sell_orders)),
        ("Market filter", ", ".join(cfg.copy_trade.market_filter) or "all markets"),
        ("Per-market cap", "none" if cap is None else f"${cap:,.2f}"),
        ("Max positions", str(cfg.risk.max_positions or "unlimited")),
        ("Max total exposure", f"${cfg.risk.max_total_exposure_usd:,.2f}"
         if cfg.risk.max_total_exposure_usd > 0 else "unlimited"),
        ("Stop-loss", f"{cfg.stop_loss.percentage:.0f}%" if cfg.stop_loss.enabled else "off"),
        ("Stop-loss check", f"{cfg.stop_loss_check_interval_secs:.0f}s"),
    ]
    for name, value in rows:
        table.add_row(name, value)
    console.print(table)
    console.print("[green]✅ Configuration OK[/green]")


# ─── ACTIVITY ────────────────────────────────────────────────────────

@cli.command()
@click.option("--wallet", required=True, help="Wallet address")
@click.option("--limit", default=10, help="Number of activity entries to fetch")
@click.pass_context
def activity(ctx: click.Context, wallet: str, limit: int) -> None:
    """Fetch and print a wallet's recent trades."""
    from copytrader.config import is_valid_wallet
    from copytrader.connectors.polymarket_data import DataAPIClient, FeedUnavailable

    if not is_valid_wallet(wallet):
        console.print("[red]❌ Invalid wallet address.[/red]")
        sys.exit(2)

    async def _fetch() -> list[Any]:
        client = DataAPIClient()
        try:
            return await client.fetch_trades(wallet, limit=limit)
        finally:
            await client.close()

    try:
        events = _run(_fetch())
    except FeedUnavailable as e:
        console.print(f"[red]❌ Activity feed unavailable:[/red] {e}")
        sys.exit(1)

    table = Table(title=f"📈 Recent trades ({len(events)})")
    table.add_column("Side", style="cyan")
    table.add_column("Market", max_width=50)
    table.add_column("Outcome")
    table.add_column("Price", justify="right", style="yellow")
    table.add_column("Shares", justify="right")
    table.add_column("USDC", justify="right", style="green")
    table.add_column("Type", style="dim")

    for e in events:
        table.add_row(
            e.side,
            e.market_label[:50],
            e.outcome,
            f"{e.price:.3f}",
            f"{e.size:,.2f}",
            f"${e.usdc_size:,.2f}",
            e.order_type,
        )
    console.print(table)


if __name__ == "__main__":
    cli()
