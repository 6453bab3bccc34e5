"""CLI entry point for the Up/Down market trading bot.

Commands:
  updown engine: Run the trading engine until interrupted
  updown status: Show persisted engine status
  updown trades: List recent trades
  updown stats: Show trade statistics
  updown set-mode MODE: Switch between paper and live
  updown clear-records: Delete all trades and snapshots
  updown dashboard: Launch the REST control surface
"""

from __future__ import annotations

import asyncio
import sys
from typing import Any

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from updown.config import BotConfig, is_live_trading_enabled, load_config
from updown.observability.logger import configure_logging, get_logger
from updown.storage.database import Database

load_dotenv()

console = Console()
log = get_logger(__name__)


def _run(coro: Any) -> Any:
    """Run an async coroutine from sync CLI."""
    return asyncio.run(coro)


def _open_db(cfg: BotConfig) -> Database:
    db = Database(cfg.storage)
    db.connect()
    return db


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config.yaml")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None) -> None:
    """15-minute crypto Up/Down trading bot for Polymarket."""
    ctx.ensure_object(dict)
    cfg = load_config(config_path)
    ctx.obj["config"] = cfg
    configure_logging(
        level=cfg.observability.log_level,
        fmt=cfg.observability.log_format,
        log_file=cfg.observability.log_file,
    )


# ─── ENGINE ──────────────────────────────────────────────────────

@cli.command()
@click.option("--mode", type=click.Choice(["paper", "live"]), default=None,
              help="Set the trading mode before starting")
@click.pass_context
def engine(ctx: click.Context, mode: str | None) -> None:
    """Run the trading engine until Ctrl-C."""
    cfg: BotConfig = ctx.obj["config"]

    from updown.engine.loop import TradingEngine

    eng = TradingEngine.from_config(cfg)
    if mode:
        eng.set_mode(mode)

    console.print("[bold cyan]🤖 Starting Up/Down Trading Engine[/bold cyan]")
    console.print(f"  Mode: {eng.mode}")
    console.print(f"  Live trading enabled: {is_live_trading_enabled()}")
    console.print(f"  Scan / opportunity / settlement: "
                  f"{cfg.engine.scan_interval_secs}s / {cfg.engine.opportunity_interval_secs}s / "
                  f"{cfg.engine.settlement_interval_secs}s")
    console.print(f"  Trade window: {cfg.engine.trade_window_secs}s")
    console.print(f"  Bankroll: ${cfg.risk.bankroll:,.2f} (max exposure {cfg.risk.max_exposure:.0%})")
    console.print()

    if eng.mode == "live" and not is_live_trading_enabled():
        console.print("[yellow]⚠ Mode is live but ENABLE_LIVE_TRADING is not set; "
                      "orders will be refused.[/yellow]")

    async def _run_engine() -> None:
        try:
            await eng.run_forever()
        finally:
            await eng.close()

    _run(_run_engine())
    console.print("\n[yellow]Engine stopped.[/yellow]")


# ─── STATUS ──────────────────────────────────────────────────────

@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show persisted engine status."""
    db = _open_db(ctx.obj["config"])
    try:
        st = db.get_status()
    finally:
        db.close()

    table = Table(title="📊 Engine Status")
    table.add_column("Field", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Running", "✅" if st.is_running else "❌")
    table.add_row("Mode", st.mode)
    table.add_row("Last heartbeat", st.last_heartbeat or "-")
    table.add_row("Total trades", str(st.total_trades))
    table.add_row("Total P&L", f"${st.total_pnl:,.2f}")
    table.add_row("Live trading enabled", str(is_live_trading_enabled()))
    console.print(table)


# ─── TRADES ──────────────────────────────────────────────────────

@cli.command()
@click.option("--limit", default=20, help="Number of trades to show")
@click.option("--mode", type=click.Choice(["paper", "live"]), default=None)
@click.pass_context
def trades(ctx: click.Context, limit: int, mode: str | None) -> None:
    """List recent trades."""
    db = _open_db(ctx.obj["config"])
    try:
        rows = db.get_trades(limit=limit, mode=mode)
    finally:
        db.close()

    table = Table(title=f"🧾 Recent Trades ({len(rows)})")
    table.add_column("Created", style="dim")
    table.add_column("Mode")
    table.add_column("Coin")
    table.add_column("Outcome")
    table.add_column("Price", justify="right")
    table.add_column("Amount", justify="right")
    table.add_column("Status")
    table.add_column("P&L", justify="right")

    for t in rows:
        pnl_style = "green" if t.pnl > 0 else "red" if t.pnl < 0 else ""
        table.add_row(
            t.created_at[:19],
            t.mode,
            t.coin.upper(),
            t.outcome,
            f"{t.price:.3f}",
            f"${t.amount:,.2f}",
            t.status,
            f"[{pnl_style}]{t.pnl:+.2f}[/{pnl_style}]" if pnl_style else f"{t.pnl:+.2f}",
        )
    console.print(table)


@cli.command()
@click.option("--mode", type=click.Choice(["paper", "live"]), default=None)
@click.pass_context
def stats(ctx: click.Context, mode: str | None) -> None:
    """Show trade statistics."""
    db = _open_db(ctx.obj["config"])
    try:
        s = db.get_stats(mode)
    finally:
        db.close()

    table = Table(title=f"📈 Trade Stats ({mode or 'all modes'})")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Trades", str(s.total_trades))
    table.add_row("Settled", str(s.settled_trades))
    table.add_row("Wins / Losses", f"{s.wins} / {s.losses}")
    table.add_row("Win rate", f"{s.win_rate:.1%}")
    table.add_row("Total P&L", f"${s.total_pnl:,.2f}")
    table.add_row("Avg P&L", f"${s.avg_pnl:,.2f}")
    table.add_row("Volume", f"${s.total_volume:,.2f}")
    console.print(table)


# ─── COMMANDS ────────────────────────────────────────────────────

@cli.command("set-mode")
@click.argument("mode", type=click.Choice(["paper", "live"]))
@click.pass_context
def set_mode(ctx: click.Context, mode: str) -> None:
    """Switch the trading mode (a running engine picks it up next cycle)."""
    if mode == "live" and not is_live_trading_enabled():
        console.print("[yellow]⚠ ENABLE_LIVE_TRADING is not set; live orders will be refused.[/yellow]")
    db = _open_db(ctx.obj["config"])
    try:
        db.update_status(mode=mode)
    finally:
        db.close()
    console.print(f"[green]✓ Mode set to {mode}[/green]")


@cli.command("clear-records")
@click.option("--yes", is_flag=True, help="Skip confirmation")
@click.pass_context
def clear_records(ctx: click.Context, yes: bool) -> None:
    """Delete all trades and market snapshots."""
    if not yes and not click.confirm("Delete ALL trades and snapshots?"):
        console.print("Aborted.")
        sys.exit(1)
    db = _open_db(ctx.obj["config"])
    try:
        db.clear_all_records()
    finally:
        db.close()
    console.print("[green]✓ Records cleared[/green]")


# ─── DASHBOARD ───────────────────────────────────────────────────

@cli.command()
@click.option("--host", default=None, help="Host to bind to")
@click.option("--port", default=None, type=int, help="Port to listen on")
@click.option("--debug", is_flag=True, help="Enable Flask debug mode")
@click.option("--no-engine", is_flag=True, help="Don't auto-start the trading engine")
@click.pass_context
def dashboard(
    ctx: click.Context, host: str | None, port: int | None, debug: bool, no_engine: bool,
) -> None:
    """Launch the REST control surface (with embedded trading engine)."""
    cfg: BotConfig = ctx.obj["config"]

    from updown.dashboard.app import run_dashboard

    run_dashboard(
        cfg,
        host=host or cfg.engine.dashboard_host,
        port=port or cfg.engine.dashboard_port,
        debug=debug,
        start_engine=not no_engine,
    )


if __name__ == "__main__":
    cli()
