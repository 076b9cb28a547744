"""
Autotrader runner: logging setup, object wiring and the command-line entry point.

Usage:
    python runner.py run [--strategy "..."]
    python runner.py scan
    python runner.py status
"""
import asyncio
import sys
from typing import Any, Optional, Tuple

import typer
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

import config as cfg
from autotrader import AutonomousTrader
from execution.bankr_client import BankrClient
from monitoring.metrics_exporter import MetricsExporter
from monitoring.notifier import build_notifier
from storage.memory_store import MemoryStore

app = typer.Typer(help="Autonomous low-cap token and prediction-market trader")
console = Console()


def setup_logging(level: str = cfg.LOG_LEVEL, log_file: str = cfg.LOG_FILE) -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )
    if log_file:
        logger.add(log_file, level="DEBUG", rotation="10 MB", retention=5, enqueue=True)


def build_trader(with_metrics: bool = False) -> Tuple[AutonomousTrader, BankrClient]:
    """Wire the store, API client, notifier and metrics into one trader."""
    store = MemoryStore()
    client = BankrClient()
    metrics = MetricsExporter(port=cfg.METRICS_PORT) if with_metrics and cfg.METRICS_PORT else None
    trader = AutonomousTrader(
        client.prompt,
        store=store,
        notify=build_notifier(),
        metrics=metrics,
    )
    return trader, client


def parse_value(raw: str) -> Any:
    """CLI value -> bool / int / float / str."""
    lowered = raw.strip().lower()
    if lowered in ("true", "on", "yes"):
        return True
    if lowered in ("false", "off", "no"):
        return False
    for cast in (int, float):
        try:
            return cast(raw)
        except ValueError:
            continue
    return raw


async def _run_forever(strategy: Optional[str]) -> None:
    trader, client = build_trader(with_metrics=True)
    if trader.metrics:
        trader.metrics.start()

    try:
        console.print(await trader.start())
        if strategy:
            console.print(await trader.set_polymarket_strategy(strategy))
        await asyncio.Event().wait()
    finally:
        await trader.stop()
        await trader.wait_idle()
        await client.disconnect()


async def _one_shot(action: str, *args: Any) -> str:
    trader, client = build_trader()
    try:
        if action == "scan":
            return await trader.scan_market()
        if action == "monitor":
            await trader.monitor_positions()
            return f"Checked {len(trader.store.get_open_positions())} open position(s)"
        if action == "bet":
            message = await trader.set_polymarket_strategy(args[0])
            if message.startswith("❌"):
                return message
            return await trader.scan_polymarket()
        if action == "research":
            return await trader.manual_research(args[0])
        raise ValueError(f"Unknown action: {action}")
    finally:
        await client.disconnect()


@app.command()
def run(
    strategy: Optional[str] = typer.Option(
        None, "--strategy", "-s", help="Prediction-market strategy to activate at start"
    ),
):
    """Start the scan, monitor and (with --strategy) prediction loops."""
    setup_logging()
    console.print(Panel.fit(
        "[bold cyan]AUTONOMOUS TRADER[/bold cyan]\n\n"
        f"Spot chain: {cfg.SPOT_CHAIN} | Prediction settlement: {cfg.PREDICTION_SETTLEMENT_CHAIN}",
        border_style="cyan",
    ))
    try:
        asyncio.run(_run_forever(strategy))
    except KeyboardInterrupt:
        console.print("[yellow]Stopped[/yellow]")


@app.command()
def scan():
    """Run one market scan and print the report."""
    setup_logging()
    console.print(asyncio.run(_one_shot("scan")))


@app.command()
def monitor():
    """Run one position-monitor cycle."""
    setup_logging()
    console.print(asyncio.run(_one_shot("monitor")))


@app.command()
def bet(strategy: str = typer.Argument(..., help="Strategy text, e.g. 'NBA favourites, $4 per bet'")):
    """Run one prediction-market cycle with the given strategy."""
    setup_logging()
    console.print(asyncio.run(_one_shot("bet", strategy)))


@app.command()
def research(token: str = typer.Argument(..., help="Token symbol or name")):
    """Deep-dive research on one token."""
    setup_logging()
    console.print(asyncio.run(_one_shot("research", token)))


@app.command()
def status():
    """Show performance, open positions and pending bets."""
    setup_logging("WARNING")
    trader, _ = build_trader()
    console.print(trader.status())

    positions = trader.store.get_open_positions()
    if positions:
        table = Table(title="Open positions", show_header=True, header_style="bold magenta")
        table.add_column("Symbol", style="cyan")
        table.add_column("Amount")
        table.add_column("Entry")
        table.add_column("Reason", overflow="fold")
        for t in positions:
            table.add_row(t.symbol, t.amount, t.price or "-", t.reason)
        console.print(table)

    pending = trader.store.get_pending_polymarket_trades()
    if pending:
        table = Table(title="Pending bets", show_header=True, header_style="bold magenta")
        table.add_column("ID", style="cyan")
        table.add_column("Amount")
        table.add_column("Market", overflow="fold")
        for t in pending:
            table.add_row(t.id, t.amount, t.market)
        console.print(table)


@app.command()
def settle(
    trade_id: str = typer.Argument(..., help="Pending bet id"),
    result: str = typer.Argument(..., help="win or loss"),
    pnl: float = typer.Argument(..., help="Realized pnl in USD"),
):
    """Resolve a pending prediction-market bet."""
    setup_logging("WARNING")
    trader, _ = build_trader()
    message = trader.settle_polymarket_bet(trade_id, result, pnl)
    console.print(message)
    if message.startswith("❌"):
        raise typer.Exit(1)


@app.command("set")
def set_setting(
    key: str = typer.Argument(..., help="Setting name, e.g. takeProfitPct"),
    value: str = typer.Argument(..., help="New value"),
):
    """Change one persisted setting."""
    setup_logging("WARNING")
    trader, _ = build_trader()
    message = trader.update_settings({key: parse_value(value)})
    console.print(message)
    if message.startswith("❌"):
        raise typer.Exit(1)


@app.command("auto-trade")
def auto_trade(enabled: bool = typer.Argument(..., help="true/false")):
    """Turn automatic buying on or off."""
    setup_logging("WARNING")
    trader, _ = build_trader()
    console.print(trader.toggle_auto_trade(enabled))


if __name__ == "__main__":
    app()
