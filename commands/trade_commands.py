# ═══════════════════════════════════════════════════════════════════
# commands/trade_commands.py - Journal and close-order commands
# ═══════════════════════════════════════════════════════════════════

import json
import pathlib

import rich
import typer

from commands import cfg, store, trade_ops, lifecycle, recalculator
from audit import audit_group
from errors import LedgerError
from ls import list_legs, list_trades
from models import CloseStatus

trade_app = typer.Typer()


@trade_app.command("ls")
def ls_command(limit: int = typer.Option(50, "--limit", "-n", help="Number of trades to show")):
    """List trades grouped by position"""
    list_trades(trade_ops, cfg, limit)


@trade_app.command("show")
def show_trade(trade_id: str):
    """Show how a trade's P&L was derived"""
    if not audit_group(store, trade_id, cfg):
        raise typer.Exit(1)


@trade_app.command("save-pending")
def save_pending(
    symbol: str = typer.Option(..., help="OCC option symbol"),
    close_order_id: str = typer.Option(..., help="Broker order id of the close"),
    close_side: str = typer.Option(..., help="buy_to_close or sell_to_close"),
    qty: int = typer.Option(1, help="Contracts"),
    entry_price: str = typer.Option(None, help="Per-share entry price"),
    open_side: str = typer.Option(None, help="sell_to_open or buy_to_open"),
    group: str = typer.Option(None, help="trade_group_id of the position"),
    strategy: str = typer.Option(None, help="Strategy name"),
):
    """Record a submitted close order"""
    result = trade_ops.save_pending_close({
        "symbol": symbol,
        "close_order_id": close_order_id,
        "close_side": close_side,
        "quantity": qty,
        "entry_price": entry_price,
        "open_side": open_side,
        "trade_group_id": group,
        "strategy_name": strategy,
    })
    if not result.success:
        rich.print(f"[red]Error: {result.error}[/]")
        raise typer.Exit(1)
    if result.duplicate:
        rich.print(f"[yellow]Pending close already recorded: {result.id}[/]")
    else:
        rich.print(f"[green]✓ Pending close recorded: {result.id}[/]")


@trade_app.command("save-group")
def save_group(
    path: pathlib.Path = typer.Argument(..., help="JSON file with 'legs' and optional 'entry_credit'"),
):
    """Journal a multi-leg position from a JSON file"""
    payload = json.loads(path.read_text())
    result = trade_ops.save_trade_group(payload.get("legs", []), payload.get("entry_credit"))
    if not result.success:
        rich.print(f"[red]Error: {result.error}[/]")
        raise typer.Exit(1)
    rich.print(f"[green]✓ Group {result.group_id} saved with {len(result.ids)} leg(s)[/]")
    if result.duplicates:
        rich.print(f"[yellow]  {result.duplicates} duplicate leg(s) skipped[/]")
    if result.error:
        rich.print(f"[red]  {result.error}[/]")


@trade_app.command("resolve")
def resolve_trade(
    trade_id: str,
    outcome: str = typer.Option(..., help="'filled' if the close went through, 'open' if it did not"),
    fill_price: str = typer.Option(None, "--price", help="Average fill price"),
    filled_qty: int = typer.Option(None, "--qty", help="Filled quantity"),
    fees: str = typer.Option(None, help="Fees charged"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation prompt"),
):
    """Resolve a timed-out or failed close after checking the broker"""
    if outcome == "open" and not force:
        if not typer.confirm(f"Delete close record {trade_id}? The position stays open"):
            rich.print("[yellow]Cancelled[/]")
            return

    try:
        transition = lifecycle.resolve_timed_out_trade(
            trade_id, outcome, {"avg_fill_price": fill_price, "filled_qty": filled_qty, "fees": fees},
        )
    except (LedgerError, ValueError) as exc:
        rich.print(f"[red]Error: {exc}[/]")
        raise typer.Exit(1)

    if transition is None:
        rich.print(f"[green]✓ Close record {trade_id} removed[/]")
        return
    leg = store.get_leg(trade_id)
    report = recalculator.recalculate_group(leg.group_key)
    rich.print(f"[green]✓ {leg.symbol} marked filled[/]")
    for error in report.errors:
        rich.print(f"[red]  - {error}[/]")


@trade_app.command("notes")
def update_notes(trade_id: str, notes: str):
    """Replace the notes on a trade"""
    try:
        trade_ops.update_trade_notes(trade_id, notes)
    except LedgerError as exc:
        rich.print(f"[red]Error: {exc}[/]")
        raise typer.Exit(1)
    rich.print(f"[green]✓ Notes updated for {trade_id}[/]")


@trade_app.command("pending")
def pending_closes():
    """Close orders still waiting for a broker answer"""
    list_legs(trade_ops.trades_with_pending_close(), "Pending Closes")


@trade_app.command("recovery")
def recovery_list():
    """Closes that failed or timed out"""
    legs = trade_ops.trades_needing_recovery()
    list_legs(legs, "Trades Needing Recovery")
    timed_out = sum(1 for l in legs if l.close_status == CloseStatus.TIMEOUT_UNKNOWN)
    if timed_out:
        rich.print(f"[yellow]{timed_out} timed out: use 'trade resolve <id> --outcome filled|open'[/]")
