# ═══════════════════════════════════════════════════════════════════
# commands/reconcile_commands.py - Broker fill import and reconciliation
# ═══════════════════════════════════════════════════════════════════

import json
import pathlib

import rich
import typer

from commands import cfg, store, recalculator, handler
from fill_matcher import BrokerOrder, import_missing_trades, reconcile_from_fills, reconcile_missing_fills
from utils import money, short_id

recon_app = typer.Typer()


def load_orders(path: pathlib.Path) -> list[BrokerOrder]:
    """Broker order history: a bare list, or the {"orders": {"order": [...]}} envelope"""
    payload = json.loads(path.read_text())
    if isinstance(payload, dict):
        payload = (payload.get("orders") or {}).get("order") or []
    if isinstance(payload, dict):
        payload = [payload]
    return [BrokerOrder.from_dict(o) for o in payload]


def _print_errors(errors: list[str]):
    for error in errors:
        rich.print(f"[red]  - {error}[/]")


@recon_app.command("inbox")
def import_inbox():
    """Apply fill events dropped into the inbox directory"""
    failed = []

    def apply(events):
        for event in events:
            result = handler.handle(event)
            if result.success:
                rich.print(f"[green]✓ Order {event.order_id}: {event.status.value}, {result.legs_updated} leg(s) updated[/]")
            else:
                failed.append(event.order_id)
                rich.print(f"[red]✗ Order {event.order_id}: {event.status.value}[/]")
                _print_errors(result.errors)

    events = store.import_inbox_files(apply)
    if not events:
        rich.print("[dim]Inbox is empty or unreadable[/]")
        return
    rich.print(f"Processed {len(events)} event(s), {len(failed)} with errors")


@recon_app.command("fills")
def reconcile_fills(
    orders_file: pathlib.Path = typer.Argument(..., help="Broker order history JSON"),
):
    """Backfill direction and prices from broker order history"""
    orders = load_orders(orders_file)
    rich.print(f"[cyan]Matching against {len(orders)} broker order(s)...[/]")
    result = reconcile_from_fills(store, orders, cfg, recalculator)

    rich.print(f"[green]Reconciled {result.reconciled}[/], skipped {result.skipped}")
    if result.groups:
        rich.print(f"Recomputed groups: {', '.join(short_id(g) for g in result.groups)}")
    rich.print(f"Verified {result.verified} / unverified {result.unverified}, verified P&L ${money(result.total_pnl)}")
    _print_errors(result.errors)


@recon_app.command("import-missing")
def import_missing(
    orders_file: pathlib.Path = typer.Argument(..., help="Broker order history JSON"),
):
    """Journal closing executions that were never recorded"""
    result = import_missing_trades(store, load_orders(orders_file), cfg)
    if result.imported:
        rich.print(f"[green]✓ Imported {result.imported} trade(s)[/]")
    else:
        rich.print("[dim]No unjournaled closes found[/]")
    _print_errors(result.errors)


@recon_app.command("missing-fills")
def missing_fills(
    status_file: pathlib.Path = typer.Argument(..., help="JSON map of order id to broker order status"),
):
    """Retry groups stuck in missing_fills with fresh order status"""
    statuses = json.loads(status_file.read_text())
    result = reconcile_missing_fills(store, handler, statuses.get)
    rich.print(f"[green]Recovered {result.recovered}[/], still missing {result.still_missing}")
    _print_errors(result.errors)
