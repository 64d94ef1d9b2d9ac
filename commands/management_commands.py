# ═══════════════════════════════════════════════════════════════════
# commands/management_commands.py - Recompute, hygiene and reporting
# ═══════════════════════════════════════════════════════════════════

import typer
import rich
from rich.table import Table

from commands import cfg, store, trade_ops, recalculator, lifecycle
from audit import audit_group, audit_all_groups
from config import validate_config
from errors import ERROR_CODES
from ls import list_legs
from recalc import print_report
from utils import money, short_id

mgmt_app = typer.Typer()


@mgmt_app.command("recalc")
def recalc_pnl(
    trade_id: str = typer.Option(None, help="Group or trade ID to recalculate (leave empty for all)"),
    force: bool = typer.Option(False, "--force", "-f", help="Recompute finalized P&L too"),
):
    """Recalculate P&L for one group or the whole ledger"""
    if force and not trade_id:
        if not typer.confirm("Force recompute of ALL finalized P&L?"):
            return

    if trade_id:
        report = recalculator.recalculate_group(trade_id, force=force)
    else:
        report = recalculator.recalculate(force=force)
    print_report(report)
    if report.errors:
        raise typer.Exit(1)


@mgmt_app.command("sanitize")
def sanitize_command():
    """Null P&L left on closes that never filled"""
    count = trade_ops.sanitize_non_filled_trades()
    if count:
        rich.print(f"[green]✓ Sanitized {count} trade(s)[/]")
    else:
        rich.print("[dim]No stale P&L on non-filled trades[/]")


@mgmt_app.command("dupes")
def duplicates_command(
    delete: bool = typer.Option(False, "--delete", help="Delete the duplicates found"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation prompt"),
):
    """Find rows recorded twice for the same close order"""
    candidates = trade_ops.detect_duplicates()
    if not candidates:
        rich.print("[green]No duplicates found[/]")
        return

    tbl = Table(title="Duplicate Trades")
    for col, justify in [("id", "left"), ("symbol", "left"), ("close order", None),
                         ("exit time", None), ("PnL", "right"), ("reason", None)]:
        tbl.add_column(col, justify=justify)
    for c in candidates:
        tbl.add_row(short_id(c.id), c.symbol, c.close_order_id, c.exit_time or "-", f"${money(c.pnl)}", c.reason)
    rich.print(tbl)

    if not delete:
        rich.print("[dim]Re-run with --delete to remove them[/]")
        return
    if not force and not typer.confirm(f"Delete {len(candidates)} duplicate trade(s)?"):
        rich.print("[yellow]Cancelled[/]")
        return
    deleted = trade_ops.delete_duplicates([c.id for c in candidates])
    rich.print(f"[green]✓ Deleted {deleted} duplicate(s)[/]")


@mgmt_app.command("stats")
def stats_command(
    by_leg: bool = typer.Option(False, "--by-leg", help="Count legs instead of positions"),
):
    """Win/loss statistics over verified trades only"""
    stats = trade_ops.get_trade_stats(count_by_leg=by_leg)

    tbl = Table(title="Verified Trade Stats", show_header=False)
    tbl.add_column("Metric", style="bold")
    tbl.add_column("Value", justify="right")
    tbl.add_row("Trades", str(stats.total_trades))
    tbl.add_row("Legs", str(stats.total_legs))
    tbl.add_row("Winners", str(stats.winning_trades))
    tbl.add_row("Losers", str(stats.losing_trades))
    tbl.add_row("Win rate", f"{stats.win_rate:.1f}%")
    color = "green" if stats.total_pnl >= 0 else "red"
    tbl.add_row("Total PnL", f"[{color}]${money(stats.total_pnl)}[/]")
    tbl.add_row("Avg winner", f"${money(stats.avg_winner)}")
    tbl.add_row("Avg loser", f"${money(stats.avg_loser)}")
    rich.print(tbl)

    if stats.needs_reconcile_count:
        rich.print(f"[yellow]{stats.needs_reconcile_count} not yet verified and excluded[/]")


@mgmt_app.command("today")
def today_command():
    """Realized P&L since midnight"""
    realized, count = trade_ops.get_realized_today_pnl()
    color = "green" if realized >= 0 else "red"
    rich.print(f"Realized today: [{color}]${money(realized)}[/] across {count} trade(s)")


@mgmt_app.command("audit")
def audit_command(
    trade_id: str = typer.Option(None, "--trade-id", "-t", help="Specific group or trade ID to audit"),
    problems: bool = typer.Option(False, "--problems", "-p", help="Only groups needing attention"),
):
    """Audit P&L derivations"""
    if trade_id:
        if not audit_group(store, trade_id, cfg):
            raise typer.Exit(1)
    else:
        audit_all_groups(store, cfg, only_problems=problems)


@mgmt_app.command("reconcile-list")
def reconcile_list():
    """Trades still waiting on verified fills"""
    list_legs(trade_ops.trades_needing_reconciliation(), "Trades Needing Reconciliation")


@mgmt_app.command("timeouts")
def timeouts_command():
    """Mark submitted closes with no broker answer as timed out"""
    transitions = lifecycle.mark_timeouts()
    if not transitions:
        rich.print("[dim]No close orders past the timeout[/]")
        return
    for t in transitions:
        rich.print(f"[yellow]{short_id(t.leg_id)}: {t.from_status.value} -> {t.to_status.value}[/]")


@mgmt_app.command("validate")
def validate_command():
    """Check the configuration file"""
    errors = validate_config(cfg)
    if not errors:
        rich.print("[green]✓ Configuration is valid[/]")
        return
    for error in errors:
        rich.print(f"[red]  - {error}[/]")
    raise typer.Exit(1)


@mgmt_app.command("codes")
def codes_command():
    """Error codes and what to do about them"""
    tbl = Table(title="Error Codes")
    for col in ("code", "category", "description", "action"):
        tbl.add_column(col)
    for info in ERROR_CODES.values():
        tbl.add_row(info.code, info.category.value, info.description, info.operator_action)
    rich.print(tbl)
