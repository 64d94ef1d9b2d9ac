# ═══════════════════════════════════════════════════════════════════
# ledger.py - Main application
# ═══════════════════════════════════════════════════════════════════
from __future__ import annotations

import logging
import pathlib

import typer
from rich.logging import RichHandler

from config import load_config
from persistence import LedgerStore

from commands.trade_commands import trade_app, ls_command, show_trade, recovery_list
from commands.management_commands import mgmt_app, recalc_pnl, audit_command, stats_command, today_command
from commands.reconcile_commands import recon_app, import_inbox, reconcile_fills

# Create main app and add sub-apps
app = typer.Typer()
app.add_typer(trade_app, name="trade", help="Journal and close-order operations")
app.add_typer(mgmt_app, name="mgmt", help="Recompute, hygiene and reports")
app.add_typer(recon_app, name="recon", help="Broker fill reconciliation")


@app.callback()
def main(
    book: pathlib.Path = typer.Option(None, "--book", help="Ledger file (defaults to the configured book)"),
    config: pathlib.Path = typer.Option(None, "--config", help="Configuration file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Options trade P&L ledger"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )
    cfg = load_config(config)
    store = LedgerStore(book or cfg["book"], cfg["inbox"], cfg["archive"])

    # Set global references for command modules
    from commands import set_globals
    set_globals(cfg, store)


# ═══════════════════════════════════════════════════════════════════
# SHORTCUT ALIASES
# ═══════════════════════════════════════════════════════════════════

@app.command("ls")
def ls_alias(limit: int = typer.Option(50, "--limit", "-n", help="Number of trades to show")):
    """List trades (alias for 'trade ls')"""
    return ls_command(limit)


@app.command("show")
def show_alias(trade_id: str):
    """Show a trade's P&L derivation (alias for 'trade show')"""
    return show_trade(trade_id)


@app.command("recovery")
def recovery_alias():
    """Trades needing recovery (alias for 'trade recovery')"""
    return recovery_list()


@app.command("recalc")
def recalc_alias(
    trade_id: str = typer.Option(None, help="Group or trade ID to recalculate (leave empty for all)"),
    force: bool = typer.Option(False, "--force", "-f", help="Recompute finalized P&L too"),
):
    """Recalculate P&L (alias for 'mgmt recalc')"""
    return recalc_pnl(trade_id, force)


@app.command("audit")
def audit_alias(
    trade_id: str = typer.Option(None, "--trade-id", "-t", help="Specific group or trade ID to audit"),
    problems: bool = typer.Option(False, "--problems", "-p", help="Only groups needing attention"),
):
    """Audit P&L derivations (alias for 'mgmt audit')"""
    return audit_command(trade_id, problems)


@app.command("stats")
def stats_alias(by_leg: bool = typer.Option(False, "--by-leg", help="Count legs instead of positions")):
    """Verified trade statistics (alias for 'mgmt stats')"""
    return stats_command(by_leg)


@app.command("today")
def today_alias():
    """Realized P&L today (alias for 'mgmt today')"""
    return today_command()


@app.command("inbox")
def inbox_alias():
    """Apply inbox fill events (alias for 'recon inbox')"""
    return import_inbox()


@app.command("reconcile")
def reconcile_alias(orders_file: pathlib.Path = typer.Argument(..., help="Broker order history JSON")):
    """Reconcile from broker fills (alias for 'recon fills')"""
    return reconcile_fills(orders_file)


if __name__ == "__main__":
    app()
