# ═══════════════════════════════════════════════════════════════════
# commands/__init__.py - Shared state for command modules
# ═══════════════════════════════════════════════════════════════════

# Global references that all command modules can access
cfg = None
store = None
trade_ops = None
recalculator = None
lifecycle = None
handler = None


def set_globals(config, ledger_store):
    """Set global references for all command modules"""
    global cfg, store, trade_ops, recalculator, lifecycle, handler

    from lifecycle import CloseLifecycle, FillEventHandler
    from recalc import Recalculator
    from trade_operations import TradeOperations

    cfg = config
    store = ledger_store
    recalculator = Recalculator(store, cfg)
    lifecycle = CloseLifecycle(store, cfg)
    handler = FillEventHandler(store, recalculator, cfg, lifecycle)
    trade_ops = TradeOperations(store, cfg, recalculator)

    # Set the globals in each module
    import commands.management_commands
    import commands.reconcile_commands
    import commands.trade_commands

    for module in (commands.trade_commands, commands.management_commands, commands.reconcile_commands):
        module.cfg = cfg
        module.store = store
        module.trade_ops = trade_ops
        module.recalculator = recalculator
        module.lifecycle = lifecycle
        module.handler = handler
