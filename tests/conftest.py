import decimal as dec
import itertools

import pytest

from config import merge_defaults
from lifecycle import CloseLifecycle, FillEventHandler
from models import CloseStatus, LegRecord
from persistence import LedgerStore
from recalc import Recalculator
from trade_operations import TradeOperations

D = dec.Decimal

# Sorted by symbol: the 5900 call is the primary leg
IRON_CONDOR = [
    "SPXW250117C05900000",  # short call
    "SPXW250117C05950000",  # long call
    "SPXW250117P05650000",  # long put
    "SPXW250117P05700000",  # short put
]
PUT_SPREAD = [
    "SPY250117P00580000",  # long put
    "SPY250117P00590000",  # short put
]


@pytest.fixture
def cfg():
    return merge_defaults({})


@pytest.fixture
def store(tmp_path):
    return LedgerStore(tmp_path / "trades.json", tmp_path / "inbox", tmp_path / "archive")


@pytest.fixture
def recalculator(store, cfg):
    return Recalculator(store, cfg)


@pytest.fixture
def lifecycle(store, cfg):
    return CloseLifecycle(store, cfg)


@pytest.fixture
def handler(store, recalculator, cfg, lifecycle):
    return FillEventHandler(store, recalculator, cfg, lifecycle)


@pytest.fixture
def trade_ops(store, cfg, recalculator):
    return TradeOperations(store, cfg, recalculator)


@pytest.fixture
def add_leg(store):
    """Insert a leg row; closes are filled unless stated otherwise"""
    counter = itertools.count(1)

    def _add(symbol, **fields):
        fields.setdefault("close_status", CloseStatus.FILLED)
        leg_id = fields.pop("id", f"leg{next(counter)}")
        return store.insert_leg(LegRecord(id=leg_id, symbol=symbol, **fields))

    return _add


@pytest.fixture
def add_group(add_leg, store):
    """Insert one leg per symbol under a shared trade_group_id"""

    def _add(symbols, group_id="g1", strategy_type="iron_condor", entry_credit=None, per_leg=None, **fields):
        legs = []
        for symbol in symbols:
            extra = dict(fields)
            extra.update((per_leg or {}).get(symbol, {}))
            legs.append(add_leg(symbol, trade_group_id=group_id, strategy_type=strategy_type, **extra))
        if entry_credit is not None:
            store.set_group_entry_credit(group_id, D(entry_credit))
        return legs

    return _add
