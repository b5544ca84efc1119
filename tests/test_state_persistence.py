import sys

sys.path.insert(0, '.')

import asyncio
import json

import pytest

from ingest.binance_rest import TransientNetworkError
from orchestration.persistence import (
    FileSnapshotStore,
    NullSnapshotStore,
    PersistenceCoordinator,
    build_snapshot_store,
)
from orchestration.state import AggregateState, InvariantViolation
from strategy.trades import ActiveTrade, ClosedTrade, CloseReason, Direction, TradeCandidate


def make_candidate(symbol, created_at=1000.0):
    return TradeCandidate(
        symbol=symbol,
        direction=Direction.LONG,
        entry_price=100.0,
        stop_price=98.0,
        targets=(101.0, 103.0, 105.0, 107.0),
        leverage=10,
        created_at=created_at,
        score_label='L6.0/S1.0',
        strategy_tag='pullback',
    )


def make_closed(symbol, closed_at):
    trade = ActiveTrade.from_candidate(make_candidate(symbol), now=closed_at - 100)
    return ClosedTrade.from_active(trade, 98.0, CloseReason.STOP, closed_at, -2.0, -20.0)


def populated_state():
    state = AggregateState(max_active=5)
    state.set_watchlist(['ETHUSDT', 'SOLUSDT'])
    trade = ActiveTrade.from_candidate(make_candidate('ETHUSDT'), now=1000.0)
    state.add_active(trade)
    state.mark_target(trade, 1)
    trade.stop_price = 100.0
    for i, symbol in enumerate(['AAAUSDT', 'BBBUSDT', 'CCCUSDT']):
        state.append_history(make_closed(symbol, 2000.0 + i))
    state.benchmark_change_pct = -1.25
    state.set_funding({'ETHUSDT': 0.0001})
    return state, trade


class BrokenStore:
    name = 'broken'

    async def load(self):
        raise TransientNetworkError("store offline")

    async def save(self, blob):
        raise TransientNetworkError("store offline")

    async def close(self):
        return None


class FlakyStore(NullSnapshotStore):
    def __init__(self):
        self.fail = True
        self.saved = []

    async def save(self, blob):
        if self.fail:
            raise TransientNetworkError("timeout")
        self.saved.append(blob)


def test_history_is_newest_first():
    state, _ = populated_state()
    assert [c.symbol for c in state.history] == ['CCCUSDT', 'BBBUSDT', 'AAAUSDT']


def test_snapshot_round_trip_preserves_trades():
    state, trade = populated_state()
    blob = json.loads(json.dumps(state.to_snapshot()))

    restored = AggregateState(max_active=5)
    restored.restore(blob)
    assert restored.watchlist == ['ETHUSDT', 'SOLUSDT']
    assert restored.active['ETHUSDT'].to_dict() == trade.to_dict()
    assert restored.active['ETHUSDT'].hit_targets == [1]
    assert [c.to_dict() for c in restored.history] == [c.to_dict() for c in state.history]
    assert restored.benchmark_change_pct == -1.25
    assert restored.funding_rate('ETHUSDT') == 0.0001


def test_restore_ignores_foreign_versions():
    state = AggregateState()
    state.restore({'version': 99, 'watchlist': ['XUSDT']})
    assert state.watchlist == []
    state.restore(None)
    assert state.active == {}


def test_invariant_violations():
    state = AggregateState(max_active=1)
    trade = ActiveTrade.from_candidate(make_candidate('ETHUSDT'))
    state.add_active(trade)
    with pytest.raises(InvariantViolation):
        state.add_active(ActiveTrade.from_candidate(make_candidate('ETHUSDT')))
    with pytest.raises(InvariantViolation):
        state.add_active(ActiveTrade.from_candidate(make_candidate('SOLUSDT')))
    with pytest.raises(InvariantViolation):
        state.mark_target(trade, 2)
    state.mark_target(trade, 1)
    with pytest.raises(InvariantViolation):
        state.mark_target(trade, 1)


def test_remove_active_checks_identity():
    state = AggregateState()
    trade = ActiveTrade.from_candidate(make_candidate('ETHUSDT'))
    impostor = ActiveTrade.from_candidate(make_candidate('ETHUSDT'))
    state.add_active(trade)
    assert state.remove_active('ETHUSDT', impostor) is False
    assert state.is_current(trade)
    assert state.remove_active('ETHUSDT', trade) is True
    assert state.remove_active('ETHUSDT', trade) is False


def test_subscription_symbols_include_active_trades():
    state = AggregateState()
    state.set_watchlist(['SOLUSDT'])
    state.add_active(ActiveTrade.from_candidate(make_candidate('ETHUSDT')))
    assert state.subscription_symbols() == ['SOLUSDT', 'ETHUSDT']


def test_file_store_round_trip(tmp_path):
    state, trade = populated_state()
    path = tmp_path / 'state' / 'snapshot.json'
    coordinator = PersistenceCoordinator(state, FileSnapshotStore(path))

    assert asyncio.run(coordinator.save()) is True
    assert path.exists()
    assert not path.with_suffix('.json.tmp').exists()

    restored = AggregateState(max_active=5)
    loader = PersistenceCoordinator(restored, FileSnapshotStore(path))
    assert asyncio.run(loader.load()) is True
    assert restored.active['ETHUSDT'].trade_id == trade.trade_id
    assert len(restored.history) == 3


def test_unreachable_store_disables_persistence():
    state, _ = populated_state()
    coordinator = PersistenceCoordinator(state, BrokenStore())
    assert asyncio.run(coordinator.load()) is False
    assert coordinator.enabled is False
    assert state.liveness['store'] is False
    assert asyncio.run(coordinator.save()) is False
    assert 'ETHUSDT' in state.active


def test_failed_save_is_retried():
    state, _ = populated_state()
    store = FlakyStore()
    coordinator = PersistenceCoordinator(state, store)
    assert asyncio.run(coordinator.save()) is False
    assert coordinator.dirty
    assert state.liveness['store'] is False

    store.fail = False
    assert asyncio.run(coordinator.flush()) is True
    assert not coordinator.dirty
    assert state.liveness['store'] is True
    assert store.saved[0]['active'][0]['candidate']['symbol'] == 'ETHUSDT'


def test_build_snapshot_store_backends(tmp_path):
    assert isinstance(build_snapshot_store({'backend': 'none'}), NullSnapshotStore)
    assert isinstance(build_snapshot_store({'backend': 'file', 'path': str(tmp_path / 's.json')}),
                      FileSnapshotStore)
    assert isinstance(build_snapshot_store({'backend': 'postgres', 'dsn': None}), NullSnapshotStore)
    assert isinstance(build_snapshot_store({'backend': 'redis'}), NullSnapshotStore)


class MalformedStore(NullSnapshotStore):
    def __init__(self, snapshot):
        self.snapshot = snapshot
        self.saved = []

    async def load(self):
        return self.snapshot

    async def save(self, blob):
        self.saved.append(blob)


@pytest.mark.parametrize('snapshot', [
    {'version': 1, 'active': [{'stop_price': 1}], 'history': []},
    {'version': 1, 'watchlist': ['ETHUSDT'], 'active': [], 'history': [{'trade_id': 'x'}]},
])
def test_malformed_snapshot_starts_empty_and_disables_store(snapshot):
    state = AggregateState()
    store = MalformedStore(snapshot)
    coordinator = PersistenceCoordinator(state, store)

    async def scenario():
        loaded = await coordinator.load()
        saved = await coordinator.save()
        return loaded, saved

    loaded, saved = asyncio.run(scenario())
    assert loaded is False
    assert saved is False
    assert store.saved == []
    assert coordinator.enabled is False
    assert state.liveness['store'] is False
    assert state.watchlist == []
    assert state.active == {}
    assert len(state.history) == 0
