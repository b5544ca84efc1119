import sys

sys.path.insert(0, '.')

import asyncio

import pytest

from ingest.binance_rest import ExecutionError
from orchestration.state import AggregateState
from strategy.execution_types import EntryResult, OrderTicket
from strategy.trade_manager import TradeLifecycleManager
from strategy.trades import (
    ActiveTrade,
    CloseReason,
    Direction,
    TradeCandidate,
    weighted_pnl_pct,
)


SYMBOL = 'ETHUSDT'
OPENED_AT = 1000.0


class DummyExecution:
    def __init__(self, fail=False):
        self.fail = fail
        self.mode = 'paper'
        self.paper_mode = True
        self.available_balance = None
        self.opened = []
        self.stops = []
        self.closed = []

    async def open_position(self, trade, last_price=None):
        if self.fail:
            raise ExecutionError("rejected")
        self.opened.append(trade.symbol)
        ticket = OrderTicket(trade.symbol, trade.direction.order_side, 'MARKET', 0.1,
                             status='filled', client_order_id='paper-1')
        return EntryResult(order=ticket, order_type='MARKET', quantity=0.1, mode='paper')

    async def replace_stop(self, trade, stop_price):
        self.stops.append(stop_price)
        return True

    async def close_position(self, trade, exit_price):
        self.closed.append((trade.symbol, exit_price))
        return True


class DummyNotifier:
    def __init__(self):
        self.messages = []

    async def trade_opened(self, trade):
        self.messages.append(('opened', trade.symbol))

    async def target_hit(self, trade, index, new_stop):
        self.messages.append(('target', index, new_stop))

    async def trade_closed(self, closed):
        self.messages.append(('closed', closed.close_reason))


class DummyPersistence:
    def __init__(self):
        self.saves = 0
        self.dirty = False

    async def save(self):
        self.saves += 1
        return True

    def mark_dirty(self):
        self.dirty = True


def make_candidate(symbol=SYMBOL, direction=Direction.LONG, leverage=10, targets=None):
    if direction is Direction.LONG:
        stop, default_targets = 98.0, (101.0, 103.0, 105.0, 107.0)
    else:
        stop, default_targets = 102.0, (99.0, 97.0, 95.0, 93.0)
    targets = targets or default_targets
    return TradeCandidate(
        symbol=symbol,
        direction=direction,
        entry_price=100.0,
        stop_price=stop,
        targets=targets,
        leverage=leverage,
        created_at=OPENED_AT,
        score_label='L6.0/S1.0',
    )


def make_manager(max_active=30, execution=None):
    state = AggregateState(max_active=max_active)
    execution = execution or DummyExecution()
    manager = TradeLifecycleManager(
        state, execution, DummyNotifier(), DummyPersistence(), {'max_trade_age_s': 43200},
    )
    return state, manager


async def _feed(state, manager, prices, symbol=SYMBOL, now=OPENED_AT + 60):
    for price in prices:
        state.update_price(symbol, price)
        await manager.tick(now=now)


def test_trailing_profit_after_two_targets():
    state, manager = make_manager()

    async def scenario():
        trade = await manager.open_trade(make_candidate(targets=(101.0, 103.0, 106.0, 111.0)), now=OPENED_AT)
        assert trade is not None
        await _feed(state, manager, [100.0])
        assert trade.hit_targets == []
        await _feed(state, manager, [101.5])
        assert trade.hit_targets == [1]
        assert trade.stop_price == 100.0
        await _feed(state, manager, [103.5])
        assert trade.hit_targets == [1, 2]
        assert trade.stop_price == 101.0
        await _feed(state, manager, [97.9])

    asyncio.run(scenario())

    assert SYMBOL not in state.active
    closed = state.history[0]
    assert closed.close_reason is CloseReason.TRAILING_PROFIT
    assert closed.exit_price == 101.0
    assert closed.hit_targets == (1, 2)
    # 40% at +1%, 20% at +3%, remainder credited at the best hit target
    assert closed.final_pnl_pct == pytest.approx(2.2)
    assert closed.final_roi_pct == pytest.approx(22.0)
    assert manager.execution.stops == [100.0, 101.0]
    assert manager.execution.closed == [(SYMBOL, 101.0)]
    assert manager.persistence.dirty


def test_plain_stop_without_targets():
    state, manager = make_manager()

    async def scenario():
        await manager.open_trade(make_candidate(), now=OPENED_AT)
        await _feed(state, manager, [99.0, 97.5])

    asyncio.run(scenario())
    closed = state.history[0]
    assert closed.close_reason is CloseReason.STOP
    assert closed.exit_price == 98.0
    assert closed.final_pnl_pct == pytest.approx(-2.0)
    assert closed.final_roi_pct == pytest.approx(-20.0)


def test_gap_through_every_target_closes_at_max_target():
    state, manager = make_manager()

    async def scenario():
        await manager.open_trade(make_candidate(), now=OPENED_AT)
        await _feed(state, manager, [107.5])

    asyncio.run(scenario())
    closed = state.history[0]
    assert closed.close_reason is CloseReason.MAX_TARGET
    assert closed.exit_price == 107.0
    assert closed.hit_targets == (1, 2, 3, 4)
    assert closed.final_pnl_pct == pytest.approx(0.4 * 1 + 0.2 * 3 + 0.2 * 5 + 0.2 * 7)
    assert manager.execution.stops == [100.0, 101.0, 103.0]
    # every target is announced, including the one that closes the trade
    assert manager.notifier.messages == [
        ('opened', SYMBOL),
        ('target', 1, 100.0),
        ('target', 2, 101.0),
        ('target', 3, 103.0),
        ('target', 4, 103.0),
        ('closed', CloseReason.MAX_TARGET),
    ]


def test_short_stop_never_loosens():
    state, manager = make_manager()

    async def scenario():
        trade = await manager.open_trade(make_candidate(direction=Direction.SHORT), now=OPENED_AT)
        await _feed(state, manager, [98.5])
        assert trade.stop_price == 100.0
        await _feed(state, manager, [99.5])
        assert trade.stop_price == 100.0
        await _feed(state, manager, [100.2])

    asyncio.run(scenario())
    closed = state.history[0]
    assert closed.close_reason is CloseReason.TRAILING_PROFIT
    assert closed.exit_price == 100.0
    assert closed.final_pnl_pct == pytest.approx(1.0)


def test_evaluate_keeps_tighter_stop_and_does_not_mutate():
    state, manager = make_manager()
    trade = ActiveTrade.from_candidate(make_candidate(), now=OPENED_AT)
    trade.stop_price = 100.5
    events = manager.evaluate(trade, 101.2, OPENED_AT + 60)
    assert [e.kind for e in events] == ['target']
    assert events[0].stop_price == 100.5
    assert trade.hit_targets == []
    assert trade.stop_price == 100.5


def test_time_limit_closes_at_market():
    state, manager = make_manager()

    async def scenario():
        await manager.open_trade(make_candidate(), now=OPENED_AT)
        state.update_price(SYMBOL, 100.5)
        await manager.tick(now=OPENED_AT + 43200)
        # the ceiling itself is not exceeded yet
        assert SYMBOL in state.active
        await manager.tick(now=OPENED_AT + 43201)

    asyncio.run(scenario())
    closed = state.history[0]
    assert closed.close_reason is CloseReason.TIME_LIMIT
    assert closed.exit_price == 100.5
    assert closed.final_pnl_pct == pytest.approx(0.5)


def test_close_is_idempotent():
    state, manager = make_manager()

    async def scenario():
        trade = await manager.open_trade(make_candidate(), now=OPENED_AT)
        await _feed(state, manager, [97.0, 96.0])
        again = await manager.close_trade(trade, 96.0, CloseReason.MANUAL)
        assert again is None
        return trade

    asyncio.run(scenario())
    assert len(state.history) == 1
    assert len(manager.execution.closed) == 1


def test_trade_without_price_is_left_alone():
    state, manager = make_manager()

    async def scenario():
        await manager.open_trade(make_candidate(), now=OPENED_AT)
        return await manager.tick(now=OPENED_AT + 60)

    assert asyncio.run(scenario()) == 0
    assert SYMBOL in state.active


def test_failed_entry_rolls_back():
    state, manager = make_manager(execution=DummyExecution(fail=True))

    async def scenario():
        return await manager.open_trade(make_candidate(), now=OPENED_AT)

    assert asyncio.run(scenario()) is None
    assert state.active == {}
    assert manager.persistence.saves == 2
    assert manager.notifier.messages == []


def test_open_respects_capacity_and_duplicates():
    state, manager = make_manager(max_active=1)

    async def scenario():
        first = await manager.open_trade(make_candidate(), now=OPENED_AT)
        duplicate = await manager.open_trade(make_candidate(), now=OPENED_AT)
        other = await manager.open_trade(make_candidate(symbol='SOLUSDT'), now=OPENED_AT)
        return first, duplicate, other

    first, duplicate, other = asyncio.run(scenario())
    assert first is not None
    assert first.quantity == 0.1
    assert first.entry_order_id == 'paper-1'
    assert duplicate is None
    assert other is None
    assert list(state.active) == [SYMBOL]
    assert manager.execution.opened == [SYMBOL]
    assert manager.notifier.messages == [('opened', SYMBOL)]


def test_weighted_pnl_marks_remainder():
    targets = (101.0, 103.0, 105.0, 107.0)
    realized, total = weighted_pnl_pct(Direction.LONG, 100.0, targets, [1], 102.0)
    assert realized == pytest.approx(0.4)
    assert total == pytest.approx(0.4 + 0.6 * 2.0)
    realized, total = weighted_pnl_pct(Direction.SHORT, 100.0, (99.0, 97.0, 95.0, 93.0), [], 101.0)
    assert realized == 0.0
    assert total == pytest.approx(-1.0)
