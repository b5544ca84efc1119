import sys

sys.path.insert(0, '.')

import asyncio

import pytest

from ingest.binance_rest import BinanceAPIError, ExecutionError
from risk.position_sizer import RiskManager
from strategy.execution import ExecutionManager, split_quantity
from strategy.execution_types import OrderTicket
from strategy.simulators.paper import PaperTradingSimulator
from strategy.trades import ActiveTrade, Direction, TradeCandidate
from strategy.transports.binance import BinanceTransport, SymbolInfo, format_decimal


def make_trade(direction=Direction.LONG, leverage=10):
    if direction is Direction.LONG:
        stop, targets = 98.0, (101.0, 103.0, 105.0, 107.0)
    else:
        stop, targets = 102.0, (99.0, 97.0, 95.0, 93.0)
    candidate = TradeCandidate('ETHUSDT', direction, 100.0, stop, targets, leverage, 0.0, 'L6.0/S0.0')
    return ActiveTrade.from_candidate(candidate, now=0.0)


class DummyTransport:
    def __init__(self, reject_entry=False, metadata_error=None, balance=50.0):
        self.reject_entry = reject_entry
        self.metadata_error = metadata_error
        self.balance = balance
        self.calls = []
        self.open_orders = []

    async def fetch_symbol_infos(self):
        if self.metadata_error:
            raise self.metadata_error
        return {'ETHUSDT': SymbolInfo('ETHUSDT', 0.01, 0.001, 0.001, 5.0, {})}

    async def fetch_available_balance(self, asset='USDT'):
        return self.balance

    async def set_margin_type(self, symbol, margin_type):
        self.calls.append(('margin', symbol, margin_type))

    async def set_leverage(self, symbol, leverage):
        self.calls.append(('leverage', symbol, leverage))

    async def place_order(self, symbol, side, order_type, qty, price=None, tif="GTC", reduce_only=False):
        if self.reject_entry and not reduce_only:
            raise BinanceAPIError(400, -2019, "Margin is insufficient.", "{}")
        self.calls.append(('order', side, order_type, qty, price, reduce_only))
        return OrderTicket(symbol, side, order_type, qty, status='NEW', exchange_order_id=42)

    async def place_conditional_order(self, symbol, side, order_type, stop_price, qty=None,
                                      close_position=False):
        self.calls.append(('conditional', side, order_type, stop_price, qty, close_position))
        return OrderTicket(symbol, side, order_type, qty or 0.0, stop_price=stop_price,
                           close_position=close_position, exchange_order_id=len(self.calls))

    async def fetch_open_orders(self, symbol):
        return list(self.open_orders)

    async def cancel_order(self, symbol, order_id):
        self.calls.append(('cancel', order_id))

    async def cancel_all_orders(self, symbol):
        self.calls.append(('cancel_all', symbol))

    async def fetch_position_qty(self, symbol):
        return 0.05

    async def close(self):
        return None


def make_execution(paper=True, transport=None):
    return ExecutionManager(
        exchange_cfg={'paper': paper},
        lifecycle_cfg={'entry_tolerance_pct': 0.002},
        risk=RiskManager({'cost_per_trade': 1.0}),
        transport=transport or DummyTransport(),
        simulator=PaperTradingSimulator(),
    )


def test_split_quantity_gives_remainder_to_last_slice():
    assert split_quantity(1.0, (0.4, 0.2, 0.2)) == pytest.approx([0.4, 0.2, 0.2, 0.2])
    slices = split_quantity(0.013, (0.4, 0.2, 0.2), step=0.001)
    assert slices[:3] == pytest.approx([0.005, 0.002, 0.002])
    assert sum(slices) == pytest.approx(0.013)


def test_choose_order_type():
    execution = make_execution()
    assert execution.choose_order_type(Direction.LONG, 100.0, None) == 'MARKET'
    assert execution.choose_order_type(Direction.LONG, 100.0, 100.1) == 'MARKET'
    assert execution.choose_order_type(Direction.LONG, 100.0, 100.3) == 'LIMIT'
    assert execution.choose_order_type(Direction.SHORT, 100.0, 99.7) == 'LIMIT'
    assert execution.choose_order_type(Direction.SHORT, 100.0, 100.5) == 'MARKET'


def test_paper_lifecycle_keeps_one_stop():
    execution = make_execution()
    trade = make_trade()

    async def scenario():
        result = await execution.open_position(trade, None)
        assert await execution.replace_stop(trade, 100.0)
        stops = [t for t in execution.simulator.open_orders('ETHUSDT') if t.type == 'STOP_MARKET']
        assert [t.stop_price for t in stops] == [100.0]
        assert await execution.close_position(trade, 101.0)
        return result

    result = asyncio.run(scenario())
    assert result.mode == 'paper'
    assert result.order_type == 'MARKET'
    assert result.quantity == pytest.approx(0.1)
    assert len(result.protective) == 5
    assert execution.simulator.open_orders('ETHUSDT') == []
    assert execution.simulator.position_qty('ETHUSDT') == 0.0
    assert execution.simulator.equity == pytest.approx(1000.0 + 0.1)


def test_zero_quantity_is_an_execution_error():
    execution = ExecutionManager(
        exchange_cfg={'paper': True}, lifecycle_cfg={},
        risk=RiskManager({'cost_per_trade': 0.0}), transport=DummyTransport(),
    )
    with pytest.raises(ExecutionError):
        asyncio.run(execution.open_position(make_trade(), None))


def test_live_entry_places_protection():
    transport = DummyTransport()
    execution = make_execution(paper=False, transport=transport)

    async def scenario():
        assert await execution.initialize() is True
        return await execution.open_position(make_trade(leverage=5), 100.0)

    result = asyncio.run(scenario())
    assert result.mode == 'live'
    assert result.order_id == '42'
    assert execution.available_balance == 50.0
    assert transport.calls[0] == ('margin', 'ETHUSDT', 'ISOLATED')
    assert transport.calls[1] == ('leverage', 'ETHUSDT', 5)
    assert transport.calls[2] == ('order', 'BUY', 'MARKET', 0.05, None, False)
    stop = transport.calls[3]
    assert stop[:4] == ('conditional', 'SELL', 'STOP_MARKET', 98.0)
    assert stop[5] is True
    take_profits = [c for c in transport.calls if c[0] == 'conditional' and c[2] == 'TAKE_PROFIT_MARKET']
    assert [c[3] for c in take_profits] == [101.0, 103.0, 105.0, 107.0]
    assert sum(c[4] for c in take_profits) == pytest.approx(0.05)


def test_live_rejection_raises_execution_error():
    execution = make_execution(paper=False, transport=DummyTransport(reject_entry=True))
    with pytest.raises(ExecutionError):
        asyncio.run(execution.open_position(make_trade(), 100.0))


def test_low_balance_blocks_entry():
    execution = make_execution(paper=False, transport=DummyTransport(balance=0.5))

    async def scenario():
        await execution.initialize()
        await execution.open_position(make_trade(), 100.0)

    with pytest.raises(ExecutionError):
        asyncio.run(scenario())


def test_init_failure_switches_to_paper():
    execution = make_execution(paper=False, transport=DummyTransport(metadata_error=BinanceAPIError(
        401, -2015, "Invalid API-key", "{}")))
    assert asyncio.run(execution.initialize()) is False
    assert execution.paper_mode is True
    assert execution.mode == 'paper'


def test_live_stop_replacement_and_close():
    transport = DummyTransport()
    transport.open_orders = [
        OrderTicket('ETHUSDT', 'SELL', 'STOP_MARKET', 0.0, stop_price=98.0, exchange_order_id=7),
        OrderTicket('ETHUSDT', 'SELL', 'TAKE_PROFIT_MARKET', 0.02, stop_price=101.0, exchange_order_id=8),
    ]
    execution = make_execution(paper=False, transport=transport)
    trade = make_trade()

    async def scenario():
        assert await execution.replace_stop(trade, 100.0)
        assert await execution.close_position(trade, 100.0)

    asyncio.run(scenario())
    assert ('cancel', 7) in transport.calls
    assert ('cancel', 8) not in transport.calls
    assert ('conditional', 'SELL', 'STOP_MARKET', 100.0, None, True) in transport.calls
    assert ('cancel_all', 'ETHUSDT') in transport.calls
    assert transport.calls[-1] == ('order', 'SELL', 'MARKET', 0.05, None, True)


def test_format_decimal_snaps_to_step():
    assert format_decimal(0.123456, 0.001) == '0.123'
    assert format_decimal(100.0) == '100'
    assert format_decimal(1e-7) == '0.0000001'


class DummyRest:
    def __init__(self, post_error=None):
        self.post_error = post_error
        self.posts = []

    async def get(self, path, params=None, signed=False):
        return {'symbols': [
            {'symbol': 'ETHUSDT', 'status': 'TRADING', 'filters': [
                {'filterType': 'PRICE_FILTER', 'tickSize': '0.01'},
                {'filterType': 'LOT_SIZE', 'stepSize': '0.001', 'minQty': '0.001'},
                {'filterType': 'MIN_NOTIONAL', 'notional': '5'},
            ]},
            {'symbol': 'OLDUSDT', 'status': 'SETTLING', 'filters': []},
        ]}

    async def post(self, path, params=None, signed=False):
        if self.post_error:
            raise self.post_error
        self.posts.append((path, params))
        return {'symbol': params['symbol'], 'side': params['side'], 'type': params.get('type'),
                'orderId': 99, 'origQty': params.get('quantity', '0'), 'stopPrice': params.get('stopPrice'),
                'status': 'NEW'}


def test_transport_parses_metadata_and_builds_orders():
    rest = DummyRest()
    transport = BinanceTransport(rest)

    async def scenario():
        infos = await transport.fetch_symbol_infos()
        ticket = await transport.place_conditional_order(
            'ETHUSDT', 'SELL', 'TAKE_PROFIT_MARKET', 101.5, qty=0.02,
        )
        return infos, ticket

    infos, ticket = asyncio.run(scenario())
    assert list(infos) == ['ETHUSDT']
    assert infos['ETHUSDT'].amount_step == 0.001
    assert infos['ETHUSDT'].min_notional == 5.0
    path, params = rest.posts[0]
    assert path == '/fapi/v1/order'
    assert params['stopPrice'] == '101.5'
    assert params['quantity'] == '0.02'
    assert params['reduceOnly'] == 'true'
    assert params['workingType'] == 'MARK_PRICE'
    assert ticket.exchange_order_id == 99
    assert ticket.is_conditional


def test_transport_ignores_unchanged_margin_type():
    unchanged = BinanceTransport(DummyRest(BinanceAPIError(400, -4046, "No need to change margin type.", "{}")))
    asyncio.run(unchanged.set_margin_type('ETHUSDT', 'isolated'))

    failing = BinanceTransport(DummyRest(BinanceAPIError(400, -1102, "Mandatory parameter", "{}")))
    with pytest.raises(BinanceAPIError):
        asyncio.run(failing.set_margin_type('ETHUSDT', 'isolated'))
