import logging
from typing import Dict, List, Optional, Sequence

from config import config
from api.metrics import metrics
from ingest.binance_rest import ExecutionError, TransientNetworkError
from risk.position_sizer import RiskManager
from strategy.execution_types import EntryResult, OrderTicket
from strategy.simulators.paper import PaperTradingSimulator
from strategy.trades import ActiveTrade, DEFAULT_TARGET_FRACTIONS, Direction
from strategy.transports.binance import BinanceAPIError, BinanceTransport, SymbolInfo


logger = logging.getLogger(__name__)


def split_quantity(total: float, fractions: Sequence[float], step: Optional[float] = None) -> List[float]:
    """Slice ``total`` by ``fractions``; the last slice takes whatever remains."""
    slices: List[float] = []
    used = 0.0
    for fraction in fractions:
        qty = total * fraction
        if step:
            qty = (qty // step) * step
        slices.append(qty)
        used += qty
    slices.append(max(total - used, 0.0))
    return slices


class ExecutionManager:
    """Place, protect and flatten positions on Binance futures, or simulate them in paper mode."""

    def __init__(self, exchange_cfg: Optional[Dict] = None, lifecycle_cfg: Optional[Dict] = None,
                 risk: Optional[RiskManager] = None, transport: Optional[BinanceTransport] = None,
                 simulator: Optional[PaperTradingSimulator] = None):
        exchange_cfg = exchange_cfg if exchange_cfg is not None else config.section('exchange')
        lifecycle_cfg = lifecycle_cfg if lifecycle_cfg is not None else config.section('lifecycle')
        self.paper_mode = bool(exchange_cfg.get('paper', True))
        self.margin_type = exchange_cfg.get('margin_type', 'ISOLATED')
        self.settlement_asset = exchange_cfg.get('settlement_asset', 'USDT')
        self.entry_tolerance_pct = float(lifecycle_cfg.get('entry_tolerance_pct', 0.002))
        self.target_fractions = tuple(lifecycle_cfg.get('target_fractions', DEFAULT_TARGET_FRACTIONS))
        self.risk = risk or RiskManager()
        self.transport = transport or BinanceTransport()
        self.simulator = simulator or PaperTradingSimulator()
        self.metadata: Dict[str, SymbolInfo] = {}
        self.available_balance: Optional[float] = None

    @property
    def mode(self) -> str:
        return 'paper' if self.paper_mode else 'live'

    async def initialize(self) -> bool:
        """Load exchange metadata; any failure drops the adapter into paper mode."""
        if self.paper_mode:
            logger.info("Execution running in paper mode")
            return True
        try:
            self.metadata = await self.transport.fetch_symbol_infos()
            await self.refresh_balance()
        except Exception as exc:
            logger.error("Init failed; switching to paper mode: %s", exc)
            self.paper_mode = True
            self.metadata = {}
            return False
        logger.info(
            "Execution live: %s symbols, available %s %s",
            len(self.metadata), self.available_balance, self.settlement_asset,
        )
        return True

    async def refresh_balance(self) -> Optional[float]:
        if self.paper_mode:
            return None
        self.available_balance = await self.transport.fetch_available_balance(self.settlement_asset)
        return self.available_balance

    def choose_order_type(self, direction: Direction, entry_price: float, last_price: Optional[float]) -> str:
        """LIMIT at the entry when price already ran past it by the tolerance, otherwise MARKET."""
        if last_price is None:
            return 'MARKET'
        if direction is Direction.LONG and last_price > entry_price * (1 + self.entry_tolerance_pct):
            return 'LIMIT'
        if direction is Direction.SHORT and last_price < entry_price * (1 - self.entry_tolerance_pct):
            return 'LIMIT'
        return 'MARKET'

    def _quantity(self, symbol: str, price: float, leverage: int) -> float:
        info = self.metadata.get(symbol)
        step = info.amount_step if info else None
        min_qty = info.min_qty if info else None
        return self.risk.calculate_quantity(price, leverage, step_size=step, min_qty=min_qty)

    async def open_position(self, trade: ActiveTrade, last_price: Optional[float] = None) -> EntryResult:
        symbol = trade.symbol
        direction = trade.direction
        order_type = self.choose_order_type(direction, trade.entry_price, last_price)
        ref_price = trade.entry_price if order_type == 'LIMIT' else (last_price or trade.entry_price)
        qty = self._quantity(symbol, ref_price, trade.leverage)
        if qty <= 0:
            metrics.record_execution_error('entry')
            raise ExecutionError(f"{symbol}: order quantity rounds to zero")

        if self.paper_mode:
            ticket = self.simulator.create_order(
                symbol, order_type, direction.order_side, qty, price=ref_price,
            )
            protective = self._paper_protective(trade, qty)
            logger.info("Paper %s %s %s qty=%s @ %.6f", order_type, direction.value, symbol, qty, ref_price)
            return EntryResult(order=ticket, order_type=order_type, quantity=qty,
                               mode='paper', protective=protective)

        if self.available_balance is not None and self.available_balance < self.risk.cost_per_trade:
            metrics.record_execution_error('entry')
            raise ExecutionError(
                f"{symbol}: available balance {self.available_balance} below {self.risk.cost_per_trade}"
            )

        try:
            await self.transport.set_margin_type(symbol, self.margin_type)
            await self.transport.set_leverage(symbol, trade.leverage)
            ticket = await self.transport.place_order(
                symbol,
                direction.order_side,
                order_type,
                qty,
                price=trade.entry_price if order_type == 'LIMIT' else None,
            )
        except TransientNetworkError as exc:
            self._log_transport_error(f"entry {symbol}", exc)
            metrics.record_execution_error('entry')
            raise ExecutionError(f"{symbol}: entry rejected") from exc
        if ticket is None:
            metrics.record_execution_error('entry')
            raise ExecutionError(f"{symbol}: entry returned no acknowledgement")

        protective = await self._place_protective(trade, qty)
        logger.info("Live %s %s %s qty=%s order=%s", order_type, direction.value, symbol, qty, ticket.id)
        return EntryResult(order=ticket, order_type=order_type, quantity=qty,
                           mode='live', protective=protective)

    def _paper_protective(self, trade: ActiveTrade, qty: float) -> List[OrderTicket]:
        side = trade.direction.exit_side
        tickets = [self.simulator.create_order(
            trade.symbol, 'STOP_MARKET', side, 0.0, stop_price=trade.stop_price, close_position=True,
        )]
        for target, part in zip(trade.targets, split_quantity(qty, self.target_fractions)):
            tickets.append(self.simulator.create_order(
                trade.symbol, 'TAKE_PROFIT_MARKET', side, part, stop_price=target, reduce_only=True,
            ))
        return [t for t in tickets if t is not None]

    async def _place_protective(self, trade: ActiveTrade, qty: float) -> List[OrderTicket]:
        symbol = trade.symbol
        side = trade.direction.exit_side
        info = self.metadata.get(symbol)
        step = info.amount_step if info else None
        placed: List[OrderTicket] = []

        try:
            ticket = await self.transport.place_conditional_order(
                symbol, side, 'STOP_MARKET', trade.stop_price, close_position=True,
            )
            if ticket:
                placed.append(ticket)
        except TransientNetworkError as exc:
            self._log_transport_error(f"stop order {symbol}", exc)
            metrics.record_execution_error('stop')

        for index, (target, part) in enumerate(
                zip(trade.targets, split_quantity(qty, self.target_fractions, step)), start=1):
            if part <= 0:
                continue
            try:
                ticket = await self.transport.place_conditional_order(
                    symbol, side, 'TAKE_PROFIT_MARKET', target, qty=part,
                )
                if ticket:
                    placed.append(ticket)
            except TransientNetworkError as exc:
                self._log_transport_error(f"target {index} order {symbol}", exc)
                metrics.record_execution_error('target')
        return placed

    async def replace_stop(self, trade: ActiveTrade, stop_price: float) -> bool:
        """Cancel the working stop for the symbol and place a fresh one at ``stop_price``."""
        symbol = trade.symbol
        side = trade.direction.exit_side
        if self.paper_mode:
            for ticket in self.simulator.open_orders(symbol):
                if ticket.type == 'STOP_MARKET':
                    self.simulator.cancel(order_id=ticket.id)
            self.simulator.create_order(
                symbol, 'STOP_MARKET', side, 0.0, stop_price=stop_price, close_position=True,
            )
            return True
        try:
            for ticket in await self.transport.fetch_open_orders(symbol):
                if ticket.type == 'STOP_MARKET' and ticket.exchange_order_id is not None:
                    await self.transport.cancel_order(symbol, ticket.exchange_order_id)
            await self.transport.place_conditional_order(
                symbol, side, 'STOP_MARKET', stop_price, close_position=True,
            )
            return True
        except TransientNetworkError as exc:
            self._log_transport_error(f"replace stop {symbol}", exc)
            metrics.record_execution_error('replace_stop')
            return False

    async def close_position(self, trade: ActiveTrade, exit_price: float) -> bool:
        symbol = trade.symbol
        if self.paper_mode:
            pnl = self.simulator.close_position(symbol, exit_price)
            if pnl is not None:
                logger.info("Paper %s closed; PnL %.4f, equity %.2f", symbol, pnl, self.simulator.equity)
            return True
        try:
            await self.transport.cancel_all_orders(symbol)
            qty = await self.transport.fetch_position_qty(symbol)
            if qty:
                side = 'SELL' if qty > 0 else 'BUY'
                await self.transport.place_order(symbol, side, 'MARKET', abs(qty), reduce_only=True)
            return True
        except TransientNetworkError as exc:
            self._log_transport_error(f"close {symbol}", exc)
            metrics.record_execution_error('close')
            return False

    async def close(self):
        await self.transport.close()

    def _log_transport_error(self, action: str, error: Exception) -> None:
        if isinstance(error, BinanceAPIError):
            logger.error(
                "Binance %s failed (code=%s, msg=%s)",
                action,
                error.code,
                error.msg,
            )
        else:
            logger.error("%s failed: %s", action, error)
