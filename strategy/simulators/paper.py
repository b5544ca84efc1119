import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from strategy.execution_types import OrderTicket


@dataclass
class PaperPosition:
    symbol: str
    side: str
    qty: float
    entry_price: float
    orders: List[str] = field(default_factory=list)


class PaperTradingSimulator:
    """In-memory order and position bookkeeping for paper mode. Fills are immediate."""

    def __init__(self, initial_equity: float = 1000.0) -> None:
        self._equity = initial_equity
        self._orders: Dict[str, OrderTicket] = {}
        self._positions: Dict[str, PaperPosition] = {}

    @property
    def equity(self) -> float:
        return self._equity

    def open_orders(self, symbol: str) -> List[OrderTicket]:
        return [t for t in self._orders.values() if t.symbol == symbol]

    def create_order(self, symbol: str, order_type: str, side: str, qty: float,
                     **details: Any) -> Optional[OrderTicket]:
        if qty <= 0 and not details.get("close_position"):
            return None
        order_id = f"paper-{uuid.uuid4().hex[:8]}"
        ticket = OrderTicket(
            symbol=symbol,
            side=side.upper(),
            type=order_type,
            quantity=qty,
            status="open",
            price=self._coerce_float(details.get("price")),
            stop_price=self._coerce_float(details.get("stop_price")),
            reduce_only=bool(details.get("reduce_only")),
            close_position=bool(details.get("close_position")),
            client_order_id=order_id,
            raw=dict(details),
        )
        if ticket.is_conditional:
            self._orders[order_id] = ticket
            return ticket

        # entries fill at once
        ticket.status = "filled"
        if symbol not in self._positions and not ticket.reduce_only:
            direction = "long" if side.lower() == "buy" else "short"
            self._positions[symbol] = PaperPosition(
                symbol=symbol,
                side=direction,
                qty=qty,
                entry_price=ticket.price or 0.0,
                orders=[order_id],
            )
        return ticket

    def cancel(self, symbol: Optional[str] = None, order_id: Optional[str] = None) -> int:
        if order_id is not None:
            return 1 if self._orders.pop(order_id, None) is not None else 0
        doomed = [oid for oid, t in self._orders.items() if symbol is None or t.symbol == symbol]
        for oid in doomed:
            self._orders.pop(oid, None)
        return len(doomed)

    def position_qty(self, symbol: str) -> float:
        pos = self._positions.get(symbol)
        if not pos:
            return 0.0
        return pos.qty if pos.side == "long" else -pos.qty

    def close_position(self, symbol: str, exit_price: float) -> Optional[float]:
        """Flatten ``symbol`` at ``exit_price``; returns the realised PnL in quote units."""
        pos = self._positions.pop(symbol, None)
        self.cancel(symbol=symbol)
        if pos is None:
            return None
        sign = 1.0 if pos.side == "long" else -1.0
        pnl = (exit_price - pos.entry_price) * pos.qty * sign
        self._equity += pnl
        return pnl

    @staticmethod
    def _coerce_float(value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None
