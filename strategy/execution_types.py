from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class OrderTicket:
    """Normalized view of an order acknowledgement across live and paper flows."""

    symbol: str
    side: str
    type: str
    quantity: float
    status: Optional[str] = None
    price: Optional[float] = None
    stop_price: Optional[float] = None
    reduce_only: bool = False
    close_position: bool = False
    client_order_id: Optional[str] = None
    exchange_order_id: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        if self.client_order_id:
            return self.client_order_id
        if self.exchange_order_id is not None:
            return str(self.exchange_order_id)
        return "order"

    @property
    def is_conditional(self) -> bool:
        return self.stop_price is not None


@dataclass
class EntryResult:
    """What the execution adapter reports back after an entry was accepted."""

    order: OrderTicket
    order_type: str
    quantity: float
    mode: str
    protective: List[OrderTicket] = field(default_factory=list)

    @property
    def order_id(self) -> str:
        return self.order.id
