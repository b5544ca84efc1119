import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from ingest.binance_rest import BinanceAPIError, BinanceRESTClient

from strategy.execution_types import OrderTicket


__all__ = ["BinanceTransport", "SymbolInfo", "BinanceAPIError"]

# Binance answers "No need to change margin type" when it is already set
MARGIN_TYPE_UNCHANGED = -4046


@dataclass
class SymbolInfo:
    symbol: str
    price_tick: Optional[float]
    amount_step: Optional[float]
    min_qty: Optional[float]
    min_notional: Optional[float]
    raw: Dict[str, Any]


def format_decimal(value: float, step: Optional[float] = None) -> str:
    """Render ``value`` without float noise, snapped down to ``step`` when given."""
    dec = Decimal(str(value))
    if step:
        step_dec = Decimal(str(step))
        dec = (dec // step_dec) * step_dec
    text = format(dec.normalize(), "f")
    return text


class BinanceTransport:
    """Thin adapter around Binance USDⓈ-M REST with typed responses."""

    def __init__(self, rest: Optional[BinanceRESTClient] = None) -> None:
        self._rest: Optional[BinanceRESTClient] = rest
        self._lock = asyncio.Lock()

    def _client(self) -> BinanceRESTClient:
        if self._rest is None:
            self._rest = BinanceRESTClient()
        return self._rest

    async def fetch_symbol_infos(self) -> Dict[str, SymbolInfo]:
        rest = self._client()
        data = await rest.get("/fapi/v1/exchangeInfo")
        if not isinstance(data, dict):
            return {}
        infos: Dict[str, SymbolInfo] = {}
        for payload in data.get("symbols") or []:
            if payload.get("status") not in (None, "TRADING"):
                continue
            info = self._parse_symbol_info(payload)
            infos[info.symbol] = info
        return infos

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        rest = self._client()
        await rest.post("/fapi/v1/leverage", params={"symbol": symbol, "leverage": int(leverage)}, signed=True)

    async def set_margin_type(self, symbol: str, margin_type: str) -> None:
        rest = self._client()
        try:
            await rest.post(
                "/fapi/v1/marginType",
                params={"symbol": symbol, "marginType": margin_type.upper()},
                signed=True,
            )
        except BinanceAPIError as exc:
            if exc.code != MARGIN_TYPE_UNCHANGED:
                raise

    async def place_order(
        self,
        symbol: str,
        side: str,
        order_type: str,
        qty: float,
        price: Optional[float] = None,
        tif: str = "GTC",
        reduce_only: bool = False,
    ) -> Optional[OrderTicket]:
        rest = self._client()
        params: Dict[str, Any] = {
            "symbol": symbol,
            "side": side.upper(),
            "type": order_type.upper(),
            "quantity": format_decimal(qty),
            "newOrderRespType": "RESULT",
        }
        if order_type.upper() == "LIMIT":
            params["price"] = format_decimal(price)
            params["timeInForce"] = tif
        if reduce_only:
            params["reduceOnly"] = "true"
        data = await rest.post("/fapi/v1/order", params=params, signed=True)
        return self._parse_order_ack(data)

    async def place_conditional_order(
        self,
        symbol: str,
        side: str,
        order_type: str,
        stop_price: float,
        qty: Optional[float] = None,
        close_position: bool = False,
    ) -> Optional[OrderTicket]:
        """STOP_MARKET / TAKE_PROFIT_MARKET, either closing the whole position or reduce-only."""
        rest = self._client()
        params: Dict[str, Any] = {
            "symbol": symbol,
            "side": side.upper(),
            "type": order_type.upper(),
            "stopPrice": format_decimal(stop_price),
            "workingType": "MARK_PRICE",
        }
        if close_position:
            params["closePosition"] = "true"
        else:
            params["quantity"] = format_decimal(qty)
            params["reduceOnly"] = "true"
        data = await rest.post("/fapi/v1/order", params=params, signed=True)
        return self._parse_order_ack(data)

    async def fetch_open_orders(self, symbol: str) -> List[OrderTicket]:
        rest = self._client()
        payload = await rest.get(
            "/fapi/v1/openOrders",
            params={"symbol": symbol},
            signed=True,
        )
        if not isinstance(payload, list):
            return []
        orders: List[OrderTicket] = []
        for item in payload:
            ticket = self._parse_order_ack(item)
            if ticket:
                orders.append(ticket)
        return orders

    async def cancel_order(self, symbol: str, order_id: int) -> None:
        rest = self._client()
        await rest.delete("/fapi/v1/order", params={"symbol": symbol, "orderId": order_id}, signed=True)

    async def cancel_all_orders(self, symbol: str) -> None:
        rest = self._client()
        await rest.delete("/fapi/v1/allOpenOrders", params={"symbol": symbol}, signed=True)

    async def fetch_position_qty(self, symbol: str) -> Optional[float]:
        rest = self._client()
        data = await rest.get(
            "/fapi/v2/positionRisk",
            params={"symbol": symbol},
            signed=True,
        )
        if not isinstance(data, list):
            return None
        for pos in data:
            if pos.get("symbol") != symbol:
                continue
            amt = self._as_float(pos.get("positionAmt"))
            if amt is not None:
                return amt
        return None

    async def fetch_available_balance(self, asset: str = "USDT") -> Optional[float]:
        rest = self._client()
        data = await rest.get("/fapi/v2/account", signed=True)
        if not isinstance(data, dict):
            return None
        for row in data.get("assets") or []:
            if row.get("asset") != asset:
                continue
            balance = self._as_float(row.get("availableBalance"))
            if balance is None:
                balance = self._as_float(row.get("walletBalance"))
            return balance
        return self._as_float(data.get("availableBalance"))

    async def close(self) -> None:
        async with self._lock:
            if self._rest:
                try:
                    await self._rest.close()
                finally:
                    self._rest = None

    def _parse_symbol_info(self, payload: Dict[str, Any]) -> SymbolInfo:
        price_tick = None
        amount_step = None
        min_qty = None
        min_notional = None
        for filt in payload.get("filters", []):
            ftype = filt.get("filterType")
            if ftype == "PRICE_FILTER":
                price_tick = self._as_float(filt.get("tickSize"))
            elif ftype == "LOT_SIZE":
                amount_step = self._as_float(filt.get("stepSize"))
                min_qty = self._as_float(filt.get("minQty"))
            elif ftype == "MIN_NOTIONAL":
                min_notional = self._as_float(filt.get("notional"))
        return SymbolInfo(
            symbol=payload.get("symbol"),
            price_tick=price_tick,
            amount_step=amount_step,
            min_qty=min_qty,
            min_notional=min_notional,
            raw=payload,
        )

    def _parse_order_ack(self, payload: Any) -> Optional[OrderTicket]:
        if not isinstance(payload, dict):
            return None
        stop_price = self._as_float(payload.get("stopPrice"))
        qty_val = payload.get("origQty") or payload.get("cumQty") or payload.get("quantity")
        return OrderTicket(
            symbol=payload.get("symbol", ""),
            side=(payload.get("side") or "").upper(),
            type=payload.get("type") or "MARKET",
            quantity=self._as_float(qty_val) or 0.0,
            status=payload.get("status"),
            price=self._as_float(payload.get("avgPrice")) or self._as_float(payload.get("price")),
            stop_price=stop_price or None,
            reduce_only=bool(payload.get("reduceOnly")),
            close_position=bool(payload.get("closePosition")),
            client_order_id=payload.get("clientOrderId"),
            exchange_order_id=self._as_int(payload.get("orderId")),
            raw=payload,
        )

    @staticmethod
    def _as_float(value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _as_int(value: Any) -> Optional[int]:
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None
