from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional, Sequence

import numpy as np


@dataclass(frozen=True)
class Candle:
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'open_time': self.open_time,
            'open': self.open,
            'high': self.high,
            'low': self.low,
            'close': self.close,
            'volume': self.volume,
        }


def parse_rest_kline(row: Sequence[Any]) -> Candle:
    """Binance REST kline row: [openTime, open, high, low, close, volume, closeTime, ...]."""
    return Candle(
        open_time=int(row[0]),
        open=float(row[1]),
        high=float(row[2]),
        low=float(row[3]),
        close=float(row[4]),
        volume=float(row[5]),
    )


def parse_stream_kline(payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Normalise a websocket ``kline`` event into ``{symbol, candle, closed}``."""
    if payload.get('e') != 'kline':
        return None
    k = payload.get('k') or {}
    try:
        candle = Candle(
            open_time=int(k['t']),
            open=float(k['o']),
            high=float(k['h']),
            low=float(k['l']),
            close=float(k['c']),
            volume=float(k['v']),
        )
    except (KeyError, TypeError, ValueError):
        return None
    return {
        'symbol': (k.get('s') or payload.get('s') or '').upper(),
        'candle': candle,
        'closed': bool(k.get('x', False)),
        'event_time': payload.get('E'),
    }


class CandleHistory:
    """Bounded, open-time ordered candle buffer.

    The last candle may still be forming; ``apply`` replaces it in place until an
    update flagged closed arrives.
    """

    def __init__(self, capacity: int = 500):
        self.capacity = capacity
        self._candles: Deque[Candle] = deque(maxlen=capacity)
        self.last_closed = True

    def __len__(self) -> int:
        return len(self._candles)

    def __iter__(self):
        return iter(self._candles)

    @property
    def last(self) -> Optional[Candle]:
        return self._candles[-1] if self._candles else None

    def replace_all(self, candles: Sequence[Candle]) -> None:
        ordered: Dict[int, Candle] = {}
        for candle in candles:
            ordered[candle.open_time] = candle
        self._candles.clear()
        for open_time in sorted(ordered)[-self.capacity:]:
            self._candles.append(ordered[open_time])
        self.last_closed = True

    def apply(self, candle: Candle, closed: bool) -> bool:
        """Merge an update. Returns True only when this update closes a bar."""
        last = self.last
        if last is not None and candle.open_time < last.open_time:
            return False
        if last is not None and candle.open_time == last.open_time:
            was_closed = self.last_closed
            self._candles[-1] = candle
            self.last_closed = closed or was_closed
            return closed and not was_closed
        self._candles.append(candle)
        self.last_closed = closed
        return closed

    def closed_candles(self) -> List[Candle]:
        candles = list(self._candles)
        if candles and not self.last_closed:
            candles.pop()
        return candles

    def to_list(self) -> List[Candle]:
        return list(self._candles)


def candle_arrays(candles: Sequence[Candle]) -> Dict[str, np.ndarray]:
    return {
        'open': np.fromiter((c.open for c in candles), dtype=float, count=len(candles)),
        'high': np.fromiter((c.high for c in candles), dtype=float, count=len(candles)),
        'low': np.fromiter((c.low for c in candles), dtype=float, count=len(candles)),
        'close': np.fromiter((c.close for c in candles), dtype=float, count=len(candles)),
        'volume': np.fromiter((c.volume for c in candles), dtype=float, count=len(candles)),
    }


@dataclass
class InstrumentContext:
    symbol: str
    history: CandleHistory
    funding_rate: Optional[float] = None
    subscribed: bool = False
    last_price: Optional[float] = None
    last_update: Optional[float] = None
    backfilled_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        last = self.history.last
        return {
            'symbol': self.symbol,
            'bars': len(self.history),
            'last_open_time': last.open_time if last else None,
            'funding_rate': self.funding_rate,
            'subscribed': self.subscribed,
            'last_price': self.last_price,
            'last_update': self.last_update,
        }
