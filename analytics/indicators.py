"""Stateless technical indicators over oldest-first price/volume sequences.

The oscillators come from TA-Lib; the wrappers here trim its NaN warm-up and
return ``None`` (RSI returns the neutral 50) when the input is shorter than the
window it needs. Callers treat that as "insufficient data".
"""
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import talib


class InsufficientDataError(ValueError):
    """Raised by snapshot builders when an indicator lacks history."""


NEUTRAL_RSI = 50.0
# Stand-in ratio for a zero average loss
_MAX_RS = 1e9
_MAX_RSI = 100.0 - 100.0 / (1.0 + _MAX_RS)


def _as_array(values: Sequence[float]) -> np.ndarray:
    return np.ascontiguousarray(values, dtype=float)


def sma(values: Sequence[float], period: int) -> Optional[float]:
    arr = _as_array(values)
    if period <= 0 or len(arr) < period:
        return None
    return float(arr[-period:].mean())


def ema_series(values: Sequence[float], period: int) -> np.ndarray:
    """EMA seeded with the SMA of the first ``period`` samples.

    The result has ``len(values) - period + 1`` points, the first one being the seed.
    """
    arr = _as_array(values)
    if period < 2 or len(arr) < period:
        return np.array([], dtype=float)
    return talib.EMA(arr, timeperiod=period)[period - 1:]


def ema(values: Sequence[float], period: int) -> Optional[float]:
    series = ema_series(values, period)
    if series.size == 0:
        return None
    return float(series[-1])


def rsi_series(values: Sequence[float], period: int = 14) -> np.ndarray:
    """Wilder RSI for every sample from index ``period`` onwards."""
    arr = _as_array(values)
    if period < 2 or len(arr) < period + 1:
        return np.array([], dtype=float)
    out = talib.RSI(arr, timeperiod=period)[period:]
    # TA-Lib reports 0 when nothing has moved yet and 100 for a zero average loss
    flat = np.cumsum(np.abs(np.diff(arr)))[period - 1:] == 0
    out = np.where(flat, NEUTRAL_RSI, out)
    return np.minimum(out, _MAX_RSI)


def rsi(values: Sequence[float], period: int = 14) -> float:
    series = rsi_series(values, period)
    if series.size == 0:
        return NEUTRAL_RSI
    return float(series[-1])


def true_range(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float]) -> np.ndarray:
    """True range for bars 1..n-1 (bar 0 has no previous close)."""
    h, l, c = _as_array(highs), _as_array(lows), _as_array(closes)
    if len(c) < 2:
        return np.array([], dtype=float)
    return talib.TRANGE(h, l, c)[1:]


def atr(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float],
        period: int = 14) -> Optional[float]:
    """Plain mean of the last ``period`` true ranges (not Wilder-smoothed)."""
    tr = true_range(highs, lows, closes)
    if period <= 0 or tr.size < period:
        return None
    return float(tr[-period:].mean())


def relative_volume(volumes: Sequence[float], period: int = 20) -> Optional[float]:
    """Current volume divided by the mean of the ``period`` bars before it."""
    arr = _as_array(volumes)
    if period <= 0 or len(arr) < period + 1:
        return None
    baseline = arr[-period - 1:-1].mean()
    if baseline <= 0:
        return None
    return float(arr[-1] / baseline)


def slope(values: Sequence[float], period: int = 10) -> Optional[float]:
    """Average per-bar displacement over ``period`` bars, as a fraction of the start value x10000."""
    arr = _as_array(values)
    if period <= 0 or len(arr) < period + 1:
        return None
    start = arr[-period - 1]
    if start == 0:
        return None
    return float((arr[-1] - start) / start / period * 10000.0)


def donchian(highs: Sequence[float], lows: Sequence[float], period: int = 20) -> Optional[Tuple[float, float]]:
    h, l = _as_array(highs), _as_array(lows)
    if period < 2 or len(h) < period or len(l) < period:
        return None
    upper = talib.MAX(h, timeperiod=period)[-1]
    lower = talib.MIN(l, timeperiod=period)[-1]
    return float(upper), float(lower)


def dmi(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float],
        period: int = 14) -> Optional[Dict[str, float]]:
    """Directional movement index: +DI, -DI and ADX (Wilder)."""
    h, l, c = _as_array(highs), _as_array(lows), _as_array(closes)
    if period < 2 or len(h) < 2 * period + 1:
        return None
    plus_di = talib.PLUS_DI(h, l, c, timeperiod=period)[-1]
    minus_di = talib.MINUS_DI(h, l, c, timeperiod=period)[-1]
    adx = talib.ADX(h, l, c, timeperiod=period)[-1]
    if np.isnan(adx):
        return None
    return {
        'plus_di': float(np.nan_to_num(plus_di)),
        'minus_di': float(np.nan_to_num(minus_di)),
        'adx': float(adx),
    }
