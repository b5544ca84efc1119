from typing import Dict, Optional, Sequence

import numpy as np


class DivergenceDetector:
    """Price vs. oscillator divergence over two consecutive windows.

    The lookback is split into an older window and a recent window. A bullish
    divergence is a lower low in price paired with a higher oscillator reading at
    that low; bearish is the mirror with highs.
    """

    def __init__(self, lookback: int = 30, recent: int = 10, min_delta: float = 3.0):
        if recent <= 0 or recent >= lookback:
            raise ValueError("recent window must be positive and shorter than lookback")
        self.lookback = lookback
        self.recent = recent
        self.min_delta = min_delta

    def _windows(self, prices: Sequence[float], oscillator: Sequence[float]):
        p = np.asarray(prices, dtype=float)
        o = np.asarray(oscillator, dtype=float)
        if len(p) < self.lookback or len(o) < self.lookback:
            return None
        p = p[-self.lookback:]
        o = o[-self.lookback:]
        split = self.lookback - self.recent
        return p[:split], o[:split], p[split:], o[split:]

    def check_bullish(self, lows: Sequence[float], oscillator: Sequence[float]) -> bool:
        windows = self._windows(lows, oscillator)
        if windows is None:
            return False
        old_p, old_o, new_p, new_o = windows
        i_old = int(np.argmin(old_p))
        i_new = int(np.argmin(new_p))
        price_ll = new_p[i_new] < old_p[i_old]
        osc_hl = new_o[i_new] >= old_o[i_old] + self.min_delta
        return bool(price_ll and osc_hl)

    def check_bearish(self, highs: Sequence[float], oscillator: Sequence[float]) -> bool:
        windows = self._windows(highs, oscillator)
        if windows is None:
            return False
        old_p, old_o, new_p, new_o = windows
        i_old = int(np.argmax(old_p))
        i_new = int(np.argmax(new_p))
        price_hh = new_p[i_new] > old_p[i_old]
        osc_lh = new_o[i_new] <= old_o[i_old] - self.min_delta
        return bool(price_hh and osc_lh)

    def detect(self, highs: Sequence[float], lows: Sequence[float],
               oscillator: Sequence[float]) -> Optional[str]:
        bullish = self.check_bullish(lows, oscillator)
        bearish = self.check_bearish(highs, oscillator)
        if bullish and not bearish:
            return 'bullish'
        if bearish and not bullish:
            return 'bearish'
        return None

    def to_dict(self) -> Dict:
        return {'lookback': self.lookback, 'recent': self.recent, 'min_delta': self.min_delta}
