from typing import Dict, List, Optional, Sequence
import logging
import math

from config import config
from strategy.trades import Direction, roi_pct


logger = logging.getLogger(__name__)


class RiskManager:
    """Stop, target and leverage geometry plus order sizing."""

    def __init__(self, risk_cfg: Optional[Dict] = None):
        risk_cfg = risk_cfg if risk_cfg is not None else config.section('risk')
        self.cost_per_trade = float(risk_cfg.get('cost_per_trade', 1.0))
        self.stop_atr_mult = float(risk_cfg.get('stop_atr_multiplier', 1.0))
        self.breakout_stop_mult = float(risk_cfg.get('breakout_stop_multiplier', 1.5))
        self.min_stop_pct = float(risk_cfg.get('min_stop_pct', 0.002))
        self.target_multipliers: List[float] = [
            float(m) for m in risk_cfg.get('target_atr_multipliers', [0.6, 1.2, 2.0, 3.5])
        ]
        self.leverage_risk_pct = float(risk_cfg.get('leverage_risk_pct', 10.0))
        self.min_leverage = int(risk_cfg.get('min_leverage', 3))
        self.max_leverage = int(risk_cfg.get('max_leverage', 20))

    def stop_distance(self, atr: float, breakout: bool = False) -> float:
        distance = atr * self.stop_atr_mult
        if breakout:
            distance *= self.breakout_stop_mult
        return distance

    def stop_is_placeable(self, entry_price: float, distance: float) -> bool:
        if entry_price <= 0:
            return False
        return distance / entry_price >= self.min_stop_pct

    def calculate_stop_price(self, entry_price: float, direction: Direction, distance: float) -> float:
        return entry_price - direction.sign * distance

    def calculate_targets(self, entry_price: float, direction: Direction, atr: float) -> List[float]:
        return [entry_price + direction.sign * atr * m for m in self.target_multipliers]

    def calculate_leverage(self, entry_price: float, distance: float) -> int:
        stop_pct = distance / entry_price * 100.0
        if stop_pct <= 0:
            return self.min_leverage
        raw = int(self.leverage_risk_pct / stop_pct)
        return max(self.min_leverage, min(self.max_leverage, raw))

    def roi_profile(self, entry_price: float, direction: Direction, stop_price: float,
                    targets: Sequence[float], leverage: int) -> Dict[str, object]:
        return {
            'stop_roi_pct': roi_pct(direction, entry_price, stop_price, leverage),
            'target_roi_pct': tuple(roi_pct(direction, entry_price, t, leverage) for t in targets),
        }

    def calculate_quantity(self, price: float, leverage: int, step_size: Optional[float] = None,
                           min_qty: Optional[float] = None) -> float:
        """Fixed margin per trade times leverage, rounded down to the lot step."""
        if price <= 0:
            return 0.0
        qty = self.cost_per_trade * leverage / price
        if step_size and step_size > 0:
            qty = math.floor(qty / step_size + 1e-9) * step_size
            decimals = max(0, -int(math.floor(math.log10(step_size))))
            qty = round(qty, decimals)
        if min_qty and qty < min_qty:
            logger.debug("Quantity %.8f below minimum %.8f", qty, min_qty)
            return 0.0
        return qty
