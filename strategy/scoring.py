"""Bar-close scoring heuristic.

An :class:`IndicatorSnapshot` is computed from the closed candles of one symbol and
run through a declarative list of :class:`Contribution` rules. Each rule adds its
weight to the long score, the short score, or both when its condition holds.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from config import config
from analytics.indicators import (
    InsufficientDataError,
    atr,
    dmi,
    donchian,
    ema,
    ema_series,
    relative_volume,
    rsi_series,
    slope,
)
from api.metrics import metrics
from ingest.candles import Candle, candle_arrays
from risk.position_sizer import RiskManager
from strategy.divergence import DivergenceDetector
from strategy.trades import Direction, TradeCandidate


logger = logging.getLogger(__name__)

LONG = 'long'
SHORT = 'short'
BOTH = 'both'

DEFAULT_PARAMS: Dict[str, float] = {
    'min_bars': 100,
    'ema_fast': 20,
    'ema_mid': 50,
    'ema_slow': 200,
    'rsi_period': 14,
    'rsi_fast_period': 7,
    'rsi_oversold': 30,
    'rsi_overbought': 70,
    'pullback_rsi_long_max': 55,
    'pullback_rsi_short_min': 45,
    'atr_period': 14,
    'rvol_period': 20,
    'rvol_threshold': 1.5,
    'rvol_high_threshold': 2.5,
    'donchian_period': 20,
    'range_room_max': 0.7,
    'range_boundary_pct': 0.03,
    'slope_period': 10,
    'slope_threshold': 3.0,
    'dmi_period': 14,
    'adx_threshold': 20,
    'divergence_lookback': 30,
    'divergence_recent': 10,
    'divergence_rsi_delta': 3.0,
    'funding_extreme': 0.0005,
    'benchmark_move_pct': 3.0,
    'pass_threshold': 5.0,
    'pass_threshold_high_rvol': 4.0,
    'pullback_atr_distance': 0.5,
}

DEFAULT_WEIGHTS: Dict[str, float] = {
    'structure_room': 1.0,
    'structure_boundary': -1.5,
    'trend_side': 2.0,
    'trend_fan': 1.0,
    'trend_slope': 1.0,
    'trend_strength': 0.5,
    'golden_fan_pullback': 1.5,
    'rsi_cross': 1.0,
    'divergence': 1.5,
    'volume': 1.0,
    'volume_high': 1.0,
    'funding_against': -1.5,
    'body_against': -1.0,
    'benchmark_against': -1.5,
}


@dataclass(frozen=True)
class IndicatorSnapshot:
    open: float
    close: float
    ema_fast: float
    ema_mid: float
    ema_slow: Optional[float]
    ema_mid_slope: Optional[float]
    rsi: float
    rsi_prev: float
    rsi_fast: float
    atr: float
    rvol: float
    range_high: float
    range_low: float
    plus_di: Optional[float] = None
    minus_di: Optional[float] = None
    adx: Optional[float] = None
    divergence: Optional[str] = None
    funding_rate: Optional[float] = None
    benchmark_change_pct: Optional[float] = None

    @property
    def range_pos(self) -> float:
        width = self.range_high - self.range_low
        if width <= 0:
            return 0.5
        return (self.close - self.range_low) / width

    @property
    def trend_anchor(self) -> float:
        return self.ema_slow if self.ema_slow is not None else self.ema_mid

    @property
    def fan_bullish(self) -> bool:
        fan = self.close > self.ema_fast > self.ema_mid
        if self.ema_slow is not None:
            fan = fan and self.ema_mid > self.ema_slow
        return fan

    @property
    def fan_bearish(self) -> bool:
        fan = self.close < self.ema_fast < self.ema_mid
        if self.ema_slow is not None:
            fan = fan and self.ema_mid < self.ema_slow
        return fan

    def to_dict(self) -> Dict:
        return {
            'close': self.close,
            'ema_fast': self.ema_fast,
            'ema_mid': self.ema_mid,
            'ema_slow': self.ema_slow,
            'ema_mid_slope': self.ema_mid_slope,
            'rsi': self.rsi,
            'rsi_fast': self.rsi_fast,
            'atr': self.atr,
            'rvol': self.rvol,
            'range_pos': self.range_pos,
            'adx': self.adx,
            'divergence': self.divergence,
        }


Condition = Callable[[IndicatorSnapshot, Dict], bool]


@dataclass(frozen=True)
class Contribution:
    name: str
    side: str
    weight: float
    condition: Condition


def default_contributions(weights: Optional[Dict[str, float]] = None) -> List[Contribution]:
    w = dict(DEFAULT_WEIGHTS)
    if weights:
        w.update(weights)

    def slope_of(s):
        return s.ema_mid_slope if s.ema_mid_slope is not None else 0.0

    return [
        # structure
        Contribution('structure_room', LONG, w['structure_room'],
                     lambda s, p: s.range_pos <= p['range_room_max']),
        Contribution('structure_room', SHORT, w['structure_room'],
                     lambda s, p: s.range_pos >= 1.0 - p['range_room_max']),
        Contribution('structure_boundary', LONG, w['structure_boundary'],
                     lambda s, p: s.range_pos >= 1.0 - p['range_boundary_pct']),
        Contribution('structure_boundary', SHORT, w['structure_boundary'],
                     lambda s, p: s.range_pos <= p['range_boundary_pct']),
        # trend
        Contribution('trend_side', LONG, w['trend_side'],
                     lambda s, p: s.close > s.trend_anchor),
        Contribution('trend_side', SHORT, w['trend_side'],
                     lambda s, p: s.close < s.trend_anchor),
        Contribution('trend_fan', LONG, w['trend_fan'], lambda s, p: s.fan_bullish),
        Contribution('trend_fan', SHORT, w['trend_fan'], lambda s, p: s.fan_bearish),
        Contribution('trend_slope', LONG, w['trend_slope'],
                     lambda s, p: slope_of(s) >= p['slope_threshold']),
        Contribution('trend_slope', SHORT, w['trend_slope'],
                     lambda s, p: slope_of(s) <= -p['slope_threshold']),
        Contribution('trend_strength', LONG, w['trend_strength'],
                     lambda s, p: s.adx is not None and s.adx >= p['adx_threshold']
                     and s.plus_di > s.minus_di),
        Contribution('trend_strength', SHORT, w['trend_strength'],
                     lambda s, p: s.adx is not None and s.adx >= p['adx_threshold']
                     and s.minus_di > s.plus_di),
        # momentum
        Contribution('golden_fan_pullback', LONG, w['golden_fan_pullback'],
                     lambda s, p: s.close > s.ema_fast > s.ema_mid
                     and s.rsi_fast < p['pullback_rsi_long_max']),
        Contribution('golden_fan_pullback', SHORT, w['golden_fan_pullback'],
                     lambda s, p: s.close < s.ema_fast < s.ema_mid
                     and s.rsi_fast > p['pullback_rsi_short_min']),
        Contribution('rsi_cross', LONG, w['rsi_cross'],
                     lambda s, p: s.rsi_prev < p['rsi_oversold'] <= s.rsi),
        Contribution('rsi_cross', SHORT, w['rsi_cross'],
                     lambda s, p: s.rsi_prev > p['rsi_overbought'] >= s.rsi),
        Contribution('divergence', LONG, w['divergence'],
                     lambda s, p: s.divergence == 'bullish'),
        Contribution('divergence', SHORT, w['divergence'],
                     lambda s, p: s.divergence == 'bearish'),
        # volume
        Contribution('volume', BOTH, w['volume'],
                     lambda s, p: s.rvol >= p['rvol_threshold']),
        Contribution('volume_high', BOTH, w['volume_high'],
                     lambda s, p: s.rvol >= p['rvol_high_threshold']),
        # context penalties
        Contribution('funding_against', LONG, w['funding_against'],
                     lambda s, p: s.funding_rate is not None and s.funding_rate >= p['funding_extreme']),
        Contribution('funding_against', SHORT, w['funding_against'],
                     lambda s, p: s.funding_rate is not None and s.funding_rate <= -p['funding_extreme']),
        Contribution('body_against', LONG, w['body_against'], lambda s, p: s.close < s.open),
        Contribution('body_against', SHORT, w['body_against'], lambda s, p: s.close > s.open),
        Contribution('benchmark_against', LONG, w['benchmark_against'],
                     lambda s, p: s.benchmark_change_pct is not None
                     and s.benchmark_change_pct <= -p['benchmark_move_pct']),
        Contribution('benchmark_against', SHORT, w['benchmark_against'],
                     lambda s, p: s.benchmark_change_pct is not None
                     and s.benchmark_change_pct >= p['benchmark_move_pct']),
    ]


@dataclass
class ScoreCard:
    long_score: float = 0.0
    short_score: float = 0.0
    long_hits: List[str] = field(default_factory=list)
    short_hits: List[str] = field(default_factory=list)

    def add(self, side: str, contribution: Contribution) -> None:
        if side == LONG:
            self.long_score += contribution.weight
            self.long_hits.append(contribution.name)
        else:
            self.short_score += contribution.weight
            self.short_hits.append(contribution.name)

    @property
    def label(self) -> str:
        return f"L{self.long_score:.1f}/S{self.short_score:.1f}"


class SignalScorer:
    def __init__(self, scoring_cfg: Optional[Dict] = None, risk: Optional[RiskManager] = None,
                 contributions: Optional[Sequence[Contribution]] = None):
        scoring_cfg = scoring_cfg if scoring_cfg is not None else config.section('scoring')
        self.params: Dict[str, float] = dict(DEFAULT_PARAMS)
        for key, value in scoring_cfg.items():
            if key != 'weights':
                self.params[key] = value
        weights = scoring_cfg.get('weights') or {}
        self.contributions = list(contributions) if contributions is not None \
            else default_contributions(dict(weights))
        self.risk = risk or RiskManager()
        self.divergence = DivergenceDetector(
            lookback=int(self.params['divergence_lookback']),
            recent=int(self.params['divergence_recent']),
            min_delta=float(self.params['divergence_rsi_delta']),
        )

    def build_snapshot(self, candles: Sequence[Candle], funding_rate: Optional[float] = None,
                       benchmark_change_pct: Optional[float] = None) -> IndicatorSnapshot:
        p = self.params
        if len(candles) < int(p['min_bars']):
            raise InsufficientDataError(f"{len(candles)} bars < {p['min_bars']}")
        arr = candle_arrays(candles)
        close, high, low = arr['close'], arr['high'], arr['low']

        ema_fast = ema(close, int(p['ema_fast']))
        ema_mid = ema(close, int(p['ema_mid']))
        if ema_fast is None or ema_mid is None:
            raise InsufficientDataError("moving averages unavailable")
        ema_slow = ema(close, int(p['ema_slow']))
        ema_mid_slope = slope(ema_series(close, int(p['ema_mid'])), int(p['slope_period']))

        rsi_values = rsi_series(close, int(p['rsi_period']))
        rsi_fast_values = rsi_series(close, int(p['rsi_fast_period']))
        if rsi_values.size < 2 or rsi_fast_values.size == 0:
            raise InsufficientDataError("RSI unavailable")

        atr_value = atr(high, low, close, int(p['atr_period']))
        if atr_value is None or atr_value <= 0:
            raise InsufficientDataError("ATR unavailable")

        channel = donchian(high, low, int(p['donchian_period']))
        if channel is None:
            raise InsufficientDataError("range unavailable")

        rvol = relative_volume(arr['volume'], int(p['rvol_period']))
        dmi_values = dmi(high, low, close, int(p['dmi_period'])) or {}

        return IndicatorSnapshot(
            open=float(arr['open'][-1]),
            close=float(close[-1]),
            ema_fast=ema_fast,
            ema_mid=ema_mid,
            ema_slow=ema_slow,
            ema_mid_slope=ema_mid_slope,
            rsi=float(rsi_values[-1]),
            rsi_prev=float(rsi_values[-2]),
            rsi_fast=float(rsi_fast_values[-1]),
            atr=atr_value,
            rvol=rvol if rvol is not None else 0.0,
            range_high=channel[0],
            range_low=channel[1],
            plus_di=dmi_values.get('plus_di'),
            minus_di=dmi_values.get('minus_di'),
            adx=dmi_values.get('adx'),
            divergence=self.divergence.detect(high, low, rsi_fast_values),
            funding_rate=funding_rate,
            benchmark_change_pct=benchmark_change_pct,
        )

    def score_snapshot(self, snapshot: IndicatorSnapshot) -> ScoreCard:
        card = ScoreCard()
        for contribution in self.contributions:
            if not contribution.condition(snapshot, self.params):
                continue
            if contribution.side == BOTH:
                card.add(LONG, contribution)
                card.add(SHORT, contribution)
            else:
                card.add(contribution.side, contribution)
        return card

    def decide(self, snapshot: IndicatorSnapshot, card: ScoreCard) -> Optional[Direction]:
        p = self.params
        threshold = p['pass_threshold']
        if snapshot.rvol >= p['rvol_high_threshold']:
            threshold = p['pass_threshold_high_rvol']
        if card.long_score >= threshold and card.long_score > card.short_score:
            return Direction.LONG
        if card.short_score >= threshold and card.short_score > card.long_score:
            return Direction.SHORT
        return None

    def strategy_tag(self, snapshot: IndicatorSnapshot) -> str:
        if snapshot.rvol >= self.params['rvol_high_threshold']:
            return 'breakout'
        if abs(snapshot.close - snapshot.ema_fast) <= snapshot.atr * self.params['pullback_atr_distance']:
            return 'pullback'
        return 'reversion'

    def build_candidate(self, symbol: str, snapshot: IndicatorSnapshot, card: ScoreCard,
                        direction: Direction, now: Optional[float] = None) -> Optional[TradeCandidate]:
        tag = self.strategy_tag(snapshot)
        entry = snapshot.close
        distance = self.risk.stop_distance(snapshot.atr, breakout=(tag == 'breakout'))
        if not self.risk.stop_is_placeable(entry, distance):
            logger.debug("%s stop distance %.6f too tight for price %.6f", symbol, distance, entry)
            metrics.record_rejection('stop_too_tight')
            return None
        stop = self.risk.calculate_stop_price(entry, direction, distance)
        targets = self.risk.calculate_targets(entry, direction, snapshot.atr)
        leverage = self.risk.calculate_leverage(entry, distance)
        profile = self.risk.roi_profile(entry, direction, stop, targets, leverage)
        return TradeCandidate(
            symbol=symbol,
            direction=direction,
            entry_price=entry,
            stop_price=stop,
            targets=tuple(targets),
            leverage=leverage,
            created_at=now if now is not None else time.time(),
            score_label=card.label,
            strategy_tag=tag,
            long_score=card.long_score,
            short_score=card.short_score,
            stop_roi_pct=profile['stop_roi_pct'],
            target_roi_pct=profile['target_roi_pct'],
        )

    def evaluate(self, symbol: str, candles: Sequence[Candle], funding_rate: Optional[float] = None,
                 benchmark_change_pct: Optional[float] = None,
                 now: Optional[float] = None) -> Optional[TradeCandidate]:
        metrics.record_score()
        try:
            snapshot = self.build_snapshot(candles, funding_rate, benchmark_change_pct)
        except InsufficientDataError as exc:
            logger.debug("No score for %s: %s", symbol, exc)
            metrics.record_rejection('insufficient_data')
            return None
        card = self.score_snapshot(snapshot)
        direction = self.decide(snapshot, card)
        if direction is None:
            metrics.record_rejection('below_threshold')
            return None
        candidate = self.build_candidate(symbol, snapshot, card, direction, now)
        if candidate is not None:
            metrics.record_signal(direction.value, candidate.strategy_tag)
            logger.info(
                "Signal %s %s @ %.6f (%s, %s, lev=%sx)",
                direction.value, symbol, candidate.entry_price, candidate.strategy_tag,
                card.label, candidate.leverage,
            )
        return candidate
