import sys

sys.path.insert(0, '.')

from ingest.candles import Candle
from risk.position_sizer import RiskManager
from strategy.scoring import (
    BOTH,
    Contribution,
    IndicatorSnapshot,
    ScoreCard,
    SignalScorer,
)
from strategy.trades import Direction


BAR_MS = 300000


def golden_fan_candles():
    """Steady uptrend with a three-bar dip and a high-volume bullish resumption."""
    closes = [100.0 + 0.5 * i + (1.5 if i % 2 else 0.0) for i in range(290)]
    for _ in range(3):
        closes.append(closes[-1] - 1.5)
    closes.append(closes[-1] + 0.8)

    candles = []
    for i, close in enumerate(closes):
        open_ = closes[i - 1] if i else close
        volume = 3000.0 if i == len(closes) - 1 else 1000.0
        candles.append(Candle(
            i * BAR_MS, open_, max(open_, close) + 0.2, min(open_, close) - 0.2, close, volume,
        ))
    return candles


def mirrored(candles, pivot=500.0):
    return [
        Candle(c.open_time, pivot - c.open, pivot - c.low, pivot - c.high, pivot - c.close, c.volume)
        for c in candles
    ]


def make_scorer(**scoring_cfg):
    return SignalScorer(scoring_cfg, risk=RiskManager({}))


def flat_snapshot(**overrides):
    values = dict(
        open=100.0, close=100.0, ema_fast=100.0, ema_mid=100.0, ema_slow=None,
        ema_mid_slope=0.0, rsi=50.0, rsi_prev=50.0, rsi_fast=50.0, atr=1.0, rvol=1.0,
        range_high=101.0, range_low=99.0,
    )
    values.update(overrides)
    return IndicatorSnapshot(**values)


def test_golden_fan_breakout_goes_long():
    candles = golden_fan_candles()
    scorer = make_scorer()

    snapshot = scorer.build_snapshot(candles)
    assert snapshot.fan_bullish
    assert snapshot.rvol == 3.0
    card = scorer.score_snapshot(snapshot)
    assert 'golden_fan_pullback' in card.long_hits
    assert 'golden_fan_pullback' not in card.short_hits
    assert card.long_score > card.short_score

    candidate = scorer.evaluate('ETHUSDT', candles, now=1234.0)
    assert candidate is not None
    assert candidate.direction is Direction.LONG
    assert candidate.strategy_tag == 'breakout'
    assert candidate.entry_price == candles[-1].close
    assert candidate.stop_price < candidate.entry_price
    assert list(candidate.targets) == sorted(candidate.targets)
    assert candidate.targets[0] > candidate.entry_price
    assert len(candidate.targets) == 4
    assert 3 <= candidate.leverage <= 20
    assert candidate.created_at == 1234.0
    assert candidate.score_label == card.label
    assert candidate.stop_roi_pct < 0 < candidate.target_roi_pct[0]


def test_mirrored_series_goes_short():
    candles = mirrored(golden_fan_candles())
    candidate = make_scorer().evaluate('ETHUSDT', candles)
    assert candidate is not None
    assert candidate.direction is Direction.SHORT
    assert candidate.stop_price > candidate.entry_price
    assert candidate.targets[0] < candidate.entry_price
    assert candidate.long_score < candidate.short_score


def test_short_history_is_skipped():
    candles = golden_fan_candles()[:50]
    assert make_scorer().evaluate('ETHUSDT', candles) is None


def test_tight_stop_rejects_candidate():
    scorer = make_scorer()
    snapshot = flat_snapshot(atr=0.01)
    card = ScoreCard(long_score=6.0)
    assert scorer.build_candidate('ETHUSDT', snapshot, card, Direction.LONG) is None


def test_decide_threshold_and_ties():
    scorer = make_scorer()
    quiet = flat_snapshot(rvol=1.0)
    loud = flat_snapshot(rvol=3.0)
    assert scorer.decide(quiet, ScoreCard(long_score=6.0, short_score=6.0)) is None
    assert scorer.decide(quiet, ScoreCard(long_score=4.5, short_score=1.0)) is None
    # high relative volume lowers the bar
    assert scorer.decide(loud, ScoreCard(long_score=4.5, short_score=1.0)) is Direction.LONG
    assert scorer.decide(quiet, ScoreCard(long_score=1.0, short_score=5.0)) is Direction.SHORT


def test_custom_contributions_and_weights():
    always = Contribution('always', BOTH, 2.0, lambda s, p: True)
    scorer = SignalScorer({}, risk=RiskManager({}), contributions=[always])
    card = scorer.score_snapshot(flat_snapshot())
    assert card.long_score == 2.0
    assert card.short_score == 2.0
    assert card.label == 'L2.0/S2.0'

    weighted = make_scorer(weights={'body_against': -4.0})
    card = weighted.score_snapshot(flat_snapshot(open=101.0, close=100.0))
    assert card.long_hits == ['structure_room', 'body_against']
    assert card.long_score == -3.0
    assert card.short_score == 1.0
