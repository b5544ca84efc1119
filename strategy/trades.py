from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple
import time
import uuid


class Direction(Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def sign(self) -> int:
        return 1 if self is Direction.LONG else -1

    @property
    def order_side(self) -> str:
        return "BUY" if self is Direction.LONG else "SELL"

    @property
    def exit_side(self) -> str:
        return "SELL" if self is Direction.LONG else "BUY"


class CloseReason(Enum):
    TIME_LIMIT = "time limit"
    MAX_TARGET = "max target"
    STOP = "stop"
    TRAILING_PROFIT = "trailing profit"
    MANUAL = "manual"


# Size consumed at targets 1..3; target 4 closes the remainder.
DEFAULT_TARGET_FRACTIONS: Tuple[float, ...] = (0.4, 0.2, 0.2)


def price_move_pct(direction: Direction, entry: float, price: float) -> float:
    """Signed price move in the trade's favour, in percent."""
    if entry <= 0:
        return 0.0
    return (price - entry) / entry * direction.sign * 100.0


def roi_pct(direction: Direction, entry: float, price: float, leverage: float) -> float:
    """Return on margin in percent at ``price``."""
    return price_move_pct(direction, entry, price) * leverage


def weighted_pnl_pct(direction: Direction, entry: float, targets: Sequence[float],
                     hit_targets: Sequence[int], mark_price: float,
                     fractions: Sequence[float] = DEFAULT_TARGET_FRACTIONS) -> Tuple[float, float]:
    """Blend of realised target slices and the remainder marked at ``mark_price``.

    Returns ``(realized_pct, total_pct)`` as unleveraged price-move percentages.
    Once target 4 is hit nothing remains to be marked.
    """
    realized = 0.0
    consumed = 0.0
    for index in hit_targets:
        if index > len(fractions):
            continue
        fraction = fractions[index - 1]
        realized += fraction * price_move_pct(direction, entry, targets[index - 1])
        consumed += fraction
    if len(targets) in hit_targets:
        remaining = 1.0 - consumed
        total = realized + remaining * price_move_pct(direction, entry, targets[-1])
        return realized, total
    remaining = max(0.0, 1.0 - consumed)
    return realized, realized + remaining * price_move_pct(direction, entry, mark_price)


@dataclass(frozen=True)
class TradeCandidate:
    symbol: str
    direction: Direction
    entry_price: float
    stop_price: float
    targets: Tuple[float, ...]
    leverage: int
    created_at: float
    score_label: str
    strategy_tag: str = "reversion"
    long_score: float = 0.0
    short_score: float = 0.0
    stop_roi_pct: float = 0.0
    target_roi_pct: Tuple[float, ...] = ()

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['direction'] = self.direction.value
        data['targets'] = list(self.targets)
        data['target_roi_pct'] = list(self.target_roi_pct)
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "TradeCandidate":
        return cls(
            symbol=data['symbol'],
            direction=Direction(data['direction']),
            entry_price=float(data['entry_price']),
            stop_price=float(data['stop_price']),
            targets=tuple(float(t) for t in data['targets']),
            leverage=int(data['leverage']),
            created_at=float(data['created_at']),
            score_label=data.get('score_label', ''),
            strategy_tag=data.get('strategy_tag', 'reversion'),
            long_score=float(data.get('long_score', 0.0)),
            short_score=float(data.get('short_score', 0.0)),
            stop_roi_pct=float(data.get('stop_roi_pct', 0.0)),
            target_roi_pct=tuple(float(t) for t in data.get('target_roi_pct', ())),
        )


@dataclass
class ActiveTrade:
    candidate: TradeCandidate
    stop_price: float
    current_price: Optional[float] = None
    hit_targets: List[int] = field(default_factory=list)
    realized_pnl_pct: float = 0.0
    pnl_pct: float = 0.0
    roi_pct: float = 0.0
    unrealized_roi_pct: float = 0.0
    timestamp: float = field(default_factory=time.time)
    trade_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    quantity: float = 0.0
    order_type: Optional[str] = None
    entry_order_id: Optional[str] = None
    mode: str = "paper"

    @classmethod
    def from_candidate(cls, candidate: TradeCandidate, now: Optional[float] = None) -> "ActiveTrade":
        return cls(
            candidate=candidate,
            stop_price=candidate.stop_price,
            current_price=candidate.entry_price,
            timestamp=now if now is not None else time.time(),
        )

    @property
    def symbol(self) -> str:
        return self.candidate.symbol

    @property
    def direction(self) -> Direction:
        return self.candidate.direction

    @property
    def entry_price(self) -> float:
        return self.candidate.entry_price

    @property
    def targets(self) -> Tuple[float, ...]:
        return self.candidate.targets

    @property
    def leverage(self) -> int:
        return self.candidate.leverage

    @property
    def next_target(self) -> Optional[int]:
        index = (self.hit_targets[-1] if self.hit_targets else 0) + 1
        return index if index <= len(self.targets) else None

    def to_dict(self) -> Dict:
        return {
            'trade_id': self.trade_id,
            'candidate': self.candidate.to_dict(),
            'stop_price': self.stop_price,
            'current_price': self.current_price,
            'hit_targets': list(self.hit_targets),
            'realized_pnl_pct': self.realized_pnl_pct,
            'pnl_pct': self.pnl_pct,
            'roi_pct': self.roi_pct,
            'unrealized_roi_pct': self.unrealized_roi_pct,
            'timestamp': self.timestamp,
            'quantity': self.quantity,
            'order_type': self.order_type,
            'entry_order_id': self.entry_order_id,
            'mode': self.mode,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "ActiveTrade":
        return cls(
            candidate=TradeCandidate.from_dict(data['candidate']),
            stop_price=float(data['stop_price']),
            current_price=data.get('current_price'),
            hit_targets=[int(i) for i in data.get('hit_targets', [])],
            realized_pnl_pct=float(data.get('realized_pnl_pct', 0.0)),
            pnl_pct=float(data.get('pnl_pct', 0.0)),
            roi_pct=float(data.get('roi_pct', 0.0)),
            unrealized_roi_pct=float(data.get('unrealized_roi_pct', 0.0)),
            timestamp=float(data.get('timestamp', time.time())),
            trade_id=data.get('trade_id') or uuid.uuid4().hex[:12],
            quantity=float(data.get('quantity', 0.0)),
            order_type=data.get('order_type'),
            entry_order_id=data.get('entry_order_id'),
            mode=data.get('mode', 'paper'),
        )


@dataclass(frozen=True)
class ClosedTrade:
    trade_id: str
    candidate: TradeCandidate
    stop_price: float
    hit_targets: Tuple[int, ...]
    opened_at: float
    closed_at: float
    exit_price: float
    close_reason: CloseReason
    final_pnl_pct: float
    final_roi_pct: float
    mode: str = "paper"

    @property
    def symbol(self) -> str:
        return self.candidate.symbol

    @classmethod
    def from_active(cls, trade: ActiveTrade, exit_price: float, reason: CloseReason,
                    closed_at: float, final_pnl_pct: float, final_roi_pct: float) -> "ClosedTrade":
        return cls(
            trade_id=trade.trade_id,
            candidate=trade.candidate,
            stop_price=trade.stop_price,
            hit_targets=tuple(trade.hit_targets),
            opened_at=trade.timestamp,
            closed_at=closed_at,
            exit_price=exit_price,
            close_reason=reason,
            final_pnl_pct=final_pnl_pct,
            final_roi_pct=final_roi_pct,
            mode=trade.mode,
        )

    def to_dict(self) -> Dict:
        return {
            'trade_id': self.trade_id,
            'candidate': self.candidate.to_dict(),
            'stop_price': self.stop_price,
            'hit_targets': list(self.hit_targets),
            'opened_at': self.opened_at,
            'closed_at': self.closed_at,
            'exit_price': self.exit_price,
            'close_reason': self.close_reason.value,
            'final_pnl_pct': self.final_pnl_pct,
            'final_roi_pct': self.final_roi_pct,
            'mode': self.mode,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "ClosedTrade":
        return cls(
            trade_id=data['trade_id'],
            candidate=TradeCandidate.from_dict(data['candidate']),
            stop_price=float(data['stop_price']),
            hit_targets=tuple(int(i) for i in data.get('hit_targets', [])),
            opened_at=float(data['opened_at']),
            closed_at=float(data['closed_at']),
            exit_price=float(data['exit_price']),
            close_reason=CloseReason(data['close_reason']),
            final_pnl_pct=float(data['final_pnl_pct']),
            final_roi_pct=float(data['final_roi_pct']),
            mode=data.get('mode', 'paper'),
        )
