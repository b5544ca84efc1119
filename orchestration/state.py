import logging
import time
from collections import deque
from typing import Any, Deque, Dict, Iterable, List, Optional

from ingest.candles import CandleHistory, InstrumentContext
from strategy.trades import ActiveTrade, ClosedTrade


logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


class InvariantViolation(RuntimeError):
    """A state transition would break a structural guarantee of the trade book."""


class AggregateState:
    """Single owner of the engine's mutable state.

    Every component receives this object explicitly; nothing else holds trades,
    history or per-symbol contexts.
    """

    def __init__(self, max_active: int = 30, history_limit: int = 300,
                 history_capacity: int = 500):
        self.max_active = max_active
        self.history_limit = history_limit
        self.history_capacity = history_capacity

        self.watchlist: List[str] = []
        self.contexts: Dict[str, InstrumentContext] = {}
        self.active: Dict[str, ActiveTrade] = {}
        # newest first
        self.history: Deque[ClosedTrade] = deque(maxlen=history_limit)
        self.benchmark_change_pct: Optional[float] = None
        self.funding: Dict[str, float] = {}
        self.wallet_balance: Optional[float] = None
        self.liveness: Dict[str, bool] = {
            'data_feed': False,
            'exchange': False,
            'store': True,
        }
        self.started_at = time.time()

    def context(self, symbol: str) -> InstrumentContext:
        ctx = self.contexts.get(symbol)
        if ctx is None:
            ctx = InstrumentContext(symbol=symbol, history=CandleHistory(self.history_capacity))
            self.contexts[symbol] = ctx
        return ctx

    def update_price(self, symbol: str, price: float, ts: Optional[float] = None) -> None:
        ctx = self.context(symbol)
        ctx.last_price = price
        ctx.last_update = ts if ts is not None else time.time()

    def last_price(self, symbol: str) -> Optional[float]:
        ctx = self.contexts.get(symbol)
        return ctx.last_price if ctx else None

    def set_funding(self, rates: Dict[str, float]) -> None:
        self.funding = dict(rates)
        for symbol, rate in rates.items():
            ctx = self.contexts.get(symbol)
            if ctx is not None:
                ctx.funding_rate = rate

    def funding_rate(self, symbol: str) -> Optional[float]:
        return self.funding.get(symbol)

    def has_capacity(self) -> bool:
        return len(self.active) < self.max_active

    def add_active(self, trade: ActiveTrade) -> None:
        if trade.symbol in self.active:
            raise InvariantViolation(f"{trade.symbol} already has an active trade")
        if not self.has_capacity():
            raise InvariantViolation(
                f"active trade capacity {self.max_active} reached; cannot add {trade.symbol}"
            )
        self.active[trade.symbol] = trade

    def remove_active(self, symbol: str, trade: ActiveTrade) -> bool:
        """Remove ``trade`` only if it is still the registered one for ``symbol``."""
        if self.active.get(symbol) is not trade:
            return False
        del self.active[symbol]
        return True

    def is_current(self, trade: ActiveTrade) -> bool:
        return self.active.get(trade.symbol) is trade

    def mark_target(self, trade: ActiveTrade, index: int) -> None:
        expected = trade.next_target
        if expected is None or index != expected:
            raise InvariantViolation(
                f"{trade.symbol}: target {index} out of order (hit={trade.hit_targets})"
            )
        trade.hit_targets.append(index)

    def append_history(self, closed: ClosedTrade) -> None:
        self.history.appendleft(closed)

    def subscription_symbols(self) -> List[str]:
        """Watch-list plus every symbol carrying an active trade."""
        symbols = list(self.watchlist)
        seen = set(symbols)
        for symbol in self.active:
            if symbol not in seen:
                symbols.append(symbol)
                seen.add(symbol)
        return symbols

    def set_watchlist(self, symbols: Iterable[str]) -> None:
        self.watchlist = list(symbols)

    def reset(self) -> None:
        self.active.clear()
        self.history.clear()
        logger.info("Trade book reset")

    def to_snapshot(self) -> Dict[str, Any]:
        return {
            'version': SNAPSHOT_VERSION,
            'saved_at': time.time(),
            'watchlist': list(self.watchlist),
            'active': [trade.to_dict() for trade in self.active.values()],
            'history': [closed.to_dict() for closed in self.history],
            'benchmark_change_pct': self.benchmark_change_pct,
            'funding': dict(self.funding),
        }

    def restore(self, snapshot: Optional[Dict[str, Any]]) -> None:
        """Replace the book with ``snapshot``; a malformed snapshot leaves the state untouched."""
        if not snapshot:
            return
        version = snapshot.get('version')
        if version != SNAPSHOT_VERSION:
            logger.warning("Ignoring state snapshot with version %s", version)
            return
        watchlist = list(snapshot.get('watchlist') or [])
        active: Dict[str, ActiveTrade] = {}
        for raw in snapshot.get('active') or []:
            trade = ActiveTrade.from_dict(raw)
            if trade.symbol in active or len(active) >= self.max_active:
                logger.warning("Dropping restored trade %s (%s)", trade.trade_id, trade.symbol)
                continue
            active[trade.symbol] = trade
        history = [ClosedTrade.from_dict(raw) for raw in (snapshot.get('history') or [])[:self.history_limit]]
        funding = dict(snapshot.get('funding') or {})
        benchmark = snapshot.get('benchmark_change_pct')

        self.watchlist = watchlist
        self.active.clear()
        self.active.update(active)
        self.history.clear()
        self.history.extend(history)
        self.benchmark_change_pct = benchmark
        self.set_funding(funding)
        logger.info(
            "Restored state snapshot (active=%s, history=%s)", len(self.active), len(self.history)
        )

    def status(self) -> Dict[str, Any]:
        return {
            'uptime_s': round(time.time() - self.started_at, 1),
            'liveness': dict(self.liveness),
            'active_trades': len(self.active),
            'max_active': self.max_active,
            'history': len(self.history),
            'watchlist': len(self.watchlist),
            'benchmark_change_pct': self.benchmark_change_pct,
            'wallet_balance': self.wallet_balance,
        }
