import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

from config import config
from api.metrics import metrics
from ingest.binance_rest import ExecutionError
from strategy.trades import (
    ActiveTrade,
    ClosedTrade,
    CloseReason,
    DEFAULT_TARGET_FRACTIONS,
    Direction,
    TradeCandidate,
    price_move_pct,
    roi_pct,
    weighted_pnl_pct,
)


logger = logging.getLogger(__name__)


@dataclass
class TradeEvent:
    kind: str  # 'target' | 'stop_move' | 'close'
    symbol: str
    target: Optional[int] = None
    stop_price: Optional[float] = None
    exit_price: Optional[float] = None
    reason: Optional[CloseReason] = None


def _reached(direction: Direction, price: float, level: float) -> bool:
    return price >= level if direction is Direction.LONG else price <= level


def _tighter(direction: Direction, candidate: float, current: float) -> bool:
    return candidate > current if direction is Direction.LONG else candidate < current


class TradeLifecycleManager:
    """Drive active trades through targets, the trailing stop and closure."""

    def __init__(self, state, execution, notifier=None, persistence=None,
                 lifecycle_cfg: Optional[Dict] = None):
        lifecycle_cfg = lifecycle_cfg if lifecycle_cfg is not None else config.section('lifecycle')
        self.state = state
        self.execution = execution
        self.notifier = notifier
        self.persistence = persistence
        self.max_trade_age_s = float(lifecycle_cfg.get('max_trade_age_s', 43200))
        self.fractions = tuple(lifecycle_cfg.get('target_fractions', DEFAULT_TARGET_FRACTIONS))
        self._tick_lock = asyncio.Lock()

    def evaluate(self, trade: ActiveTrade, price: float, now: float) -> List[TradeEvent]:
        """Work out what ``price`` does to ``trade`` without touching it."""
        symbol = trade.symbol
        direction = trade.direction
        if now - trade.timestamp > self.max_trade_age_s:
            return [TradeEvent('close', symbol, exit_price=price, reason=CloseReason.TIME_LIMIT)]

        events: List[TradeEvent] = []
        stop = trade.stop_price
        hits = list(trade.hit_targets)
        index = trade.next_target
        while index is not None and _reached(direction, price, trade.targets[index - 1]):
            hits.append(index)
            if index == len(trade.targets):
                events.append(TradeEvent('target', symbol, target=index, stop_price=stop))
                events.append(TradeEvent('close', symbol, exit_price=trade.targets[index - 1],
                                         reason=CloseReason.MAX_TARGET))
                return events
            new_stop = trade.entry_price if index == 1 else trade.targets[index - 2]
            moved = _tighter(direction, new_stop, stop)
            if moved:
                stop = new_stop
            # target events carry the stop that will be in force after the hit
            events.append(TradeEvent('target', symbol, target=index, stop_price=stop))
            if moved:
                events.append(TradeEvent('stop_move', symbol, target=index, stop_price=new_stop))
            index = index + 1 if index < len(trade.targets) else None

        if _reached(direction, stop, price):
            reason = CloseReason.TRAILING_PROFIT if hits else CloseReason.STOP
            events.append(TradeEvent('close', symbol, exit_price=stop, reason=reason))
        return events

    def mark(self, trade: ActiveTrade, price: float) -> None:
        realized, total = weighted_pnl_pct(
            trade.direction, trade.entry_price, trade.targets, trade.hit_targets, price, self.fractions,
        )
        trade.current_price = price
        trade.realized_pnl_pct = realized
        trade.pnl_pct = total
        trade.roi_pct = total * trade.leverage
        trade.unrealized_roi_pct = roi_pct(trade.direction, trade.entry_price, price, trade.leverage)

    async def tick(self, now: Optional[float] = None) -> int:
        """One pass over every active trade; returns how many trades were closed."""
        async with self._tick_lock:
            started = time.monotonic()
            now = now if now is not None else time.time()
            closed = 0
            changed = False
            for trade in list(self.state.active.values()):
                price = self.state.last_price(trade.symbol)
                if price is None:
                    continue
                events = self.evaluate(trade, price, now)
                self.mark(trade, price)
                for event in events:
                    if not self.state.is_current(trade):
                        break
                    changed = True
                    if event.kind == 'target':
                        self.state.mark_target(trade, event.target)
                        metrics.record_target_hit(event.target)
                        logger.info("%s target %s reached at %.6f", trade.symbol, event.target, price)
                        if self.notifier is not None:
                            await self.notifier.target_hit(trade, event.target, event.stop_price)
                    elif event.kind == 'stop_move':
                        await self._move_stop(trade, event)
                    elif event.kind == 'close':
                        if await self.close_trade(trade, event.exit_price, event.reason, now):
                            closed += 1
            if changed and self.persistence is not None:
                self.persistence.mark_dirty()
            metrics.update_active_trades(len(self.state.active))
            metrics.record_tick_latency(time.monotonic() - started)
            return closed

    async def _move_stop(self, trade: ActiveTrade, event: TradeEvent) -> None:
        if not _tighter(trade.direction, event.stop_price, trade.stop_price):
            return
        trade.stop_price = event.stop_price
        self.mark(trade, trade.current_price)
        metrics.record_stop_move()
        logger.info("%s stop trailed to %.6f after target %s", trade.symbol, event.stop_price, event.target)
        if not await self.execution.replace_stop(trade, event.stop_price):
            logger.warning("%s stop replacement not confirmed by the exchange", trade.symbol)

    def final_result(self, trade: ActiveTrade, exit_price: float):
        """Weighted move and ROI at exit; the remainder is credited at the better of exit and best target."""
        mark_price = exit_price
        if trade.hit_targets:
            best_target = trade.targets[trade.hit_targets[-1] - 1]
            if price_move_pct(trade.direction, trade.entry_price, best_target) > \
                    price_move_pct(trade.direction, trade.entry_price, exit_price):
                mark_price = best_target
        _, total = weighted_pnl_pct(
            trade.direction, trade.entry_price, trade.targets, trade.hit_targets, mark_price, self.fractions,
        )
        return total, total * trade.leverage

    async def close_trade(self, trade: ActiveTrade, exit_price: float, reason: CloseReason,
                          now: Optional[float] = None) -> Optional[ClosedTrade]:
        """Move ``trade`` to history. A second call for the same trade is a no-op."""
        if not self.state.remove_active(trade.symbol, trade):
            return None
        now = now if now is not None else time.time()
        final_pnl, final_roi = self.final_result(trade, exit_price)
        closed = ClosedTrade.from_active(trade, exit_price, reason, now, final_pnl, final_roi)
        self.state.append_history(closed)
        metrics.record_trade_closed(reason.value, final_roi)
        metrics.update_active_trades(len(self.state.active))
        logger.info(
            "Closed %s %s (%s) exit=%.6f roi=%.2f%% targets=%s",
            trade.direction.value, trade.symbol, reason.value, exit_price, final_roi, list(trade.hit_targets),
        )
        if self.persistence is not None:
            await self.persistence.save()
        if self.notifier is not None:
            await self.notifier.trade_closed(closed)
        if not await self.execution.close_position(trade, exit_price):
            logger.warning("%s close request failed; position may still be open", trade.symbol)
        return closed

    async def open_trade(self, candidate: TradeCandidate, now: Optional[float] = None) -> Optional[ActiveTrade]:
        symbol = candidate.symbol
        if symbol in self.state.active:
            logger.debug("%s already has an active trade", symbol)
            return None
        if not self.state.has_capacity():
            logger.info("Skipping %s: %s active trades", symbol, len(self.state.active))
            metrics.record_rejection('capacity')
            return None

        trade = ActiveTrade.from_candidate(candidate, now)
        trade.mode = self.execution.mode
        self.state.add_active(trade)
        if self.persistence is not None:
            await self.persistence.save()

        try:
            result = await self.execution.open_position(trade, self.state.last_price(symbol))
        except ExecutionError as exc:
            logger.warning("Entry for %s failed, rolling back: %s", symbol, exc)
            if self.state.remove_active(symbol, trade) and self.persistence is not None:
                await self.persistence.save()
            return None

        if not self.state.is_current(trade):
            logger.warning("%s trade dropped while its entry was in flight; flattening", symbol)
            await self.execution.close_position(trade, trade.entry_price)
            return None

        trade.quantity = result.quantity
        trade.order_type = result.order_type
        trade.entry_order_id = result.order_id
        trade.mode = result.mode
        metrics.record_trade_opened(result.mode)
        metrics.update_active_trades(len(self.state.active))
        if self.persistence is not None:
            await self.persistence.save()
        if self.notifier is not None:
            await self.notifier.trade_opened(trade)
        return trade
