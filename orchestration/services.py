import asyncio
import logging
from typing import Optional

from api.metrics import metrics
from ingest.market_data_manager import BarClosed


logger = logging.getLogger(__name__)


class SignalService:
    """Consume bar-closed events: score the symbol and hand qualifying candidates to the lifecycle."""

    def __init__(self, state, scorer, lifecycle, queue: asyncio.Queue):
        self.state = state
        self.scorer = scorer
        self.lifecycle = lifecycle
        self.queue = queue
        self.running = False

    async def handle_bar_closed(self, event: BarClosed):
        symbol = event.symbol
        if symbol in self.state.active:
            return None
        if not self.state.has_capacity():
            metrics.record_rejection('capacity')
            return None
        ctx = self.state.contexts.get(symbol)
        if ctx is None:
            return None

        candidate = self.scorer.evaluate(
            symbol,
            ctx.history.closed_candles(),
            funding_rate=self.state.funding_rate(symbol),
            benchmark_change_pct=self.state.benchmark_change_pct,
            now=event.ts,
        )
        if candidate is None:
            return None
        return await self.lifecycle.open_trade(candidate, now=event.ts)

    async def run(self):
        self.running = True
        while self.running:
            try:
                event: Optional[BarClosed] = await self.queue.get()
            except asyncio.CancelledError:
                break
            try:
                await self.handle_bar_closed(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Bar-close handling for %s failed", event.symbol)
            finally:
                self.queue.task_done()

    def stop(self):
        self.running = False
