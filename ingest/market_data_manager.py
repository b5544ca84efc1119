import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from config import config
from api.metrics import metrics
from ingest.candles import Candle
from ingest.rest_poller import MarketDataPoller
from ingest.websocket_client import KlineStreamClient
from ingest.binance_rest import TransientNetworkError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BarClosed:
    symbol: str
    candle: Candle
    ts: float


class MarketDataManager:
    """Keep every instrument's candle history current and announce closed bars.

    Live kline updates go into the per-symbol history held by the aggregate state;
    each newly closed bar is put on ``queue`` as a :class:`BarClosed`.
    """

    def __init__(self, state, stream: KlineStreamClient, poller: MarketDataPoller,
                 queue: Optional[asyncio.Queue] = None, md_cfg: Optional[Dict] = None):
        md_cfg = md_cfg if md_cfg is not None else config.section('market_data')
        self.state = state
        self.stream = stream
        self.poller = poller
        self.queue: asyncio.Queue = queue if queue is not None else asyncio.Queue()
        self.backfill_limit = int(md_cfg.get('backfill_limit', 300))
        self.backfill_concurrency = max(1, int(md_cfg.get('backfill_concurrency', 5)))

        self.stream.register_handler('kline', self.on_kline)
        self.stream.register_handler('reconnected', self.on_reconnected)

    async def on_kline(self, event: Dict) -> None:
        symbol = event['symbol']
        candle: Candle = event['candle']
        if not symbol:
            return
        ctx = self.state.context(symbol)
        newly_closed = ctx.history.apply(candle, event['closed'])
        now = time.time()
        self.state.update_price(symbol, candle.close, now)
        self.state.liveness['data_feed'] = True

        if not newly_closed:
            return
        metrics.record_bar_closed()
        if symbol in self.state.active or not self.state.has_capacity():
            return
        await self.queue.put(BarClosed(symbol=symbol, candle=candle, ts=now))

    async def _backfill_one(self, symbol: str, sem: asyncio.Semaphore) -> bool:
        async with sem:
            try:
                candles = await self.poller.fetch_klines(symbol, limit=self.backfill_limit)
            except TransientNetworkError as exc:
                logger.warning("Back-fill for %s failed: %s", symbol, exc)
                return False
        if not candles:
            logger.warning("Back-fill for %s returned no candles", symbol)
            return False
        ctx = self.state.context(symbol)
        ctx.history.replace_all(candles)
        ctx.backfilled_at = time.time()
        if ctx.last_price is None:
            self.state.update_price(symbol, candles[-1].close, ctx.backfilled_at)
        return True

    async def backfill(self, symbols: Iterable[str]) -> List[str]:
        """Replace the history of ``symbols`` with fresh REST klines; return the ones that succeeded."""
        symbols = list(symbols)
        if not symbols:
            return []
        sem = asyncio.Semaphore(self.backfill_concurrency)
        results = await asyncio.gather(*(self._backfill_one(s, sem) for s in symbols))
        done = [s for s, ok in zip(symbols, results) if ok]
        logger.info("Back-filled %s/%s symbols", len(done), len(symbols))
        return done

    async def update_subscriptions(self) -> None:
        wanted = self.state.subscription_symbols()
        await self.stream.set_streams(wanted)
        wanted_set = set(wanted)
        for symbol, ctx in self.state.contexts.items():
            ctx.subscribed = symbol in wanted_set

    async def on_reconnected(self) -> None:
        # bars closed while disconnected are missing from the live feed
        await self.backfill(self.stream.symbols)

    def refresh_liveness(self) -> bool:
        fresh = not self.stream.is_stale()
        self.state.liveness['data_feed'] = fresh
        return fresh

    async def start(self):
        await self.stream.start()

    async def stop(self):
        await self.stream.stop()
        await self.poller.close()
