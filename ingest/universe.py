import logging
from typing import Dict, List, Optional, Sequence

from config import config
from api.metrics import metrics
from ingest.binance_rest import TransientNetworkError
from ingest.rest_poller import MarketDataPoller


logger = logging.getLogger(__name__)


def _as_float(value, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def rank_symbols(tickers: Sequence[Dict], quote_asset: str, min_quote_volume: float,
                 max_symbols: int) -> List[str]:
    """Liquid symbols quoted in ``quote_asset``, biggest absolute 24h movers first."""
    candidates = []
    for row in tickers:
        symbol = row.get('symbol') or ''
        if not symbol.endswith(quote_asset):
            continue
        if _as_float(row.get('quoteVolume')) <= min_quote_volume:
            continue
        change = abs(_as_float(row.get('priceChangePercent')))
        candidates.append((change, symbol))
    candidates.sort(key=lambda item: (-item[0], item[1]))
    return [symbol for _, symbol in candidates[:max_symbols]]


class UniverseSelector:
    """Periodically rebuild the watch-list from 24h exchange statistics."""

    def __init__(self, state, poller: MarketDataPoller, market_data,
                 universe_cfg: Optional[Dict] = None, quote_asset: Optional[str] = None):
        universe_cfg = universe_cfg if universe_cfg is not None else config.section('universe')
        self.state = state
        self.poller = poller
        self.market_data = market_data
        self.min_quote_volume = float(universe_cfg.get('min_quote_volume', 500000))
        self.max_symbols = int(universe_cfg.get('max_symbols', 200))
        self.benchmark_symbol = universe_cfg.get('benchmark_symbol', 'BTCUSDT')
        self.quote_asset = quote_asset or config.section('exchange').get('settlement_asset', 'USDT')

    async def refresh(self) -> Optional[Dict[str, List[str]]]:
        try:
            tickers = await self.poller.fetch_tickers_24h()
        except TransientNetworkError as exc:
            logger.warning("Universe refresh skipped; ticker fetch failed: %s", exc)
            self.state.liveness['exchange'] = False
            return None
        self.state.liveness['exchange'] = True

        ranked = rank_symbols(tickers, self.quote_asset, self.min_quote_volume, self.max_symbols)
        self._update_benchmark(tickers)
        await self._update_funding()

        # a watch-list restored from a snapshot has no candles behind it yet
        previous = {s for s in self.state.watchlist if self._has_history(s)}
        entering = [s for s in ranked if s not in previous]
        ranked_set = set(ranked)
        leaving = [s for s in self.state.watchlist if s not in ranked_set]

        # re-entering symbols are re-fetched too; their old history has a gap
        loaded = set(await self.market_data.backfill(entering))
        watchlist = [s for s in ranked if s in previous or s in loaded]
        self.state.set_watchlist(watchlist)
        await self.market_data.update_subscriptions()

        metrics.update_watchlist(len(watchlist))
        logger.info(
            "Universe refreshed: %s symbols (+%s/-%s, benchmark %s %.2f%%)",
            len(watchlist), len(loaded), len(leaving), self.benchmark_symbol,
            self.state.benchmark_change_pct or 0.0,
        )
        return {'entered': sorted(loaded), 'left': leaving, 'watchlist': watchlist}

    def _has_history(self, symbol: str) -> bool:
        ctx = self.state.contexts.get(symbol)
        return ctx is not None and ctx.backfilled_at is not None and len(ctx.history) > 0

    def _update_benchmark(self, tickers: Sequence[Dict]) -> None:
        for row in tickers:
            if row.get('symbol') == self.benchmark_symbol:
                change = row.get('priceChangePercent')
                if change is not None:
                    self.state.benchmark_change_pct = _as_float(change)
                    metrics.update_benchmark(self.state.benchmark_change_pct)
                return
        logger.warning("Benchmark %s missing from 24h tickers", self.benchmark_symbol)

    async def _update_funding(self) -> None:
        try:
            rates = await self.poller.fetch_funding_rates()
        except TransientNetworkError as exc:
            logger.warning("Funding rate refresh failed: %s", exc)
            return
        if rates:
            self.state.set_funding(rates)
