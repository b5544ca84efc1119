import logging
import time
from typing import Dict, List, Optional

from config import config
from .binance_rest import BinanceRESTClient
from .candles import Candle, parse_rest_kline


logger = logging.getLogger(__name__)


class MarketDataPoller:
    """Pull-style market data: klines for back-fill, 24h tickers and funding rates."""

    def __init__(self, rest: Optional[BinanceRESTClient] = None, interval: Optional[str] = None):
        md_cfg = config.section('market_data')
        self.interval = interval or md_cfg.get('interval', '5m')
        self._rest = rest or BinanceRESTClient()

    async def fetch_klines(self, symbol: str, limit: int = 300,
                           interval: Optional[str] = None) -> List[Candle]:
        """Return closed candles only, oldest first."""
        raw = await self._rest.get(
            "/fapi/v1/klines",
            params={"symbol": symbol, "interval": interval or self.interval, "limit": limit},
        )
        if not isinstance(raw, list):
            logger.warning("Unexpected klines payload for %s: %r", symbol, raw)
            return []
        now_ms = int(time.time() * 1000)
        candles: List[Candle] = []
        for row in raw:
            try:
                # closeTime still in the future means the bar is forming
                if len(row) > 6 and int(row[6]) > now_ms:
                    continue
                candles.append(parse_rest_kline(row))
            except (IndexError, TypeError, ValueError):
                logger.debug("Skipping malformed kline for %s: %r", symbol, row)
        return candles

    async def fetch_tickers_24h(self) -> List[Dict]:
        raw = await self._rest.get("/fapi/v1/ticker/24hr")
        if not isinstance(raw, list):
            logger.warning("Unexpected 24h ticker payload: %r", raw)
            return []
        return [row for row in raw if isinstance(row, dict)]

    async def fetch_funding_rates(self) -> Dict[str, float]:
        raw = await self._rest.get("/fapi/v1/premiumIndex")
        rates: Dict[str, float] = {}
        if not isinstance(raw, list):
            return rates
        for row in raw:
            symbol = row.get("symbol") if isinstance(row, dict) else None
            rate = row.get("lastFundingRate") if symbol else None
            if rate in (None, ""):
                continue
            try:
                rates[symbol] = float(rate)
            except (TypeError, ValueError):
                continue
        return rates

    async def close(self):
        await self._rest.close()
