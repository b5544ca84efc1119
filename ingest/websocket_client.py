import asyncio
import json
import logging
import time
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

import websockets

from config import config
from api.metrics import metrics
from monitoring.async_utils import run_tasks_with_cleanup
from .candles import parse_stream_kline


logger = logging.getLogger(__name__)


class KlineStreamClient:
    """Single multiplexed websocket carrying one kline stream per subscribed symbol.

    The set of wanted streams survives reconnects; after every (re)connect the
    client subscribes to all of them again.
    """

    def __init__(self, url: Optional[str] = None, interval: Optional[str] = None):
        exchange_cfg = config.section('exchange')
        md_cfg = config.section('market_data')
        self.url = url or exchange_cfg.get('ws_url', 'wss://fstream.binance.com/ws')
        self.interval = interval or md_cfg.get('interval', '5m')
        self.reconnect_delay_s = float(md_cfg.get('reconnect_delay_s', 5))
        self.ping_interval = float(md_cfg.get('ping_interval_s', 20))
        self.stale_after_s = float(md_cfg.get('stale_after_s', 90))
        self.batch_size = int(md_cfg.get('subscribe_batch_size', 50))

        self.handlers: Dict[str, Callable[..., Awaitable[None]]] = {}
        self.running = False
        self.connected = False
        self.stream_last_seen: Optional[float] = None
        self.reconnects = 0

        self._ws = None
        self._desired: Set[str] = set()
        self._subscribed: Set[str] = set()
        self._request_id = 0
        self._send_lock = asyncio.Lock()
        self._ping_task: Optional[asyncio.Task] = None

    def register_handler(self, event: str, handler: Callable[..., Awaitable[None]]):
        self.handlers[event] = handler

    def stream_name(self, symbol: str) -> str:
        return f"{symbol.lower()}@kline_{self.interval}"

    @property
    def symbols(self) -> Set[str]:
        return set(self._desired)

    async def set_streams(self, symbols: Iterable[str]) -> None:
        """Make the subscribed set equal to ``symbols``."""
        self._desired = {s.upper() for s in symbols}
        if self.connected:
            await self._sync_subscriptions()

    async def _sync_subscriptions(self) -> None:
        to_add = sorted(self._desired - self._subscribed)
        to_remove = sorted(self._subscribed - self._desired)
        if to_remove:
            await self._send_method("UNSUBSCRIBE", to_remove)
            self._subscribed.difference_update(to_remove)
        if to_add:
            await self._send_method("SUBSCRIBE", to_add)
            self._subscribed.update(to_add)
        if to_add or to_remove:
            logger.info(
                "Kline subscriptions updated (+%s/-%s, total=%s)",
                len(to_add), len(to_remove), len(self._subscribed),
            )

    async def _send_method(self, method: str, symbols: List[str]) -> None:
        ws = self._ws
        if ws is None:
            return
        async with self._send_lock:
            for start in range(0, len(symbols), self.batch_size):
                batch = symbols[start:start + self.batch_size]
                self._request_id += 1
                message = {
                    "method": method,
                    "params": [self.stream_name(s) for s in batch],
                    "id": self._request_id,
                }
                await ws.send(json.dumps(message))

    async def _dispatch(self, event: str, *args) -> None:
        handler = self.handlers.get(event)
        if handler is None:
            return
        try:
            await handler(*args)
        except Exception:
            logger.exception("Kline stream handler %s failed", event)

    async def _handle_message(self, raw) -> None:
        try:
            data = json.loads(raw)
        except ValueError:
            logger.debug("Dropping non-JSON stream message: %r", raw)
            return
        if not isinstance(data, dict):
            return
        if "id" in data and "result" in data:
            return
        if "error" in data:
            logger.error("Kline stream request rejected: %s", data.get("error"))
            return
        payload = data.get("data") if "stream" in data else data
        if not isinstance(payload, dict):
            return
        event = parse_stream_kline(payload)
        if event is None:
            return
        await self._dispatch("kline", event)

    async def _listen(self) -> None:
        first_connect = True
        while self.running:
            try:
                async with websockets.connect(self.url, ping_interval=None) as ws:
                    self._ws = ws
                    self.connected = True
                    self._subscribed = set()
                    self.stream_last_seen = time.monotonic()
                    logger.info("Kline stream connected to %s", self.url)
                    await self._sync_subscriptions()
                    if not first_connect:
                        await self._dispatch("reconnected")
                    first_connect = False

                    while self.running:
                        try:
                            raw = await asyncio.wait_for(ws.recv(), timeout=self.stale_after_s)
                        except asyncio.TimeoutError:
                            logger.warning(
                                "Kline stream silent for %.0fs; reconnecting", self.stale_after_s
                            )
                            raise
                        self.stream_last_seen = time.monotonic()
                        await self._handle_message(raw)
            except asyncio.CancelledError:
                break
            except Exception as e:
                if not self.running:
                    break
                logger.error("Kline stream error: %s", e)
            finally:
                self._ws = None
                self.connected = False

            if not self.running:
                break
            self.reconnects += 1
            metrics.record_reconnect()
            logger.info("Reconnecting kline stream in %.1fs", self.reconnect_delay_s)
            try:
                await asyncio.sleep(self.reconnect_delay_s)
            except asyncio.CancelledError:
                break

    async def _ping_loop(self) -> None:
        while self.running:
            try:
                await asyncio.sleep(self.ping_interval)
                lag = self.lag_seconds()
                if lag is not None:
                    metrics.update_stream_lag('kline', lag)
                ws = self._ws
                if ws is None:
                    continue
                pong_waiter = await ws.ping()
                await asyncio.wait_for(pong_waiter, timeout=self.ping_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning("Kline stream ping failed: %s", e)
                ws = self._ws
                if ws is not None:
                    await ws.close()

    def lag_seconds(self) -> Optional[float]:
        if self.stream_last_seen is None:
            return None
        return time.monotonic() - self.stream_last_seen

    def is_stale(self) -> bool:
        lag = self.lag_seconds()
        return lag is None or lag > self.stale_after_s

    async def start(self):
        self.running = True
        tasks = [asyncio.create_task(self._listen())]
        self._ping_task = asyncio.create_task(self._ping_loop())
        tasks.append(self._ping_task)

        async def _cleanup():
            self._ping_task = None
            self.connected = False

        await run_tasks_with_cleanup(tasks, cleanup=_cleanup)

    async def stop(self):
        self.running = False
        ws = self._ws
        if ws is not None:
            await ws.close()
