import asyncio
import logging
from typing import Optional

from config import config
from api.alerts import TelegramNotifier
from api.metrics import metrics, start_metrics_server
from ingest.binance_rest import BinanceRESTClient, TransientNetworkError
from ingest.market_data_manager import MarketDataManager
from ingest.rest_poller import MarketDataPoller
from ingest.universe import UniverseSelector
from ingest.websocket_client import KlineStreamClient
from monitoring.async_utils import run_periodically, run_tasks_with_cleanup
from monitoring.logging_utils import setup_logging
from orchestration.persistence import PersistenceCoordinator
from orchestration.services import SignalService
from orchestration.state import AggregateState
from risk.position_sizer import RiskManager
from strategy.execution import ExecutionManager
from strategy.scoring import SignalScorer
from strategy.trade_manager import TradeLifecycleManager


logger = logging.getLogger(__name__)


class TradingSystem:
    """Orchestrate universe selection, market data, scoring, the trade lifecycle and persistence."""

    def __init__(self, config_obj=None, store=None, execution: Optional[ExecutionManager] = None,
                 notifier=None, poller: Optional[MarketDataPoller] = None,
                 stream: Optional[KlineStreamClient] = None):
        self.config = config_obj or config
        md_cfg = self.config.section('market_data')
        self.lifecycle_cfg = self.config.section('lifecycle')
        self.universe_cfg = self.config.section('universe')
        self.store_cfg = self.config.section('store')
        self.monitoring_cfg = self.config.section('monitoring')

        self.state = AggregateState(
            max_active=int(self.lifecycle_cfg.get('max_active', 30)),
            history_limit=int(self.lifecycle_cfg.get('history_limit', 300)),
            history_capacity=int(md_cfg.get('history_capacity', 500)),
        )
        self.bar_queue: asyncio.Queue = asyncio.Queue()

        self.rest = BinanceRESTClient()
        self.poller = poller or MarketDataPoller(self.rest)
        self.stream = stream or KlineStreamClient()
        self.market_data = MarketDataManager(self.state, self.stream, self.poller, self.bar_queue, md_cfg)
        self.universe = UniverseSelector(self.state, self.poller, self.market_data, self.universe_cfg)

        self.risk = RiskManager(self.config.section('risk'))
        self.scorer = SignalScorer(self.config.section('scoring'), risk=self.risk)
        self.execution = execution or ExecutionManager(risk=self.risk)
        self.notifier = notifier or TelegramNotifier()
        self.persistence = PersistenceCoordinator(self.state, store)
        self.lifecycle = TradeLifecycleManager(
            self.state, self.execution, self.notifier, self.persistence, self.lifecycle_cfg,
        )
        self.signal_service = SignalService(self.state, self.scorer, self.lifecycle, self.bar_queue)

        self.running = False
        self._stopped = False

    def is_running(self) -> bool:
        return self.running

    async def initialize(self):
        await self.persistence.load()
        if not await self.execution.initialize():
            logger.warning("Exchange initialisation failed; trading in paper mode")
        self.state.wallet_balance = self.execution.available_balance
        await self.universe.refresh()
        metrics.update_active_trades(len(self.state.active))

    async def _tick(self):
        self.market_data.refresh_liveness()
        await self.lifecycle.tick()

    async def _refresh_universe(self):
        await self.universe.refresh()
        if self.execution.paper_mode:
            return
        try:
            self.state.wallet_balance = await self.execution.refresh_balance()
        except TransientNetworkError as exc:
            logger.warning("Wallet balance refresh failed: %s", exc)

    async def reset(self):
        self.state.reset()
        metrics.update_active_trades(0)
        await self.persistence.save()

    async def start(self):
        self.running = True
        self._stopped = False
        await self.initialize()

        try:
            start_metrics_server(int(self.monitoring_cfg.get('prometheus_port', 9108)))
        except (RuntimeError, OSError) as exc:
            logger.warning("Metrics server unavailable: %s", exc)

        refresh_s = float(self.universe_cfg.get('refresh_interval_s', 600))
        save_s = float(self.store_cfg.get('save_interval_s', 30))
        tasks = [
            asyncio.create_task(self.market_data.start()),
            asyncio.create_task(self.signal_service.run()),
            asyncio.create_task(run_periodically(
                'lifecycle_tick', float(self.lifecycle_cfg.get('tick_interval_s', 2)),
                self._tick, self.is_running,
            )),
            asyncio.create_task(run_periodically(
                'universe_refresh', refresh_s, self._refresh_universe, self.is_running,
                initial_delay_s=refresh_s,
            )),
            asyncio.create_task(run_periodically(
                'snapshot_save', save_s, self.persistence.save, self.is_running,
                initial_delay_s=save_s,
            )),
        ]

        async def _cleanup():
            await self.stop()

        await run_tasks_with_cleanup(tasks, cleanup=_cleanup)

    async def stop(self):
        if self._stopped:
            return
        self._stopped = True
        self.running = False
        self.signal_service.stop()
        await self.market_data.stop()
        await self.persistence.close()
        await self.execution.close()
        await self.notifier.close()
        await self.rest.close()
        logger.info("Trading system stopped")


async def main():
    system = TradingSystem(config)
    try:
        await system.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("System shutting down on interrupt")
        await system.stop()


def run():
    setup_logging()
    asyncio.run(main())


if __name__ == "__main__":
    run()
