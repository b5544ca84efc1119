import errno
import logging
from pathlib import Path
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Optional

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


def _monitoring_cfg():
    return config.section('monitoring')


def _get_port_scan_limit() -> int:
    try:
        return int(_monitoring_cfg().get('prometheus_port_scan', 0))
    except (TypeError, ValueError):
        return 0


def _get_port_file() -> Optional[Path]:
    path_value = _monitoring_cfg().get('metrics_port_file')
    if not path_value:
        return None
    return Path(path_value)


def _write_port_file(port: int) -> None:
    port_file = _get_port_file()
    if not port_file:
        return
    try:
        port_file.parent.mkdir(parents=True, exist_ok=True)
        port_file.write_text(str(port))
    except OSError as exc:
        logger.warning("Failed to persist metrics port file %s: %s", port_file, exc)


class MetricsCollector:
    def __init__(self):
        self.bars_closed = Counter('bars_closed_total', 'Closed bars received from the kline stream')
        self.scores_evaluated = Counter('scores_evaluated_total', 'Instruments scored on bar close')
        self.signals_generated = Counter('signals_generated_total', 'Trade candidates produced', ['direction', 'tag'])
        self.signals_rejected = Counter('signals_rejected_total', 'Bar-close evaluations without a candidate', ['reason'])

        self.trades_opened = Counter('trades_opened_total', 'Trades opened', ['mode'])
        self.trades_closed = Counter('trades_closed_total', 'Trades closed', ['reason'])
        self.targets_hit = Counter('targets_hit_total', 'Take-profit targets reached', ['target'])
        self.stop_moves = Counter('stop_moves_total', 'Trailing stop adjustments')
        self.execution_errors = Counter('execution_errors_total', 'Execution adapter failures', ['action'])

        self.active_trades = Gauge('active_trades', 'Currently active trades')
        self.watchlist_size = Gauge('watchlist_size', 'Symbols in the watch-list')
        self.benchmark_change = Gauge('benchmark_change_pct', 'Benchmark 24h percent change')

        self.stream_lag_seconds = Gauge('stream_lag_seconds', 'Seconds since last message seen', ['stream'])
        self.reconnect_count = Counter('websocket_reconnects_total', 'Total WebSocket reconnects')
        self.snapshot_saves = Counter('snapshot_saves_total', 'State snapshot writes', ['result'])

        self.tick_latency = Histogram('lifecycle_tick_seconds', 'Duration of one lifecycle tick')
        self.final_roi = Histogram(
            'trade_final_roi_pct',
            'Final leveraged ROI of closed trades, in percent',
            buckets=(-100, -50, -25, -10, -5, 0, 5, 10, 25, 50, 100, 200),
        )

    def record_bar_closed(self):
        self.bars_closed.inc()

    def record_score(self):
        self.scores_evaluated.inc()

    def record_signal(self, direction: str, tag: str):
        self.signals_generated.labels(direction=direction, tag=tag).inc()

    def record_rejection(self, reason: str):
        self.signals_rejected.labels(reason=reason).inc()

    def record_trade_opened(self, mode: str):
        self.trades_opened.labels(mode=mode).inc()

    def record_trade_closed(self, reason: str, final_roi_pct: Optional[float] = None):
        self.trades_closed.labels(reason=reason).inc()
        if final_roi_pct is not None:
            self.final_roi.observe(float(final_roi_pct))

    def record_target_hit(self, target: int):
        self.targets_hit.labels(target=str(target)).inc()

    def record_stop_move(self):
        self.stop_moves.inc()

    def record_execution_error(self, action: str):
        self.execution_errors.labels(action=action).inc()

    def update_active_trades(self, count: int):
        self.active_trades.set(count)

    def update_watchlist(self, count: int):
        self.watchlist_size.set(count)

    def update_benchmark(self, change_pct: Optional[float]):
        if change_pct is not None:
            self.benchmark_change.set(change_pct)

    def update_stream_lag(self, stream: str, seconds: float):
        self.stream_lag_seconds.labels(stream=stream).set(seconds)

    def record_reconnect(self):
        self.reconnect_count.inc()

    def record_snapshot(self, ok: bool):
        self.snapshot_saves.labels(result='ok' if ok else 'error').inc()

    def record_tick_latency(self, seconds: float):
        self.tick_latency.observe(seconds)


def start_metrics_server(port: int = 9108):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return
    port_scan_limit = max(0, _get_port_scan_limit())
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        _write_port_file(candidate)
        logger.info("Prometheus metrics server started on port %s", candidate)
        return
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error


metrics = MetricsCollector()
