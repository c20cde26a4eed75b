import errno
import logging
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Optional

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


def _get_port_scan_limit() -> int:
    monitoring_cfg = config.get('monitoring', {}) or {}
    try:
        return int(monitoring_cfg.get('prometheus_port_scan', 0) or 0)
    except (TypeError, ValueError):
        return 0


class MetricsCollector:
    def __init__(self):
        self.positions_opened = Counter('positions_opened_total', 'Positions opened', ['symbol', 'side'])
        self.positions_closed = Counter('positions_closed_total', 'Positions closed', ['symbol', 'closed_by'])
        self.open_positions = Gauge('open_positions', 'Currently open ledger positions')
        self.pnl_realized = Gauge('pnl_realized_total', 'Total realized PnL across closed positions')

        self.order_events = Counter('order_events_total', 'User-stream order events processed', ['status'])
        self.order_events_deduped = Counter('order_events_deduplicated_total', 'Duplicate order events dropped')
        self.orders_placed = Counter('orders_placed_total', 'Orders placed', ['type'])
        self.order_failures = Counter('order_failures_total', 'Exchange calls that failed', ['action'])

        self.entry_skips = Counter('entry_skips_total', 'Entry attempts skipped', ['reason'])
        self.monitor_actions = Counter('monitor_actions_total', 'Monitor loop actions', ['action'])

        self.mark_age = Gauge('mark_price_age_seconds', 'Age of the latest mark price', ['symbol'])
        self.mark_rest_fallbacks = Counter('mark_price_rest_fallbacks_total', 'Cold-start REST mark reads')

        self.rest_latency = Histogram('rest_request_latency_seconds', 'Exchange REST latency', ['path'])
        self.reconnect_count = Counter('websocket_reconnects_total', 'Total WebSocket reconnects', ['stream'])
        self.stream_lag_seconds = Gauge('stream_lag_seconds', 'Seconds since last message seen', ['stream'])
        self.queue_depth = Gauge('queue_depth', 'Internal buffer depth', ['buffer'])

    def record_position_opened(self, symbol: str, side: str):
        self.positions_opened.labels(symbol=symbol, side=side).inc()
        self.open_positions.inc()

    def record_position_closed(self, symbol: str, closed_by: str, pnl: Optional[float] = None):
        self.positions_closed.labels(symbol=symbol, closed_by=closed_by or 'UNKNOWN').inc()
        self.open_positions.dec()
        self.record_pnl(pnl)

    def record_pnl(self, pnl: Optional[float]):
        if pnl is None:
            return
        if pnl >= 0:
            self.pnl_realized.inc(pnl)
        else:
            self.pnl_realized.dec(abs(float(pnl)))

    def record_order_event(self, status: str):
        self.order_events.labels(status=status or 'UNKNOWN').inc()

    def record_duplicate_event(self):
        self.order_events_deduped.inc()

    def record_order_placed(self, order_type: str):
        self.orders_placed.labels(type=order_type).inc()

    def record_order_failure(self, action: str):
        self.order_failures.labels(action=action).inc()

    def record_entry_skip(self, reason: str):
        self.entry_skips.labels(reason=reason).inc()

    def record_monitor_action(self, action: str):
        self.monitor_actions.labels(action=action).inc()

    def update_mark_age(self, symbol: str, seconds: float):
        self.mark_age.labels(symbol=symbol).set(seconds)

    def record_mark_fallback(self):
        self.mark_rest_fallbacks.inc()

    def record_rest_latency(self, path: str, latency_seconds: float):
        self.rest_latency.labels(path=path).observe(latency_seconds)

    def record_reconnect(self, stream: str = 'default'):
        self.reconnect_count.labels(stream=stream).inc()

    def update_stream_lag(self, stream: str, seconds: float):
        self.stream_lag_seconds.labels(stream=stream).set(seconds)

    def update_queue_depth(self, name: str, depth: int):
        self.queue_depth.labels(buffer=name).set(depth)


def start_metrics_server(port: int = 9108):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return _METRICS_PORT
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
        logger.info("Prometheus metrics server started on port %s", candidate)
        return candidate
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error
    return None

metrics = MetricsCollector()
