import errno
import logging
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Optional

from config import config


logger = logging.getLogger(__name__)

_METRICS_PORT: Optional[int] = None


def _get_port_scan_limit() -> int:
    try:
        return int(config.section('monitoring').get('prometheus_port_scan', 0))
    except (TypeError, ValueError):
        return 0


class MetricsCollector:
    def __init__(self):
        self.liquidations = Counter('liquidations_received_total', 'Liquidations received', ['symbol', 'side'])
        self.liquidation_notional = Histogram(
            'liquidation_notional_usd',
            'Notional of received liquidations in USD',
            buckets=(100, 1_000, 5_000, 10_000, 50_000, 100_000, 500_000, 1_000_000),
        )
        self.qualifying = Counter('liquidations_qualifying_total', 'Liquidations above the arming threshold', ['symbol', 'side'])
        self.alerts = Counter('large_liquidation_alerts_total', 'Large liquidation notifications', ['symbol'])

        self.timers_armed = Counter('cascade_timers_armed_total', 'Quiescence timers armed', ['kind'])
        self.cascades = Counter('cascade_decisions_total', 'Elapsed quiescence timers by result', ['result'])

        self.orders = Counter('orders_total', 'Execution gate outcomes', ['status', 'reason'])
        self.order_send_latency = Histogram('order_send_latency_seconds', 'Latency from order send to exchange response')

        self.tracked_positions = Gauge('tracked_positions', 'Positions currently tracked')
        self.positions_closed = Counter('positions_closed_total', 'Closed positions', ['closed_type'])
        self.pnl_realized = Gauge('pnl_realized_total', 'Total realized PnL')
        self.poll_failures = Counter('position_poll_failures_total', 'Failed position checks', ['symbol'])

        self.reconnect_count = Counter('websocket_reconnects_total', 'Total WebSocket reconnects')
        self.dropped_events = Counter('dropped_events_total', 'Total dropped inbound events', ['reason'])

    def record_liquidation(self, symbol: str, side: str, notional: float):
        self.liquidations.labels(symbol=symbol, side=side).inc()
        self.liquidation_notional.observe(notional)

    def record_qualifying(self, symbol: str, side: str):
        self.qualifying.labels(symbol=symbol, side=side).inc()

    def record_alert(self, symbol: str):
        self.alerts.labels(symbol=symbol).inc()

    def record_timer_armed(self, reset: bool):
        self.timers_armed.labels(kind='reset' if reset else 'new').inc()

    def record_cascade(self, result: str):
        self.cascades.labels(result=result).inc()

    def record_order_outcome(self, status: str, reason: str):
        self.orders.labels(status=status, reason=reason).inc()

    def record_order_send_latency(self, latency_seconds: float):
        self.order_send_latency.observe(latency_seconds)

    def update_tracked_positions(self, count: int):
        self.tracked_positions.set(count)

    def record_position_closed(self, closed_type: str, pnl: float):
        self.positions_closed.labels(closed_type=closed_type).inc()
        if pnl >= 0:
            self.pnl_realized.inc(pnl)
        else:
            self.pnl_realized.dec(abs(float(pnl)))

    def record_poll_failure(self, symbol: str):
        self.poll_failures.labels(symbol=symbol).inc()

    def record_reconnect(self):
        self.reconnect_count.inc()

    def record_drop(self, reason: str):
        self.dropped_events.labels(reason=reason).inc()


def start_metrics_server(port: int = 9090, scan_limit: Optional[int] = None) -> int:
    """Serve /metrics on ``port`` or the next free port within the scan limit.

    Returns the bound port; repeated calls return the first binding.
    """
    global _METRICS_PORT
    if _METRICS_PORT is not None:
        return _METRICS_PORT
    if scan_limit is None:
        scan_limit = _get_port_scan_limit()
    candidates = range(port, port + max(0, scan_limit) + 1)
    for candidate in candidates:
        try:
            start_http_server(candidate)
        except OSError as exc:
            if exc.errno != errno.EADDRINUSE:
                raise
            logger.warning("Prometheus port %s in use; trying next", candidate)
            continue
        _METRICS_PORT = candidate
        logger.info("Prometheus metrics server started on port %s", candidate)
        return candidate
    raise RuntimeError(f"Unable to bind Prometheus metrics server on ports {port}-{candidates[-1]}")


metrics = MetricsCollector()
