import errno
import logging
from typing import Optional

from prometheus_client import Counter, Gauge, Histogram, start_http_server


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


class MetricsCollector:
    def __init__(self):
        self.api_calls = Counter('provider_calls_total', 'External provider calls', ['provider', 'outcome'])
        self.trades = Counter('trades_total', 'Trade attempts by final outcome', ['side', 'outcome'])
        self.trade_retries = Counter('trade_retries_total', 'Venue round-trip retries', ['side', 'endpoint'])
        self.failovers = Counter('trade_failovers_total', 'Switches to the fallback venue endpoint', ['side'])
        self.errors = Counter('errors_total', 'Errors by type', ['type'])
        self.positions_closed = Counter('positions_closed_total', 'Closed positions', ['reason'])

        self.market_health_raw = Gauge('market_health_raw', 'Raw aggregate market health score')
        self.market_health_adjusted = Gauge('market_health_adjusted', 'Momentum-adjusted market health score')
        self.market_health_momentum = Gauge('market_health_momentum', 'Momentum of the market health history')
        self.open_positions = Gauge('open_positions', 'Open positions')
        self.trading_paused = Gauge('trading_paused', 'Trading paused flag')
        self.realized_pnl = Gauge('pnl_realized_total', 'Total realized PnL in quote units')

        self.cycle_duration = Histogram('cycle_duration_seconds', 'Loop cycle duration', ['loop'])
        self.trade_latency = Histogram('trade_round_trip_seconds', 'Venue round-trip latency', ['side'])

    def record_api_call(self, provider: str, success: bool):
        self.api_calls.labels(provider=provider, outcome='success' if success else 'failure').inc()

    def record_trade(self, side: str, success: bool):
        self.trades.labels(side=side, outcome='success' if success else 'failure').inc()

    def record_retry(self, side: str, endpoint: str):
        self.trade_retries.labels(side=side, endpoint=endpoint).inc()

    def record_failover(self, side: str):
        self.failovers.labels(side=side).inc()

    def record_error(self, error_type: str):
        self.errors.labels(type=error_type).inc()

    def record_position_closed(self, reason: str):
        self.positions_closed.labels(reason=reason).inc()

    def update_market_health(self, raw: float, adjusted: float, momentum: float):
        self.market_health_raw.set(raw)
        self.market_health_adjusted.set(adjusted)
        self.market_health_momentum.set(momentum)

    def update_open_positions(self, count: int):
        self.open_positions.set(count)

    def update_paused(self, paused: bool):
        self.trading_paused.set(1 if paused else 0)

    def record_pnl(self, pnl: float):
        if pnl is None:
            return
        if pnl >= 0:
            self.realized_pnl.inc(pnl)
        else:
            self.realized_pnl.dec(abs(float(pnl)))

    def record_cycle(self, loop: str, seconds: float):
        self.cycle_duration.labels(loop=loop).observe(seconds)

    def record_trade_latency(self, side: str, seconds: float):
        self.trade_latency.labels(side=side).observe(seconds)


def start_metrics_server(port: int = 9090, port_scan_limit: int = 0):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return
    last_error: Optional[OSError] = None
    for offset in range(max(0, port_scan_limit) + 1):
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
        return
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error


metrics = MetricsCollector()
