import errno
import logging
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Optional

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


def _get_port_scan_limit() -> int:
    try:
        return int(config.monitoring.get('prometheus_port_scan', 0))
    except Exception:
        return 0


class MetricsCollector:
    def __init__(self):
        self.cache_hits = Counter('cache_hits_total', 'TTL cache reads that returned a live value')
        self.cache_misses = Counter('cache_misses_total', 'TTL cache reads that found nothing or an expired entry')
        self.cache_evictions = Counter('cache_evictions_total', 'TTL cache entries removed', ['reason'])
        self.cache_entries = Gauge('cache_entries', 'Entries currently held by the TTL cache')

        self.upstream_requests = Counter('upstream_requests_total', 'Upstream provider calls', ['source', 'status'])
        self.market_refresh_latency = Histogram('market_refresh_seconds', 'Duration of one market aggregation cycle')
        self.market_tickers = Gauge('market_tickers', 'Tickers in the last merged snapshot', ['source'])

        self.liquidation_events = Counter('liquidation_events_total', 'Liquidation events recorded', ['venue'])
        self.liquidation_duplicates = Counter('liquidation_duplicates_total', 'Duplicate liquidation events rejected', ['venue'])
        self.dropped_messages = Counter('stream_dropped_messages_total', 'Malformed or unusable stream messages', ['venue'])
        self.reconnect_count = Counter('websocket_reconnects_total', 'Total WebSocket reconnects', ['venue'])
        self.venue_connected = Gauge('venue_connected', 'Venue stream connection flag', ['venue'])
        self.liquidation_notional = Gauge('liquidation_notional_24h', 'Rolling 24h liquidation notional', ['venue', 'side'])
        self.liquidation_aggregation_latency = Histogram('liquidation_aggregation_seconds', 'Duration of a liquidation aggregation pass')

        self.signals_accepted = Counter('signals_accepted_total', 'Webhook signals stored', ['signal_type'])
        self.signals_rejected = Counter('signals_rejected_total', 'Webhook signals rejected', ['kind'])
        self.signals_evicted = Counter('signals_evicted_total', 'Signals removed from the store', ['reason'])
        self.signal_store_size = Gauge('signal_store_size', 'Signals currently held')
        self.subscriber_failures = Counter('signal_subscriber_failures_total', 'Subscriber callbacks that raised')

    def record_cache_read(self, hit: bool):
        if hit:
            self.cache_hits.inc()
        else:
            self.cache_misses.inc()

    def record_cache_eviction(self, reason: str, count: int = 1):
        if count > 0:
            self.cache_evictions.labels(reason=reason).inc(count)

    def update_cache_entries(self, count: int):
        self.cache_entries.set(count)

    def record_upstream(self, source: str, ok: bool):
        self.upstream_requests.labels(source=source, status='ok' if ok else 'error').inc()

    def record_market_refresh(self, duration_s: float, tickers_by_source: dict):
        self.market_refresh_latency.observe(duration_s)
        for source, count in tickers_by_source.items():
            self.market_tickers.labels(source=source).set(count)

    def record_liquidation(self, venue: str, duplicate: bool = False):
        if duplicate:
            self.liquidation_duplicates.labels(venue=venue).inc()
        else:
            self.liquidation_events.labels(venue=venue).inc()

    def record_drop(self, venue: str):
        self.dropped_messages.labels(venue=venue).inc()

    def record_reconnect(self, venue: str):
        self.reconnect_count.labels(venue=venue).inc()

    def mark_venue_connected(self, venue: str, connected: bool):
        self.venue_connected.labels(venue=venue).set(1 if connected else 0)

    def update_liquidation_totals(self, venue: str, longs: float, shorts: float):
        self.liquidation_notional.labels(venue=venue, side='long').set(longs)
        self.liquidation_notional.labels(venue=venue, side='short').set(shorts)

    def record_liquidation_aggregation(self, duration_s: float):
        self.liquidation_aggregation_latency.observe(duration_s)

    def record_signal_accepted(self, signal_type: str, store_size: int):
        self.signals_accepted.labels(signal_type=signal_type).inc()
        self.signal_store_size.set(store_size)

    def record_signal_rejected(self, kind: str):
        self.signals_rejected.labels(kind=kind).inc()

    def record_signal_evicted(self, reason: str, store_size: int, count: int = 1):
        if count > 0:
            self.signals_evicted.labels(reason=reason).inc(count)
        self.signal_store_size.set(store_size)

    def record_subscriber_failure(self):
        self.subscriber_failures.inc()


def start_metrics_server(port: int = 9090):
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
