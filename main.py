import asyncio
import logging
import signal
import time
from typing import Any, Callable, Dict, List, Optional

from analytics.liquidations import LiquidationAggregator
from api.alerts import AlertWebhook
from api.metrics import start_metrics_server
from cache.ttl_cache import TTLCache
from config import config
from ingest.market_aggregator import MarketAggregator
from monitoring.async_utils import cancel_tasks, gather_isolated, run_periodic
from monitoring.logging_utils import setup_logging
from signals.webhook_store import SignalStore


logger = logging.getLogger(__name__)

SIGNAL_CLEANUP_INTERVAL_S = 3600.0
PLACEHOLDER = '---'


def _part(results: Dict[str, Any], name: str, pick: Callable[[Any], Any], default: Any) -> Any:
    value, error = results[name]
    if error is not None:
        logger.warning("Overview part %s unavailable: %s", name, error)
        return default
    return pick(value)


class MarketDataCore:
    """Composition root: builds the components and owns their lifecycles."""

    def __init__(
        self,
        config_obj=None,
        cache: Optional[TTLCache] = None,
        market: Optional[MarketAggregator] = None,
        liquidations: Optional[LiquidationAggregator] = None,
        signals: Optional[SignalStore] = None,
        alert_webhook: Optional[AlertWebhook] = None,
    ):
        self.config = config_obj if config_obj is not None else config
        self.cache = cache if cache is not None else TTLCache(self.config)
        self.market = market if market is not None else MarketAggregator(self.cache, config_obj=self.config)
        self.liquidations = liquidations if liquidations is not None else LiquidationAggregator(config_obj=self.config)
        self.signals = signals if signals is not None else SignalStore(self.config)
        self.alert_webhook = alert_webhook
        if self.alert_webhook is not None:
            self.signals.subscribe(self.alert_webhook)
        self._cleanup_task: Optional[asyncio.Task] = None
        self.running = False

    async def start(self):
        if self.running:
            return
        self.running = True
        await self.cache.start()
        await self.market.start()
        await self.liquidations.start()
        self._cleanup_task = asyncio.create_task(
            run_periodic('signal_cleanup', SIGNAL_CLEANUP_INTERVAL_S,
                         self.signals.cleanup_old_signals, lambda: self.running)
        )
        logger.info("Market data core started")

    async def stop(self):
        if not self.running:
            return
        self.running = False
        await cancel_tasks([self._cleanup_task])
        self._cleanup_task = None
        await self.liquidations.stop()
        await self.market.stop()
        await self.cache.stop()
        logger.info("Market data core stopped")

    # market
    async def get_tickers(self) -> List[Dict[str, Any]]:
        return await self.market.get_tickers()

    async def get_overview(self) -> Dict[str, Any]:
        return await self.market.get_overview()

    async def get_metrics(self) -> Dict[str, Any]:
        return await self.market.get_metrics()

    async def get_top_gainers(self, limit: int = 10) -> List[Dict[str, Any]]:
        return await self.market.get_top_gainers(limit)

    async def get_top_losers(self, limit: int = 10) -> List[Dict[str, Any]]:
        return await self.market.get_top_losers(limit)

    async def get_long_short_ratio(self) -> Dict[str, Any]:
        return await self.market.get_long_short_ratio()

    async def get_comprehensive_overview(self) -> Dict[str, Any]:
        """Dashboard composite of market, sentiment, liquidation and positioning data.

        Each part is read independently; a failed part shows a placeholder
        while the rest still render.
        """
        calls = [
            ('overview', self.market.get_overview),
            ('dominance', self.market.get_dominance),
            ('fear_greed', self.market.get_fear_greed),
            ('metrics', self.market.get_metrics),
            ('liquidations', self.liquidations.get_aggregate),
            ('long_short', self.market.get_long_short_ratio),
        ]
        results = {name: (value, error) for name, value, error in await gather_isolated(calls)}
        return {
            'market_cap': _part(results, 'overview', lambda o: o['market_cap'], 0),
            'market_cap_formatted': _part(results, 'overview', lambda o: o['market_cap_formatted'], PLACEHOLDER),
            'volume_24h': _part(results, 'overview', lambda o: o['volume_24h'], 0),
            'volume_formatted': _part(results, 'overview', lambda o: o['volume_formatted'], PLACEHOLDER),
            'fear_greed': _part(results, 'fear_greed', lambda f: f['value'], PLACEHOLDER),
            'altseason': _part(results, 'metrics', lambda m: m['altseason_index']['value'], PLACEHOLDER),
            'btc_dominance': _part(results, 'dominance', lambda d: d['btc'], PLACEHOLDER),
            'eth_dominance': _part(results, 'dominance', lambda d: d['eth'], PLACEHOLDER),
            'total_liquidations_24h': _part(results, 'liquidations', lambda agg: agg['total_formatted'], PLACEHOLDER),
            'liquidations_data_source': _part(results, 'liquidations', lambda agg: 'streams', 'error'),
            'long_short_ratio': _part(results, 'long_short', lambda r: r['value'], PLACEHOLDER),
            'long_short_accounts_percentage': _part(
                results, 'long_short', lambda r: r['accounts_percentage'], PLACEHOLDER),
            'long_short_data_source': _part(results, 'long_short', lambda r: r['data_source'], 'error'),
            'last_update': time.time(),
            'data_sources': ['bingx', 'coingecko', 'alternative_me', 'binance', 'okx'],
        }

    # liquidations
    def get_liquidations(self) -> Dict[str, Any]:
        return self.liquidations.get_aggregate()

    def get_venue_liquidations(self, venue: str) -> Dict[str, Any]:
        return self.liquidations.get_venue_aggregate(venue)

    def get_liquidation_status(self) -> Dict[str, Any]:
        return self.liquidations.get_status()

    # signals
    async def submit_signal(self, payload: Dict[str, Any], signature: Optional[str]) -> str:
        return await self.signals.submit(payload, signature)

    def get_recent_signals(self, limit: int = 50, signal_type: Optional[str] = None,
                           symbol: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.signals.get_recent(limit, signal_type, symbol)

    def get_signal_stats(self) -> Dict[str, Any]:
        return self.signals.get_stats()

    def subscribe(self, callback: Callable[[Any], Any]):
        self.signals.subscribe(callback)

    def unsubscribe(self, callback: Callable[[Any], Any]):
        self.signals.unsubscribe(callback)

    def get_status(self) -> Dict[str, Any]:
        return {
            'running': self.running,
            'cache': self.cache.stats(),
            'market_last_refresh': self.market.last_refresh,
            'liquidations': self.liquidations.get_status(),
            'signals': self.signals.get_service_info(),
        }


async def main():
    monitoring_cfg = config.monitoring
    start_metrics_server(int(monitoring_cfg.get('prometheus_port', 9090)))

    core = MarketDataCore(config, alert_webhook=AlertWebhook())
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            logger.debug("Signal handlers unavailable on this platform")

    await core.start()
    try:
        await stop_event.wait()
    except asyncio.CancelledError:
        logger.info("System shutting down on interrupt")
    finally:
        await core.stop()


if __name__ == "__main__":
    setup_logging(config.monitoring.get('log_level', 'INFO'))
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
