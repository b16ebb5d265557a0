import asyncio
import copy
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterable, List, Optional

from api.metrics import metrics
from cache.ttl_cache import TTLCache
from config import config
from config.utils import config_section, get_config_section
from monitoring.async_utils import cancel_tasks, gather_isolated, run_periodic
from .http_client import UpstreamUnavailable
from .market_models import SOURCE_PRIMARY, SOURCE_SECONDARY, Ticker, base_symbol
from .providers import BingXTickerProvider, CoinGeckoProvider, FearGreedProvider, LongShortRatioProvider


logger = logging.getLogger(__name__)

OVERVIEW_KEY = 'market-overview'
TICKERS_KEY = 'top-tickers'
METRICS_KEY = 'market-metrics'

_DEFAULTS = {
    'refresh_interval_s': 60.0,
    'cache_ttl_s': 90.0,
    'request_timeout_s': 10.0,
    'top_coins_limit': 100,
    'symbols': ['BTC-USDT', 'ETH-USDT', 'BNB-USDT'],
}

_SENTIMENT_DEFAULTS = {
    'mild_change_pct': 2.0,
    'strong_change_pct': 5.0,
    'altseason_change_pct': 3.0,
}


@dataclass
class SourceResult:
    """Outcome of one upstream call within a cycle."""
    name: str
    ok: bool
    value: Any = None
    error: Optional[str] = None

    @classmethod
    def success(cls, name: str, value: Any) -> 'SourceResult':
        return cls(name=name, ok=True, value=value)

    @classmethod
    def failure(cls, name: str, reason: str) -> 'SourceResult':
        return cls(name=name, ok=False, error=reason)

    def value_or(self, default: Any) -> Any:
        return self.value if self.ok and self.value is not None else default


@dataclass(frozen=True)
class SentimentThresholds:
    mild_change_pct: float = 2.0
    strong_change_pct: float = 5.0
    altseason_change_pct: float = 3.0


def format_large_number(num: float) -> str:
    value = float(num or 0.0)
    for divisor in (1e12, 1e9, 1e6, 1e3):
        if value >= divisor:
            return f"{value / divisor:.2f}"
    return f"{value:.2f}"


def merge_tickers(primary: Iterable[Ticker], coins: Iterable[Dict[str, Any]], now: float) -> Dict[str, Ticker]:
    """Reduce primary tickers and the secondary coin list into one map.

    Primary price fields always win; the secondary only fills fields the
    primary does not carry, or supplies whole tickers for symbols the primary
    lacks. Inputs are not mutated, so repeating the merge is idempotent.
    """
    merged: Dict[str, Ticker] = {}
    for ticker in primary:
        symbol = base_symbol(ticker.symbol)
        merged[symbol] = replace(ticker, symbol=symbol, source=SOURCE_PRIMARY, last_update=now)

    for coin in coins:
        symbol = base_symbol(coin.get('symbol', ''))
        if not symbol:
            continue
        existing = merged.get(symbol)
        if existing is not None:
            if existing.source != SOURCE_PRIMARY or existing.enriched:
                # ranked lists can repeat a symbol; first (highest rank) wins
                continue
            merged[symbol] = replace(
                existing,
                market_cap=coin.get('market_cap'),
                market_cap_rank=coin.get('market_cap_rank'),
                change_7d_pct=coin.get('price_change_percentage_7d'),
                change_30d_pct=coin.get('price_change_percentage_30d'),
                ath=coin.get('ath'),
                ath_change_pct=coin.get('ath_change_percentage'),
                atl=coin.get('atl'),
                atl_change_pct=coin.get('atl_change_percentage'),
                name=existing.name or coin.get('name'),
                image=existing.image or coin.get('image'),
                enriched=True,
            )
        else:
            merged[symbol] = Ticker(
                symbol=symbol,
                price=float(coin.get('current_price') or 0.0),
                change_abs=float(coin.get('price_change_24h') or 0.0),
                change_pct=float(coin.get('price_change_percentage_24h') or 0.0),
                volume=float(coin.get('total_volume') or 0.0),
                quote_volume=float(coin.get('total_volume') or 0.0),
                high=float(coin.get('high_24h') or 0.0),
                low=float(coin.get('low_24h') or 0.0),
                market_cap=coin.get('market_cap'),
                market_cap_rank=coin.get('market_cap_rank'),
                change_7d_pct=coin.get('price_change_percentage_7d'),
                change_30d_pct=coin.get('price_change_percentage_30d'),
                ath=coin.get('ath'),
                ath_change_pct=coin.get('ath_change_percentage'),
                atl=coin.get('atl'),
                atl_change_pct=coin.get('atl_change_percentage'),
                name=coin.get('name'),
                image=coin.get('image'),
                source=SOURCE_SECONDARY,
                last_update=now,
            )
    return merged


def default_overview(now: float) -> Dict[str, Any]:
    return {
        'market_cap': 0.0,
        'market_cap_formatted': format_large_number(0.0),
        'market_cap_change_24h': 0.0,
        'market_cap_progress': 0.0,
        'volume_24h': 0.0,
        'volume_formatted': format_large_number(0.0),
        'volume_change_24h': 0.0,
        'volume_progress': 0.0,
        'active_coins': 0,
        'gainers_24h': 0,
        'losers_24h': 0,
        'approximate': False,
        'data_sources': [],
        'last_update': now,
    }


def default_long_short() -> Dict[str, Any]:
    return {
        'value': '---',
        'ratio': None,
        'accounts_percentage': '---',
        'long_account': 0.0,
        'short_account': 0.0,
        'timestamp': None,
        'data_source': 'error',
    }


def default_metrics(now: float) -> Dict[str, Any]:
    return {
        'btc_dominance': 0.0,
        'eth_dominance': 0.0,
        'fear_greed_index': {'value': 50, 'status': 'Neutral', 'source': 'default'},
        'altseason_index': {'value': 50, 'status': 'Neutral'},
        'market_sentiment': 'neutral',
        'long_short': default_long_short(),
        'last_update': now,
    }


def _progress(change_pct: float) -> float:
    return min(abs(change_pct) * 2, 100.0)


def build_overview(tickers: List[Ticker], global_data: Optional[Dict[str, Any]], now: float) -> Dict[str, Any]:
    gainers = sum(1 for t in tickers if t.change_pct > 0)
    losers = sum(1 for t in tickers if t.change_pct < 0)

    if global_data:
        change = float(global_data.get('market_cap_change_24h') or 0.0)
        market_cap = float(global_data.get('total_market_cap') or 0.0)
        volume = float(global_data.get('total_volume') or 0.0)
        return {
            'market_cap': market_cap,
            'market_cap_formatted': format_large_number(market_cap),
            'market_cap_change_24h': change,
            'market_cap_progress': _progress(change),
            'volume_24h': volume,
            'volume_formatted': format_large_number(volume),
            # upstream has no volume change; market cap change stands in
            'volume_change_24h': change,
            'volume_progress': _progress(change),
            'active_coins': int(global_data.get('active_cryptocurrencies') or 0),
            'gainers_24h': gainers,
            'losers_24h': losers,
            'approximate': False,
            'data_sources': sorted({t.source for t in tickers} | {SOURCE_SECONDARY}),
            'last_update': now,
        }

    if not tickers:
        return default_overview(now)

    total_cap = 0.0
    total_volume = 0.0
    total_change = 0.0
    for t in tickers:
        if not t.price:
            continue
        total_cap += t.market_cap if t.market_cap else t.price * t.volume * 1000
        total_volume += t.quote_volume or t.volume
        total_change += t.change_pct
    avg_change = total_change / len(tickers)
    return {
        'market_cap': total_cap,
        'market_cap_formatted': format_large_number(total_cap),
        'market_cap_change_24h': avg_change,
        'market_cap_progress': _progress(avg_change),
        'volume_24h': total_volume,
        'volume_formatted': format_large_number(total_volume),
        'volume_change_24h': avg_change,
        'volume_progress': _progress(avg_change),
        'active_coins': len(tickers),
        'gainers_24h': gainers,
        'losers_24h': losers,
        'approximate': True,
        'data_sources': sorted({t.source for t in tickers}),
        'last_update': now,
    }


def fallback_fear_greed(change_pct: float, thresholds: SentimentThresholds) -> Dict[str, Any]:
    strong = thresholds.strong_change_pct
    mild = thresholds.mild_change_pct
    if change_pct > strong:
        value, status = 75, 'Greed'
    elif change_pct > mild:
        value, status = 60, 'Greed'
    elif change_pct > -mild:
        value, status = 50, 'Neutral'
    elif change_pct > -strong:
        value, status = 40, 'Fear'
    else:
        value, status = 25, 'Extreme Fear'
    return {'value': value, 'status': status, 'source': 'derived'}


def altseason_index(change_pct: float, thresholds: SentimentThresholds) -> Dict[str, Any]:
    if change_pct > thresholds.altseason_change_pct:
        return {'value': 70, 'status': 'Altcoin Season'}
    if change_pct > 0:
        return {'value': 55, 'status': 'Neutral'}
    return {'value': 30, 'status': 'Bitcoin Season'}


def build_metrics(
    overview: Dict[str, Any],
    dominance: Optional[Dict[str, Any]],
    fear_greed: Optional[Dict[str, Any]],
    thresholds: SentimentThresholds,
    now: float,
) -> Dict[str, Any]:
    result = default_metrics(now)
    if dominance:
        result['btc_dominance'] = float(dominance.get('btc_dominance') or 0.0)
        result['eth_dominance'] = float(dominance.get('eth_dominance') or 0.0)

    change = float(overview.get('market_cap_change_24h') or 0.0)
    if fear_greed and fear_greed.get('value') is not None:
        result['fear_greed_index'] = dict(fear_greed)
    else:
        result['fear_greed_index'] = fallback_fear_greed(change, thresholds)
    result['altseason_index'] = altseason_index(change, thresholds)

    fg_value = result['fear_greed_index']['value']
    if fg_value > 70:
        result['market_sentiment'] = 'bullish'
    elif fg_value < 30:
        result['market_sentiment'] = 'bearish'
    else:
        result['market_sentiment'] = 'neutral'
    return result


class MarketAggregator:
    """Periodically reconcile several market data providers into the cache."""

    def __init__(
        self,
        cache: TTLCache,
        primary=None,
        secondary=None,
        dominance=None,
        fear_greed=None,
        long_short=None,
        config_obj=None,
        time_fn: Callable[[], float] = time.time,
    ):
        source = config_obj if config_obj is not None else config
        cfg = config_section(source, 'market', _DEFAULTS)
        self.cache = cache
        self.refresh_interval_s = float(cfg['refresh_interval_s'])
        self.cache_ttl_s = float(cfg['cache_ttl_s'])
        self.top_coins_limit = int(cfg['top_coins_limit'])
        self.symbols: List[str] = list(cfg['symbols'])
        timeout_s = float(cfg['request_timeout_s'])

        sentiment = {**_SENTIMENT_DEFAULTS, **{k: v for k, v in (cfg.get('sentiment') or {}).items() if v is not None}}
        self.thresholds = SentimentThresholds(
            mild_change_pct=float(sentiment['mild_change_pct']),
            strong_change_pct=float(sentiment['strong_change_pct']),
            altseason_change_pct=float(sentiment['altseason_change_pct']),
        )

        primary_cfg = get_config_section(cfg, 'primary')
        secondary_cfg = get_config_section(cfg, 'secondary')
        fear_greed_cfg = get_config_section(cfg, 'fear_greed')
        long_short_cfg = get_config_section(cfg, 'long_short')
        if primary is None:
            primary = BingXTickerProvider(
                base_url=primary_cfg.get('base_url') or 'https://open-api.bingx.com',
                api_key=primary_cfg.get('api_key') or None,
                timeout_s=timeout_s,
            )
        if secondary is None:
            secondary = CoinGeckoProvider(
                base_url=secondary_cfg.get('base_url') or 'https://api.coingecko.com/api/v3',
                timeout_s=timeout_s,
            )
        if fear_greed is None:
            fear_greed = FearGreedProvider(
                base_url=fear_greed_cfg.get('base_url') or 'https://api.alternative.me',
                timeout_s=timeout_s,
            )
        if long_short is None:
            long_short = LongShortRatioProvider(
                binance_base_url=long_short_cfg.get('binance_base_url') or 'https://fapi.binance.com',
                okx_base_url=long_short_cfg.get('okx_base_url') or 'https://www.okx.com',
                symbol=long_short_cfg.get('symbol') or 'BTCUSDT',
                okx_ccy=long_short_cfg.get('okx_ccy') or 'BTC',
                timeout_s=timeout_s,
            )
        self.primary = primary
        self.secondary = secondary
        self.dominance = dominance if dominance is not None else secondary
        self.fear_greed = fear_greed
        self.long_short = long_short

        self._time = time_fn
        self._refresh_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self.running = False
        self.last_results: Dict[str, SourceResult] = {}
        self.last_refresh: Optional[float] = None

    async def start(self):
        if self.running:
            return
        self.running = True
        self._task = asyncio.create_task(
            run_periodic('market_refresh', self.refresh_interval_s, self.refresh,
                         lambda: self.running, run_immediately=True)
        )
        logger.info(
            "Market aggregator started (%s symbols, every %.0fs)",
            len(self.symbols),
            self.refresh_interval_s,
        )

    async def stop(self):
        if not self.running:
            return
        self.running = False
        await cancel_tasks([self._task])
        self._task = None
        providers = (self.primary, self.secondary, self.dominance, self.fear_greed, self.long_short)
        for provider in {id(p): p for p in providers}.values():
            close = getattr(provider, 'close', None)
            if close is not None:
                await close()
        logger.info("Market aggregator stopped")

    async def _fetch_all(self) -> Dict[str, SourceResult]:
        calls = [
            ('primary', lambda: self.primary.get_tickers(self.symbols)),
            ('secondary_global', self.secondary.get_global),
            ('secondary_coins', lambda: self.secondary.get_top_coins(self.top_coins_limit)),
            ('dominance', self.dominance.get_dominance),
            ('fear_greed', self.fear_greed.get_fear_greed),
            ('long_short', self.long_short.get_long_short_ratio),
        ]
        results: Dict[str, SourceResult] = {}
        for name, value, error in await gather_isolated(calls):
            if error is None:
                results[name] = SourceResult.success(name, value)
                metrics.record_upstream(name, True)
                continue
            reason = str(error) if isinstance(error, UpstreamUnavailable) else f"{type(error).__name__}: {error}"
            logger.warning("Upstream %s unavailable: %s", name, reason)
            metrics.record_upstream(name, False)
            results[name] = SourceResult.failure(name, reason)
        return results

    def _reduce(self, results: Dict[str, SourceResult], now: float) -> Dict[str, Any]:
        merged = merge_tickers(
            results['primary'].value_or([]),
            results['secondary_coins'].value_or([]),
            now,
        )
        tickers = list(merged.values())
        overview = build_overview(tickers, results['secondary_global'].value_or(None), now)
        market_metrics = build_metrics(
            overview,
            results['dominance'].value_or(None),
            results['fear_greed'].value_or(None),
            self.thresholds,
            now,
        )
        market_metrics['long_short'] = results['long_short'].value_or(default_long_short())
        return {'tickers': tickers, 'overview': overview, 'metrics': market_metrics}

    async def refresh(self) -> bool:
        """Run one aggregation cycle and write the three cache entries.

        Never raises; returns False only when the cycle itself broke.
        """
        started = time.monotonic()
        try:
            results = await self._fetch_all()
            now = self._time()
            snapshot = self._reduce(results, now)
        except Exception:
            logger.exception("Market data update failed")
            return False

        ttl = self.cache_ttl_s
        self.cache.set(OVERVIEW_KEY, snapshot['overview'], ttl)
        self.cache.set(TICKERS_KEY, [t.to_dict() for t in snapshot['tickers']], ttl)
        self.cache.set(METRICS_KEY, snapshot['metrics'], ttl)
        self.last_results = results
        self.last_refresh = now

        by_source: Dict[str, int] = {SOURCE_PRIMARY: 0, SOURCE_SECONDARY: 0}
        for t in snapshot['tickers']:
            by_source[t.source] = by_source.get(t.source, 0) + 1
        metrics.record_market_refresh(time.monotonic() - started, by_source)
        failed = [name for name, r in results.items() if not r.ok]
        logger.info(
            "Market data updated: %s tickers%s",
            len(snapshot['tickers']),
            f" (unavailable: {', '.join(failed)})" if failed else "",
        )
        return True

    async def _read(self, key: str, default_fn: Callable[[], Any]) -> Any:
        cached = self.cache.get(key)
        if cached is not None:
            return copy.deepcopy(cached)
        async with self._refresh_lock:
            # another reader may have refreshed while we waited
            if not self.cache.has(key):
                await self.refresh()
        cached = self.cache.get(key)
        return copy.deepcopy(cached) if cached is not None else default_fn()

    async def get_overview(self) -> Dict[str, Any]:
        return await self._read(OVERVIEW_KEY, lambda: default_overview(self._time()))

    async def get_tickers(self) -> List[Dict[str, Any]]:
        return await self._read(TICKERS_KEY, list)

    async def get_metrics(self) -> Dict[str, Any]:
        return await self._read(METRICS_KEY, lambda: default_metrics(self._time()))

    async def get_top_gainers(self, limit: int = 10) -> List[Dict[str, Any]]:
        tickers = [t for t in await self.get_tickers() if t['change_pct'] > 0]
        tickers.sort(key=lambda t: t['change_pct'], reverse=True)
        return tickers[:limit]

    async def get_top_losers(self, limit: int = 10) -> List[Dict[str, Any]]:
        tickers = [t for t in await self.get_tickers() if t['change_pct'] < 0]
        tickers.sort(key=lambda t: t['change_pct'])
        return tickers[:limit]

    async def get_coins(self, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        tickers = await self.get_tickers()
        return tickers[offset:offset + limit]

    async def get_dominance(self) -> Dict[str, float]:
        market_metrics = await self.get_metrics()
        return {'btc': market_metrics['btc_dominance'], 'eth': market_metrics['eth_dominance']}

    async def get_fear_greed(self) -> Dict[str, Any]:
        market_metrics = await self.get_metrics()
        return market_metrics['fear_greed_index']

    async def get_long_short_ratio(self) -> Dict[str, Any]:
        market_metrics = await self.get_metrics()
        return market_metrics.get('long_short') or default_long_short()
