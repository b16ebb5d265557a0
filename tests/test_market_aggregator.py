import asyncio
import sys

sys.path.insert(0, '.')

from cache.ttl_cache import TTLCache
from ingest.http_client import UpstreamUnavailable
from ingest.market_aggregator import (
    METRICS_KEY,
    OVERVIEW_KEY,
    TICKERS_KEY,
    MarketAggregator,
    SentimentThresholds,
    build_metrics,
    build_overview,
    default_long_short,
    fallback_fear_greed,
    merge_tickers,
)
from ingest.market_models import SOURCE_PRIMARY, SOURCE_SECONDARY, Ticker
from ingest.providers import classify_fear_greed, format_long_short


COINS = [
    {'symbol': 'BTC', 'name': 'Bitcoin', 'current_price': 49000.0, 'market_cap': 1.0e12,
     'market_cap_rank': 1, 'price_change_percentage_24h': 1.0, 'total_volume': 3.0e10},
    {'symbol': 'ETH', 'name': 'Ethereum', 'current_price': 3000.0, 'market_cap': 3.6e11,
     'market_cap_rank': 2, 'price_change_percentage_24h': -2.5, 'total_volume': 1.5e10},
]


class FakePrimary:
    def __init__(self, tickers=None, error=None):
        self.tickers = tickers or []
        self.error = error
        self.calls = 0
        self.closed = False

    async def get_tickers(self, symbols):
        self.calls += 1
        if self.error:
            raise self.error
        return list(self.tickers)

    async def close(self):
        self.closed = True


class FakeSecondary:
    def __init__(self, coins=None, global_data=None, dominance=None, fail=False):
        self.coins = coins or []
        self.global_data = global_data
        self.dominance = dominance
        self.fail = fail

    async def get_global(self):
        if self.fail or self.global_data is None:
            raise UpstreamUnavailable('coingecko', 'HTTP 429')
        return self.global_data

    async def get_top_coins(self, limit=100):
        if self.fail:
            raise UpstreamUnavailable('coingecko', 'HTTP 429')
        return list(self.coins)[:limit]

    async def get_dominance(self):
        if self.fail or self.dominance is None:
            raise UpstreamUnavailable('coingecko', 'HTTP 429')
        return self.dominance


class FakeFearGreed:
    def __init__(self, value=None):
        self.value = value

    async def get_fear_greed(self):
        if self.value is None:
            raise UpstreamUnavailable('alternative_me', 'timeout')
        return {'value': self.value, 'status': classify_fear_greed(self.value), 'source': 'alternative_me'}


class FakeLongShort:
    def __init__(self, ratio=None):
        self.ratio = ratio

    async def get_long_short_ratio(self):
        if self.ratio is None:
            raise UpstreamUnavailable('binance_futures', 'HTTP 451')
        long_account = self.ratio / (1 + self.ratio)
        return format_long_short(self.ratio, long_account, 1 - long_account, 'binance_futures')


def _btc_primary():
    return Ticker(symbol='BTC-USDT', price=50000.0, change_pct=2.0, volume=1000.0, quote_volume=5.0e7)


def _aggregator(primary, secondary, fear_greed, now=1000.0, long_short=None):
    cache = TTLCache({'cache': {}}, time_fn=lambda: now)
    agg = MarketAggregator(
        cache,
        primary=primary,
        secondary=secondary,
        fear_greed=fear_greed,
        long_short=long_short or FakeLongShort(),
        config_obj={'market': {'cache_ttl_s': 90}},
        time_fn=lambda: now,
    )
    return cache, agg


def test_merge_keeps_primary_price_and_adds_secondary_fields():
    merged = merge_tickers([_btc_primary()], COINS, now=10.0)
    assert sorted(merged) == ['BTC', 'ETH']

    btc = merged['BTC']
    assert btc.price == 50000.0
    assert btc.market_cap == 1.0e12
    assert btc.source == SOURCE_PRIMARY
    assert btc.enriched is True

    eth = merged['ETH']
    assert eth.price == 3000.0
    assert eth.source == SOURCE_SECONDARY
    assert eth.change_pct == -2.5


def test_merge_is_idempotent():
    first = merge_tickers([_btc_primary()], COINS, now=10.0)
    second = merge_tickers([_btc_primary()], COINS, now=10.0)
    assert first == second


def test_merge_ignores_repeated_secondary_symbol():
    coins = COINS + [{'symbol': 'BTC', 'current_price': 1.0, 'market_cap': 5.0}]
    merged = merge_tickers([_btc_primary()], coins, now=10.0)
    assert merged['BTC'].market_cap == 1.0e12


def test_overview_falls_back_to_tickers_when_global_missing():
    tickers = list(merge_tickers([_btc_primary()], COINS, now=10.0).values())
    overview = build_overview(tickers, None, now=10.0)
    assert overview['approximate'] is True
    assert overview['active_coins'] == 2
    assert overview['gainers_24h'] == 1
    assert overview['losers_24h'] == 1
    assert overview['market_cap'] == 1.0e12 + 3.6e11


def test_overview_uses_global_data():
    global_data = {'total_market_cap': 2.5e12, 'total_volume': 9.0e10,
                   'market_cap_change_24h': 1.2, 'active_cryptocurrencies': 12000}
    overview = build_overview([], global_data, now=10.0)
    assert overview['approximate'] is False
    assert overview['market_cap'] == 2.5e12
    assert overview['market_cap_formatted'] == '2.50'
    assert overview['active_coins'] == 12000


def test_fallback_sentiment_bands():
    t = SentimentThresholds()
    assert fallback_fear_greed(6.0, t)['value'] == 75
    assert fallback_fear_greed(3.0, t)['value'] == 60
    assert fallback_fear_greed(0.0, t)['value'] == 50
    assert fallback_fear_greed(-3.0, t)['value'] == 40
    assert fallback_fear_greed(-6.0, t)['value'] == 25


def test_sentiment_thresholds_are_configurable():
    t = SentimentThresholds(mild_change_pct=0.5, strong_change_pct=1.0)
    assert fallback_fear_greed(0.8, t)['value'] == 60
    assert fallback_fear_greed(1.5, t)['value'] == 75


def test_metrics_prefer_upstream_fear_greed():
    overview = {'market_cap_change_24h': -8.0}
    upstream = {'value': 80, 'status': 'Extreme Greed', 'source': 'alternative_me'}
    result = build_metrics(overview, {'btc_dominance': 52.1, 'eth_dominance': 17.0}, upstream,
                           SentimentThresholds(), now=1.0)
    assert result['fear_greed_index']['value'] == 80
    assert result['market_sentiment'] == 'bullish'
    assert result['btc_dominance'] == 52.1
    assert result['altseason_index']['status'] == 'Bitcoin Season'


def test_refresh_writes_all_cache_entries():
    async def run():
        cache, agg = _aggregator(
            FakePrimary([_btc_primary()]),
            FakeSecondary(COINS, dominance={'btc_dominance': 50.0, 'eth_dominance': 18.0}),
            FakeFearGreed(20),
        )
        assert await agg.refresh() is True
        assert cache.has(OVERVIEW_KEY) and cache.has(TICKERS_KEY) and cache.has(METRICS_KEY)
        assert not agg.last_results['secondary_global'].ok

        tickers = await agg.get_tickers()
        assert {t['symbol'] for t in tickers} == {'BTC', 'ETH'}
        market_metrics = await agg.get_metrics()
        assert market_metrics['fear_greed_index']['value'] == 20
        assert market_metrics['market_sentiment'] == 'bearish'
        assert (await agg.get_dominance()) == {'btc': 50.0, 'eth': 18.0}

    asyncio.run(run())


def test_total_upstream_failure_yields_defaults():
    async def run():
        _, agg = _aggregator(
            FakePrimary(error=UpstreamUnavailable('bingx', 'down')),
            FakeSecondary(fail=True),
            FakeFearGreed(None),
        )
        overview = await agg.get_overview()
        assert overview['market_cap'] == 0.0
        assert overview['active_coins'] == 0
        market_metrics = await agg.get_metrics()
        assert market_metrics['fear_greed_index']['value'] == 50
        assert await agg.get_tickers() == []

    asyncio.run(run())


def test_cache_miss_refreshes_once_for_concurrent_readers():
    async def run():
        primary = FakePrimary([_btc_primary()])
        _, agg = _aggregator(primary, FakeSecondary(COINS), FakeFearGreed(55))
        results = await asyncio.gather(*(agg.get_tickers() for _ in range(5)))
        assert all(len(r) == 2 for r in results)
        assert primary.calls == 1

    asyncio.run(run())


def test_gainers_losers_and_paging():
    async def run():
        _, agg = _aggregator(FakePrimary([_btc_primary()]), FakeSecondary(COINS), FakeFearGreed(55))
        gainers = await agg.get_top_gainers()
        losers = await agg.get_top_losers()
        assert [t['symbol'] for t in gainers] == ['BTC']
        assert [t['symbol'] for t in losers] == ['ETH']
        assert len(await agg.get_coins(limit=1, offset=1)) == 1

    asyncio.run(run())


def test_stop_closes_providers():
    async def run():
        primary = FakePrimary([_btc_primary()])
        _, agg = _aggregator(primary, FakeSecondary(COINS), FakeFearGreed(55))
        await agg.start()
        await asyncio.sleep(0)
        await agg.stop()
        assert primary.closed is True
        assert agg.running is False

    asyncio.run(run())


def test_readers_get_copies_of_the_cached_snapshot():
    async def run():
        _, agg = _aggregator(FakePrimary([_btc_primary()]), FakeSecondary(COINS), FakeFearGreed(55))
        tickers = await agg.get_tickers()
        tickers[0]['price'] = -1.0
        tickers.clear()
        overview = await agg.get_overview()
        overview['market_cap'] = 'corrupted'
        market_metrics = await agg.get_metrics()
        market_metrics['fear_greed_index']['value'] = 0

        again = await agg.get_tickers()
        assert len(again) == 2
        assert all(t['price'] > 0 for t in again)
        assert (await agg.get_overview())['market_cap'] != 'corrupted'
        assert (await agg.get_fear_greed())['value'] == 55

    asyncio.run(run())


def test_long_short_ratio_is_part_of_the_snapshot():
    async def run():
        _, agg = _aggregator(FakePrimary([_btc_primary()]), FakeSecondary(COINS), FakeFearGreed(55),
                             long_short=FakeLongShort(1.5))
        ratio = await agg.get_long_short_ratio()
        assert ratio['value'] == '1.50'
        assert ratio['accounts_percentage'] == '60.0% / 40.0%'
        assert ratio['data_source'] == 'binance_futures'
        assert agg.last_results['long_short'].ok

    asyncio.run(run())


def test_long_short_failure_falls_back_to_placeholder():
    async def run():
        _, agg = _aggregator(FakePrimary([_btc_primary()]), FakeSecondary(COINS), FakeFearGreed(55))
        assert await agg.get_long_short_ratio() == default_long_short()
        assert not agg.last_results['long_short'].ok
        assert len(await agg.get_tickers()) == 2

    asyncio.run(run())
