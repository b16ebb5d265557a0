"""Upstream market data providers.

Each provider wraps one REST API and returns normalized Python structures.
Errors are raised as ``UpstreamUnavailable``; isolating them per cycle is the
aggregator's job.
"""
import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from .http_client import RESTClient, UpstreamUnavailable
from .market_models import SOURCE_PRIMARY, Ticker, base_symbol, to_float, to_optional_float


logger = logging.getLogger(__name__)


class BingXTickerProvider:
    """Primary venue: 24h spot ticker statistics per symbol."""

    source = 'bingx'

    def __init__(self, base_url: str = 'https://open-api.bingx.com', api_key: Optional[str] = None,
                 timeout_s: float = 10.0):
        headers = {'X-BX-APIKEY': api_key} if api_key else None
        self._rest = RESTClient(self.source, base_url, timeout_s=timeout_s, headers=headers)

    async def get_ticker(self, symbol: str) -> Ticker:
        raw = await self._rest.get(
            '/openApi/spot/v1/ticker/24hr',
            params={'symbol': symbol, 'timestamp': int(time.time() * 1000)},
        )
        if not isinstance(raw, dict) or raw.get('code') not in (0, '0') or not raw.get('data'):
            msg = raw.get('msg') if isinstance(raw, dict) else 'unexpected payload'
            raise UpstreamUnavailable(self.source, f"ticker {symbol}: {msg}")
        data = raw['data']
        if isinstance(data, list):
            data = data[0]
        return self._transform(symbol, data)

    def _transform(self, requested: str, data: Dict[str, Any]) -> Ticker:
        return Ticker(
            symbol=base_symbol(data.get('symbol') or requested),
            price=to_float(data.get('lastPrice')),
            change_abs=to_float(data.get('priceChange')),
            change_pct=to_float(str(data.get('priceChangePercent', '0')).rstrip('%')),
            volume=to_float(data.get('volume')),
            quote_volume=to_float(data.get('quoteVolume')),
            high=to_float(data.get('highPrice')),
            low=to_float(data.get('lowPrice')),
            open=to_float(data.get('openPrice')),
            bid=to_optional_float(data.get('bidPrice')),
            ask=to_optional_float(data.get('askPrice')),
            source=SOURCE_PRIMARY,
        )

    async def get_tickers(self, symbols: Sequence[str]) -> List[Ticker]:
        results = await asyncio.gather(*(self.get_ticker(s) for s in symbols), return_exceptions=True)
        tickers: List[Ticker] = []
        for symbol, result in zip(symbols, results):
            if isinstance(result, Exception):
                logger.debug("BingX ticker %s failed: %s", symbol, result)
                continue
            tickers.append(result)
        if not tickers or all(not t.price for t in tickers):
            raise UpstreamUnavailable(self.source, 'no valid ticker data')
        return tickers

    async def close(self):
        await self._rest.close()


class CoinGeckoProvider:
    """Secondary aggregator: global totals, ranked coin list and dominance."""

    source = 'coingecko'

    def __init__(self, base_url: str = 'https://api.coingecko.com/api/v3', timeout_s: float = 10.0):
        self._rest = RESTClient(self.source, base_url, timeout_s=timeout_s)

    async def get_global(self) -> Dict[str, Any]:
        raw = await self._rest.get('/global')
        data = raw.get('data') if isinstance(raw, dict) else None
        if not isinstance(data, dict):
            raise UpstreamUnavailable(self.source, 'global payload missing data')
        return {
            'total_market_cap': to_float((data.get('total_market_cap') or {}).get('usd')),
            'total_volume': to_float((data.get('total_volume') or {}).get('usd')),
            'market_cap_percentage': data.get('market_cap_percentage') or {},
            'market_cap_change_24h': to_float(data.get('market_cap_change_percentage_24h_usd')),
            'active_cryptocurrencies': int(data.get('active_cryptocurrencies') or 0),
            'markets': int(data.get('markets') or 0),
            'last_updated': data.get('updated_at'),
        }

    async def get_top_coins(self, limit: int = 100, currency: str = 'usd') -> List[Dict[str, Any]]:
        raw = await self._rest.get('/coins/markets', params={
            'vs_currency': currency,
            'order': 'market_cap_desc',
            'per_page': limit,
            'page': 1,
            'sparkline': 'false',
            'price_change_percentage': '24h,7d,30d',
        })
        if not isinstance(raw, list):
            raise UpstreamUnavailable(self.source, 'coin list is not an array')
        coins = []
        for coin in raw:
            if not isinstance(coin, dict) or not coin.get('symbol'):
                continue
            coins.append({
                'id': coin.get('id'),
                'symbol': str(coin['symbol']).upper(),
                'name': coin.get('name'),
                'image': coin.get('image'),
                'current_price': to_float(coin.get('current_price')),
                'market_cap': to_optional_float(coin.get('market_cap')),
                'market_cap_rank': coin.get('market_cap_rank'),
                'total_volume': to_float(coin.get('total_volume')),
                'high_24h': to_float(coin.get('high_24h')),
                'low_24h': to_float(coin.get('low_24h')),
                'price_change_24h': to_float(coin.get('price_change_24h')),
                'price_change_percentage_24h': to_float(coin.get('price_change_percentage_24h')),
                'price_change_percentage_7d': to_optional_float(coin.get('price_change_percentage_7d_in_currency')),
                'price_change_percentage_30d': to_optional_float(coin.get('price_change_percentage_30d_in_currency')),
                'ath': to_optional_float(coin.get('ath')),
                'ath_change_percentage': to_optional_float(coin.get('ath_change_percentage')),
                'atl': to_optional_float(coin.get('atl')),
                'atl_change_percentage': to_optional_float(coin.get('atl_change_percentage')),
            })
        return coins

    async def get_dominance(self) -> Dict[str, float]:
        global_data = await self.get_global()
        pct = global_data['market_cap_percentage']
        return {
            'btc_dominance': to_float(pct.get('btc')),
            'eth_dominance': to_float(pct.get('eth')),
            'total_market_cap': global_data['total_market_cap'],
        }

    async def close(self):
        await self._rest.close()


def classify_fear_greed(value: int) -> str:
    if value >= 76:
        return 'Extreme Greed'
    if value >= 56:
        return 'Greed'
    if value >= 46:
        return 'Neutral'
    if value >= 26:
        return 'Fear'
    return 'Extreme Fear'


class FearGreedProvider:
    source = 'alternative_me'

    def __init__(self, base_url: str = 'https://api.alternative.me', timeout_s: float = 10.0):
        self._rest = RESTClient(self.source, base_url, timeout_s=timeout_s)

    async def get_fear_greed(self) -> Dict[str, Any]:
        raw = await self._rest.get('/fng/')
        entries = raw.get('data') if isinstance(raw, dict) else None
        if not entries:
            raise UpstreamUnavailable(self.source, 'invalid fear & greed payload')
        try:
            value = int(entries[0]['value'])
        except (KeyError, TypeError, ValueError) as exc:
            raise UpstreamUnavailable(self.source, f'invalid fear & greed value: {exc}') from exc
        return {'value': value, 'status': classify_fear_greed(value), 'source': self.source}

    async def close(self):
        await self._rest.close()


def format_long_short(ratio: float, long_account: float, short_account: float,
                      data_source: str, timestamp: Any = None) -> Dict[str, Any]:
    return {
        'value': f"{ratio:.2f}",
        'ratio': ratio,
        'accounts_percentage': f"{long_account * 100:.1f}% / {short_account * 100:.1f}%",
        'long_account': long_account,
        'short_account': short_account,
        'timestamp': timestamp,
        'data_source': data_source,
    }


class LongShortRatioProvider:
    """Global long/short account ratio from Binance futures, with OKX as fallback."""

    source = 'long_short'

    def __init__(
        self,
        binance_base_url: str = 'https://fapi.binance.com',
        okx_base_url: str = 'https://www.okx.com',
        symbol: str = 'BTCUSDT',
        okx_ccy: str = 'BTC',
        period: str = '5m',
        timeout_s: float = 10.0,
    ):
        self.symbol = symbol
        self.okx_ccy = okx_ccy
        self.period = period
        self._binance = RESTClient('binance_futures', binance_base_url, timeout_s=timeout_s)
        self._okx = RESTClient('okx_futures', okx_base_url, timeout_s=timeout_s)

    async def get_binance_ratio(self) -> Dict[str, Any]:
        raw = await self._binance.get('/futures/data/globalLongShortAccountRatio', params={
            'symbol': self.symbol,
            'period': self.period,
            'limit': 1,
        })
        if not isinstance(raw, list) or not raw or not isinstance(raw[0], dict):
            raise UpstreamUnavailable('binance_futures', 'empty long/short payload')
        row = raw[0]
        ratio = to_optional_float(row.get('longShortRatio'))
        if ratio is None:
            raise UpstreamUnavailable('binance_futures', 'long/short ratio missing')
        return format_long_short(
            ratio,
            to_float(row.get('longAccount')),
            to_float(row.get('shortAccount')),
            'binance_futures',
            row.get('timestamp'),
        )

    async def get_okx_ratio(self) -> Dict[str, Any]:
        raw = await self._okx.get('/api/v5/rubik/stat/contracts/long-short-account-ratio', params={
            'ccy': self.okx_ccy,
            'period': self.period.upper(),
        })
        rows = raw.get('data') if isinstance(raw, dict) and raw.get('code') in (0, '0') else None
        if not rows:
            raise UpstreamUnavailable('okx_futures', 'empty long/short payload')
        ts, ratio_text = rows[0][0], rows[0][1]
        ratio = to_optional_float(ratio_text)
        if ratio is None or ratio <= 0:
            raise UpstreamUnavailable('okx_futures', f'invalid long/short ratio {ratio_text!r}')
        long_account = ratio / (1.0 + ratio)
        return format_long_short(ratio, long_account, 1.0 - long_account, 'okx_futures', ts)

    async def get_long_short_ratio(self) -> Dict[str, Any]:
        try:
            return await self.get_binance_ratio()
        except (UpstreamUnavailable, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Binance long/short ratio unavailable, trying OKX: %s", e)
        return await self.get_okx_ratio()

    async def close(self):
        await self._binance.close()
        await self._okx.close()
