import asyncio
import sys

sys.path.insert(0, '.')

import pytest

from errors import ProviderError
from ingest.price_feeds import CoinGeckoClient, GeckoTerminalClient, JupiterPriceClient, MarketDataProvider
from tests.fakes import JUP, SleepRecorder


class FakeHTTP:
    """Replays canned payloads; an exception in the script is raised instead."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []
        self.closed = False

    async def get(self, path='', params=None):
        self.calls.append((path, params))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self):
        self.closed = True


def _provider(coingecko=None, jupiter=None, gecko=None):
    cg = CoinGeckoClient(coingecko or FakeHTTP(), retries=2)
    cg._sleep = SleepRecorder()
    return MarketDataProvider(cg, JupiterPriceClient(jupiter or FakeHTTP()), GeckoTerminalClient(gecko or FakeHTTP()))


def test_coingecko_series_is_trimmed_to_limit():
    http = FakeHTTP({'prices': [[1, 10.0], [2, 11.0], [3, '12.5'], [4, None]]})
    provider = _provider(coingecko=http)

    series = asyncio.run(provider.get_series('bitcoin', '5m', 2))
    assert series == [11.0, 12.5]
    path, params = http.calls[0]
    assert path == '/coins/bitcoin/market_chart'
    assert params['vs_currency'] == 'usd'


def test_coingecko_retries_then_degrades_to_empty():
    http = FakeHTTP(ProviderError('429', 'coingecko', status=429), ProviderError('429', 'coingecko', status=429))
    provider = _provider(coingecko=http)

    assert asyncio.run(provider.get_series('bitcoin', '5m', 20)) == []
    assert len(http.calls) == 2
    assert provider.coingecko._sleep.delays == [1.0]


def test_coingecko_recovers_after_transient_failure():
    http = FakeHTTP(ProviderError('timeout', 'coingecko'), {'prices': [[1, 5.0]]})
    provider = _provider(coingecko=http)
    assert asyncio.run(provider.get_series('solana', '1h', 10)) == [5.0]


@pytest.mark.parametrize('payload, expected', [
    ({JUP.mint: {'usdPrice': 0.61}}, 0.61),
    ({JUP.mint: {'usdPrice': 0}}, None),
    ({JUP.mint: {'usdPrice': 'n/a'}}, None),
    ({}, None),
    (ProviderError('down', 'jupiter_price', status=503), None),
])
def test_current_price(payload, expected):
    http = FakeHTTP(payload)
    provider = _provider(jupiter=http)
    assert asyncio.run(provider.get_current_price(JUP.mint)) == expected
    assert http.calls[0][1] == {'ids': JUP.mint}


def test_ohlcv_sorted_oldest_first_and_filtered():
    payload = {'data': {'attributes': {'ohlcv_list': [
        [300, 1, 1, 1, 1.3, 30.0],
        [100, 1, 1, 1, 1.1, 10.0],
        [200, 1, 1, 1, 1.2, 20.0],
        [400, 1, 1, 1, None, 40.0],
        [500, 1.5],
    ]}}}
    http = FakeHTTP(payload)
    provider = _provider(gecko=http)

    series = asyncio.run(provider.get_series_with_volume(JUP.pool, '1m', 15))
    assert series.prices == [1.1, 1.2, 1.3]
    assert series.volumes == [10.0, 20.0, 30.0]
    path, params = http.calls[0]
    assert path == f"/networks/solana/pools/{JUP.pool}/ohlcv/minute"
    assert params['aggregate'] == 1 and params['limit'] == 15


def test_ohlcv_failure_returns_empty_series():
    provider = _provider(gecko=FakeHTTP(ProviderError('bad gateway', 'geckoterminal', status=502)))
    series = asyncio.run(provider.get_series_with_volume(JUP.pool, '5m', 15))
    assert len(series) == 0
    assert series.volumes == []


def test_close_releases_every_client():
    clients = FakeHTTP(), FakeHTTP(), FakeHTTP()
    provider = _provider(*clients)
    asyncio.run(provider.close())
    assert all(c.closed for c in clients)
