import asyncio
import sys

sys.path.insert(0, '.')

import pytest

from analytics.market_health import MarketHealthEvaluator
from tests.fakes import FakeProvider


ASSETS = [
    {'name': 'BTC', 'id': 'bitcoin', 'weight': 0.25},
    {'name': 'ETH', 'id': 'ethereum', 'weight': 0.25},
    {'name': 'SOL', 'id': 'solana', 'weight': 0.5},
]


def _series(base: float, last: float, period: int = 5):
    # SMA over the window is (base * (period - 1) + last) / period
    return [base] * (period - 1) + [last]


def _evaluator(provider, strict=False):
    return MarketHealthEvaluator(
        provider,
        {'indicator_period': 5, 'history_limit': 10, 'strict': strict, 'assets': ASSETS},
    )


def test_weighted_sum_of_distances():
    provider = FakeProvider(series={
        'bitcoin': [100.0] * 5,
        'ethereum': _series(100.0, 150.0),
        'solana': _series(10.0, 5.0),
    })
    score = asyncio.run(_evaluator(provider).evaluate())

    eth_sma = (100.0 * 4 + 150.0) / 5
    sol_sma = (10.0 * 4 + 5.0) / 5
    expected = 0.25 * (150.0 - eth_sma) / eth_sma * 100 + 0.5 * (5.0 - sol_sma) / sol_sma * 100
    assert score.raw_value == pytest.approx(expected)
    assert [c.asset_id for c in score.contributions] == ['BTC', 'ETH', 'SOL']
    assert score.contributions[0].distance_pct == pytest.approx(0.0)
    assert not score.degraded


def test_one_failed_asset_contributes_neutral_distance():
    provider = FakeProvider(series={
        'bitcoin': _series(100.0, 110.0),
        'ethereum': [100.0, 101.0],
        'solana': _series(10.0, 11.0),
    })
    score = asyncio.run(_evaluator(provider).evaluate())

    btc_sma = (100.0 * 4 + 110.0) / 5
    sol_sma = (10.0 * 4 + 11.0) / 5
    expected = 0.25 * (110.0 - btc_sma) / btc_sma * 100 + 0.5 * (11.0 - sol_sma) / sol_sma * 100
    assert score.raw_value == pytest.approx(expected)
    assert score.failed_assets == ['ETH']
    eth = score.contributions[1]
    assert eth.distance_pct == 0.0 and not eth.available
    assert not score.aborted


def test_zero_average_counts_as_failed_reading():
    provider = FakeProvider(series={
        'bitcoin': [0.0] * 5,
        'ethereum': [100.0] * 5,
        'solana': [10.0] * 5,
    })
    score = asyncio.run(_evaluator(provider).evaluate())
    assert score.failed_assets == ['BTC']
    assert score.raw_value == pytest.approx(0.0)


def test_strict_mode_invalidates_whole_score():
    provider = FakeProvider(series={
        'bitcoin': _series(100.0, 120.0),
        'ethereum': [],
        'solana': _series(10.0, 12.0),
    })
    score = asyncio.run(_evaluator(provider, strict=True).evaluate())
    assert score.aborted
    assert score.raw_value == 0.0
    assert provider.series_requests == ['bitcoin', 'ethereum']


def test_evaluate_accepts_explicit_asset_list():
    from analytics.market_health import HealthAsset

    provider = FakeProvider(series={'solana': _series(10.0, 20.0)})
    score = asyncio.run(_evaluator(provider).evaluate([HealthAsset('SOL', 'solana', 1.0)]))
    sma = (10.0 * 4 + 20.0) / 5
    assert score.raw_value == pytest.approx((20.0 - sma) / sma * 100)
    assert score.to_dict()['contributions'][0]['asset_id'] == 'SOL'
