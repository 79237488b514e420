import asyncio
import sys

sys.path.insert(0, '.')

import pytest

from errors import ValidationError
from risk.trade_limits import TradeLimits
from risk.trailing_stop import FixedTrailingStop
from strategy.execution import ExecutionGateway, RetryPolicy
from strategy.execution_types import ConfirmationStatus, TradeAsset
from strategy.position_book import PositionBook
from strategy.positions import ExitReason
from strategy.simulators.paper import PaperVenue
from tests.fakes import (
    JUP,
    USDC,
    WIF,
    FakeNotifier,
    FakeProvider,
    MemoryPositionStore,
    MemoryTrendStore,
    ScriptedVenue,
    SleepRecorder,
)


LIMITS = {'min_trade_amount': 1, 'max_trade_amount': 1000, 'max_open_positions': 2}


def _gateway(primary, fallback=None, store=None, notifier=None, trend_store=None, **kwargs):
    book = PositionBook(store or MemoryPositionStore(), FixedTrailingStop(0.04))
    kwargs.setdefault('retry', RetryPolicy(max_retries=3, base_delay_s=5, max_delay_s=20, fallback_attempts=3))
    kwargs.setdefault('sleep', SleepRecorder())
    kwargs.setdefault('confirm_poll_attempts', 3)
    kwargs.setdefault('confirm_poll_interval_s', 1)
    return ExecutionGateway(
        book,
        TradeLimits(LIMITS),
        primary,
        USDC,
        [JUP, WIF],
        notifier or FakeNotifier(),
        fallback=fallback,
        trend_store=trend_store if trend_store is not None else MemoryTrendStore(),
        **kwargs,
    )


def _open_jup(gateway, token_amount=50_000_000):
    return gateway.book.open('JUP', JUP.mint, 2.0, 100.0, token_amount=token_amount)


class HangingVenue(ScriptedVenue):
    async def quote(self, input_mint, output_mint, amount, slippage_bps):
        await asyncio.sleep(5)


class DroppedVenue(ScriptedVenue):
    """Accepts submissions that never reach the chain."""

    async def submit(self, signed_payload):
        self._pending.pop(signed_payload)
        self.submitted.append(signed_payload)
        return f"sig-{signed_payload}"


class QuoteBalanceDownVenue(ScriptedVenue):
    async def get_balance(self, mint):
        if mint == USDC.mint:
            self.balance_calls.append(mint)
            raise ConnectionError("token account lookup failed")
        return await super().get_balance(mint)


# Buys

def test_buy_fails_over_after_primary_exhausted():
    primary = ScriptedVenue('primary', failures=4)
    fallback = ScriptedVenue('fallback', out_per_in=0.5)
    gateway = _gateway(primary, fallback)

    assert asyncio.run(gateway.buy('JUP', 100.0, 2.1, 'test entry')) is True

    assert primary.submitted == []
    assert len(primary.quotes) == 4
    assert len(fallback.submitted) == 1
    assert gateway._sleep.delays == [5, 10, 20]
    assert len(gateway.book) == 1
    position = gateway.book.find_by_asset('JUP')
    assert position.entry_price == pytest.approx(2.0)
    assert position.token_amount == 50_000_000
    assert position.notional == 100.0
    assert gateway.notifier.trades[0]['action'] == 'BUY'
    assert gateway.notifier.fatal == []


def test_buy_retries_primary_before_succeeding():
    primary = ScriptedVenue('primary', failures=2, out_per_in=0.5)
    gateway = _gateway(primary)

    assert asyncio.run(gateway.buy('JUP', 100.0, 2.0)) is True
    assert gateway._sleep.delays == [5, 10]
    assert len(primary.submitted) == 1


def test_buy_total_failure_raises_fatal_alert_and_opens_nothing():
    primary = ScriptedVenue('primary', failures=10)
    fallback = ScriptedVenue('fallback', failures=10)
    gateway = _gateway(primary, fallback)

    assert asyncio.run(gateway.buy('JUP', 100.0, 2.0)) is False
    assert len(gateway.book) == 0
    assert len(gateway.notifier.fatal) == 1
    assert gateway.notifier.trades == []
    assert gateway._sleep.delays == [5, 10, 20, 5, 10]


def test_buy_without_fallback_stops_after_primary():
    primary = ScriptedVenue('primary', failures=10)
    gateway = _gateway(primary)

    assert asyncio.run(gateway.buy('JUP', 100.0, 2.0)) is False
    assert len(primary.quotes) == 4
    assert gateway._sleep.delays == [5, 10, 20]


@pytest.mark.parametrize('asset, notional, price', [
    ('JUP', 0.5, 2.0),
    ('JUP', 5000.0, 2.0),
    ('JUP', 100.0, 0.0),
    ('JUP', 100.0, float('nan')),
    ('DOGE', 100.0, 2.0),
])
def test_buy_validation_errors_happen_before_any_venue_call(asset, notional, price):
    primary = ScriptedVenue('primary')
    gateway = _gateway(primary)

    with pytest.raises(ValidationError):
        asyncio.run(gateway.buy(asset, notional, price))
    assert primary.quotes == []
    assert len(gateway.book) == 0


def test_buy_rejects_invalid_mint():
    bad = TradeAsset('BAD', 'not-a-valid-mint!', decimals=6)
    primary = ScriptedVenue('primary')
    gateway = ExecutionGateway(
        PositionBook(MemoryPositionStore(), FixedTrailingStop(0.04)),
        TradeLimits(LIMITS), primary, USDC, [bad], FakeNotifier(), sleep=SleepRecorder(),
    )
    with pytest.raises(ValidationError):
        asyncio.run(gateway.buy('BAD', 100.0, 1.0))
    assert primary.quotes == []


def test_buy_rejects_duplicate_asset_and_capacity():
    primary = ScriptedVenue('primary', out_per_in=0.5)
    gateway = _gateway(primary)
    assert asyncio.run(gateway.buy('JUP', 100.0, 2.0)) is True

    with pytest.raises(ValidationError):
        asyncio.run(gateway.buy('jup', 100.0, 2.0))

    assert asyncio.run(gateway.buy('WIF', 100.0, 2.0)) is True
    gateway.assets['BONK'] = TradeAsset('BONK', 'DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263', decimals=5)
    with pytest.raises(ValidationError):
        asyncio.run(gateway.buy('BONK', 100.0, 0.00002))
    assert len(primary.quotes) == 2


def test_concurrent_buys_open_one_position():
    primary = ScriptedVenue('primary', out_per_in=0.5)
    gateway = _gateway(primary)

    async def scenario():
        return await asyncio.gather(gateway.buy('JUP', 100.0, 2.0), gateway.buy('JUP', 100.0, 2.0))

    results = asyncio.run(scenario())
    assert sorted(results) == [False, True]
    assert len(gateway.book) == 1
    assert len(primary.submitted) == 1


def test_unknown_confirmation_resolved_by_status_polling():
    primary = ScriptedVenue(
        'primary',
        out_per_in=0.5,
        confirm_script=[ConfirmationStatus.UNKNOWN],
        status_script=[ConfirmationStatus.UNKNOWN, ConfirmationStatus.CONFIRMED],
    )
    gateway = _gateway(primary)

    assert asyncio.run(gateway.buy('JUP', 100.0, 2.0)) is True
    assert primary.status_calls == 2
    assert gateway._sleep.delays == [1, 1]
    assert len(gateway.book) == 1


def test_unresolved_buy_that_landed_is_confirmed_by_balance():
    primary = ScriptedVenue(
        'primary',
        out_per_in=0.5,
        confirm_script=[ConfirmationStatus.UNKNOWN],
        status_script=[ConfirmationStatus.UNKNOWN] * 3,
        fill_shortfall=0.02,
    )
    fallback = ScriptedVenue('fallback', out_per_in=0.5)
    gateway = _gateway(primary, fallback)

    assert asyncio.run(gateway.buy('JUP', 100.0, 2.0)) is True
    assert primary.status_calls == 3
    assert gateway._sleep.delays == [1, 1, 1]
    assert len(primary.quotes) == 1
    assert fallback.quotes == []
    assert gateway.book.find_by_asset('JUP').token_amount == 49_000_000


def test_unresolved_buy_without_balance_change_is_not_resubmitted():
    primary = DroppedVenue(
        'primary',
        out_per_in=0.5,
        confirm_script=[ConfirmationStatus.UNKNOWN],
        status_script=[ConfirmationStatus.UNKNOWN] * 3,
    )
    fallback = ScriptedVenue('fallback', out_per_in=0.5)
    gateway = _gateway(primary, fallback)

    assert asyncio.run(gateway.buy('JUP', 100.0, 2.0)) is False
    assert len(primary.quotes) == 1
    assert fallback.quotes == []
    assert gateway._sleep.delays == [1, 1, 1]
    assert len(gateway.book) == 0
    assert len(gateway.notifier.fatal) == 1


def test_unresolved_sell_is_not_resubmitted():
    primary = DroppedVenue(
        'primary',
        out_per_in=2.2,
        balances={JUP.mint: 50_000_000, USDC.mint: 0},
        confirm_script=[ConfirmationStatus.UNKNOWN],
        status_script=[ConfirmationStatus.UNKNOWN] * 3,
    )
    gateway = _gateway(primary)
    position = _open_jup(gateway)

    assert asyncio.run(gateway.sell(position, 2.2, ExitReason.TRAILING_STOP_HIT)) is False
    assert len(primary.quotes) == 1
    assert position.needs_attention is True
    assert gateway.book.get(position.id) is position


def test_hanging_venue_call_times_out():
    primary = HangingVenue('primary')
    gateway = _gateway(primary, retry=RetryPolicy(max_retries=0, fallback_attempts=0), call_timeout_s=0.01)

    assert asyncio.run(gateway.buy('JUP', 100.0, 2.0)) is False
    assert len(gateway.notifier.fatal) == 1


def test_buy_persistence_failure_still_reports_success():
    store = MemoryPositionStore()
    store.fail_saves = True
    primary = ScriptedVenue('primary', out_per_in=0.5)
    gateway = _gateway(primary, store=store)

    assert asyncio.run(gateway.buy('JUP', 100.0, 2.0)) is True
    assert gateway.book.has_asset('JUP')
    assert [a[2] for a in gateway.notifier.alerts] == ['critical']


# Sells

def test_concurrent_sells_execute_once():
    primary = ScriptedVenue('primary', out_per_in=2.2, balances={JUP.mint: 50_000_000, USDC.mint: 0})
    trend_store = MemoryTrendStore({'JUP': 'BULLISH'})
    gateway = _gateway(primary, trend_store=trend_store)
    position = _open_jup(gateway)

    async def scenario():
        return await asyncio.gather(
            gateway.sell(position, 2.2, ExitReason.TRAILING_STOP_HIT),
            gateway.sell(position, 2.2, ExitReason.STOP_LOSS_HIT),
        )

    assert asyncio.run(scenario()) == [True, True]
    assert len(primary.submitted) == 1
    assert primary.balance_calls == [JUP.mint, USDC.mint, USDC.mint]
    assert len(gateway.book) == 0
    assert len(gateway.notifier.trades) == 1
    trade = gateway.notifier.trades[0]
    assert trade['action'] == 'SELL'
    assert trade['reason'] == ExitReason.TRAILING_STOP_HIT.value
    assert trade['pnl'] == pytest.approx(10.0)
    assert trend_store.resets == ['JUP']
    assert trend_store.states['JUP'] == 'BEARISH'


def test_sell_of_closed_position_is_a_no_op():
    primary = ScriptedVenue('primary', balances={JUP.mint: 50_000_000})
    gateway = _gateway(primary)
    position = _open_jup(gateway)
    gateway.book.close(position.id)

    assert asyncio.run(gateway.sell(position, 2.0)) is True
    assert primary.balance_calls == []
    assert primary.quotes == []


def test_zero_balance_closes_position_without_trading():
    primary = ScriptedVenue('primary', balances={JUP.mint: 0})
    trend_store = MemoryTrendStore({'JUP': 'BULLISH'})
    gateway = _gateway(primary, trend_store=trend_store)
    position = _open_jup(gateway)

    assert asyncio.run(gateway.sell(position, 2.0, ExitReason.TRAILING_STOP_HIT)) is True
    assert primary.quotes == []
    assert len(gateway.book) == 0
    assert trend_store.resets == ['JUP']
    assert gateway.notifier.trades == []
    assert any('no remaining balance' in m for m in gateway.notifier.messages)


def test_sell_uses_actual_proceeds_for_pnl():
    primary = ScriptedVenue(
        'primary', out_per_in=2.2, balances={JUP.mint: 50_000_000, USDC.mint: 0}, fill_shortfall=0.01,
    )
    gateway = _gateway(primary)
    position = _open_jup(gateway)

    assert asyncio.run(gateway.sell(position, 2.2)) is True
    assert gateway.notifier.trades[0]['pnl'] == pytest.approx(110 * 0.99 - 100)


def test_sell_falls_back_to_estimated_pnl_when_quote_balance_unavailable():
    primary = QuoteBalanceDownVenue(
        'primary', out_per_in=2.2, balances={JUP.mint: 50_000_000}, fill_shortfall=0.01,
    )
    gateway = _gateway(primary)
    position = _open_jup(gateway)

    assert asyncio.run(gateway.sell(position, 2.2)) is True
    assert gateway.notifier.trades[0]['pnl'] == pytest.approx(10.0)
    assert len(gateway.book) == 0


def test_sell_uses_recorded_amount_when_balance_lookup_fails():
    primary = ScriptedVenue('primary', out_per_in=2.2, balance_error=True)
    gateway = _gateway(primary)
    position = _open_jup(gateway, token_amount=40_000_000)

    assert asyncio.run(gateway.sell(position, 2.2)) is True
    assert primary.quotes[0].in_amount == 40_000_000


def test_sell_without_any_known_balance_flags_position():
    primary = ScriptedVenue('primary', balance_error=True)
    gateway = _gateway(primary)
    position = _open_jup(gateway, token_amount=None)

    assert asyncio.run(gateway.sell(position, 2.0)) is False
    assert primary.quotes == []
    assert position.needs_attention is True
    assert len(gateway.notifier.fatal) == 1


def test_failed_sell_leaves_position_open_and_flagged():
    primary = ScriptedVenue('primary', failures=10, balances={JUP.mint: 50_000_000})
    fallback = ScriptedVenue('fallback', failures=10, balances={JUP.mint: 50_000_000})
    gateway = _gateway(primary, fallback)
    position = _open_jup(gateway)

    assert asyncio.run(gateway.sell(position, 1.9, ExitReason.STOP_LOSS_HIT)) is False
    assert gateway.book.get(position.id) is position
    assert position.needs_attention is True
    assert gateway.book.store.last_saved[0]['needs_attention'] is True
    assert len(gateway.notifier.fatal) == 1
    assert gateway.notifier.trades == []


def test_sell_rejects_invalid_price():
    primary = ScriptedVenue('primary', balances={JUP.mint: 50_000_000})
    gateway = _gateway(primary)
    position = _open_jup(gateway)

    with pytest.raises(ValidationError):
        asyncio.run(gateway.sell(position, -1.0))
    assert gateway.book.get(position.id) is position


def test_retry_delay_is_capped():
    policy = RetryPolicy(base_delay_s=5, max_delay_s=20)
    assert [policy.delay(n) for n in (1, 2, 3, 4, 5)] == [5, 10, 20, 20, 20]


def test_paper_venue_round_trip():
    provider = FakeProvider(prices={JUP.mint: 2.0})
    venue = PaperVenue(provider, USDC.mint, initial_balance=1000.0, decimals={JUP.mint: 6})
    gateway = _gateway(venue)

    assert asyncio.run(gateway.buy('JUP', 100.0, 2.0)) is True
    position = gateway.book.find_by_asset('JUP')
    assert position.entry_price == pytest.approx(2.0)
    assert venue.balances[JUP.mint] == 50_000_000
    assert venue.balances[USDC.mint] == 900_000_000

    provider.prices[JUP.mint] = 2.5
    assert asyncio.run(gateway.sell(position, 2.5, ExitReason.TRAILING_STOP_HIT)) is True
    assert venue.balances[JUP.mint] == 0
    assert venue.balances[USDC.mint] == 1_025_000_000
    assert gateway.notifier.trades[-1]['pnl'] == pytest.approx(25.0)


def test_paper_venue_rejects_unfunded_buy():
    provider = FakeProvider(prices={JUP.mint: 2.0})
    venue = PaperVenue(provider, USDC.mint, initial_balance=50.0, decimals={JUP.mint: 6})
    gateway = _gateway(venue, retry=RetryPolicy(max_retries=0, fallback_attempts=0))

    assert asyncio.run(gateway.buy('JUP', 100.0, 2.0)) is False
    assert venue.balances[USDC.mint] == 50_000_000
