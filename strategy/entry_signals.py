from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, Mapping, Optional, Sequence, Tuple

from analytics.indicators import last_rsi, last_sma, mean_pct_change, volume_ratio
from orchestration.persistence import BEARISH, BULLISH


class EntryAction(str, Enum):
    BUY = 'BUY'
    HOLD = 'HOLD'


@dataclass
class EntryDecision:
    action: EntryAction
    reason: str
    indicators: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_buy(self) -> bool:
        return self.action is EntryAction.BUY

    @classmethod
    def hold(cls, reason: str, **indicators: Any) -> 'EntryDecision':
        return cls(EntryAction.HOLD, reason, indicators)

    @classmethod
    def buy(cls, reason: str, **indicators: Any) -> 'EntryDecision':
        return cls(EntryAction.BUY, reason, indicators)


class EntryStrategy(ABC):
    """Common contract for entry signal strategies.

    Callers check position caps and existing positions before asking for a
    decision. ``observe`` feeds a live price, ``wants_series`` tells the
    caller whether fetching a price/volume history is worth the API call.
    """

    name = 'base'
    scan_loop = 'analysis'
    timeframe = '1h'
    history_limit = 100

    def should_scan(self, health: Optional[float]) -> Tuple[bool, str]:
        return True, ''

    def observe(self, asset_id: str, price: float) -> None:
        return None

    def wants_series(self, asset_id: str) -> bool:
        return True

    @abstractmethod
    def evaluate(
        self,
        asset_id: str,
        prices: Sequence[float],
        volumes: Optional[Sequence[float]] = None,
        health: Optional[float] = None,
    ) -> EntryDecision:
        ...


class CrossoverStrategy(EntryStrategy):
    """Short/long SMA crossover detected against the last recorded trend state.

    An asset with no recorded state only has its trend stored on the first
    observation and is held: it is not treated as BEARISH, so a bot starting
    in an established uptrend does not buy it as a fresh crossover.
    """

    name = 'crossover'
    scan_loop = 'analysis'

    def __init__(self, trend_store, cfg: Optional[Mapping] = None):
        cfg = cfg or {}
        self.trend_store = trend_store
        self.short_period = int(cfg.get('short_period', 12))
        self.long_period = int(cfg.get('long_period', 26))
        self.rsi_period = int(cfg.get('rsi_period', 14))
        self.rsi_threshold = float(cfg.get('rsi_threshold', 50))
        self.require_momentum_confirmation = bool(cfg.get('require_momentum_confirmation', False))
        self.min_market_health = cfg.get('min_market_health')
        self.timeframe = cfg.get('timeframe', '1h')
        self.history_limit = int(cfg.get('history_limit', 100))

    def should_scan(self, health: Optional[float]) -> Tuple[bool, str]:
        if self.min_market_health is None or health is None:
            return True, ''
        if health <= float(self.min_market_health):
            return False, f"Market health {health:.2f} <= {float(self.min_market_health):.2f}"
        return True, ''

    def evaluate(self, asset_id, prices, volumes=None, health=None) -> EntryDecision:
        required = max(self.long_period, self.rsi_period + 1)
        if len(prices) < required:
            return EntryDecision.hold(f"Insufficient data (need {required}, have {len(prices)})")

        short_ma = last_sma(prices, self.short_period)
        long_ma = last_sma(prices, self.long_period)
        rsi = last_rsi(prices, self.rsi_period)
        if short_ma is None or long_ma is None:
            return EntryDecision.hold("Moving averages unavailable")

        indicators = {'short_ma': short_ma, 'long_ma': long_ma, 'rsi': rsi, 'price': float(prices[-1])}
        current = BULLISH if short_ma > long_ma else BEARISH
        previous = self.trend_store.get(asset_id)
        self.trend_store.update(asset_id, current)

        if previous is None:
            return EntryDecision.hold(f"Trend state initialised as {current}", **indicators)
        if not (previous == BEARISH and current == BULLISH):
            return EntryDecision.hold(f"No crossover ({previous} -> {current})", **indicators)

        if self.require_momentum_confirmation and (rsi is None or rsi <= self.rsi_threshold):
            shown = 'n/a' if rsi is None else f"{rsi:.2f}"
            return EntryDecision.hold(
                f"Crossover detected but RSI {shown} <= {self.rsi_threshold:.0f}, waiting for momentum confirmation",
                **indicators,
            )
        suffix = '' if rsi is None else f" (RSI {rsi:.2f})"
        return EntryDecision.buy(
            f"Crossover SMA {self.short_period}/{self.long_period}{suffix}", **indicators
        )


class TrendMomentumStrategy(EntryStrategy):
    """Sustained live-price momentum confirmed by rising volume and a non-overbought RSI."""

    name = 'trend_momentum'
    scan_loop = 'monitor'

    def __init__(self, cfg: Optional[Mapping] = None):
        cfg = cfg or {}
        self.history_size = int(cfg.get('history_size', 10))
        self.momentum_threshold_pct = float(cfg.get('momentum_threshold_pct', 0.50))
        self.volume_recent_periods = int(cfg.get('volume_recent_periods', 5))
        self.volume_ratio_min = float(cfg.get('volume_ratio_min', 1.5))
        self.rsi_period = int(cfg.get('rsi_period', 14))
        self.rsi_overbought = float(cfg.get('rsi_overbought', 70))
        self.severe_bearish_health = float(cfg.get('severe_bearish_health', -0.5))
        self.timeframe = cfg.get('timeframe', '1m')
        self.history_limit = int(cfg.get('history_limit', self.volume_recent_periods * 3))
        self._windows: Dict[str, Deque[float]] = {}

    def should_scan(self, health: Optional[float]) -> Tuple[bool, str]:
        if health is not None and health < self.severe_bearish_health:
            return False, f"Market health {health:.2f} < {self.severe_bearish_health} (severe bearishness)"
        return True, ''

    def observe(self, asset_id: str, price: float) -> None:
        window = self._windows.setdefault(asset_id, deque(maxlen=self.history_size))
        window.append(float(price))

    def window(self, asset_id: str) -> Sequence[float]:
        return list(self._windows.get(asset_id, ()))

    def trend_momentum(self, asset_id: str) -> Optional[float]:
        window = self.window(asset_id)
        if len(window) < self.history_size:
            return None
        return mean_pct_change(window)

    def wants_series(self, asset_id: str) -> bool:
        momentum = self.trend_momentum(asset_id)
        return momentum is not None and momentum > self.momentum_threshold_pct

    def evaluate(self, asset_id, prices, volumes=None, health=None) -> EntryDecision:
        scan, reason = self.should_scan(health)
        if not scan:
            return EntryDecision.hold(reason)

        window = self.window(asset_id)
        if len(window) < self.history_size:
            return EntryDecision.hold(f"Building price history ({len(window)}/{self.history_size})")
        momentum = self.trend_momentum(asset_id)
        if momentum is None:
            return EntryDecision.hold("Zero price in momentum window")
        if momentum <= self.momentum_threshold_pct:
            return EntryDecision.hold(
                f"No trend signal ({momentum:.2f}% <= {self.momentum_threshold_pct}%)", momentum=momentum
            )

        volumes = volumes or []
        needed = self.volume_recent_periods * 3
        if len(volumes) < needed:
            return EntryDecision.hold(f"Insufficient volume data ({len(volumes)}/{needed})", momentum=momentum)
        ratio = volume_ratio(volumes, self.volume_recent_periods)
        if ratio is None:
            return EntryDecision.hold("No baseline volume to compare against", momentum=momentum)
        if ratio < self.volume_ratio_min:
            return EntryDecision.hold(
                f"Volume too low ({ratio:.2f}x < {self.volume_ratio_min}x)", momentum=momentum, volume_ratio=ratio
            )

        rsi = last_rsi(prices, self.rsi_period)
        if rsi is not None and rsi > self.rsi_overbought:
            return EntryDecision.hold(
                f"Overbought (RSI {rsi:.2f} > {self.rsi_overbought:.0f})",
                momentum=momentum, volume_ratio=ratio, rsi=rsi,
            )

        return EntryDecision.buy(
            f"TREND ({momentum:.2f}% > {self.momentum_threshold_pct}%), Vol={ratio:.2f}x",
            momentum=momentum, volume_ratio=ratio, rsi=rsi,
        )


def build_entry_strategy(cfg: Mapping, trend_store=None) -> EntryStrategy:
    name = cfg.get('name', 'trend_momentum')
    if name == 'crossover':
        if trend_store is None:
            raise ValueError("crossover strategy needs a trend state store")
        return CrossoverStrategy(trend_store, cfg.get('crossover'))
    if name == 'trend_momentum':
        return TrendMomentumStrategy(cfg.get('trend_momentum'))
    raise ValueError(f"unknown entry strategy: {name}")
