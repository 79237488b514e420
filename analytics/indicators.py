from typing import Optional, Sequence

import numpy as np
import talib


def _as_array(values: Sequence[float]) -> np.ndarray:
    return np.asarray(values, dtype=float)


def _last_valid(series: np.ndarray) -> Optional[float]:
    if series.size == 0 or np.isnan(series[-1]):
        return None
    return float(series[-1])


def last_sma(values: Sequence[float], period: int) -> Optional[float]:
    if period <= 0 or len(values) < period:
        return None
    return _last_valid(talib.SMA(_as_array(values), timeperiod=period))


def last_rsi(values: Sequence[float], period: int = 14) -> Optional[float]:
    # TA-Lib needs one extra bar to seed the first price change
    if period <= 0 or len(values) <= period:
        return None
    return _last_valid(talib.RSI(_as_array(values), timeperiod=period))


def mean_first_difference(values: Sequence[float]) -> float:
    """Average of ``v[i] - v[i-1]``; 0 for fewer than two values."""
    if len(values) < 2:
        return 0.0
    return float(np.mean(np.diff(_as_array(values))))


def mean_pct_change(values: Sequence[float]) -> Optional[float]:
    """Average period-over-period percentage change, or None on a zero base price."""
    if len(values) < 2:
        return 0.0
    arr = _as_array(values)
    previous = arr[:-1]
    if np.any(previous == 0):
        return None
    return float(np.mean((arr[1:] - previous) / previous * 100.0))


def volume_ratio(volumes: Sequence[float], recent_periods: int) -> Optional[float]:
    """Mean of the last ``k`` volumes over the mean of the ``2k`` before them."""
    needed = recent_periods * 3
    if recent_periods <= 0 or len(volumes) < needed:
        return None
    arr = _as_array(volumes)[-needed:]
    previous_avg = float(np.mean(arr[:-recent_periods]))
    recent_avg = float(np.mean(arr[-recent_periods:]))
    if previous_avg <= 0:
        return None
    return recent_avg / previous_avg
