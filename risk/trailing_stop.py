from abc import ABC, abstractmethod
from typing import Mapping, Optional, Sequence, Tuple


class TrailingStopPolicy(ABC):
    """Trailing distance as a fraction of the highest price seen."""

    @abstractmethod
    def trail_pct(self, health: Optional[float]) -> float:
        ...


class FixedTrailingStop(TrailingStopPolicy):
    def __init__(self, pct: float):
        if pct < 0 or pct >= 1:
            raise ValueError(f"trailing percentage must be in [0, 1), got {pct}")
        self.pct = float(pct)

    def trail_pct(self, health: Optional[float]) -> float:
        return self.pct


class HealthScaledTrailingStop(TrailingStopPolicy):
    """Step function of market health.

    ``steps`` is a list of ``(min_health, pct)`` pairs; the pct of the highest
    threshold not above the current health applies. Health below every
    threshold, or not yet known, gets no trailing distance.
    """

    def __init__(self, steps: Sequence[Tuple[float, float]]):
        if not steps:
            raise ValueError("health-scaled trailing stop needs at least one step")
        self.steps = sorted((float(h), float(p)) for h, p in steps)

    def trail_pct(self, health: Optional[float]) -> float:
        pct = 0.0
        if health is None:
            return pct
        for threshold, step_pct in self.steps:
            if health >= threshold:
                pct = step_pct
            else:
                break
        return pct


class ArmingPolicy(ABC):
    @abstractmethod
    def should_arm(self, entry_price: float, current_price: float) -> bool:
        ...


class ImmediateArming(ArmingPolicy):
    def should_arm(self, entry_price: float, current_price: float) -> bool:
        return True


class ThresholdArming(ArmingPolicy):
    """Arm once price trades ``activation_pct`` above entry."""

    def __init__(self, activation_pct: float):
        if activation_pct < 0:
            raise ValueError("activation_pct must be non-negative")
        self.activation_pct = float(activation_pct)

    def should_arm(self, entry_price: float, current_price: float) -> bool:
        return current_price >= entry_price * (1 + self.activation_pct)


def build_trailing_policy(cfg: Optional[Mapping]) -> TrailingStopPolicy:
    cfg = cfg or {}
    name = cfg.get('policy', 'fixed')
    if name == 'fixed':
        return FixedTrailingStop(cfg.get('fixed_pct', 0.04))
    if name == 'health_scaled':
        return HealthScaledTrailingStop(cfg.get('steps') or [(0.0, 0.0)])
    raise ValueError(f"unknown trailing stop policy: {name}")


def build_arming_policy(cfg: Optional[Mapping]) -> ArmingPolicy:
    cfg = cfg or {}
    name = cfg.get('policy', 'immediate')
    if name == 'immediate':
        return ImmediateArming()
    if name == 'threshold':
        return ThresholdArming(cfg.get('activation_pct', 0.02))
    raise ValueError(f"unknown arming policy: {name}")
