import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, List, Optional

from analytics.indicators import mean_first_difference


logger = logging.getLogger(__name__)

STRONG_MOMENTUM = 0.15


@dataclass(frozen=True)
class SignalSample:
    timestamp: float
    value: float


class SignalHistory:
    """Bounded FIFO of periodic samples with a momentum-adjusted view."""

    def __init__(self, capacity: int = 2, weight: float = 2.0):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.weight = weight
        self._samples: Deque[SignalSample] = deque(maxlen=capacity)

    def record(self, value: float, timestamp: Optional[float] = None) -> None:
        ts = time.time() if timestamp is None else timestamp
        if self._samples and ts < self._samples[-1].timestamp:
            # keep ascending order even if the wall clock stepped back
            ts = self._samples[-1].timestamp
        self._samples.append(SignalSample(ts, float(value)))

    def momentum(self) -> float:
        return mean_first_difference([s.value for s in self._samples])

    def adjusted(self, raw: float) -> float:
        momentum = self.momentum()
        adjusted = raw + momentum * self.weight
        logger.info(
            "Market health: raw=%.2f momentum=%+.3f adjusted=%.2f",
            raw, momentum, adjusted,
        )
        if momentum < -STRONG_MOMENTUM:
            logger.warning("Strong negative momentum (%.2f), market declining", momentum)
        elif momentum > STRONG_MOMENTUM:
            logger.info("Strong positive momentum (%.2f), market recovering", momentum)
        return adjusted

    @property
    def samples(self) -> List[SignalSample]:
        return list(self._samples)

    @property
    def latest(self) -> Optional[SignalSample]:
        return self._samples[-1] if self._samples else None

    def __len__(self) -> int:
        return len(self._samples)
