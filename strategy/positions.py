import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class PositionState(str, Enum):
    OPENED = 'opened'
    TRAILING_ARMED = 'trailing_armed'
    CLOSED = 'closed'


class ExitReason(str, Enum):
    TRAILING_STOP_HIT = 'TRAILING_STOP_HIT'
    STOP_LOSS_HIT = 'STOP_LOSS_HIT'
    MANUAL = 'MANUAL'
    ZERO_BALANCE = 'ZERO_BALANCE'


@dataclass
class Position:
    id: int
    asset_id: str
    mint: str
    entry_price: float
    notional: float
    opened_at: float = field(default_factory=time.time)
    highest_price: float = 0.0
    trailing_armed: bool = False
    stop_loss_price: Optional[float] = None
    token_amount: Optional[int] = None
    needs_attention: bool = False
    closed: bool = False

    def __post_init__(self):
        if not self.highest_price:
            self.highest_price = self.entry_price

    @property
    def state(self) -> PositionState:
        if self.closed:
            return PositionState.CLOSED
        if self.trailing_armed:
            return PositionState.TRAILING_ARMED
        return PositionState.OPENED

    def pnl_pct(self, price: float) -> float:
        return (price - self.entry_price) / self.entry_price * 100.0

    def pnl_usd(self, price: float) -> float:
        return self.notional * (price - self.entry_price) / self.entry_price

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop('closed', None)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Position':
        entry = float(data['entry_price'])
        return cls(
            id=int(data['id']),
            asset_id=str(data['asset_id']),
            mint=str(data.get('mint') or ''),
            entry_price=entry,
            notional=float(data['notional']),
            opened_at=float(data.get('opened_at') or time.time()),
            highest_price=float(data.get('highest_price') or entry),
            trailing_armed=bool(data.get('trailing_armed', False)),
            stop_loss_price=(
                float(data['stop_loss_price']) if data.get('stop_loss_price') is not None else None
            ),
            token_amount=(
                int(data['token_amount']) if data.get('token_amount') is not None else None
            ),
            needs_attention=bool(data.get('needs_attention', False)),
        )


@dataclass(frozen=True)
class ExitDecision:
    position_id: int
    reason: ExitReason
    price: float
    trigger_price: float
    trail_pct: Optional[float] = None

    def describe(self) -> str:
        if self.reason is ExitReason.TRAILING_STOP_HIT:
            return (
                f"Trailing stop hit: {self.price:.6f} < {self.trigger_price:.6f} "
                f"({(self.trail_pct or 0) * 100:.2f}% trail)"
            )
        if self.reason is ExitReason.STOP_LOSS_HIT:
            return f"Stop loss hit: {self.price:.6f} < {self.trigger_price:.6f}"
        return self.reason.value
