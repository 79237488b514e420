from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ConfirmationStatus(str, Enum):
    CONFIRMED = 'confirmed'
    FAILED = 'failed'
    UNKNOWN = 'unknown'


@dataclass
class SwapQuote:
    """Venue quote for swapping ``in_amount`` base units of one mint into another."""

    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    slippage_bps: int = 0
    price_impact_pct: Optional[float] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TradeReceipt:
    """Outcome of one confirmed venue round-trip."""

    side: str
    asset_id: str
    signature: str
    endpoint: str
    attempt: int
    in_amount: int
    out_amount: int
    fill_price: Optional[float] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            'side': self.side,
            'asset_id': self.asset_id,
            'signature': self.signature,
            'endpoint': self.endpoint,
            'attempt': self.attempt,
            'in_amount': self.in_amount,
            'out_amount': self.out_amount,
            'fill_price': self.fill_price,
        }


@dataclass(frozen=True)
class TradeAsset:
    name: str
    mint: str
    pool: Optional[str] = None
    decimals: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TradeAsset':
        decimals = data.get('decimals')
        return cls(
            name=str(data['name']),
            mint=str(data['mint']),
            pool=data.get('pool'),
            decimals=int(decimals) if decimals is not None else None,
        )
