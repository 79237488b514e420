import math
from typing import Mapping, Optional

from config.validation import BASE58_PATTERN
from errors import ValidationError


class TradeLimits:
    """Pre-trade checks shared by the automated loops and manual commands."""

    def __init__(self, cfg: Optional[Mapping] = None):
        cfg = cfg or {}
        self.min_trade_amount = float(cfg.get('min_trade_amount', 0.1))
        self.max_trade_amount = float(cfg.get('max_trade_amount', 10000))
        self.max_open_positions = int(cfg.get('max_open_positions', 10))
        self.max_concurrent_positions = int(cfg.get('max_concurrent_positions', 3))

    def validate_identifier(self, identifier: str, field_name: str = 'mint') -> None:
        if (not isinstance(identifier, str) or not 32 <= len(identifier) <= 44
                or not BASE58_PATTERN.match(identifier)):
            raise ValidationError(f"Invalid {field_name} address", field_name, identifier)

    def validate_amount(self, amount: float) -> None:
        if not isinstance(amount, (int, float)) or math.isnan(amount):
            raise ValidationError("Amount must be a number", 'amount', amount)
        if amount < self.min_trade_amount or amount > self.max_trade_amount:
            raise ValidationError(
                f"Amount must be between {self.min_trade_amount} and {self.max_trade_amount}",
                'amount',
                amount,
            )

    def validate_price(self, price: float) -> None:
        if not isinstance(price, (int, float)) or math.isnan(price) or price <= 0:
            raise ValidationError("Price must be positive", 'price', price)

    def check_open_capacity(self, open_count: int) -> None:
        if open_count >= self.max_open_positions:
            raise ValidationError(
                f"Maximum open positions reached ({self.max_open_positions})",
                'open_positions',
                open_count,
            )

    def can_add_position(self, open_count: int) -> bool:
        return open_count < self.max_concurrent_positions
