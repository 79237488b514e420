from abc import ABC, abstractmethod

from strategy.execution_types import ConfirmationStatus, SwapQuote


class VenueTransport(ABC):
    """Swap venue round-trip: quote, build, sign, submit, confirm.

    Implementations raise on failure at any step; the gateway owns retries.
    Amounts are integer base units of the respective mint.
    """

    name = 'venue'

    @abstractmethod
    async def quote(self, input_mint: str, output_mint: str, amount: int,
                    slippage_bps: int) -> SwapQuote:
        ...

    @abstractmethod
    async def build(self, quote: SwapQuote) -> str:
        ...

    @abstractmethod
    async def sign(self, payload: str) -> str:
        ...

    @abstractmethod
    async def submit(self, signed_payload: str) -> str:
        ...

    @abstractmethod
    async def confirm(self, signature: str) -> ConfirmationStatus:
        ...

    @abstractmethod
    async def get_status(self, signature: str) -> ConfirmationStatus:
        ...

    @abstractmethod
    async def get_balance(self, mint: str) -> int:
        ...

    async def close(self) -> None:
        return None
