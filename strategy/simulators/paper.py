import logging
import uuid
from types import MappingProxyType
from typing import Dict, Mapping, Optional

from errors import ExecutionError
from strategy.execution_types import ConfirmationStatus, SwapQuote
from strategy.transports.base import VenueTransport


logger = logging.getLogger(__name__)


class PaperVenue(VenueTransport):
    """Simulated venue that fills at the live price and tracks balances in memory."""

    name = 'paper'

    def __init__(
        self,
        price_source,
        quote_mint: str,
        quote_decimals: int = 6,
        initial_balance: float = 1000.0,
        decimals: Optional[Mapping[str, int]] = None,
    ) -> None:
        self.price_source = price_source
        self.quote_mint = quote_mint
        self.quote_decimals = quote_decimals
        self._decimals: Dict[str, int] = dict(decimals or {})
        self._decimals[quote_mint] = quote_decimals
        self._balances: Dict[str, int] = {quote_mint: int(round(initial_balance * 10 ** quote_decimals))}
        self._pending: Dict[str, SwapQuote] = {}
        self._settled: Dict[str, ConfirmationStatus] = {}

    @property
    def balances(self) -> Mapping[str, int]:
        return MappingProxyType(self._balances)

    def decimals_for(self, mint: str) -> int:
        return self._decimals.get(mint, 6)

    async def quote(self, input_mint: str, output_mint: str, amount: int,
                    slippage_bps: int) -> SwapQuote:
        if input_mint == self.quote_mint:
            token_mint, buying = output_mint, True
        elif output_mint == self.quote_mint:
            token_mint, buying = input_mint, False
        else:
            raise ExecutionError("Paper venue only quotes against the quote asset", output_mint, 'swap', 'quote')
        price = await self.price_source.get_current_price(token_mint)
        if not price:
            raise ExecutionError("No price available for paper fill", token_mint, 'swap', 'quote')

        token_scale = 10 ** self.decimals_for(token_mint)
        quote_scale = 10 ** self.quote_decimals
        if buying:
            out_amount = int(amount / quote_scale / price * token_scale)
        else:
            out_amount = int(amount / token_scale * price * quote_scale)
        return SwapQuote(input_mint, output_mint, int(amount), out_amount, slippage_bps, 0.0, {'price': price})

    async def build(self, quote: SwapQuote) -> str:
        ticket = f"paper-{uuid.uuid4().hex[:8]}"
        self._pending[ticket] = quote
        return ticket

    async def sign(self, payload: str) -> str:
        return payload

    async def submit(self, signed_payload: str) -> str:
        quote = self._pending.pop(signed_payload, None)
        if quote is None:
            raise ExecutionError("Unknown paper transaction", '', 'swap', 'submit')
        available = self._balances.get(quote.input_mint, 0)
        if available < quote.in_amount:
            self._settled[signed_payload] = ConfirmationStatus.FAILED
            return signed_payload
        self._balances[quote.input_mint] = available - quote.in_amount
        self._balances[quote.output_mint] = self._balances.get(quote.output_mint, 0) + quote.out_amount
        self._settled[signed_payload] = ConfirmationStatus.CONFIRMED
        logger.info(
            "[PAPER] Filled %s %s -> %s %s",
            quote.in_amount, quote.input_mint[:6], quote.out_amount, quote.output_mint[:6],
        )
        return signed_payload

    async def confirm(self, signature: str) -> ConfirmationStatus:
        return await self.get_status(signature)

    async def get_status(self, signature: str) -> ConfirmationStatus:
        return self._settled.get(signature, ConfirmationStatus.UNKNOWN)

    async def get_balance(self, mint: str) -> int:
        return self._balances.get(mint, 0)
