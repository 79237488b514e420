import asyncio
import logging
from typing import Any, Dict, Optional

from errors import ExecutionError, ProviderError
from ingest.http_client import JSONHTTPClient
from strategy.execution_types import ConfirmationStatus, SwapQuote
from strategy.transports.base import VenueTransport


__all__ = ["JupiterTransport", "SolanaRPC"]

logger = logging.getLogger(__name__)


class SolanaRPC:
    """Minimal JSON-RPC client for the calls the gateway needs."""

    def __init__(self, http: JSONHTTPClient):
        self.http = http
        self._request_id = 0

    async def call(self, method: str, params: list) -> Any:
        self._request_id += 1
        payload = {'jsonrpc': '2.0', 'id': self._request_id, 'method': method, 'params': params}
        data = await self.http.post("", payload=payload)
        if not isinstance(data, dict):
            raise ProviderError(f"{method}: malformed RPC response", self.http.provider, endpoint=method)
        if data.get('error'):
            error = data['error']
            message = error.get('message') if isinstance(error, dict) else str(error)
            raise ProviderError(f"{method}: {message}", self.http.provider, endpoint=method)
        return data.get('result')


class JupiterTransport(VenueTransport):
    """Jupiter swap API for quotes and transactions, Solana RPC for the rest.

    Signing is delegated to an external signer service so the private key
    never lives in this process.
    """

    def __init__(
        self,
        name: str,
        swap_api: JSONHTTPClient,
        rpc: SolanaRPC,
        signer: JSONHTTPClient,
        wallet_public_key: str,
        confirm_timeout_s: float = 30.0,
        confirm_check_interval_s: float = 2.0,
    ) -> None:
        self.name = name
        self.swap_api = swap_api
        self.rpc = rpc
        self.signer = signer
        self.wallet_public_key = wallet_public_key
        self.confirm_timeout_s = confirm_timeout_s
        self.confirm_check_interval_s = confirm_check_interval_s
        self._sleep = asyncio.sleep

    @classmethod
    def from_config(cls, name: str, rpc_url: str, cfg: Dict[str, Any]) -> 'JupiterTransport':
        timeout = float(cfg.get('call_timeout_s', 30))
        signer_headers = {}
        if cfg.get('signer_token'):
            signer_headers['Authorization'] = f"Bearer {cfg['signer_token']}"
        return cls(
            name=name,
            swap_api=JSONHTTPClient(cfg.get('jupiter_api', 'https://lite-api.jup.ag/swap/v1'), 'jupiter_swap', timeout),
            rpc=SolanaRPC(JSONHTTPClient(rpc_url, f"rpc:{name}", timeout)),
            signer=JSONHTTPClient(cfg['signer_url'], 'signer', timeout, headers=signer_headers),
            wallet_public_key=cfg['wallet_public_key'],
            confirm_timeout_s=max(1.0, timeout - 5.0),
        )

    async def quote(self, input_mint: str, output_mint: str, amount: int,
                    slippage_bps: int) -> SwapQuote:
        data = await self.swap_api.get(
            "/quote",
            params={
                'inputMint': input_mint,
                'outputMint': output_mint,
                'amount': str(int(amount)),
                'slippageBps': int(slippage_bps),
                'maxAccounts': 64,
            },
        )
        if not isinstance(data, dict) or 'outAmount' not in data:
            raise ExecutionError("No valid quote returned", output_mint, 'swap', stage='quote')
        return SwapQuote(
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=int(data.get('inAmount', amount)),
            out_amount=int(data['outAmount']),
            slippage_bps=int(slippage_bps),
            price_impact_pct=self._as_float(data.get('priceImpactPct')),
            raw=data,
        )

    async def build(self, quote: SwapQuote) -> str:
        data = await self.swap_api.post(
            "/swap",
            payload={
                'userPublicKey': self.wallet_public_key,
                'quoteResponse': quote.raw,
                'wrapAndUnwrapSol': True,
                'dynamicComputeUnitLimit': True,
                'dynamicSlippage': True,
                'prioritizationFeeLamports': 'auto',
            },
        )
        transaction = data.get('swapTransaction') if isinstance(data, dict) else None
        if not transaction:
            raise ExecutionError("Swap endpoint returned no transaction", quote.output_mint, 'swap', stage='build')
        return transaction

    async def sign(self, payload: str) -> str:
        data = await self.signer.post("/sign", payload={'transaction': payload})
        signed = data.get('signedTransaction') if isinstance(data, dict) else None
        if not signed:
            raise ExecutionError("Signer returned no transaction", '', 'swap', stage='sign')
        return signed

    async def submit(self, signed_payload: str) -> str:
        signature = await self.rpc.call(
            'sendTransaction',
            [signed_payload, {'encoding': 'base64', 'skipPreflight': True, 'maxRetries': 2}],
        )
        if not signature:
            raise ExecutionError("RPC returned no signature", '', 'swap', stage='submit')
        logger.info("[%s] Transaction sent: %s", self.name, signature)
        return str(signature)

    async def confirm(self, signature: str) -> ConfirmationStatus:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.confirm_timeout_s
        while True:
            status = await self.get_status(signature)
            if status is not ConfirmationStatus.UNKNOWN:
                return status
            if loop.time() >= deadline:
                return ConfirmationStatus.UNKNOWN
            await self._sleep(self.confirm_check_interval_s)

    async def get_status(self, signature: str) -> ConfirmationStatus:
        result = await self.rpc.call(
            'getSignatureStatuses',
            [[signature], {'searchTransactionHistory': True}],
        )
        values = (result or {}).get('value') or [None]
        entry = values[0]
        if not entry:
            return ConfirmationStatus.UNKNOWN
        if entry.get('err'):
            return ConfirmationStatus.FAILED
        if entry.get('confirmationStatus') in ('confirmed', 'finalized'):
            return ConfirmationStatus.CONFIRMED
        return ConfirmationStatus.UNKNOWN

    async def get_balance(self, mint: str) -> int:
        result = await self.rpc.call(
            'getTokenAccountsByOwner',
            [self.wallet_public_key, {'mint': mint}, {'encoding': 'jsonParsed'}],
        )
        total = 0
        for account in (result or {}).get('value') or []:
            info = (((account.get('account') or {}).get('data') or {}).get('parsed') or {}).get('info') or {}
            amount = (info.get('tokenAmount') or {}).get('amount')
            if amount is not None:
                total += int(amount)
        return total

    async def close(self) -> None:
        for client in (self.swap_api, self.rpc.http, self.signer):
            await client.close()

    @staticmethod
    def _as_float(value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None
