import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from api.metrics import metrics
from errors import ExecutionError, PersistenceError, ValidationError
from risk.trade_limits import TradeLimits
from strategy.execution_types import ConfirmationStatus, SwapQuote, TradeAsset, TradeReceipt
from strategy.position_book import PositionBook
from strategy.positions import ExitReason, Position
from strategy.transports.base import VenueTransport


logger = logging.getLogger(__name__)


def reason_label(reason) -> str:
    return reason.value if isinstance(reason, ExitReason) else str(reason)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay_s: float = 5.0
    max_delay_s: float = 20.0
    fallback_attempts: int = 3

    @classmethod
    def from_config(cls, cfg: Mapping) -> 'RetryPolicy':
        return cls(
            max_retries=int(cfg.get('max_retries', 3)),
            base_delay_s=float(cfg.get('base_delay_s', 5)),
            max_delay_s=float(cfg.get('max_delay_s', 20)),
            fallback_attempts=int(cfg.get('fallback_attempts', 3)),
        )

    def delay(self, attempt: int) -> float:
        return min(self.base_delay_s * 2 ** (attempt - 1), self.max_delay_s)


class ExecutionGateway:
    """Buy and sell entry points shared by the trading loops and manual commands.

    A trade is attempted ``1 + max_retries`` times on the primary venue, then
    ``fallback_attempts`` times on the fallback venue when one is configured.
    Only a confirmed transaction changes the position book. Sells are
    idempotent: a position that is no longer in the book counts as sold.
    """

    def __init__(
        self,
        book: PositionBook,
        limits: TradeLimits,
        primary: VenueTransport,
        quote_asset: TradeAsset,
        assets: Iterable[TradeAsset],
        notifier,
        fallback: Optional[VenueTransport] = None,
        trend_store=None,
        retry: Optional[RetryPolicy] = None,
        call_timeout_s: float = 30.0,
        confirm_poll_attempts: int = 10,
        confirm_poll_interval_s: float = 3.0,
        slippage_bps: int = 250,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.book = book
        self.limits = limits
        self.primary = primary
        self.fallback = fallback
        self.quote_asset = quote_asset
        self.quote_decimals = quote_asset.decimals if quote_asset.decimals is not None else 6
        self.assets: Dict[str, TradeAsset] = {}
        for asset in assets:
            self.assets[asset.name] = asset
            self.assets[asset.mint] = asset
        self.notifier = notifier
        self.trend_store = trend_store
        self.retry = retry or RetryPolicy()
        self.call_timeout_s = call_timeout_s
        self.confirm_poll_attempts = confirm_poll_attempts
        self.confirm_poll_interval_s = confirm_poll_interval_s
        self.slippage_bps = slippage_bps
        self._sleep = sleep
        self._locks: Dict[str, asyncio.Lock] = {}

    def resolve_asset(self, asset_id: str) -> TradeAsset:
        asset = self.assets.get(asset_id) or self.assets.get(str(asset_id).upper())
        if asset is None:
            raise ValidationError(f"Unknown asset {asset_id}", 'asset', asset_id)
        return asset

    def _lock_for(self, asset: TradeAsset) -> asyncio.Lock:
        lock = self._locks.get(asset.name)
        if lock is None:
            lock = self._locks[asset.name] = asyncio.Lock()
        return lock

    def validate_buy(self, asset: TradeAsset, notional: float, expected_price: float) -> None:
        self.limits.validate_identifier(asset.mint)
        self.limits.validate_amount(notional)
        self.limits.validate_price(expected_price)
        self.limits.check_open_capacity(len(self.book))
        if self.book.has_asset(asset.name):
            raise ValidationError(f"Position already open for {asset.name}", 'asset', asset.name)

    async def buy(self, asset_id: str, notional: float, expected_price: float,
                  reason: Optional[str] = None) -> bool:
        asset = self.resolve_asset(asset_id)
        self.validate_buy(asset, notional, expected_price)

        async with self._lock_for(asset):
            if self.book.has_asset(asset.name):
                logger.warning("Buy for %s skipped: position opened concurrently", asset.name)
                return False

            amount = int(round(notional * 10 ** self.quote_decimals))
            logger.info("BUY %s: %.2f %s at ~%.8f", asset.name, notional, self.quote_asset.name, expected_price)
            started = time.monotonic()
            token_before = await self._query_balance(asset.mint)
            receipt = await self._execute('BUY', asset, self.quote_asset.mint, asset.mint, amount, token_before)
            metrics.record_trade_latency('BUY', time.monotonic() - started)

            if receipt is None:
                metrics.record_trade('BUY', False)
                await self.notifier.fatal_alert(
                    f"Buy of {asset.name} failed or could not be confirmed; no position opened",
                    {'asset': asset.name, 'notional': notional, 'reason': reason},
                )
                return False

            metrics.record_trade('BUY', True)
            entry_price = receipt.fill_price or expected_price
            try:
                self.book.open(asset.name, asset.mint, entry_price, notional, token_amount=receipt.out_amount)
            except PersistenceError as exc:
                logger.critical("Position for %s opened but not persisted: %s", asset.name, exc)
                await self.notifier.send_alert(
                    'persistence', f"Bought {asset.name} but failed to save the position: {exc}", 'critical',
                    {'signature': receipt.signature},
                )
            metrics.update_open_positions(len(self.book))
            self.notifier.trade_notification(asset.name, 'BUY', entry_price, reason)
            return True

    async def sell(self, position: Position, current_price: Optional[float] = None,
                   reason: Union[ExitReason, str, None] = None) -> bool:
        reason = reason or ExitReason.MANUAL
        if position.id not in self.book:
            logger.info("Position #%s already closed, nothing to sell", position.id)
            return True

        asset = self.assets.get(position.asset_id) or TradeAsset(position.asset_id, position.mint)
        async with self._lock_for(asset):
            if position.id not in self.book:
                logger.info("Position #%s closed while waiting, nothing to sell", position.id)
                return True
            self.limits.validate_identifier(position.mint)
            if current_price is not None:
                self.limits.validate_price(current_price)

            balance = await self._query_balance(position.mint)
            if balance is None:
                balance = position.token_amount
                logger.warning("Balance lookup failed for %s, using recorded amount %s", asset.name, balance)
            if balance is None:
                await self._sell_failed(position, asset, "could not determine token balance")
                return False
            if balance == 0:
                logger.warning("Zero %s balance on venue; closing position #%s", asset.name, position.id)
                self._finalize_close(position, ExitReason.ZERO_BALANCE)
                self.notifier.notify(
                    f"Position {asset.name} closed: no remaining balance on the venue (already sold?)"
                )
                return True

            quote_before = await self._query_balance(self.quote_asset.mint)
            logger.info("SELL %s: %s base units (%s)", asset.name, balance, reason_label(reason))
            started = time.monotonic()
            receipt = await self._execute('SELL', asset, position.mint, self.quote_asset.mint, balance, quote_before)
            metrics.record_trade_latency('SELL', time.monotonic() - started)

            if receipt is None:
                metrics.record_trade('SELL', False)
                await self._sell_failed(position, asset, "all retries and fallback attempts failed")
                return False

            metrics.record_trade('SELL', True)
            exit_price = receipt.fill_price or current_price or position.entry_price
            pnl = await self._reconcile_pnl(position, exit_price, quote_before)
            self._finalize_close(position, reason, pnl)
            self.notifier.trade_notification(
                asset.name, 'SELL', exit_price, reason_label(reason), pnl
            )
            return True

    async def _sell_failed(self, position: Position, asset: TradeAsset, detail: str) -> None:
        try:
            self.book.flag_attention(position.id)
        except PersistenceError as exc:
            logger.error("Could not persist attention flag for #%s: %s", position.id, exc)
        await self.notifier.fatal_alert(
            f"Sell of {asset.name} failed: {detail}. Position left open.",
            {'position_id': position.id, 'asset': asset.name},
        )

    async def _reconcile_pnl(self, position: Position, exit_price: float,
                             quote_before: Optional[int]) -> float:
        naive = position.pnl_usd(exit_price)
        if quote_before is None:
            return naive
        quote_after = await self._query_balance(self.quote_asset.mint)
        if quote_after is None:
            return naive
        proceeds = (quote_after - quote_before) / 10 ** self.quote_decimals
        if proceeds <= 0:
            logger.warning("Quote balance did not increase after sell of %s; using estimated P&L", position.asset_id)
            return naive
        actual = proceeds - position.notional
        logger.info("P&L reconciled for %s: actual %.2f vs estimated %.2f", position.asset_id, actual, naive)
        return actual

    def _finalize_close(self, position: Position, reason, pnl: Optional[float] = None) -> None:
        try:
            closed = self.book.close(position.id)
        except PersistenceError as exc:
            closed = position
            logger.critical("Position #%s closed but removal not persisted: %s", position.id, exc)
            self.notifier.notify(f"Closed {position.asset_id} but failed to save positions: {exc}")
        if closed is None:
            return
        metrics.record_position_closed(reason_label(reason))
        metrics.update_open_positions(len(self.book))
        if pnl is not None:
            metrics.record_pnl(pnl)
        if self.trend_store is not None:
            try:
                self.trend_store.reset(position.asset_id)
            except PersistenceError as exc:
                logger.error("Trend state reset failed for %s: %s", position.asset_id, exc)

    def _venues(self) -> List[Tuple[VenueTransport, int]]:
        venues = [(self.primary, 1 + self.retry.max_retries)]
        if self.fallback is not None and self.retry.fallback_attempts > 0:
            venues.append((self.fallback, self.retry.fallback_attempts))
        return venues

    async def _execute(self, side: str, asset: TradeAsset, input_mint: str, output_mint: str,
                       amount: int, output_before: Optional[int] = None) -> Optional[TradeReceipt]:
        """Run the retry/failover schedule.

        A transaction whose outcome stays unknown ends the schedule: resubmitting
        could fill the same trade twice.
        """
        for index, (venue, attempts) in enumerate(self._venues()):
            if index:
                metrics.record_failover(side)
                logger.warning("%s %s: primary venue exhausted, failing over to %s", side, asset.name, venue.name)
            for attempt in range(1, attempts + 1):
                try:
                    receipt = await self._round_trip(
                        venue, side, asset, input_mint, output_mint, amount, attempt, output_before
                    )
                    logger.info(
                        "%s %s confirmed on %s (attempt %s/%s): %s",
                        side, asset.name, venue.name, attempt, attempts, receipt.signature,
                    )
                    return receipt
                except Exception as exc:
                    if isinstance(exc, ExecutionError) and exc.stage == 'unresolved':
                        logger.error("%s %s: %s; not retrying", side, asset.name, exc.message)
                        return None
                    metrics.record_retry(side, venue.name)
                    logger.warning(
                        "%s %s failed on %s (attempt %s/%s): %r",
                        side, asset.name, venue.name, attempt, attempts, exc,
                    )
                    if attempt < attempts:
                        await self._sleep(self.retry.delay(attempt))
        logger.error("%s %s failed on every venue", side, asset.name)
        return None

    async def _round_trip(self, venue: VenueTransport, side: str, asset: TradeAsset, input_mint: str,
                          output_mint: str, amount: int, attempt: int,
                          output_before: Optional[int] = None) -> TradeReceipt:
        quote = await self._call(venue.quote(input_mint, output_mint, amount, self.slippage_bps))
        payload = await self._call(venue.build(quote))
        signed = await self._call(venue.sign(payload))
        signature = await self._call(venue.submit(signed))
        status = await self._call(venue.confirm(signature))
        if status is ConfirmationStatus.UNKNOWN:
            status = await self._poll_status(venue, signature)
        if status is ConfirmationStatus.UNKNOWN:
            received = await self._balance_increase(output_mint, output_before)
            if received is None:
                raise ExecutionError(
                    f"Transaction {signature} unresolved and no balance change observed",
                    asset.name, side, stage='unresolved',
                )
            logger.warning(
                "Transaction %s unresolved but output balance grew by %s; treating as confirmed",
                signature, received,
            )
            quote.out_amount = received
            status = ConfirmationStatus.CONFIRMED
        if status is not ConfirmationStatus.CONFIRMED:
            raise ExecutionError(f"Transaction {signature} {status.value}", asset.name, side, stage='confirm')
        return TradeReceipt(
            side=side,
            asset_id=asset.name,
            signature=signature,
            endpoint=venue.name,
            attempt=attempt,
            in_amount=quote.in_amount,
            out_amount=quote.out_amount,
            fill_price=self._fill_price(side, asset, quote),
        )

    async def _poll_status(self, venue: VenueTransport, signature: str) -> ConfirmationStatus:
        for _ in range(self.confirm_poll_attempts):
            await self._sleep(self.confirm_poll_interval_s)
            status = await self._call(venue.get_status(signature))
            if status is not ConfirmationStatus.UNKNOWN:
                return status
        logger.warning("Transaction %s still unresolved after %s status checks", signature, self.confirm_poll_attempts)
        return ConfirmationStatus.UNKNOWN

    async def _balance_increase(self, mint: str, before: Optional[int]) -> Optional[int]:
        if before is None:
            return None
        after = await self._query_balance(mint)
        if after is None or after <= before:
            return None
        return after - before

    async def _query_balance(self, mint: str) -> Optional[int]:
        for venue, _ in self._venues():
            try:
                return int(await self._call(venue.get_balance(mint)))
            except Exception as exc:
                logger.warning("Balance lookup on %s failed: %r", venue.name, exc)
        return None

    async def _call(self, awaitable):
        return await asyncio.wait_for(awaitable, self.call_timeout_s)

    def _fill_price(self, side: str, asset: TradeAsset, quote: SwapQuote) -> Optional[float]:
        if asset.decimals is None or quote.in_amount <= 0 or quote.out_amount <= 0:
            return None
        quote_scale = 10 ** self.quote_decimals
        token_scale = 10 ** asset.decimals
        if side == 'BUY':
            return (quote.in_amount / quote_scale) / (quote.out_amount / token_scale)
        return (quote.out_amount / quote_scale) / (quote.in_amount / token_scale)
