import logging
import time
from typing import TYPE_CHECKING, Dict, Optional

from api.metrics import metrics
from errors import PersistenceError, ValidationError

if TYPE_CHECKING:
    from main import TradingBot


logger = logging.getLogger(__name__)


class MarketHealthService:
    """Slow-loop cycle: aggregate health, momentum adjustment and operator summaries."""

    def __init__(self, system: 'TradingBot'):
        self.system = system
        self.cycles = 0
        self.heartbeat_cycles = int(system.scheduler_cfg.get('heartbeat_cycles', 24))

    async def run_cycle(self) -> Dict:
        system = self.system
        self.cycles += 1
        score = await system.health_evaluator.evaluate()
        history = system.signal_history
        system.latest_score = score
        system.health_invalidated = score.aborted
        if score.aborted:
            # Placeholder score: kept out of the history and the shared health value.
            logger.warning(
                "Market health invalidated (%s unavailable); trading skipped this cycle",
                ', '.join(score.failed_assets),
            )
            momentum = history.momentum()
            adjusted = score.raw_value
        else:
            history.record(score.raw_value)
            momentum = history.momentum()
            adjusted = history.adjusted(score.raw_value)
            system.latest_health = adjusted if system.use_adjusted_health else score.raw_value
            metrics.update_market_health(score.raw_value, adjusted, momentum)

        summary = {
            'cycle': self.cycles,
            'raw': score.raw_value,
            'momentum': momentum,
            'adjusted': adjusted,
            'aborted': score.aborted,
            'failed_assets': score.failed_assets,
            'open_positions': len(system.book),
        }
        system.notifier.notify(self._format_summary(summary))
        if self.heartbeat_cycles and self.cycles % self.heartbeat_cycles == 0:
            health = 'n/a' if system.latest_health is None else f"{system.latest_health:.2f}"
            system.notifier.notify(
                f"💓 Heartbeat: {self.cycles} analysis cycles, {len(system.book)} open positions, "
                f"market health {health}"
            )
        return summary

    @staticmethod
    def _format_summary(summary: Dict) -> str:
        lines = [
            f"*Analysis cycle {summary['cycle']}*",
            f"Market health: raw `{summary['raw']:.2f}` adjusted `{summary['adjusted']:.2f}` "
            f"(momentum `{summary['momentum']:+.3f}`)",
            f"Open positions: {summary['open_positions']}",
        ]
        if summary['failed_assets']:
            lines.append(f"Degraded data: {', '.join(summary['failed_assets'])}")
        if summary['aborted']:
            lines.append("Score invalidated by missing data (strict mode)")
        return "\n".join(lines)


class PositionMonitorService:
    """Fast-loop repricing of open positions and exit execution."""

    def __init__(self, system: 'TradingBot'):
        self.system = system

    async def run_cycle(self) -> int:
        system = self.system
        exits = 0
        for position in system.book:
            price = await system.provider.get_current_price(position.mint)
            if price is None:
                logger.warning("No current price for %s, skipping reprice", position.asset_id)
                continue
            try:
                decision = system.book.reprice(position.id, price, health=system.latest_health)
            except PersistenceError as exc:
                logger.error("Could not persist reprice of %s: %s", position.asset_id, exc)
                metrics.record_error('persistence')
                continue
            logger.info(
                "[Position] %s: price=%.8f entry=%.8f P&L=%+.2f%% highest=%.8f",
                position.asset_id, price, position.entry_price, position.pnl_pct(price), position.highest_price,
            )
            if decision is None:
                continue
            logger.info("Exit signal for %s: %s", position.asset_id, decision.describe())
            try:
                sold = await system.gateway.sell(position, price, decision.reason)
            except ValidationError as exc:
                logger.error("Sell of %s rejected: %s", position.asset_id, exc)
                continue
            if sold:
                exits += 1
        metrics.update_open_positions(len(system.book))
        return exits


class EntryScanService:
    """Runs the configured entry strategy over the tradable assets."""

    def __init__(self, system: 'TradingBot'):
        self.system = system

    async def scan(self) -> int:
        system = self.system
        strategy = system.strategy
        if system.paused:
            logger.info("[Scan] Skipped - trading paused")
            return 0
        if system.health_invalidated:
            logger.info("[Scan] Skipped - market health invalidated by missing reference data")
            return 0
        allowed, why = strategy.should_scan(system.latest_health)
        if not allowed:
            logger.info("[Scan] Skipped - %s", why)
            return 0
        if not system.limits.can_add_position(len(system.book)):
            logger.info(
                "[Scan] Skipped - maximum positions reached (%s/%s)",
                len(system.book), system.limits.max_concurrent_positions,
            )
            return 0

        buys = 0
        for asset in system.trade_assets:
            if system.book.has_asset(asset.name):
                logger.info("  %s: position exists, skipping", asset.name)
                continue
            bought = await self._scan_asset(asset)
            if bought is None:
                break
            buys += int(bought)
        return buys

    async def _scan_asset(self, asset) -> Optional[bool]:
        """Return True on a buy, False otherwise, None once the position cap is hit."""
        system = self.system
        strategy = system.strategy
        price = await system.provider.get_current_price(asset.mint)
        if price is None:
            logger.warning("  %s: could not get current price", asset.name)
            return False
        strategy.observe(asset.name, price)

        prices, volumes = [], []
        if strategy.wants_series(asset.name):
            if not asset.pool:
                logger.warning("  %s: no pool configured for price history", asset.name)
                return False
            series = await system.provider.get_series_with_volume(
                asset.pool, strategy.timeframe, strategy.history_limit
            )
            prices, volumes = series.prices, series.volumes
        decision = strategy.evaluate(asset.name, prices, volumes, system.latest_health)
        logger.info("  %s: %s - %s", asset.name, decision.action.value, decision.reason)
        if not decision.is_buy:
            return False

        if not system.limits.can_add_position(len(system.book)):
            logger.info("  Position limit reached, skipping buy of %s", asset.name)
            return None
        try:
            return await system.gateway.buy(asset.name, system.trade_amount, price, decision.reason)
        except ValidationError as exc:
            logger.warning("  Buy of %s rejected: %s", asset.name, exc)
            return False


def cycle_timer(loop_name: str):
    started = time.monotonic()

    def done() -> float:
        elapsed = time.monotonic() - started
        metrics.record_cycle(loop_name, elapsed)
        return elapsed

    return done


