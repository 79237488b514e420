import asyncio
import logging
import signal
import time
from typing import Any, Dict, List, Optional

from analytics.market_health import AggregateHealthScore, MarketHealthEvaluator
from analytics.signal_history import SignalHistory
from api.alerts import Notifier
from api.metrics import metrics, start_metrics_server
from config import Config, config
from config.validation import as_bool, validate_settings
from errors import ValidationError, error_context
from ingest.price_feeds import MarketDataProvider
from monitoring.async_utils import run_tasks_with_cleanup, sleep_until_stopped
from monitoring.log_reader import extract_recent_logs
from monitoring.logging_utils import setup_logging
from orchestration.persistence import PositionStore, TrendStateStore
from orchestration.services import EntryScanService, MarketHealthService, PositionMonitorService, cycle_timer
from risk.trade_limits import TradeLimits
from risk.trailing_stop import build_arming_policy, build_trailing_policy
from strategy.entry_signals import build_entry_strategy
from strategy.execution import ExecutionGateway, RetryPolicy
from strategy.execution_types import TradeAsset
from strategy.position_book import PositionBook
from strategy.positions import ExitReason
from strategy.simulators.paper import PaperVenue
from strategy.transports.jupiter import JupiterTransport


logger = logging.getLogger(__name__)


class TradingBot:
    """Owns the shared trading state and runs the analysis and monitor loops."""

    def __init__(
        self,
        config_obj: Optional[Config] = None,
        provider: Optional[MarketDataProvider] = None,
        notifier: Optional[Notifier] = None,
        primary_venue=None,
        fallback_venue=None,
        sleep=asyncio.sleep,
    ):
        self.config = config_obj or config
        cfg = self.config
        validate_settings(cfg)
        self.scheduler_cfg = cfg.section('scheduler')
        self.execution_cfg = cfg.section('execution')
        self.monitoring_cfg = cfg.section('monitoring')
        self.logging_cfg = cfg.section('logging')
        strategy_cfg = cfg.section('strategy')
        history_cfg = cfg.section('signal_history')
        positions_cfg = cfg.section('positions')
        persistence_cfg = cfg.section('persistence')
        assets_cfg = cfg.section('assets')

        self.paper_mode = as_bool(self.execution_cfg.get('paper_mode', True))
        self.quote_asset = TradeAsset.from_dict(assets_cfg['quote'])
        self.trade_assets: List[TradeAsset] = [TradeAsset.from_dict(a) for a in assets_cfg.get('trade') or []]
        self.trade_amount = float(strategy_cfg.get('trade_amount', 500))

        self.notifier = notifier or Notifier(cfg.section('notifications'))
        self.provider = provider or MarketDataProvider.from_config(cfg.section('providers'))
        self.health_evaluator = MarketHealthEvaluator(self.provider, cfg.section('market_health'))
        self.signal_history = SignalHistory(
            capacity=int(history_cfg.get('capacity', 2)),
            weight=float(history_cfg.get('momentum_weight', 2.0)),
        )
        self.use_adjusted_health = as_bool(history_cfg.get('use_adjusted', True))

        self.position_store = PositionStore(persistence_cfg.get('positions_file', 'data/positions.json'))
        self.trend_store = TrendStateStore(persistence_cfg.get('trend_states_file', 'data/asset_states.json'))
        self.book = PositionBook(
            self.position_store,
            build_trailing_policy(positions_cfg.get('trailing')),
            build_arming_policy(positions_cfg.get('arming')),
            stop_loss_pct=positions_cfg.get('stop_loss_pct'),
            health_source=lambda: self.latest_health,
        )
        self.strategy = build_entry_strategy(strategy_cfg, self.trend_store)
        self.entry_scan_loop = self.scheduler_cfg.get('entry_scan_loop') or self.strategy.scan_loop
        self.limits = TradeLimits(cfg.section('limits'))

        primary, fallback = self._build_venues(primary_venue, fallback_venue)
        self.gateway = ExecutionGateway(
            self.book,
            self.limits,
            primary,
            self.quote_asset,
            self.trade_assets,
            self.notifier,
            fallback=fallback,
            trend_store=self.trend_store,
            retry=RetryPolicy.from_config(self.execution_cfg),
            call_timeout_s=float(self.execution_cfg.get('call_timeout_s', 30)),
            confirm_poll_attempts=int(self.execution_cfg.get('confirm_poll_attempts', 10)),
            confirm_poll_interval_s=float(self.execution_cfg.get('confirm_poll_interval_s', 3)),
            slippage_bps=int(self.execution_cfg.get('slippage_bps', 250)),
            sleep=sleep,
        )

        self.health_service = MarketHealthService(self)
        self.position_service = PositionMonitorService(self)
        self.entry_service = EntryScanService(self)

        self.latest_health: Optional[float] = None
        self.latest_score: Optional[AggregateHealthScore] = None
        self.health_invalidated = False
        self.paused = False
        self.running = False
        self.started_at: Optional[float] = None
        self._stop_event = asyncio.Event()
        self._stopped = False

    def _build_venues(self, primary, fallback):
        if primary is not None:
            return primary, fallback
        if self.paper_mode:
            decimals = {a.mint: a.decimals for a in self.trade_assets if a.decimals is not None}
            venue = PaperVenue(
                self.provider,
                self.quote_asset.mint,
                quote_decimals=self.quote_asset.decimals or 6,
                initial_balance=float(self.execution_cfg.get('paper_initial_balance', 1000.0)),
                decimals=decimals,
            )
            return venue, None
        primary = JupiterTransport.from_config('primary', self.execution_cfg['rpc_url'], self.execution_cfg)
        fallback_url = self.execution_cfg.get('fallback_rpc_url')
        if fallback_url:
            fallback = JupiterTransport.from_config('fallback', fallback_url, self.execution_cfg)
        return primary, fallback

    async def initialize(self):
        self.book.restore()
        self.trend_store.load()
        metrics.update_open_positions(len(self.book))
        metrics.update_paused(self.paused)
        for position in self.book:
            if position.needs_attention:
                logger.warning("Position #%s %s is flagged for manual attention", position.id, position.asset_id)

    async def start(self, handle_signals: bool = True):
        await self.initialize()
        self.running = True
        self.started_at = time.time()
        if as_bool(self.monitoring_cfg.get('metrics_enabled', True)):
            start_metrics_server(
                int(self.monitoring_cfg.get('prometheus_port', 9090)),
                int(self.monitoring_cfg.get('prometheus_port_scan', 0)),
            )
        if handle_signals:
            self._install_signal_handlers()
        mode = 'PAPER' if self.paper_mode else 'LIVE'
        self.notifier.notify(
            f"🚀 Bot started ({mode}, strategy {self.strategy.name}); {len(self.book)} open positions restored"
        )

        tasks = [
            asyncio.create_task(self.analysis_loop()),
            asyncio.create_task(self.monitor_loop()),
        ]

        async def _cleanup():
            await self.stop()

        await run_tasks_with_cleanup(tasks, cleanup=_cleanup)

    async def stop(self):
        if self._stopped:
            return
        self._stopped = True
        self.running = False
        self._stop_event.set()
        try:
            self.book.persist()
            logger.info("Flushed %s open positions", len(self.book))
        except Exception as exc:
            logger.critical("Final position flush failed: %s", exc)
        await self.notifier.send_message("🛑 Bot stopped")
        await self.notifier.drain()
        await self.provider.close()
        await self.gateway.primary.close()
        if self.gateway.fallback is not None:
            await self.gateway.fallback.close()

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._stop_event.set)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handlers unavailable for %s", sig)

    async def analysis_loop(self):
        interval = float(self.scheduler_cfg.get('analysis_interval_s', 300))
        while not self._stop_event.is_set():
            await self.run_analysis_cycle()
            if await sleep_until_stopped(self._stop_event, interval):
                break

    async def monitor_loop(self):
        interval = float(self.scheduler_cfg.get('monitor_interval_s', 60))
        while not self._stop_event.is_set():
            await self.run_monitor_cycle()
            if await sleep_until_stopped(self._stop_event, interval):
                break

    async def run_analysis_cycle(self) -> Optional[Dict]:
        done = cycle_timer('analysis')
        try:
            summary = await self.health_service.run_cycle()
            if self.entry_scan_loop == 'analysis':
                summary['buys'] = await self.entry_service.scan()
            return summary
        except Exception as exc:
            await self._cycle_failed('analysis', exc)
            return None
        finally:
            logger.info("Analysis cycle finished in %.2fs", done())

    async def run_monitor_cycle(self) -> Optional[Dict]:
        done = cycle_timer('monitor')
        try:
            result = {'exits': await self.position_service.run_cycle()}
            if self.entry_scan_loop == 'monitor':
                result['buys'] = await self.entry_service.scan()
            return result
        except Exception as exc:
            await self._cycle_failed('monitor', exc)
            return None
        finally:
            logger.debug("Monitor cycle finished in %.2fs", done())

    async def _cycle_failed(self, loop_name: str, exc: Exception):
        details = error_context(exc)
        logger.exception("%s cycle failed: %s", loop_name, details)
        metrics.record_error(details['name'])
        await self.notifier.send_alert(
            f"{loop_name} cycle error", details['message'], 'warning', details.get('context')
        )

    # Command surface

    def get_open_positions(self):
        return self.book.positions

    def is_paused(self) -> bool:
        return self.paused

    def set_paused(self, paused: bool) -> None:
        self.paused = bool(paused)
        metrics.update_paused(self.paused)
        logger.info("Trading %s via command", 'PAUSED' if self.paused else 'RESUMED')

    async def manual_buy(self, asset_name: str, amount: Optional[float] = None) -> bool:
        asset = self.gateway.resolve_asset(asset_name)
        price = await self.provider.get_current_price(asset.mint)
        if price is None:
            raise ValidationError(f"No current price for {asset.name}", 'price', None)
        return await self.gateway.buy(asset.name, amount or self.trade_amount, price, 'Manual buy')

    async def manual_sell(self, asset_name: str) -> bool:
        asset = self.gateway.resolve_asset(asset_name)
        position = self.book.find_by_asset(asset.name)
        if position is None:
            raise ValidationError(f"No open position for {asset.name}", 'asset', asset.name)
        price = await self.provider.get_current_price(asset.mint)
        return await self.gateway.sell(position, price, ExitReason.MANUAL)

    async def status(self) -> Dict[str, Any]:
        positions = []
        for position in self.book:
            price = await self.provider.get_current_price(position.mint)
            trail_pct = self.book.trailing_policy.trail_pct(self.latest_health)
            entry: Dict[str, Any] = position.to_dict()
            entry['state'] = position.state.value
            entry['current_price'] = price
            entry['trailing_stop_price'] = (
                position.highest_price * (1 - trail_pct) if position.trailing_armed and trail_pct > 0 else None
            )
            if price is not None:
                entry['pnl_pct'] = position.pnl_pct(price)
                entry['pnl_usd'] = position.pnl_usd(price)
            positions.append(entry)
        return {
            'running': self.running,
            'paused': self.paused,
            'mode': 'paper' if self.paper_mode else 'live',
            'strategy': self.strategy.name,
            'market_health': self.latest_health,
            'market_health_detail': self.latest_score.to_dict() if self.latest_score else None,
            'market_health_invalidated': self.health_invalidated,
            'momentum': self.signal_history.momentum(),
            'uptime_s': time.time() - self.started_at if self.started_at else 0.0,
            'positions': positions,
        }

    def recent_logs(self, minutes: int = 1) -> List[str]:
        return extract_recent_logs(self.logging_cfg.get('log_dir', 'logs'), minutes)


async def main():
    setup_logging(config.section('logging').get('level', 'INFO'), log_dir=config.section('logging').get('log_dir'))
    bot = TradingBot(config)
    try:
        await bot.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Bot shutting down on interrupt")
        await bot.stop()


if __name__ == "__main__":
    asyncio.run(main())
