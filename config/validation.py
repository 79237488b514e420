"""Startup checks that fail fast before any trading loop is started."""
import logging
import re
from typing import Any, List, Mapping

from errors import ConfigurationError


logger = logging.getLogger(__name__)

KNOWN_STRATEGIES = ('crossover', 'trend_momentum')
BASE58_PATTERN = re.compile(r'^[1-9A-HJ-NP-Za-km-z]+$')


def as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


def _section(cfg: Any, name: str) -> Mapping:
    if hasattr(cfg, 'section'):
        return cfg.section(name)
    value = cfg.get(name) if isinstance(cfg, Mapping) else None
    return value if isinstance(value, Mapping) else {}


def _positive(section: Mapping, key: str, label: str, problems: List[str]) -> None:
    value = section.get(key)
    try:
        if value is None or float(value) <= 0:
            problems.append(f"{label} must be positive")
    except (TypeError, ValueError):
        problems.append(f"{label} must be a number")


def validate_settings(cfg: Any) -> None:
    """Raise ``ConfigurationError`` naming every missing or invalid setting."""
    missing: List[str] = []
    problems: List[str] = []

    execution = _section(cfg, 'execution')
    if not as_bool(execution.get('paper_mode', True)):
        for key in ('rpc_url', 'wallet_public_key', 'signer_url'):
            if not execution.get(key):
                missing.append(f"execution.{key}")
        wallet = execution.get('wallet_public_key')
        if wallet and not BASE58_PATTERN.match(str(wallet)):
            problems.append("execution.wallet_public_key is not a base58 string")
    for key in ('max_retries', 'fallback_attempts'):
        try:
            if int(execution.get(key, 0)) < 0:
                problems.append(f"execution.{key} must not be negative")
        except (TypeError, ValueError):
            problems.append(f"execution.{key} must be an integer")

    notifications = _section(cfg, 'notifications')
    token = notifications.get('telegram_token')
    chat_id = notifications.get('telegram_chat_id')
    if bool(token) != bool(chat_id):
        missing.append('notifications.telegram_chat_id' if token else 'notifications.telegram_token')
    if chat_id and not re.match(r'^-?\d+$', str(chat_id)):
        problems.append("notifications.telegram_chat_id must be numeric")

    health = _section(cfg, 'market_health')
    health_assets = health.get('assets') or []
    if not health_assets:
        missing.append('market_health.assets')
    for asset in health_assets:
        try:
            if float(asset.get('weight', 0)) <= 0:
                problems.append(f"market_health asset {asset.get('name')} needs a positive weight")
        except (TypeError, ValueError):
            problems.append(f"market_health asset {asset.get('name')} has a non-numeric weight")
    _positive(health, 'indicator_period', 'market_health.indicator_period', problems)

    assets = _section(cfg, 'assets')
    trade = assets.get('trade') or []
    if not trade:
        missing.append('assets.trade')
    for index, asset in enumerate(trade):
        for key in ('name', 'mint'):
            if not (asset or {}).get(key):
                missing.append(f"assets.trade[{index}].{key}")
    quote = assets.get('quote') or {}
    for key in ('name', 'mint'):
        if not quote.get(key):
            missing.append(f"assets.quote.{key}")

    strategy = _section(cfg, 'strategy')
    if strategy.get('name') not in KNOWN_STRATEGIES:
        problems.append(f"strategy.name must be one of {', '.join(KNOWN_STRATEGIES)}")
    _positive(strategy, 'trade_amount', 'strategy.trade_amount', problems)

    scheduler = _section(cfg, 'scheduler')
    _positive(scheduler, 'analysis_interval_s', 'scheduler.analysis_interval_s', problems)
    _positive(scheduler, 'monitor_interval_s', 'scheduler.monitor_interval_s', problems)

    if missing or problems:
        details = missing + problems
        message = "Invalid configuration: " + "; ".join(details)
        logger.error(message)
        raise ConfigurationError(message, missing=missing)
    logger.info("Configuration validated")
