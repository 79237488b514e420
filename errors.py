"""Error taxonomy shared across the bot.

Validation and configuration errors abort the operation (or startup) that
raised them. Provider errors are absorbed by the data layer with a neutral
fallback. Execution errors are retried by the gateway and only surface as a
boolean outcome. Persistence errors are fatal except for a missing file.
"""
from typing import Any, Dict, Iterable, Optional


class TradingBotError(Exception):
    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}


class ValidationError(TradingBotError):
    def __init__(self, message: str, field_name: str, value: Any = None, **context: Any):
        super().__init__(message, field_name=field_name, value=value, **context)
        self.field_name = field_name
        self.value = value


class ProviderError(TradingBotError):
    def __init__(self, message: str, provider: str, status: Optional[int] = None,
                 endpoint: Optional[str] = None):
        super().__init__(message, provider=provider, status=status, endpoint=endpoint)
        self.provider = provider
        self.status = status
        self.endpoint = endpoint


class ExecutionError(TradingBotError):
    def __init__(self, message: str, asset_id: str, side: str, stage: Optional[str] = None):
        super().__init__(message, asset_id=asset_id, side=side, stage=stage)
        self.asset_id = asset_id
        self.side = side
        self.stage = stage


class PersistenceError(TradingBotError):
    def __init__(self, message: str, operation: str, path: Optional[str] = None):
        super().__init__(message, operation=operation, path=path)
        self.operation = operation
        self.path = path


class ConfigurationError(TradingBotError):
    def __init__(self, message: str, missing: Optional[Iterable[str]] = None):
        missing_list = list(missing or [])
        super().__init__(message, missing=missing_list or None)
        self.missing = missing_list


def error_context(error: BaseException) -> Dict[str, Any]:
    if isinstance(error, TradingBotError):
        return {'name': type(error).__name__, 'message': error.message, 'context': error.context}
    return {'name': type(error).__name__, 'message': str(error)}
