import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Tuple

from api.metrics import metrics
from errors import ProviderError
from ingest.http_client import JSONHTTPClient
from ingest.rate_limiter import MinIntervalLimiter


logger = logging.getLogger(__name__)

TIMEFRAME_MINUTES = {'1m': 1, '5m': 5, '15m': 15, '30m': 30, '1h': 60, '4h': 240, '1d': 1440}
GECKOTERMINAL_TIMEFRAMES = {
    '1m': ('minute', 1), '5m': ('minute', 5), '15m': ('minute', 15),
    '1h': ('hour', 1), '4h': ('hour', 4), '1d': ('day', 1),
}


@dataclass
class PriceVolumeSeries:
    prices: List[float] = field(default_factory=list)
    volumes: List[float] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.prices)


def _as_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class CoinGeckoClient:
    """Historical USD prices for the reference assets behind market health."""

    def __init__(self, http: JSONHTTPClient, retries: int = 3,
                 base_delay_s: float = 1.0, max_delay_s: float = 10.0):
        self.http = http
        self.retries = max(1, int(retries))
        self.base_delay_s = base_delay_s
        self.max_delay_s = max_delay_s
        self._sleep = asyncio.sleep

    async def market_chart(self, coin_id: str, timeframe: str, limit: int) -> List[float]:
        minutes = TIMEFRAME_MINUTES.get(timeframe, 5)
        days = round(max(minutes * limit / 1440.0, 0.1), 3)
        params = {'vs_currency': 'usd', 'days': days}
        for attempt in range(1, self.retries + 1):
            try:
                payload = await self.http.get(f"/coins/{coin_id}/market_chart", params=params)
                metrics.record_api_call('coingecko', True)
                prices = payload.get('prices') if isinstance(payload, dict) else None
                series = [p for p in (_as_float(row[1]) for row in prices or [] if len(row) > 1) if p is not None]
                return series[-limit:]
            except ProviderError as exc:
                metrics.record_api_call('coingecko', False)
                if attempt >= self.retries:
                    raise
                delay = min(self.base_delay_s * 2 ** (attempt - 1), self.max_delay_s)
                logger.warning(
                    "CoinGecko %s failed (attempt %s/%s): %s; retrying in %.1fs",
                    coin_id, attempt, self.retries, exc, delay,
                )
                await self._sleep(delay)
        return []


class JupiterPriceClient:
    def __init__(self, http: JSONHTTPClient):
        self.http = http

    async def current_price(self, mint: str) -> Optional[float]:
        payload = await self.http.get("", params={'ids': mint})
        metrics.record_api_call('jupiter_price', True)
        entry = payload.get(mint) if isinstance(payload, dict) else None
        if not isinstance(entry, dict):
            return None
        price = _as_float(entry.get('usdPrice'))
        if price is None or price <= 0:
            return None
        return price


class GeckoTerminalClient:
    """OHLCV candles (closes and volumes) for a DEX pool."""

    def __init__(self, http: JSONHTTPClient, network: str = 'solana'):
        self.http = http
        self.network = network

    async def ohlcv(self, pool: str, timeframe: str, limit: int) -> PriceVolumeSeries:
        unit, aggregate = GECKOTERMINAL_TIMEFRAMES.get(timeframe, ('minute', 1))
        payload = await self.http.get(
            f"/networks/{self.network}/pools/{pool}/ohlcv/{unit}",
            params={'aggregate': aggregate, 'limit': limit, 'currency': 'usd'},
        )
        metrics.record_api_call('geckoterminal', True)
        rows = []
        if isinstance(payload, dict):
            rows = ((payload.get('data') or {}).get('attributes') or {}).get('ohlcv_list') or []
        candles: List[Tuple[float, float, float]] = []
        for row in rows:
            if len(row) < 6:
                continue
            ts, close, volume = _as_float(row[0]), _as_float(row[4]), _as_float(row[5])
            if ts is None or close is None or volume is None:
                continue
            candles.append((ts, close, volume))
        candles.sort(key=lambda c: c[0])
        candles = candles[-limit:]
        return PriceVolumeSeries(
            prices=[c[1] for c in candles],
            volumes=[c[2] for c in candles],
        )


class MarketDataProvider:
    """Read-only market data facade. Never raises: failures degrade to empty results."""

    def __init__(
        self,
        coingecko: CoinGeckoClient,
        jupiter: JupiterPriceClient,
        geckoterminal: GeckoTerminalClient,
    ):
        self.coingecko = coingecko
        self.jupiter = jupiter
        self.geckoterminal = geckoterminal

    @classmethod
    def from_config(cls, cfg: Mapping) -> 'MarketDataProvider':
        timeout = float(cfg.get('timeout_s', 15))
        coingecko = CoinGeckoClient(
            JSONHTTPClient(
                cfg.get('coingecko_url', 'https://api.coingecko.com/api/v3'),
                'coingecko',
                timeout_s=timeout,
                limiter=MinIntervalLimiter(cfg.get('coingecko_min_interval_s', 2.0)),
            ),
            retries=cfg.get('coingecko_retries', 3),
            base_delay_s=cfg.get('coingecko_base_delay_s', 1.0),
            max_delay_s=cfg.get('coingecko_max_delay_s', 10.0),
        )
        jupiter = JupiterPriceClient(
            JSONHTTPClient(
                cfg.get('jupiter_price_url', 'https://lite-api.jup.ag/price/v3'),
                'jupiter_price',
                timeout_s=timeout,
                limiter=MinIntervalLimiter(cfg.get('jupiter_min_interval_s', 1.1)),
            )
        )
        geckoterminal = GeckoTerminalClient(
            JSONHTTPClient(
                cfg.get('geckoterminal_url', 'https://api.geckoterminal.com/api/v2'),
                'geckoterminal',
                timeout_s=timeout,
                limiter=MinIntervalLimiter(cfg.get('geckoterminal_min_interval_s', 1.5)),
            )
        )
        return cls(coingecko, jupiter, geckoterminal)

    async def get_series(self, asset_ref: str, timeframe: str, limit: int) -> List[float]:
        try:
            return await self.coingecko.market_chart(asset_ref, timeframe, limit)
        except ProviderError as exc:
            logger.warning("Price series unavailable for %s: %s", asset_ref, exc)
            return []

    async def get_series_with_volume(self, asset_ref: str, timeframe: str, limit: int) -> PriceVolumeSeries:
        try:
            return await self.geckoterminal.ohlcv(asset_ref, timeframe, limit)
        except ProviderError as exc:
            metrics.record_api_call('geckoterminal', False)
            logger.warning("OHLCV unavailable for pool %s: %s", asset_ref, exc)
            return PriceVolumeSeries()

    async def get_current_price(self, asset_ref: str) -> Optional[float]:
        try:
            return await self.jupiter.current_price(asset_ref)
        except ProviderError as exc:
            metrics.record_api_call('jupiter_price', False)
            logger.warning("Current price unavailable for %s: %s", asset_ref, exc)
            return None

    async def close(self) -> None:
        for client in (self.coingecko.http, self.jupiter.http, self.geckoterminal.http):
            await client.close()
