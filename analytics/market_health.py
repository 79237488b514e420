import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

from analytics.indicators import last_sma
from errors import ProviderError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthAsset:
    name: str
    ref: str
    weight: float

    @classmethod
    def from_dict(cls, data: Mapping) -> 'HealthAsset':
        return cls(name=data['name'], ref=data.get('id') or data['ref'], weight=float(data['weight']))


@dataclass
class AssetContribution:
    asset_id: str
    weight: float
    distance_pct: float
    price: Optional[float] = None
    average: Optional[float] = None
    available: bool = True


@dataclass
class AggregateHealthScore:
    raw_value: float
    contributions: List[AssetContribution] = field(default_factory=list)
    aborted: bool = False

    @property
    def failed_assets(self) -> List[str]:
        return [c.asset_id for c in self.contributions if not c.available]

    @property
    def degraded(self) -> bool:
        return bool(self.failed_assets)

    def to_dict(self) -> Dict:
        return {
            'raw_value': self.raw_value,
            'aborted': self.aborted,
            'contributions': [
                {
                    'asset_id': c.asset_id,
                    'weight': c.weight,
                    'distance_pct': c.distance_pct,
                    'available': c.available,
                }
                for c in self.contributions
            ],
        }


class MarketHealthEvaluator:
    """Weighted distance of reference assets from their moving average.

    A reading that cannot be computed contributes a neutral 0% by default.
    With ``strict`` enabled a single failed reading invalidates the whole
    score, which is then reported as 0 with ``aborted`` set.
    """

    def __init__(self, provider, cfg: Optional[Mapping] = None):
        cfg = cfg or {}
        self.provider = provider
        self.indicator_period = int(cfg.get('indicator_period', 20))
        self.timeframe = cfg.get('timeframe', '5m')
        self.history_limit = int(cfg.get('history_limit', max(self.indicator_period * 2, 40)))
        self.strict = bool(cfg.get('strict', False))
        self.assets = [HealthAsset.from_dict(a) for a in cfg.get('assets') or []]

    async def evaluate(self, assets: Optional[Sequence[HealthAsset]] = None) -> AggregateHealthScore:
        assets = list(assets) if assets is not None else self.assets
        contributions: List[AssetContribution] = []
        weighted_sum = 0.0
        logger.info("Calculating market health index...")

        for asset in assets:
            contribution = await self._read_asset(asset)
            contributions.append(contribution)
            if not contribution.available and self.strict:
                logger.warning(
                    "Market health invalidated by %s (strict mode); reporting 0",
                    asset.name,
                )
                return AggregateHealthScore(0.0, contributions, aborted=True)
            weighted_sum += contribution.distance_pct * asset.weight

        processed = sum(c.weight for c in contributions if c.available)
        logger.info(
            "Final market health index: %.2f (processed %.0f%% of weight)",
            weighted_sum,
            processed * 100,
        )
        return AggregateHealthScore(weighted_sum, contributions)

    async def _read_asset(self, asset: HealthAsset) -> AssetContribution:
        try:
            prices = await self.provider.get_series(asset.ref, self.timeframe, self.history_limit)
        except ProviderError as exc:
            logger.warning("Provider failure for %s: %s", asset.name, exc)
            prices = []

        average = last_sma(prices, self.indicator_period) if len(prices) >= self.indicator_period else None
        if average is None or average == 0:
            logger.warning(
                "Insufficient data for %s (%s/%s points); using 0%% distance",
                asset.name,
                len(prices),
                self.indicator_period,
            )
            return AssetContribution(asset.name, asset.weight, 0.0, available=False)

        price = float(prices[-1])
        distance = (price - average) / average * 100.0
        logger.info(
            "  - %s: price=%.4f SMA%s=%.4f distance=%.2f%%",
            asset.name, price, self.indicator_period, average, distance,
        )
        return AssetContribution(asset.name, asset.weight, distance, price=price, average=average)
