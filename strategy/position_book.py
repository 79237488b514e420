import logging
import time
from typing import Callable, Dict, Iterator, List, Optional

from risk.trailing_stop import ArmingPolicy, ImmediateArming, TrailingStopPolicy
from strategy.positions import ExitDecision, ExitReason, Position


logger = logging.getLogger(__name__)


class PositionBook:
    """Single owner of the live position set.

    Every state change (open, new high, arming, close, attention flag) is
    written through the store before the call returns. ``reprice`` is
    synchronous so the read-modify-write of ``highest_price`` can never be
    split by another task.
    """

    def __init__(
        self,
        store,
        trailing_policy: TrailingStopPolicy,
        arming_policy: Optional[ArmingPolicy] = None,
        stop_loss_pct: Optional[float] = None,
        health_source: Optional[Callable[[], Optional[float]]] = None,
    ):
        self.store = store
        self.trailing_policy = trailing_policy
        self.arming_policy = arming_policy or ImmediateArming()
        self.stop_loss_pct = stop_loss_pct
        self.health_source = health_source
        self._positions: Dict[int, Position] = {}
        self._next_id = 1

    def restore(self) -> List[Position]:
        loaded = self.store.load()
        self._positions = {p.id: p for p in loaded}
        self._next_id = max(self._positions, default=0) + 1
        logger.info("Loaded %s open positions", len(self._positions))
        return list(self._positions.values())

    def __len__(self) -> int:
        return len(self._positions)

    def __contains__(self, position_id: int) -> bool:
        return position_id in self._positions

    def __iter__(self) -> Iterator[Position]:
        return iter(list(self._positions.values()))

    @property
    def positions(self) -> List[Position]:
        return list(self._positions.values())

    def get(self, position_id: int) -> Optional[Position]:
        return self._positions.get(position_id)

    def find_by_asset(self, asset_id: str) -> Optional[Position]:
        for position in self._positions.values():
            if position.asset_id == asset_id:
                return position
        return None

    def has_asset(self, asset_id: str) -> bool:
        return self.find_by_asset(asset_id) is not None

    def open(
        self,
        asset_id: str,
        mint: str,
        entry_price: float,
        notional: float,
        token_amount: Optional[int] = None,
    ) -> Position:
        position = Position(
            id=self._next_id,
            asset_id=asset_id,
            mint=mint,
            entry_price=entry_price,
            notional=notional,
            opened_at=time.time(),
            highest_price=entry_price,
            token_amount=token_amount,
        )
        self._next_id += 1
        if self.stop_loss_pct:
            position.stop_loss_price = entry_price * (1 - self.stop_loss_pct)
        position.trailing_armed = self.arming_policy.should_arm(entry_price, entry_price)
        self._positions[position.id] = position
        self.persist()
        logger.info(
            "Opened position #%s %s at %.6f (notional %.2f, trailing %s)",
            position.id, asset_id, entry_price, notional,
            'armed' if position.trailing_armed else 'pending',
        )
        return position

    def reprice(self, position_id: int, current_price: float,
                health: Optional[float] = None) -> Optional[ExitDecision]:
        position = self._positions.get(position_id)
        if position is None or current_price <= 0:
            return None

        changed = False
        if current_price > position.highest_price:
            position.highest_price = current_price
            changed = True
        if not position.trailing_armed and self.arming_policy.should_arm(position.entry_price, current_price):
            position.trailing_armed = True
            changed = True
            logger.info("Trailing stop armed for %s at %.6f", position.asset_id, current_price)
        if changed:
            self.persist()

        if position.trailing_armed:
            if health is None and self.health_source is not None:
                health = self.health_source()
            trail_pct = self.trailing_policy.trail_pct(health)
            # zero trail means no trailing exit at this health level
            if trail_pct > 0:
                trigger = position.highest_price * (1 - trail_pct)
                logger.info(
                    "[Trailing] %s: stop=%.6f (%.1f%% trail) highest=%.6f current=%.6f",
                    position.asset_id, trigger, trail_pct * 100, position.highest_price, current_price,
                )
                if current_price < trigger:
                    return ExitDecision(position.id, ExitReason.TRAILING_STOP_HIT, current_price, trigger, trail_pct)

        if position.stop_loss_price is not None and current_price < position.stop_loss_price:
            return ExitDecision(position.id, ExitReason.STOP_LOSS_HIT, current_price, position.stop_loss_price)
        return None

    def close(self, position_id: int) -> Optional[Position]:
        position = self._positions.pop(position_id, None)
        if position is None:
            logger.debug("Position #%s already closed", position_id)
            return None
        position.closed = True
        self.persist()
        logger.info("Closed position #%s %s", position.id, position.asset_id)
        return position

    def flag_attention(self, position_id: int) -> None:
        position = self._positions.get(position_id)
        if position is None or position.needs_attention:
            return
        position.needs_attention = True
        self.persist()

    def persist(self) -> None:
        self.store.save(self.positions)
