import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Union

from errors import PersistenceError
from strategy.positions import Position


logger = logging.getLogger(__name__)

BULLISH = 'BULLISH'
BEARISH = 'BEARISH'


def _read_json(path: Path) -> Any:
    """Return parsed JSON, or None when the file does not exist yet."""
    try:
        return json.loads(path.read_text(encoding='utf-8'))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as exc:
        raise PersistenceError(f"Failed to read {path}: {exc}", 'load', str(path)) from exc


def _write_json(path: Path, payload: Any) -> None:
    tmp_path = path.with_name(path.name + '.tmp')
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(json.dumps(payload, indent=2), encoding='utf-8')
        os.replace(tmp_path, path)
    except (OSError, TypeError, ValueError) as exc:
        raise PersistenceError(f"Failed to write {path}: {exc}", 'save', str(path)) from exc


class PositionStore:
    """JSON file holding the open position set, replaced atomically on every save."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> List[Position]:
        data = _read_json(self.path)
        if data is None:
            logger.info("No positions file at %s, starting empty", self.path)
            return []
        if not isinstance(data, list):
            raise PersistenceError(f"Unexpected positions format in {self.path}", 'load', str(self.path))
        try:
            return [Position.from_dict(item) for item in data]
        except (KeyError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Corrupt position record in {self.path}: {exc}", 'load', str(self.path)) from exc

    def save(self, positions: List[Position]) -> None:
        _write_json(self.path, [p.to_dict() for p in positions])
        logger.debug("Saved %s positions to %s", len(positions), self.path)


class TrendStateStore:
    """Last recorded trend state per asset, so crossovers are seen as transitions."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._states: Dict[str, str] = {}

    def load(self) -> Dict[str, str]:
        data = _read_json(self.path)
        if data is None:
            self._states = {}
            return {}
        if not isinstance(data, dict):
            raise PersistenceError(f"Unexpected trend state format in {self.path}", 'load', str(self.path))
        self._states = {
            str(asset): str(state).upper()
            for asset, state in data.items()
            if str(state).upper() in (BULLISH, BEARISH)
        }
        logger.info("Loaded trend states for %s assets", len(self._states))
        return dict(self._states)

    def get(self, asset_id: str):
        return self._states.get(asset_id)

    def update(self, asset_id: str, state: str) -> None:
        state = state.upper()
        if state not in (BULLISH, BEARISH):
            raise ValueError(f"unknown trend state: {state}")
        if self._states.get(asset_id) == state:
            return
        self._states[asset_id] = state
        _write_json(self.path, self._states)

    def reset(self, asset_id: str) -> None:
        self.update(asset_id, BEARISH)

    def snapshot(self) -> Dict[str, str]:
        return dict(self._states)
