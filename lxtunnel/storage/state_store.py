from __future__ import annotations

import json
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


class StateStore:
    """Key/value state carried from the main phase to the post phase.

    Backed by ``state.json`` in *state_dir*.  Values are strings.
    """

    def __init__(self, state_dir: Path) -> None:
        self._path = Path(state_dir) / "state.json"
        self._state: dict[str, str] = {}
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        try:
            if not self._path.exists():
                return
            data = json.loads(self._path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Ignoring unreadable state file %s: %s", self._path, e)
            return
        if not isinstance(data, dict):
            logger.warning("Ignoring malformed state file %s", self._path)
            return
        self._state = {str(k): str(v) for k, v in data.items()}
        logger.debug("Loaded %d state entries", len(self._state))

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(self._state, indent=2))

    def get(self, key: str) -> str | None:
        return self._state.get(key)

    def save(self, key: str, value: str) -> None:
        """Persist *value* under *key* immediately."""
        self._state[key] = str(value)
        self._save()

    def clear(self) -> None:
        """Forget all state and remove the backing file."""
        self._state = {}
        self._path.unlink(missing_ok=True)
