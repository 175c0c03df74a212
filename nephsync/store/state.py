"""Small JSON key-value file for sync cursor, status and the fallback queue.

This is the simpler storage layer that stays usable when the SQLite store
is not: one JSON document, rewritten atomically on every change.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class StateFile:
    """JSON document holding small pieces of local state.

    With no path the document lives in memory only, which is what tests
    and throwaway sessions use.
    """

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path).expanduser() if path else None
        self._data: dict[str, Any] | None = None

    def _load(self) -> dict[str, Any]:
        if self._data is not None:
            return self._data

        self._data = {}
        if self.path and self.path.exists():
            try:
                with open(self.path, encoding="utf-8") as f:
                    loaded = json.load(f)
                if isinstance(loaded, dict):
                    self._data = loaded
                else:
                    logger.warning(f"Ignoring malformed state file {self.path}")
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Failed to read state file {self.path}: {e}")
        return self._data

    def _save(self, data: dict[str, Any]) -> None:
        if self.path is None:
            return

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f)
        os.replace(tmp_path, self.path)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a value by key."""
        return self._load().get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set a value and persist the document.

        Raises:
            OSError: If the document cannot be written. The in-memory copy
                is left unchanged in that case.
        """
        data = dict(self._load())
        data[key] = value
        self._save(data)
        self._data = data

    def remove(self, key: str) -> None:
        """Remove a key if present and persist the document."""
        data = dict(self._load())
        if key in data:
            del data[key]
            self._save(data)
            self._data = data

    def keys(self) -> list[str]:
        return list(self._load().keys())
