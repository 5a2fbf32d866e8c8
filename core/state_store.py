"""
File-backed key-value store for client state.

Holds what the browser app kept in localStorage: the target and baseline URLs,
the last scan result, scan credentials and scan history.
"""
import json
import os
import logging
import tempfile
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

TARGET_URL_KEY = "inspectra_target_url"
BASELINE_URL_KEY = "inspectra_baseline_url"
SCAN_RESULT_KEY = "inspectra_scan_result"
SCAN_CREDENTIALS_KEY = "inspectra_scan_credentials"
SCAN_HISTORY_KEY = "inspectra_scan_history"

KNOWN_KEYS = (
    TARGET_URL_KEY,
    BASELINE_URL_KEY,
    SCAN_RESULT_KEY,
    SCAN_CREDENTIALS_KEY,
    SCAN_HISTORY_KEY,
)

# listener(key, value); value is None when the key was removed
Listener = Callable[[str, Any], None]


class StateStore:
    """
    JSON key-value store with write-through persistence.

    Every mutation replaces the whole value for a key and is flushed to disk
    immediately. With path=None the store lives in memory only.
    """

    def __init__(self, path: Optional[str] = None):
        """
        Initialize the store, hydrating from `path` if it exists.

        Args:
            path: JSON file location, or None for an in-memory store
        """
        self.path = path
        self._data: Dict[str, Any] = {}
        self._listeners: List[Listener] = []
        if path:
            self._data = self._load(path)

    @staticmethod
    def _load(path: str) -> Dict[str, Any]:
        if not os.path.exists(path):
            return {}
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable state file {path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring state file {path}: expected a JSON object")
            return {}
        logger.debug(f"Hydrated {len(data)} keys from {path}")
        return data

    def _flush(self) -> None:
        if not self.path:
            return
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        # Write to a sibling temp file then swap, so a crash never leaves half a file
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".state-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._data, f, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def _notify(self, key: str, value: Any) -> None:
        for listener in list(self._listeners):
            listener(key, value)

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        if value is None:
            self.remove(key)
            return
        self._data[key] = value
        self._flush()
        self._notify(key, value)

    def remove(self, key: str) -> None:
        if key not in self._data:
            return
        del self._data[key]
        self._flush()
        self._notify(key, None)

    def clear(self) -> None:
        keys = list(self._data)
        self._data.clear()
        self._flush()
        for key in keys:
            self._notify(key, None)

    def keys(self) -> List[str]:
        return list(self._data)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener for every mutation; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def __contains__(self, key: str) -> bool:
        return key in self._data
