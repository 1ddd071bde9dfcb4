"""
Key-value settings stores with change notification.

A store holds the command list and the display options. Every write that
changes a value notifies connected handlers with the changed key, so the
coordinator can tell a command-list change apart from a display-only one.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_PATH = Path.home() / ".shellglance" / "settings.json"

# Environment variable to override the settings file location
ENV_SETTINGS_PATH = "SHELLGLANCE_SETTINGS_PATH"

DEFAULTS: Dict[str, Any] = {
    "commands": "[]",
    "separator": " | ",
    "max-length": 30,
}

MAX_LENGTH_RANGE = (5, 200)


def get_settings_path(path: Optional[str] = None) -> Path:
    """
    Resolve the settings file path.

    Priority:
    1. Explicitly passed path
    2. SHELLGLANCE_SETTINGS_PATH environment variable
    3. Default (~/.shellglance/settings.json)
    """
    if path:
        return Path(path).expanduser()
    env_path = os.environ.get(ENV_SETTINGS_PATH)
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_SETTINGS_PATH


class SettingsStore:
    """
    Base settings store.

    Handlers are registered with connect() and receive the changed key.
    A handler connected with a key only hears about that key.
    """

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._values: Dict[str, Any] = dict(DEFAULTS)
        if initial:
            for key, value in initial.items():
                self._check(key, value)
                self._values[key] = value
        self._handlers: Dict[int, Tuple[Optional[str], Callable[[str], None]]] = {}
        self._next_handler_id = 1

    @staticmethod
    def _check(key: str, value: Any):
        if key not in DEFAULTS:
            raise KeyError(f"Unknown settings key: {key}")
        expected = type(DEFAULTS[key])
        if isinstance(value, bool) or not isinstance(value, expected):
            raise TypeError(
                f"Setting '{key}' expects {expected.__name__}, got {type(value).__name__}"
            )

    def get_string(self, key: str) -> str:
        if key not in DEFAULTS:
            raise KeyError(f"Unknown settings key: {key}")
        if not isinstance(DEFAULTS[key], str):
            raise TypeError(f"Setting '{key}' is not a string")
        return self._values[key]

    def get_int(self, key: str) -> int:
        if key not in DEFAULTS:
            raise KeyError(f"Unknown settings key: {key}")
        if not isinstance(DEFAULTS[key], int):
            raise TypeError(f"Setting '{key}' is not an integer")
        return self._values[key]

    def set_string(self, key: str, value: str):
        self._set(key, value)

    def set_int(self, key: str, value: int):
        self._set(key, value)

    def _set(self, key: str, value: Any):
        self._check(key, value)
        if self._values.get(key) == value:
            return
        self._values[key] = value
        self._persist()
        self._emit_changed(key)

    def _persist(self):
        """Hook for stores that write through to disk."""

    def connect(self, callback: Callable[[str], None], key: Optional[str] = None) -> int:
        """
        Register a change handler.

        Args:
            callback: Called with the name of the changed key
            key: Only notify for this key (None = every key)

        Returns:
            Handler id for disconnect()
        """
        handler_id = self._next_handler_id
        self._next_handler_id += 1
        self._handlers[handler_id] = (key, callback)
        return handler_id

    def disconnect(self, handler_id: int):
        """Remove a change handler. Unknown ids are ignored."""
        self._handlers.pop(handler_id, None)

    def _emit_changed(self, key: str):
        logger.debug(f"Setting changed: {key}")
        for handler_key, callback in list(self._handlers.values()):
            if handler_key is not None and handler_key != key:
                continue
            try:
                callback(key)
            except Exception:
                logger.exception(f"Settings handler failed for key '{key}'")


class MemorySettingsStore(SettingsStore):
    """In-memory settings store."""

    def __repr__(self):
        return f"MemorySettingsStore(keys={sorted(self._values)})"


class JsonSettingsStore(SettingsStore):
    """
    Settings stored as a JSON object file.

    Every write saves the whole file. check_for_changes() picks up edits made
    by other processes (for example the CLI editing the command list while
    ``shellglance watch`` is running).
    """

    def __init__(self, path: Optional[str] = None):
        """
        Initialize JSON settings store.

        Args:
            path: Settings file path. If None, uses env var or default.
        """
        super().__init__()
        self.path = get_settings_path(path)
        self._mtime: Optional[float] = None
        self._values.update(self._read())

    def _stat_mtime(self) -> Optional[float]:
        try:
            return self.path.stat().st_mtime
        except OSError:
            return None

    def _read(self) -> Dict[str, Any]:
        """Read valid values from the file; invalid entries fall back to defaults."""
        self._mtime = self._stat_mtime()
        if self._mtime is None:
            logger.info(f"No settings found at {self.path}, using defaults")
            return dict(DEFAULTS)

        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load settings from {self.path}: {e}")
            return dict(DEFAULTS)

        if not isinstance(data, dict):
            logger.error(f"Settings file {self.path} does not contain a JSON object")
            return dict(DEFAULTS)

        values = dict(DEFAULTS)
        for key, value in data.items():
            try:
                self._check(key, value)
            except (KeyError, TypeError) as e:
                logger.warning(f"Ignoring setting in {self.path}: {e}")
                continue
            values[key] = value
        return values

    def _persist(self):
        self.save()

    def save(self):
        """
        Save all settings to the file.

        The file is replaced atomically, so a concurrent reader sees either
        the old or the new contents, never a partial write.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            'w', dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp", delete=False
        ) as f:
            json.dump(self._values, f, indent=2)
            tmp_path = f.name
        try:
            os.replace(tmp_path, self.path)
        except OSError:
            os.unlink(tmp_path)
            raise
        self._mtime = self._stat_mtime()
        logger.debug(f"Saved settings to {self.path}")

    def check_for_changes(self) -> bool:
        """
        Re-read the file if it changed on disk and notify for changed keys.

        Returns:
            True if any value changed
        """
        mtime = self._stat_mtime()
        if mtime == self._mtime:
            return False

        values = self._read()
        changed = [key for key in DEFAULTS if values[key] != self._values.get(key)]
        self._values = values
        for key in changed:
            self._emit_changed(key)
        if changed:
            logger.info(f"Settings reloaded from {self.path} (changed: {', '.join(changed)})")
        return bool(changed)

    def __repr__(self):
        return f"JsonSettingsStore(path={self.path})"
