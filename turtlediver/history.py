"""Connection history.

A bounded, newest-first list of ``ConnectionAttempt`` records stored as a
JSON blob in the user data directory (via platformdirs).
"""

import json
import logging
import threading
from pathlib import Path
from typing import Optional, Union

from platformdirs import user_data_dir

from .constants import APP_NAME, MAX_HISTORY_ITEMS
from .models import ConnectionAttempt

log = logging.getLogger(__name__)

MEMORY = ":memory:"


def default_history_file() -> Path:
    """Get path to the history file, creating its directory."""
    data_dir = Path(user_data_dir(APP_NAME))
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir / "history.json"


class HistoryRecorder:
    """Append/update log of connection attempts."""

    def __init__(self, path: Union[str, Path, None] = None, max_items: int = MAX_HISTORY_ITEMS):
        """Initialize the recorder.

        Args:
            path: JSON file to persist to, ":memory:" for no persistence,
                  None for the per-user default
            max_items: Maximum number of attempts kept
        """
        if path is None:
            path = default_history_file()
        self.path: Optional[Path] = None if path == MEMORY else Path(path)
        self.max_items = max_items
        self._lock = threading.Lock()
        self._items: list[ConnectionAttempt] = self._load()

    def _load(self) -> list[ConnectionAttempt]:
        if self.path is None or not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text())
            items = [ConnectionAttempt.from_dict(entry) for entry in data]
        except (OSError, ValueError, KeyError, TypeError) as e:
            log.warning(f"Ignoring unreadable history file {self.path}: {e}")
            return []
        return self._sorted(items)[:self.max_items]

    def _save(self) -> None:
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps([item.to_dict() for item in self._items]))
            self.path.chmod(0o600)
        except OSError as e:
            log.warning(f"Could not save history to {self.path}: {e}")

    @staticmethod
    def _sorted(items: list[ConnectionAttempt]) -> list[ConnectionAttempt]:
        return sorted(items, key=lambda item: item.timestamp, reverse=True)

    def add_attempt(self, attempt: ConnectionAttempt) -> None:
        """Insert a new attempt at the front, evicting the oldest past the cap."""
        with self._lock:
            self._items.insert(0, attempt)
            if len(self._items) > self.max_items:
                del self._items[self.max_items:]
            self._save()

    def update_attempt(self, attempt: ConnectionAttempt) -> None:
        """Replace the attempt with the same id, or add it if unseen."""
        with self._lock:
            for index, item in enumerate(self._items):
                if item.id == attempt.id:
                    self._items[index] = attempt
                    self._save()
                    return
        self.add_attempt(attempt)

    def get_history(self) -> list[ConnectionAttempt]:
        """All attempts, newest first."""
        with self._lock:
            return self._sorted(self._items)

    def get_attempt(self, attempt_id: str) -> Optional[ConnectionAttempt]:
        with self._lock:
            for item in self._items:
                if item.id == attempt_id:
                    return item
        return None

    def clear_history(self) -> None:
        with self._lock:
            self._items = []
            if self.path is not None:
                try:
                    self.path.unlink()
                except FileNotFoundError:
                    pass

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
