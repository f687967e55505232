"""Qt bridge for the connection manager.

The manager notifies from background threads; ``ConnectionSignals`` turns
those notifications into Qt signals so widgets living on the GUI thread
get them through queued connections.
"""

from typing import Callable, Optional

from PyQt6.QtCore import QObject, pyqtSignal

from .manager import ConnectionManager
from .models import ConnectionStatus


class ConnectionSignals(QObject):
    """Signals mirroring the manager's observable state."""

    status_changed = pyqtSignal(str, str)  # state, message
    log_appended = pyqtSignal(str)
    duration_changed = pyqtSignal(str)
    challenge_requested = pyqtSignal(str, object)  # prompt, answer callback

    def __init__(self, parent: Optional[QObject] = None):
        super().__init__(parent)
        self.manager: Optional[ConnectionManager] = None

    def attach(self, manager: ConnectionManager) -> None:
        """Subscribe to ``manager`` and route its challenges through Qt."""
        self.manager = manager
        manager.add_status_listener(self._on_status)
        manager.add_log_listener(self.log_appended.emit)
        manager.add_duration_listener(self.duration_changed.emit)
        manager.on_challenge = self._on_challenge

    def _on_status(self, status: ConnectionStatus):
        self.status_changed.emit(status.state.value, status.message or "")

    def _on_challenge(self, prompt: str, answer: Callable[[str], bool]):
        self.challenge_requested.emit(prompt, answer)
