"""Data models for the connection orchestrator."""

import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from .constants import (
    STATUS_CONNECTED,
    STATUS_CONNECTING,
    STATUS_DISCONNECTED,
    STATUS_DISCONNECTING,
    STATUS_ERROR,
)

log = logging.getLogger(__name__)


class ConnectionState(Enum):
    """VPN connection state"""
    DISCONNECTED = STATUS_DISCONNECTED
    CONNECTING = STATUS_CONNECTING
    CONNECTED = STATUS_CONNECTED
    DISCONNECTING = STATUS_DISCONNECTING
    ERROR = STATUS_ERROR


@dataclass(frozen=True)
class ConnectionStatus:
    """Current connection status.

    ``message`` is only set for the error state and holds a short
    classification such as "Tun setup failed", never a raw traceback.
    """
    state: ConnectionState = ConnectionState.DISCONNECTED
    message: Optional[str] = None

    @classmethod
    def disconnected(cls) -> "ConnectionStatus":
        return cls(ConnectionState.DISCONNECTED)

    @classmethod
    def connecting(cls) -> "ConnectionStatus":
        return cls(ConnectionState.CONNECTING)

    @classmethod
    def connected(cls) -> "ConnectionStatus":
        return cls(ConnectionState.CONNECTED)

    @classmethod
    def disconnecting(cls) -> "ConnectionStatus":
        return cls(ConnectionState.DISCONNECTING)

    @classmethod
    def error(cls, message: str) -> "ConnectionStatus":
        return cls(ConnectionState.ERROR, message)

    @property
    def is_disconnected(self) -> bool:
        return self.state is ConnectionState.DISCONNECTED

    @property
    def is_connecting(self) -> bool:
        return self.state is ConnectionState.CONNECTING

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def is_disconnecting(self) -> bool:
        return self.state is ConnectionState.DISCONNECTING

    @property
    def is_error(self) -> bool:
        return self.state is ConnectionState.ERROR

    def __str__(self) -> str:
        if self.message:
            return f"{self.state.value}: {self.message}"
        return self.state.value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ConnectionAttempt:
    """One entry of the connection history."""
    host: str
    status: str
    log_output: str = ""
    duration: Optional[float] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = field(default_factory=_utcnow)

    def evolve(self, **changes) -> "ConnectionAttempt":
        """Return a copy with the given fields replaced (same id)."""
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "host": self.host,
            "status": self.status,
            "duration": self.duration,
            "log_output": self.log_output,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ConnectionAttempt":
        timestamp = datetime.fromisoformat(data["timestamp"])
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        duration = data.get("duration")
        return cls(
            id=data["id"],
            timestamp=timestamp,
            host=data.get("host", ""),
            status=data.get("status", ""),
            duration=float(duration) if duration is not None else None,
            log_output=data.get("log_output", ""),
        )


class ChallengeRequest:
    """A pending two-factor challenge waiting for an answer.

    The completion callback runs at most once; later answers are refused.
    """

    def __init__(self, prompt: str, on_answer: Callable[[str], None]):
        self.prompt = prompt
        self._on_answer = on_answer
        self._lock = threading.Lock()
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    def fulfill(self, answer: str) -> bool:
        """Deliver the answer. An empty string cancels the challenge.

        Returns:
            True if this call completed the request
        """
        with self._lock:
            if self._done:
                log.warning("Challenge already answered, ignoring extra answer")
                return False
            self._done = True
        self._on_answer(answer or "")
        return True

    __call__ = fulfill
