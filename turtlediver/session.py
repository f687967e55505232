"""Per-attempt session state.

A ``Session`` owns everything tied to one connect attempt: the supervised
process, its stream scanners, the pending challenge and both timers. All of
it is released through ``Session.teardown``.
"""

import logging
import threading
import time
from typing import Callable, Optional

from .classifier import OutputClassifier, StreamScanner
from .config import ConnectionConfig
from .constants import DURATION_TICK
from .models import ChallengeRequest, ConnectionAttempt
from .supervisor import ProcessSupervisor, SupervisedProcess

log = logging.getLogger(__name__)

# Teardown modes
KEEP = "keep"
TERMINATE = "terminate"
KILL = "kill"


def format_duration(seconds: float) -> str:
    """Format seconds as HH:MM:SS."""
    total = max(0, int(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


class DurationTicker:
    """Calls ``callback`` every ``interval`` seconds until stopped."""

    def __init__(self, callback: Callable[[], None], interval: float = DURATION_TICK):
        self._callback = callback
        self._interval = interval
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name="duration-ticker", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            self._callback()


class Session:
    """One connect attempt, from ``connect()`` to teardown."""

    def __init__(self, config: ConnectionConfig, attempt: ConnectionAttempt):
        self.config = config
        self.attempt = attempt
        self.started_at = time.monotonic()
        self.connected_at: Optional[float] = None

        self.secret = ""
        self.pin = ""
        self.process: Optional[SupervisedProcess] = None

        self.classifier = OutputClassifier(split_tunnel=config.split_tunnel)
        self.scanners = {
            name: StreamScanner(name, prompt_probe=self.classifier.is_prompt)
            for name in ("stdout", "stderr")
        }

        self.challenge_pending = False
        self.challenge: Optional[ChallengeRequest] = None

        # Set by disconnect/cleanup before the worker launches anything
        self.cancelled = False
        # Set once output must no longer drive state
        self.detached = False

        self._timeout: Optional[threading.Timer] = None
        self._ticker: Optional[DurationTicker] = None

    # Clocks

    def elapsed(self) -> float:
        """Seconds since connected, or since the attempt began."""
        start = self.connected_at if self.connected_at is not None else self.started_at
        return time.monotonic() - start

    def mark_connected(self) -> None:
        self.connected_at = time.monotonic()

    # Timers

    def arm_timeout(self, seconds: float, callback: Callable[["Session"], None]) -> None:
        self.disarm_timeout()
        timer = threading.Timer(seconds, callback, args=(self,))
        timer.daemon = True
        self._timeout = timer
        timer.start()

    def disarm_timeout(self) -> None:
        if self._timeout is not None:
            self._timeout.cancel()
            self._timeout = None

    @property
    def timeout_armed(self) -> bool:
        return self._timeout is not None

    def start_ticker(self, callback: Callable[[], None], interval: float = DURATION_TICK) -> None:
        self.stop_ticker()
        self._ticker = DurationTicker(callback, interval)
        self._ticker.start()

    def stop_ticker(self) -> None:
        if self._ticker is not None:
            self._ticker.stop()
            self._ticker = None

    @property
    def ticker_running(self) -> bool:
        return self._ticker is not None and not self._ticker.stopped

    # Teardown

    def teardown(self, supervisor: ProcessSupervisor, mode: str = KILL) -> bool:
        """Release timers and output hooks, then stop the process.

        Args:
            supervisor: Supervisor that owns the process
            mode: KEEP, TERMINATE (graceful) or KILL (escalating + PID file)

        Returns:
            True if the process was still running
        """
        self.cancelled = True
        self.detached = True
        self.disarm_timeout()
        self.stop_ticker()
        self.challenge_pending = False

        running = supervisor.is_running(self.process)
        supervisor.detach(self.process)
        if mode == TERMINATE:
            supervisor.terminate(self.process)
        elif mode == KILL:
            supervisor.force_kill(self.process)
        return running
