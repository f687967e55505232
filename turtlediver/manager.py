"""Connection lifecycle orchestrator.

``ConnectionManager`` runs the ``disconnected -> connecting -> connected ->
disconnecting -> disconnected`` state machine (plus ``error``). ``connect()``
returns immediately; a worker thread generates the token and launches
openconnect, and the supervisor's reader threads feed output back here.

Every mutation of status, log buffer and duration happens under one lock
and listeners are notified in mutation order, so observers see a single
serialized stream no matter which thread (worker, stdout reader, stderr
reader, timeout timer, duration ticker) caused the change.
"""

import logging
import threading
from functools import partial
from typing import Callable, Optional

from .classifier import PROMPTS, Category, Classification, ScannedLine
from .config import ConnectionConfig, SecretStore
from .constants import (
    CHALLENGE_PROMPT,
    DEFAULT_CONNECT_TIMEOUT,
    DURATION_TICK,
    LABEL_ADMIN_REQUIRED,
    LABEL_APP_EXIT,
    LABEL_CONNECTED,
    LABEL_CONNECTING,
    LABEL_DISCONNECTED,
    LABEL_MISSING_SETTINGS,
    LABEL_TERMINATED,
    LABEL_TIMEOUT,
    LABEL_TOKEN_ERROR,
    MSG_ADMIN_REQUIRED,
    MSG_GENERIC,
    MSG_MISSING_SETTINGS,
    MSG_TIMEOUT,
    MSG_TOKEN_FAILED,
)
from .errors import (
    ClassifiedRuntimeError,
    ConfigValidationError,
    ConnectTimeoutError,
    GenericRuntimeError,
    LaunchError,
    PrivilegeError,
    TokenGenerationError,
    TurtleDiverError,
)
from .history import HistoryRecorder
from .models import ChallengeRequest, ConnectionAttempt, ConnectionStatus
from .platform import child_env
from .session import KEEP, KILL, TERMINATE, Session, format_duration
from .supervisor import ProcessSupervisor, SupervisedProcess
from .tokens import AutoTokenGenerator, TokenGenerator

log = logging.getLogger(__name__)

ZERO_DURATION = "00:00:00"

ChallengeHandler = Callable[[str, Callable[[str], bool]], None]


class ConnectionManager:
    """Owns one VPN connection at a time."""

    def __init__(
            self,
            supervisor: Optional[ProcessSupervisor] = None,
            token_generator: Optional[TokenGenerator] = None,
            history: Optional[HistoryRecorder] = None,
            secrets: Optional[SecretStore] = None,
            secret_prompt: Optional[Callable[[], Optional[str]]] = None,
            connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
            tick_interval: float = DURATION_TICK,
    ):
        """Initialize the manager.

        Args:
            supervisor: Process supervisor (real one by default)
            token_generator: Produces the one-time token
            history: Where attempts are recorded
            secrets: Stored elevation secret
            secret_prompt: Asked for the elevation secret when none is stored
            connect_timeout: Seconds allowed in the connecting state
            tick_interval: Seconds between duration updates while connected
        """
        self.supervisor = supervisor or ProcessSupervisor()
        self.token_generator = token_generator or AutoTokenGenerator()
        self.history = history if history is not None else HistoryRecorder()
        self.secrets = secrets if secrets is not None else SecretStore()
        self.secret_prompt = secret_prompt
        self.connect_timeout = connect_timeout
        self.tick_interval = tick_interval
        self.on_challenge: Optional[ChallengeHandler] = None

        self._lock = threading.RLock()
        self._status = ConnectionStatus.disconnected()
        self._log: list[str] = []
        self._duration_string = ZERO_DURATION
        self._session: Optional[Session] = None

        self._status_listeners: list[Callable[[ConnectionStatus], None]] = []
        self._log_listeners: list[Callable[[str], None]] = []
        self._duration_listeners: list[Callable[[str], None]] = []

    # Observable state

    @property
    def status(self) -> ConnectionStatus:
        with self._lock:
            return self._status

    @property
    def log_text(self) -> str:
        with self._lock:
            return "".join(f"{line}\n" for line in self._log)

    @property
    def duration_string(self) -> str:
        with self._lock:
            return self._duration_string

    @property
    def duration(self) -> Optional[float]:
        """Seconds since the tunnel came up, or None when not connected."""
        with self._lock:
            session = self._session
            if session is None or session.connected_at is None or not self._status.is_connected:
                return None
            return session.elapsed()

    @property
    def current_attempt(self) -> Optional[ConnectionAttempt]:
        with self._lock:
            return self._session.attempt if self._session else None

    @property
    def pending_challenge(self) -> Optional[ChallengeRequest]:
        with self._lock:
            session = self._session
            if session and session.challenge and not session.challenge.done:
                return session.challenge
            return None

    def answer_challenge(self, answer: str) -> bool:
        """Fulfil the outstanding challenge, if any."""
        request = self.pending_challenge
        if request is None:
            return False
        return request.fulfill(answer)

    def add_status_listener(self, callback: Callable[[ConnectionStatus], None]) -> None:
        self._status_listeners.append(callback)

    def add_log_listener(self, callback: Callable[[str], None]) -> None:
        self._log_listeners.append(callback)

    def add_duration_listener(self, callback: Callable[[str], None]) -> None:
        self._duration_listeners.append(callback)

    # Inbound operations

    def connect(self, config: ConnectionConfig) -> bool:
        """Start a connection attempt in the background.

        Only allowed from the disconnected or error state; otherwise a no-op.

        Returns:
            True if a worker was started
        """
        with self._lock:
            if not (self._status.is_disconnected or self._status.is_error):
                log.info(f"connect() ignored while {self._status}")
                return False

            previous = self._session
            if previous is not None:
                previous.teardown(self.supervisor, KILL)

            self._log = []
            self._set_duration(ZERO_DURATION)
            self._set_status(ConnectionStatus.connecting())
            self._append_log("Starting VPN connection...")

            attempt = ConnectionAttempt(
                host=config.display_host,
                status=LABEL_CONNECTING,
                log_output=self.log_text,
            )
            self.history.add_attempt(attempt)
            session = Session(config, attempt)
            self._session = session

            try:
                config.validate()
            except ConfigValidationError as e:
                log.warning(str(e))
                self._append_log(f"Error: {e}")
                self._fail(session, e, MSG_MISSING_SETTINGS, LABEL_MISSING_SETTINGS, KEEP)
                return False

            session.arm_timeout(self.connect_timeout, self._on_connect_timeout)
            threading.Thread(
                target=self._run_session,
                args=(session,),
                name="vpn-connect",
                daemon=True,
            ).start()
            return True

    def disconnect(self) -> bool:
        """Ask the tunnel to stop.

        Returns once termination has been requested; the exit itself is
        observed asynchronously. A no-op when disconnected or disconnecting.

        Returns:
            True if a disconnect was started
        """
        with self._lock:
            if self._status.is_disconnected or self._status.is_disconnecting:
                return False

            session = self._session
            self._append_log("Disconnecting VPN...")
            if session is not None and (self._status.is_connecting or self._status.is_connected):
                self._record(session, LABEL_DISCONNECTED, duration=session.elapsed())

            running = session is not None and session.teardown(self.supervisor, TERMINATE)
            self._set_duration(ZERO_DURATION)
            # A failed attempt keeps its failure label, so its exit is not awaited
            if running and not self._status.is_error:
                self._set_status(ConnectionStatus.disconnecting())
            else:
                self._session = None
                self._set_status(ConnectionStatus.disconnected())
                self._append_log("VPN disconnected")
            return True

    def cleanup_on_terminate(self) -> None:
        """Best-effort teardown at application exit. Never raises."""
        with self._lock:
            session = self._session
            secret = session.secret if session and session.secret else ""
            active = self._status.is_connecting or self._status.is_connected or self._status.is_disconnecting
            if session is not None:
                if active:
                    self._record(session, LABEL_APP_EXIT, duration=session.elapsed())
                session.teardown(self.supervisor, TERMINATE)
            self._session = None
            self._set_duration(ZERO_DURATION)
            self._set_status(ConnectionStatus.disconnected())

        if not secret:
            secret = self.secrets.get()
        if secret:
            self.supervisor.kill_pid_file_elevated(secret)
            self.supervisor.kill_by_name(secret)
        else:
            self.supervisor.kill_by_name()

    # Worker

    def _run_session(self, session: Session) -> None:
        config = session.config
        secret = self.secrets.get()

        if self.supervisor.terminate_existing(secret):
            with self._lock:
                if self._is_current(session):
                    self._append_log("Found existing openconnect process. Terminating...")
        if session.cancelled:
            return

        try:
            token = self.token_generator.generate(config)
        except TokenGenerationError as e:
            with self._lock:
                if self._is_current(session) and not session.cancelled:
                    self._append_log(str(e))
                    self._append_log("Error: Failed to generate token")
                    self._fail(session, e, MSG_TOKEN_FAILED, LABEL_TOKEN_ERROR, KEEP)
            return

        if not secret:
            secret = self._request_secret()
        if not secret:
            with self._lock:
                if self._is_current(session) and not session.cancelled:
                    e = PrivilegeError("Admin password required for elevated openconnect")
                    self._append_log(f"Error: {e}")
                    self._fail(session, e, MSG_ADMIN_REQUIRED, LABEL_ADMIN_REQUIRED, KEEP)
            return

        command = self.supervisor.build_tunnel_command(config)

        with self._lock:
            if not self._is_current(session) or session.cancelled:
                return
            session.secret = secret
            session.pin = config.passcode + token

            self._append_log(f"Connecting to {config.host}...")
            if config.split_tunnel:
                self._append_log(f"Using tunneling with URLs: {', '.join(config.slice_targets)}")

            try:
                session.process = self.supervisor.launch(
                    command,
                    env=child_env(),
                    on_output=partial(self._on_output, session),
                    on_exit=partial(self._on_exit, session),
                )
            except LaunchError as e:
                self._append_log(f"Error: {e}")
                self._fail(session, e, f"Failed to start VPN: {e}", f"Failed - {e}", KILL)
                return

            self.supervisor.write(session.process, f"{secret}\n{session.pin}\n{config.password}\n")
            if self._status.is_connecting:
                self._append_log("Awaiting connection confirmation...")

    def _request_secret(self) -> str:
        if self.secret_prompt is None:
            return ""
        answer = self.secret_prompt() or ""
        if answer:
            self.secrets.set(answer)
        return answer

    # Output handling

    def _on_output(self, session: Session, handle: SupervisedProcess, stream: str, chunk: bytes) -> None:
        with self._lock:
            if not self._is_live(session):
                return
            for scanned in session.scanners[stream].feed(chunk):
                if not self._is_live(session):
                    break
                self._handle_line(session, stream, scanned)

    def _handle_line(self, session: Session, stream: str, scanned: ScannedLine) -> None:
        result = session.classifier.classify(scanned.text, stream)
        log.debug(f"[openconnect] {scanned.text}")

        if scanned.partial:
            # Unterminated prompt; the full line is logged once it completes
            if result.challenge:
                session.challenge_pending = True
            self._handle_prompt(session, result)
            return
        if scanned.handled:
            if result.display:
                self._append_log(result.display)
            return

        if result.challenge:
            session.challenge_pending = True

        category = result.category
        if category in PROMPTS:
            self._append_log(result.display)
            self._handle_prompt(session, result)
        elif category is Category.SUCCESS:
            self._append_log(result.display)
            self._on_success(session)
        elif category is Category.SUPPRESSED:
            return
        elif category is Category.FATAL:
            self._on_fatal(session, result)
        elif category is Category.TEARDOWN:
            self._append_log(result.display)
            self._on_teardown(session)
        elif category is Category.GENERIC:
            self._on_generic(session, result)
        else:
            self._append_log(result.display)

    def _handle_prompt(self, session: Session, result: Classification) -> None:
        if result.category is Category.TOKEN_PROMPT:
            if session.challenge_pending:
                self._raise_challenge(session)
            else:
                self.supervisor.write(session.process, f"{session.pin}\n")
        elif result.category is Category.PASSWORD_PROMPT:
            self.supervisor.write(session.process, f"{session.config.password}\n")

    def _raise_challenge(self, session: Session) -> None:
        if session.challenge is not None and not session.challenge.done:
            log.info("Challenge already outstanding, not asking again")
            return

        def _answer(text: str) -> None:
            with self._lock:
                if not self._is_live(session):
                    return
                self.supervisor.write(session.process, f"{text}\n")
                session.challenge_pending = False

        request = ChallengeRequest(CHALLENGE_PROMPT, _answer)
        session.challenge = request
        handler = self.on_challenge
        if handler is None:
            log.warning("Server sent a challenge but nobody is listening for it")
            self._append_log("WARNING: Challenge received but no handler is registered")
            return

        # The collaborator may block for user input
        threading.Thread(
            target=self._deliver_challenge,
            args=(handler, request),
            name="vpn-challenge",
            daemon=True,
        ).start()

    @staticmethod
    def _deliver_challenge(handler: ChallengeHandler, request: ChallengeRequest) -> None:
        try:
            handler(request.prompt, request.fulfill)
        except Exception:
            log.exception("Challenge handler failed")

    def _on_success(self, session: Session) -> None:
        if not self._status.is_connecting:
            return
        session.disarm_timeout()
        session.mark_connected()
        self._set_status(ConnectionStatus.connected())
        self._set_duration(ZERO_DURATION)
        session.start_ticker(partial(self._tick, session), self.tick_interval)
        self._record(session, LABEL_CONNECTED)

    def _on_fatal(self, session: Session, result: Classification) -> None:
        self._append_log(result.display)
        error = ClassifiedRuntimeError(result.reason, result.line)
        if result.severe:
            self._fail(session, error, result.reason, result.history_label, KILL)
        elif self._status.is_connecting:
            self._fail(session, error, result.reason, result.history_label,
                       KILL if result.kill else None)

    def _on_teardown(self, session: Session) -> None:
        session.teardown(self.supervisor, KILL)
        if self._status.is_connecting or self._status.is_connected:
            self._record(session, LABEL_DISCONNECTED, duration=session.elapsed())
        self._session = None
        self._set_duration(ZERO_DURATION)
        self._set_status(ConnectionStatus.disconnected())

    def _on_generic(self, session: Session, result: Classification) -> None:
        self._append_log(result.display)
        if self._status.is_connecting:
            error = GenericRuntimeError(result.line)
            self._fail(session, error, MSG_GENERIC, result.history_label, None)

    def _on_exit(self, session: Session, handle: SupervisedProcess, returncode: int) -> None:
        with self._lock:
            if self._is_live(session):
                for name, scanner in session.scanners.items():
                    for scanned in scanner.flush():
                        if self._is_live(session):
                            self._handle_line(session, name, scanned)

            if session is not self._session:
                return

            session.detached = True
            session.disarm_timeout()
            session.stop_ticker()
            if returncode == 0:
                self._append_log("VPN connection terminated normally")
            else:
                self._append_log(f"VPN connection terminated with error: {returncode}")

            self._session = None
            self._set_duration(ZERO_DURATION)
            if self._status.is_error:
                return

            requested = self._status.is_disconnecting
            if requested:
                self._append_log("VPN disconnected")
            label = LABEL_DISCONNECTED if returncode == 0 or requested else LABEL_TERMINATED
            self._record(session, label, duration=session.elapsed())
            self._set_status(ConnectionStatus.disconnected())

    # Timers

    def _on_connect_timeout(self, session: Session) -> None:
        with self._lock:
            if session is not self._session or not self._status.is_connecting:
                return
            self._append_log("Connection timeout reached. Terminating VPN process.")
            error = ConnectTimeoutError(f"No connection after {self.connect_timeout}s")
            self._fail(session, error, MSG_TIMEOUT, LABEL_TIMEOUT, KILL)

    def _tick(self, session: Session) -> None:
        with self._lock:
            if session is self._session and self._status.is_connected:
                self._set_duration(format_duration(session.elapsed()))

    # Helpers (call with the lock held)

    def _is_current(self, session: Session) -> bool:
        return session is self._session

    def _is_live(self, session: Session) -> bool:
        return session is self._session and not session.detached

    def _fail(
            self,
            session: Session,
            error: TurtleDiverError,
            message: str,
            label: str,
            mode: Optional[str],
    ) -> None:
        """Move to the error state and record the failure.

        Args:
            session: Failing session
            error: What went wrong (logged, never raised to the caller)
            message: Short classification shown in the status
            label: History status label
            mode: Teardown mode, or None to leave the process and hooks alone
        """
        log.error(f"Connection failed: {message} ({error})")
        session.disarm_timeout()
        session.stop_ticker()
        if mode is not None:
            session.teardown(self.supervisor, mode)
        self._set_duration(ZERO_DURATION)
        self._set_status(ConnectionStatus.error(message))
        self._record(session, label)

    def _record(self, session: Session, label: str, duration: Optional[float] = None) -> None:
        session.attempt = session.attempt.evolve(
            status=label,
            duration=duration,
            log_output=self.log_text,
        )
        self.history.update_attempt(session.attempt)

    def _set_status(self, status: ConnectionStatus) -> None:
        if status == self._status:
            return
        log.info(f"Status: {self._status} -> {status}")
        self._status = status
        self._notify(self._status_listeners, status)

    def _append_log(self, text: str) -> None:
        self._log.append(text)
        self._notify(self._log_listeners, text)

    def _set_duration(self, text: str) -> None:
        if text == self._duration_string:
            return
        self._duration_string = text
        self._notify(self._duration_listeners, text)

    @staticmethod
    def _notify(listeners: list, value) -> None:
        for callback in list(listeners):
            try:
                callback(value)
            except Exception:
                log.exception("Listener failed")
