"""Launches and supervises the elevated openconnect process."""

import logging
import signal
import subprocess
import threading
import time
from typing import Callable, Optional, Union

import psutil

from .config import ConnectionConfig
from .constants import (
    ENV_PATH,
    EXISTING_INSTANCE_WAIT,
    KILL_STEP,
    OPENCONNECT,
    PID_FILE,
    SUDO_PATH,
    TERMINATE_GRACE,
    VPN_SLICE,
)
from .errors import LaunchError
from .platform import find_binary, find_processes_by_name, kill_pid, read_pid_file

log = logging.getLogger(__name__)

OutputCallback = Callable[["SupervisedProcess", str, bytes], None]
ExitCallback = Callable[["SupervisedProcess", int], None]

READ_SIZE = 4096


class SupervisedProcess:
    """A launched child with its three pipes.

    Owned by the supervisor; callers only get it back as an opaque handle.
    """

    def __init__(self, popen: subprocess.Popen, command: list[str]):
        self.popen = popen
        self.pid = popen.pid
        self.command = command
        self.detached = False
        self._stdin_lock = threading.Lock()
        self._readers: list[threading.Thread] = []
        self._watcher: Optional[threading.Thread] = None

    @property
    def returncode(self) -> Optional[int]:
        return self.popen.returncode

    def __repr__(self) -> str:
        return f"<SupervisedProcess pid={self.pid}>"


class ProcessSupervisor:
    """Starts, feeds and kills the tunnel process."""

    def __init__(
            self,
            pid_file: str = PID_FILE,
            grace: float = TERMINATE_GRACE,
            kill_step: float = KILL_STEP,
            existing_wait: float = EXISTING_INSTANCE_WAIT,
    ):
        self.pid_file = pid_file
        self.grace = grace
        self.kill_step = kill_step
        self.existing_wait = existing_wait

    # Command construction

    def build_tunnel_command(self, config: ConnectionConfig) -> list[str]:
        """Build the sudo-wrapped openconnect command line.

        Options come first, then the host.
        """
        arguments = [
            "--force-dpd=10",
            f"--user={config.username}",
            "--pid-file",
            self.pid_file,
        ]
        if config.split_tunnel:
            slice_path = find_binary(VPN_SLICE) or VPN_SLICE
            slice_arg = " ".join([slice_path] + list(config.slice_targets))
            arguments.extend(["-s", slice_arg])
        arguments.append(config.host)

        openconnect_path = find_binary(OPENCONNECT)
        if openconnect_path:
            return [SUDO_PATH, "-S", openconnect_path] + arguments
        return [ENV_PATH, "sudo", "-S", OPENCONNECT] + arguments

    # Lifecycle

    def launch(
            self,
            command: list[str],
            env: Optional[dict] = None,
            on_output: Optional[OutputCallback] = None,
            on_exit: Optional[ExitCallback] = None,
    ) -> SupervisedProcess:
        """Start a child with piped stdin/stdout/stderr.

        Args:
            command: Full command line
            env: Child environment
            on_output: Called as (handle, "stdout"|"stderr", chunk) per read
            on_exit: Called as (handle, returncode) after both streams drained

        Returns:
            Handle for the running process

        Raises:
            LaunchError: If the process could not be started
        """
        try:
            popen = subprocess.Popen(
                command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            raise LaunchError(str(e)) from e

        handle = SupervisedProcess(popen, command)
        log.info(f"Started {command[0]} (PID {handle.pid})")

        for name, stream in (("stdout", popen.stdout), ("stderr", popen.stderr)):
            reader = threading.Thread(
                target=self._read_stream,
                args=(handle, name, stream, on_output),
                name=f"{name}-reader-{handle.pid}",
                daemon=True,
            )
            handle._readers.append(reader)
            reader.start()

        handle._watcher = threading.Thread(
            target=self._watch_exit,
            args=(handle, on_exit),
            name=f"exit-watcher-{handle.pid}",
            daemon=True,
        )
        handle._watcher.start()
        return handle

    def _read_stream(self, handle, name, stream, on_output) -> None:
        """Read a pipe in chunks until EOF."""
        try:
            for chunk in iter(lambda: stream.read1(READ_SIZE), b""):
                # Keep draining after detach so the child never blocks on a full pipe
                if handle.detached or on_output is None:
                    continue
                try:
                    on_output(handle, name, chunk)
                except Exception:
                    log.exception(f"Output handler failed on {name}")
        except (OSError, ValueError):
            pass

    def _watch_exit(self, handle: SupervisedProcess, on_exit) -> None:
        returncode = handle.popen.wait()
        for reader in handle._readers:
            reader.join(timeout=2.0)
        log.info(f"{handle.command[0]} (PID {handle.pid}) exited with {returncode}")
        if on_exit is not None:
            try:
                on_exit(handle, returncode)
            except Exception:
                log.exception("Exit handler failed")

    def write(self, handle: SupervisedProcess, data: Union[str, bytes]) -> bool:
        """Write to the child's stdin. Writers are serialized per handle.

        Returns:
            True if the data was written
        """
        if isinstance(data, str):
            data = data.encode("utf-8")
        stdin = handle.popen.stdin
        if stdin is None:
            return False
        with handle._stdin_lock:
            try:
                stdin.write(data)
                stdin.flush()
                return True
            except (BrokenPipeError, ValueError, OSError) as e:
                log.warning(f"Could not write to PID {handle.pid}: {e}")
                return False

    def is_running(self, handle: Optional[SupervisedProcess]) -> bool:
        return handle is not None and handle.popen.poll() is None

    def detach(self, handle: Optional[SupervisedProcess]) -> None:
        """Stop delivering output from ``handle``; the exit callback stays armed."""
        if handle is not None:
            handle.detached = True

    def terminate(self, handle: Optional[SupervisedProcess], grace: Optional[float] = None) -> None:
        """Graceful SIGTERM, escalating to SIGKILL after the grace window.

        Returns once the request is issued; escalation runs in the background.
        """
        if not self.is_running(handle):
            return
        grace = self.grace if grace is None else grace
        log.info(f"Stopping {handle.command[0]} (PID {handle.pid})")
        self._signal(handle, signal.SIGTERM)

        def _escalate():
            try:
                handle.popen.wait(timeout=grace)
            except subprocess.TimeoutExpired:
                log.warning(f"PID {handle.pid} ignored SIGTERM, sending SIGKILL")
                self._signal(handle, signal.SIGKILL)

        threading.Thread(target=_escalate, name="terminate-escalation", daemon=True).start()

    def force_kill(self, handle: Optional[SupervisedProcess]) -> None:
        """Kill the direct child and whatever the PID file points at."""
        if handle is not None:
            handle.detached = True
            if self.is_running(handle):
                self._signal(handle, signal.SIGTERM)
                threading.Thread(
                    target=self._escalate_kill,
                    args=(handle,),
                    name="kill-escalation",
                    daemon=True,
                ).start()

        # The elevated openconnect may have outlived (or never been) our child
        pid = read_pid_file(self.pid_file)
        if pid:
            threading.Thread(
                target=kill_pid,
                args=(pid, self.kill_step),
                name="pid-file-kill",
                daemon=True,
            ).start()

    def _escalate_kill(self, handle: SupervisedProcess) -> None:
        for sig in (signal.SIGTERM, signal.SIGKILL):
            try:
                handle.popen.wait(timeout=self.kill_step)
                return
            except subprocess.TimeoutExpired:
                self._signal(handle, sig)

    @staticmethod
    def _signal(handle: SupervisedProcess, sig: int) -> None:
        try:
            handle.popen.send_signal(sig)
        except (ProcessLookupError, OSError):
            pass

    # Stray instances and elevated cleanup

    def terminate_existing(self, secret: str = "") -> bool:
        """Kill any openconnect left over from an earlier run.

        Returns:
            True if a stray instance was found
        """
        if not find_processes_by_name(OPENCONNECT):
            return False

        log.info("Found existing openconnect process. Terminating...")
        if not self.kill_by_name() and secret:
            self._sudo(["pkill", OPENCONNECT], secret)
        time.sleep(self.existing_wait)
        return True

    def kill_pid_file_elevated(self, secret: str) -> bool:
        """``sudo kill`` the PID recorded in the PID file."""
        pid = read_pid_file(self.pid_file)
        if not pid:
            return False
        return self._sudo(["kill", str(pid)], secret) == 0

    def kill_by_name(self, secret: str = "") -> bool:
        """Kill every openconnect process.

        Without a secret only processes we may signal are terminated.

        Returns:
            True if nothing we tried to stop is left running
        """
        if secret:
            return self._sudo(["pkill", OPENCONNECT], secret) == 0

        ok = True
        for proc in find_processes_by_name(OPENCONNECT):
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied:
                ok = False
        return ok

    @staticmethod
    def _sudo(args: list[str], secret: str) -> int:
        """Run a command via ``sudo -S`` feeding the secret on stdin."""
        try:
            result = subprocess.run(
                [SUDO_PATH, "-S"] + args,
                input=f"{secret}\n",
                capture_output=True,
                text=True,
                timeout=10,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            log.warning(f"sudo {' '.join(args)} failed: {e}")
            return -1
        return result.returncode
