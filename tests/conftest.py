"""Shared fixtures: fakes for the privileged process layer."""

import threading
import time

import pytest

from turtlediver.config import ConnectionConfig, MemorySecretStore
from turtlediver.errors import TokenGenerationError
from turtlediver.history import HistoryRecorder
from turtlediver.manager import ConnectionManager


class FakeProcess:
    """Stand-in for a launched openconnect."""

    def __init__(self, command, on_output, on_exit):
        self.command = command
        self.on_output = on_output
        self.on_exit = on_exit
        self.running = True
        self.detached = False
        self.writes = []

    def emit(self, stream, data):
        """Deliver output the way the reader threads would."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        if not self.detached:
            self.on_output(self, stream, data)

    def exit(self, returncode=0):
        self.running = False
        self.on_exit(self, returncode)


class FakeSupervisor:
    """Records what the manager asks of the process layer."""

    def __init__(self):
        self.processes = []
        self.launch_error = None
        self.existing = False
        self.terminated = []
        self.killed = []
        self.elevated_kills = []
        self.name_kills = []

    @property
    def process(self):
        return self.processes[-1] if self.processes else None

    def build_tunnel_command(self, config):
        return ["sudo", "-S", "openconnect", f"--user={config.username}", config.host]

    def launch(self, command, env=None, on_output=None, on_exit=None):
        if self.launch_error is not None:
            raise self.launch_error
        process = FakeProcess(command, on_output, on_exit)
        self.processes.append(process)
        return process

    def write(self, handle, data):
        if handle is None or not handle.running:
            return False
        handle.writes.append(data)
        return True

    def is_running(self, handle):
        return handle is not None and handle.running

    def detach(self, handle):
        if handle is not None:
            handle.detached = True

    def terminate(self, handle, grace=None):
        if handle is not None:
            self.terminated.append(handle)

    def force_kill(self, handle):
        self.killed.append(handle)

    def terminate_existing(self, secret=""):
        return self.existing

    def kill_pid_file_elevated(self, secret):
        self.elevated_kills.append(secret)
        return True

    def kill_by_name(self, secret=""):
        self.name_kills.append(secret)
        return True


class FakeTokenGenerator:
    """Returns a fixed token, or fails, optionally after a gate opens."""

    def __init__(self, token="123456"):
        self.token = token
        self.error = None
        self.gate = None
        self.calls = 0

    def generate(self, config):
        self.calls += 1
        if self.gate is not None:
            self.gate.wait(5)
        if self.error is not None:
            raise TokenGenerationError(self.error)
        return self.token


def _wait_for(predicate, timeout=3.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def wait_for():
    return _wait_for


@pytest.fixture
def supervisor():
    return FakeSupervisor()


@pytest.fixture
def tokens():
    return FakeTokenGenerator()


@pytest.fixture
def history():
    return HistoryRecorder(":memory:")


@pytest.fixture
def secrets():
    return MemorySecretStore("adminpw")


@pytest.fixture
def config():
    return ConnectionConfig(
        host="vpn.example.com",
        username="alice",
        password="pw",
        passcode="1234",
    )


@pytest.fixture
def manager(supervisor, tokens, history, secrets):
    mgr = ConnectionManager(
        supervisor=supervisor,
        token_generator=tokens,
        history=history,
        secrets=secrets,
        connect_timeout=5,
        tick_interval=0.05,
    )
    mgr.statuses = []
    mgr.add_status_listener(mgr.statuses.append)
    yield mgr
    # Stop timers and tickers left behind by a test
    session = mgr._session
    if session is not None:
        session.disarm_timeout()
        session.stop_ticker()


@pytest.fixture
def launched(manager, supervisor, config, wait_for):
    """A manager whose worker has launched and primed the fake process."""
    assert manager.connect(config)
    assert wait_for(lambda: supervisor.process is not None and supervisor.process.writes)
    return supervisor.process


@pytest.fixture
def gate():
    event = threading.Event()
    yield event
    event.set()
