"""Process and filesystem helpers shared by the supervisor and token generator."""

import os
import signal
from pathlib import Path
from typing import Optional

import psutil

from .constants import BINARY_SEARCH_DIRS, ENV_PATH, PID_FILE


# === Paths ===

def find_binary(name: str, search_dirs=BINARY_SEARCH_DIRS) -> Optional[str]:
    """Find an executable in the well-known install directories.

    Args:
        name: Executable name (e.g., 'openconnect')
        search_dirs: Directories to probe, in order

    Returns:
        Absolute path or None
    """
    for directory in search_dirs:
        path = os.path.join(directory, name)
        if os.path.isfile(path) and os.access(path, os.X_OK):
            return path
    return None


def tool_command(name: str, search_dirs=BINARY_SEARCH_DIRS) -> list[str]:
    """Command prefix for a tool: its resolved path, or ``env <name>``."""
    path = find_binary(name, search_dirs)
    if path:
        return [path]
    return [ENV_PATH, name]


def child_env(extra: Optional[dict] = None) -> dict:
    """Environment for child tools with Homebrew and system bin dirs on PATH."""
    env = dict(os.environ)
    default_paths = ":".join(BINARY_SEARCH_DIRS)
    env["PATH"] = f"{default_paths}:{env.get('PATH', '')}"
    if extra:
        env.update(extra)
    return env


# === PID file ===

def read_pid_file(pid_file: str = PID_FILE) -> Optional[int]:
    """Read the PID recorded by openconnect's --pid-file.

    Returns:
        PID or None if missing/unreadable
    """
    try:
        text = Path(pid_file).read_text().strip()
    except OSError:
        return None
    try:
        return int(text)
    except ValueError:
        return None


# === Process Management ===

def find_processes_by_name(name: str) -> list[psutil.Process]:
    """Find running processes by exact name.

    Args:
        name: Process name (e.g., 'openconnect')

    Returns:
        List of matching processes (may be empty)
    """
    procs = []
    for proc in psutil.process_iter(["name", "pid"]):
        try:
            if proc.info["name"] == name:
                procs.append(proc)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return procs


def send_signal(pid: int, sig: int) -> bool:
    """Send a signal to a process.

    Args:
        pid: Process ID
        sig: Signal number (e.g., signal.SIGTERM)

    Returns:
        True if signal sent successfully
    """
    try:
        proc = psutil.Process(pid)
        proc.send_signal(sig)
        return True
    except (psutil.NoSuchProcess, psutil.AccessDenied, OSError):
        return False


def kill_pid(pid: int, step: float) -> None:
    """SIGTERM, wait ``step`` seconds, then SIGKILL if still alive."""
    if not send_signal(pid, signal.SIGTERM):
        return
    try:
        psutil.Process(pid).wait(timeout=step)
    except psutil.TimeoutExpired:
        send_signal(pid, signal.SIGKILL)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        pass
