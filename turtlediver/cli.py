"""TurtleDiver - OpenConnect supervisor with RSA soft-token PINs.

Usage:
    turtlediver connect vpn.example.com -u alice         (full tunnel)
    turtlediver connect vpn.example.com -u alice \\
        --split intranet.example.com 10.0.0.0/8           (split tunnel)
    turtlediver history [--limit N] [--clear]             (past attempts)
    turtlediver set-admin-password                        (store sudo password)
    turtlediver cleanup                                   (kill leftover tunnels)

The login password and the token passcode are read from TURTLEDIVER_PASSWORD
and TURTLEDIVER_PASSCODE, or asked for interactively.
"""

import argparse
import getpass
import logging
import os
import sys
import threading
from pathlib import Path

from platformdirs import user_log_dir

from .config import ConnectionConfig, RoutingMode, SecretStore
from .constants import APP_NAME, DEFAULT_CONNECT_TIMEOUT, VERSION
from .history import HistoryRecorder
from .manager import ConnectionManager
from .models import ConnectionStatus
from .session import format_duration

log = logging.getLogger(__name__)

PASSWORD_ENV = "TURTLEDIVER_PASSWORD"
PASSCODE_ENV = "TURTLEDIVER_PASSCODE"
TOTP_ENV = "TURTLEDIVER_TOTP_SECRET"

# Colors
GREEN = "\033[32m"
RED = "\033[31m"
YELLOW = "\033[33m"
CYAN = "\033[36m"
NC = "\033[0m"

STATUS_COLORS = {
    "connected": GREEN,
    "connecting": CYAN,
    "disconnecting": CYAN,
    "disconnected": YELLOW,
    "error": RED,
}


def setup_logging(debug: bool = False) -> None:
    """Console logging plus a log file in the per-user log directory."""
    level = logging.DEBUG if debug else logging.WARNING
    fmt = "%(asctime)s [%(levelname)s] %(message)s"
    logging.basicConfig(level=level, format=fmt)

    try:
        log_dir = Path(user_log_dir(APP_NAME))
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_dir / f"{APP_NAME}.log")
    except OSError as e:
        log.warning(f"File logging disabled: {e}")
        return
    handler.setLevel(logging.DEBUG if debug else logging.INFO)
    handler.setFormatter(logging.Formatter(fmt))
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(min(root.level, handler.level))


def _secret_from(env_name: str, prompt: str) -> str:
    value = os.environ.get(env_name)
    if value:
        return value
    return getpass.getpass(prompt)


def build_config(args) -> ConnectionConfig:
    """Turn parsed ``connect`` arguments into a ``ConnectionConfig``."""
    password = _secret_from(PASSWORD_ENV, "VPN password: ")
    passcode = _secret_from(PASSCODE_ENV, "Token passcode: ")
    return ConnectionConfig(
        host=args.host,
        username=args.username,
        password=password,
        passcode=passcode,
        token_file=args.token_file,
        stoken_rc=args.stoken_rc,
        totp_secret=os.environ.get(TOTP_ENV) or None,
        routing=RoutingMode.SPLIT if args.split else RoutingMode.FULL,
        slice_targets=list(args.split or []),
    )


def _print_status(status: ConnectionStatus) -> None:
    color = STATUS_COLORS.get(status.state.value, NC)
    print(f"{color}[{status}]{NC}", flush=True)


def _answer_challenge(prompt, answer) -> None:
    try:
        text = getpass.getpass(f"{prompt}: ")
    except (EOFError, KeyboardInterrupt):
        text = ""
    answer(text)


def cmd_connect(args) -> int:
    config = build_config(args)
    manager = ConnectionManager(
        history=HistoryRecorder(),
        secrets=SecretStore(),
        secret_prompt=lambda: getpass.getpass("Local admin (sudo) password: "),
        connect_timeout=args.timeout,
    )

    finished = threading.Event()

    def on_status(status: ConnectionStatus):
        _print_status(status)
        if status.is_disconnected or status.is_error:
            finished.set()

    manager.add_status_listener(on_status)
    manager.add_log_listener(lambda text: print(text, flush=True))
    manager.on_challenge = _answer_challenge

    print(f"{GREEN}VPN Server: {config.host}{NC}")
    print(f"{GREEN}Username: {config.username}{NC}")
    if config.split_tunnel:
        print(f"{GREEN}Split tunnel: {', '.join(config.slice_targets)}{NC}")
    print()

    try:
        manager.connect(config)
        try:
            while not finished.wait(0.5):
                pass
        except KeyboardInterrupt:
            print(f"\n{YELLOW}Disconnecting...{NC}")
            manager.disconnect()
            finished.wait(timeout=10)
    finally:
        status = manager.status
        if not status.is_disconnected:
            manager.cleanup_on_terminate()

    return 1 if status.is_error else 0


def cmd_history(args) -> int:
    history = HistoryRecorder()
    if args.clear:
        history.clear_history()
        print(f"{GREEN}History cleared.{NC}")
        return 0

    attempts = history.get_history()[:args.limit]
    if not attempts:
        print(f"{YELLOW}No connection attempts recorded.{NC}")
        return 0

    for attempt in attempts:
        when = attempt.timestamp.astimezone().strftime("%Y-%m-%d %H:%M:%S")
        duration = format_duration(attempt.duration) if attempt.duration is not None else "-"
        color = GREEN if attempt.status in ("Connected", "Disconnected") else RED
        print(f"{when}  {attempt.host:<30} {color}{attempt.status:<34}{NC} {duration}")
    return 0


def cmd_set_admin_password(args) -> int:
    store = SecretStore()
    if args.clear:
        store.clear()
        print(f"{GREEN}Admin password removed.{NC}")
        return 0

    secret = getpass.getpass("Local admin (sudo) password: ")
    if not secret:
        print(f"{RED}Nothing entered.{NC}")
        return 1
    if not store.set(secret):
        print(f"{RED}Could not save the admin password to the keyring.{NC}")
        return 1
    print(f"{GREEN}Admin password saved.{NC}")
    return 0


def cmd_cleanup(args) -> int:
    ConnectionManager(history=HistoryRecorder(":memory:")).cleanup_on_terminate()
    print(f"{GREEN}Cleanup done.{NC}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="OpenConnect VPN with RSA SecurID soft tokens (stoken)",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument("--debug", action="store_true", help="Enable debug output")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("connect", help="Connect and stay attached until disconnected")
    p.add_argument("host", help="VPN server")
    p.add_argument("-u", "--username", required=True, help="VPN user name")
    p.add_argument("--token-file", help="stoken token file (instead of ~/.stokenrc)")
    p.add_argument("--stoken-rc", help="stoken rc file passed via STOKEN_RC")
    p.add_argument("--split", nargs="+", metavar="TARGET",
                   help="Route only these hosts/networks through the tunnel (vpn-slice)")
    p.add_argument("--timeout", type=float, default=DEFAULT_CONNECT_TIMEOUT,
                   help="Seconds to wait for the tunnel to come up")
    p.set_defaults(func=cmd_connect)

    p = sub.add_parser("history", help="Show past connection attempts")
    p.add_argument("--limit", type=int, default=20, help="Number of entries to show")
    p.add_argument("--clear", action="store_true", help="Delete the history")
    p.set_defaults(func=cmd_history)

    p = sub.add_parser("set-admin-password", help="Store the local sudo password in the keyring")
    p.add_argument("--clear", action="store_true", help="Remove the stored password")
    p.set_defaults(func=cmd_set_admin_password)

    p = sub.add_parser("cleanup", help="Kill any openconnect left behind")
    p.set_defaults(func=cmd_cleanup)
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.debug)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
