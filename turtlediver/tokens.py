"""One-time token generation.

The RSA soft token is produced by the external ``stoken`` tool. Servers that
use plain RFC 6238 codes get them from pyotp instead.
"""

import logging
import os
import subprocess
from contextlib import ExitStack
from typing import Optional, Protocol

import pyotp

from .config import ConnectionConfig, PathSource
from .constants import STOKEN
from .errors import TokenGenerationError
from .platform import child_env, tool_command

log = logging.getLogger(__name__)


class TokenGenerator(Protocol):
    """Anything that can produce the one-time part of the PIN."""

    def generate(self, config: ConnectionConfig) -> str:
        ...


def _open_source(stack: ExitStack, source: Optional[PathSource]) -> Optional[str]:
    """Resolve a plain path or enter a scoped resource on ``stack``."""
    if source is None:
        return None
    if isinstance(source, (str, os.PathLike)):
        path = os.fspath(source)
        return path or None
    try:
        path = stack.enter_context(source)
    except OSError as e:
        raise TokenGenerationError(f"Cannot access token file: {e}") from e
    return os.fspath(path) if path else None


class StokenGenerator:
    """Runs ``stoken tokencode`` and returns the current token code."""

    def __init__(self, command: Optional[list[str]] = None, timeout: float = 15.0):
        """Initialize the generator.

        Args:
            command: Command prefix for stoken (resolved on each call if None)
            timeout: Seconds to wait for stoken
        """
        self.command = command
        self.timeout = timeout

    def generate(self, config: ConnectionConfig) -> str:
        return self.tokencode(config.passcode, config.token_file, config.stoken_rc)

    def tokencode(
            self,
            passcode: str,
            token_file: Optional[PathSource] = None,
            rc_file: Optional[PathSource] = None,
    ) -> str:
        """Generate a token code.

        Args:
            passcode: Static passcode, passed as the token PIN
            token_file: Token seed file (path or scoped resource)
            rc_file: stokenrc to expose via STOKEN_RC when no token file is given

        Returns:
            Token code string

        Raises:
            TokenGenerationError: If stoken produced nothing
        """
        base = list(self.command or tool_command(STOKEN))
        pin_args = ["-p", passcode] if passcode else []

        with ExitStack() as stack:
            token_path = _open_source(stack, token_file)
            extra_env = {}
            if token_path:
                args = ["tokencode", "--file", token_path] + pin_args
                source_note = "Using --file"
            else:
                args = ["tokencode"] + pin_args
                rc_path = _open_source(stack, rc_file)
                if rc_path:
                    extra_env["STOKEN_RC"] = rc_path
                    source_note = f"STOKEN_RC: {rc_path}"
                else:
                    source_note = "STOKEN_RC not set"
            env = child_env(extra_env)

            output, error_output = self._run(base + args, env, source_note)
            if not output and token_path:
                log.info("stoken returned nothing, retrying with --file only")
                output, retry_error = self._run(
                    base + ["tokencode", "--file", token_path], env, source_note
                )
                error_output = retry_error or error_output

            if not output:
                raise TokenGenerationError(
                    f"stoken error: {error_output}\n"
                    f"Tried path: {' '.join(base)}\n"
                    f"{source_note}"
                )

        log.debug(f"stoken path: {' '.join(base)} ({source_note})")
        return output

    def _run(self, cmd: list[str], env: dict, source_note: str) -> tuple[str, str]:
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                env=env,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise TokenGenerationError(f"stoken timed out after {self.timeout}s") from e
        except OSError as e:
            raise TokenGenerationError(
                f"Error generating token: {e}\nTried path: {cmd[0]}\n{source_note}"
            ) from e
        return result.stdout.strip(), result.stderr.strip()


class TotpTokenGenerator:
    """TOTP codes from a base32 secret."""

    def generate(self, config: ConnectionConfig) -> str:
        return generate_totp(config.totp_secret or "")


def generate_totp(secret: str) -> str:
    """Generate current TOTP code from secret.

    Args:
        secret: Base32-encoded TOTP secret

    Returns:
        6-digit TOTP code

    Raises:
        TokenGenerationError: If secret is invalid
    """
    secret = secret.strip().replace(" ", "").upper()
    if not secret:
        raise TokenGenerationError("TOTP secret is empty")
    try:
        return pyotp.TOTP(secret).now()
    except (ValueError, TypeError) as e:
        raise TokenGenerationError(f"Invalid TOTP secret: {e}") from e


class AutoTokenGenerator:
    """Picks TOTP when the config carries a secret, stoken otherwise."""

    def __init__(self, stoken: Optional[StokenGenerator] = None):
        self.stoken = stoken or StokenGenerator()
        self.totp = TotpTokenGenerator()

    def generate(self, config: ConnectionConfig) -> str:
        if config.totp_secret:
            return self.totp.generate(config)
        return self.stoken.generate(config)
