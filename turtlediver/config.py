"""Connection configuration and the stored elevation secret."""

import logging
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from .constants import ADMIN_PASSWORD_KEY, KEYRING_SERVICE, UNKNOWN_HOST
from .errors import ConfigValidationError

log = logging.getLogger(__name__)

# A token/rc file is either a plain path or a context manager that grants
# access to the file for the duration of the block and yields its path.
PathSource = Union[str, AbstractContextManager]


class RoutingMode(Enum):
    """How traffic is routed through the tunnel"""
    FULL = "full"
    SPLIT = "split"


@dataclass
class ConnectionConfig:
    """Everything needed for one connect attempt."""
    host: str = ""
    username: str = ""
    password: str = field(default="", repr=False)
    passcode: str = field(default="", repr=False)
    token_file: Optional[PathSource] = None
    stoken_rc: Optional[PathSource] = None
    totp_secret: Optional[str] = field(default=None, repr=False)
    routing: RoutingMode = RoutingMode.FULL
    slice_targets: list[str] = field(default_factory=list)

    REQUIRED = ("host", "username", "password", "passcode")

    @property
    def split_tunnel(self) -> bool:
        return self.routing is RoutingMode.SPLIT

    @property
    def display_host(self) -> str:
        return self.host or UNKNOWN_HOST

    def missing_fields(self) -> list[str]:
        """Names of required settings that are empty."""
        return [name for name in self.REQUIRED if not (getattr(self, name) or "").strip()]

    def validate(self) -> None:
        """Check required settings.

        Raises:
            ConfigValidationError: If any required field is empty
        """
        missing = self.missing_fields()
        if missing:
            raise ConfigValidationError(missing)


class SecretStore:
    """Elevation secret (local admin password) kept in the system keyring."""

    def __init__(self, service: str = KEYRING_SERVICE, key: str = ADMIN_PASSWORD_KEY):
        self.service = service
        self.key = key

    def get(self) -> str:
        """Get the stored secret, or an empty string."""
        try:
            return keyring.get_password(self.service, self.key) or ""
        except KeyringError as e:
            log.warning(f"Could not read admin password from keyring: {e}")
            return ""

    def set(self, secret: str) -> bool:
        """Store the secret.

        Returns:
            True if saved successfully
        """
        try:
            keyring.set_password(self.service, self.key, secret)
            return True
        except KeyringError as e:
            log.warning(f"Could not store admin password in keyring: {e}")
            return False

    def clear(self) -> bool:
        """Delete the stored secret."""
        try:
            keyring.delete_password(self.service, self.key)
            return True
        except PasswordDeleteError:
            return False
        except KeyringError as e:
            log.warning(f"Could not delete admin password from keyring: {e}")
            return False


class MemorySecretStore(SecretStore):
    """Process-local secret store, used when no keyring backend is wanted."""

    def __init__(self, secret: str = ""):
        super().__init__()
        self._secret = secret

    def get(self) -> str:
        return self._secret

    def set(self, secret: str) -> bool:
        self._secret = secret
        return True

    def clear(self) -> bool:
        had = bool(self._secret)
        self._secret = ""
        return had
