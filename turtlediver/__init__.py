"""TurtleDiver - OpenConnect connection orchestrator.

Drives an elevated openconnect process, feeds it a soft-token PIN and
tracks the connection lifecycle and history.
"""

from .classifier import Category, OutputClassifier, StreamScanner
from .config import ConnectionConfig, MemorySecretStore, RoutingMode, SecretStore
from .constants import VERSION
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
from .manager import ConnectionManager
from .models import ChallengeRequest, ConnectionAttempt, ConnectionState, ConnectionStatus
from .supervisor import ProcessSupervisor
from .tokens import AutoTokenGenerator, StokenGenerator, TotpTokenGenerator

__version__ = VERSION

__all__ = [
    # Manager
    "ConnectionManager",
    # Config
    "ConnectionConfig",
    "RoutingMode",
    "SecretStore",
    "MemorySecretStore",
    # Models
    "ConnectionState",
    "ConnectionStatus",
    "ConnectionAttempt",
    "ChallengeRequest",
    # Components
    "HistoryRecorder",
    "ProcessSupervisor",
    "OutputClassifier",
    "StreamScanner",
    "Category",
    "AutoTokenGenerator",
    "StokenGenerator",
    "TotpTokenGenerator",
    # Errors
    "TurtleDiverError",
    "ConfigValidationError",
    "TokenGenerationError",
    "LaunchError",
    "PrivilegeError",
    "ClassifiedRuntimeError",
    "ConnectTimeoutError",
    "GenericRuntimeError",
]
