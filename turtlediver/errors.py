"""Error taxonomy for the connection orchestrator.

These are raised inside components and turned into an ``Error`` status plus
a failed history record by the manager. None of them escape ``connect()``.
"""


class TurtleDiverError(Exception):
    """Base exception for TurtleDiver."""
    pass


class ConfigValidationError(TurtleDiverError):
    """A required connection setting is missing."""

    def __init__(self, missing: list[str]):
        self.missing = list(missing)
        super().__init__(f"Missing required settings: {', '.join(self.missing)}")


class TokenGenerationError(TurtleDiverError):
    """No usable one-time token was produced."""
    pass


class LaunchError(TurtleDiverError):
    """The tunnel process could not be started."""
    pass


class PrivilegeError(TurtleDiverError):
    """Elevation secret is missing or was rejected."""
    pass


class ClassifiedRuntimeError(TurtleDiverError):
    """A known fatal phrase was seen in the tunnel output."""

    def __init__(self, reason: str, line: str = ""):
        self.reason = reason
        self.line = line
        super().__init__(reason)


class ConnectTimeoutError(TurtleDiverError):
    """Connect attempt exceeded its deadline."""
    pass


class GenericRuntimeError(TurtleDiverError):
    """Unrecognized error line from the tunnel process."""
    pass
