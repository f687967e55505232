"""Constants and defaults for TurtleDiver."""

# Application info
APP_NAME = "turtlediver"
VERSION = "1.0.0"

# External tools
OPENCONNECT = "openconnect"
STOKEN = "stoken"
VPN_SLICE = "vpn-slice"
SUDO_PATH = "/usr/bin/sudo"
ENV_PATH = "/usr/bin/env"

# Package-manager prefixes first, then system prefixes
BINARY_SEARCH_DIRS = (
    "/opt/homebrew/bin",
    "/usr/local/bin",
    "/usr/bin",
    "/bin",
)

# Side-channel handle to the elevated (possibly detached) openconnect
PID_FILE = "/tmp/turtlediver.pid"

# Keyring
KEYRING_SERVICE = "turtlediver"
ADMIN_PASSWORD_KEY = "admin-password"

# Timing (seconds)
DEFAULT_CONNECT_TIMEOUT = 90
TERMINATE_GRACE = 1.0
KILL_STEP = 0.5
EXISTING_INSTANCE_WAIT = 1.0
DURATION_TICK = 1.0

# History
MAX_HISTORY_ITEMS = 100
UNKNOWN_HOST = "Unknown"

# Classifier
MAX_PENDING_LINE = 4096

# Status constants
STATUS_DISCONNECTED = "disconnected"
STATUS_CONNECTING = "connecting"
STATUS_CONNECTED = "connected"
STATUS_DISCONNECTING = "disconnecting"
STATUS_ERROR = "error"

# History status labels
LABEL_CONNECTING = "Connecting"
LABEL_CONNECTED = "Connected"
LABEL_DISCONNECTED = "Disconnected"
LABEL_MISSING_SETTINGS = "Failed - Missing Settings"
LABEL_TOKEN_ERROR = "Failed - Token Error"
LABEL_ADMIN_REQUIRED = "Failed - Admin Password Required"
LABEL_TIMEOUT = "Failed - Timeout"
LABEL_TERMINATED = "Failed - Terminated"
LABEL_APP_EXIT = "Terminated by App Exit"

# Error messages shown in the Error state
MSG_MISSING_SETTINGS = "Please configure all VPN settings"
MSG_TOKEN_FAILED = "Failed to generate token"
MSG_ADMIN_REQUIRED = "Admin password required"
MSG_TIMEOUT = "Connection timeout"
MSG_GENERIC = "OpenConnect error"

CHALLENGE_PROMPT = "Enter Next PASSCODE"
