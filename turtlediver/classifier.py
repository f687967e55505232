"""Classification of openconnect output.

Two layers:

- ``StreamScanner`` turns raw pipe chunks into lines, buffering a partial
  line until its terminator arrives.
- ``OutputClassifier`` maps a single line to a ``Classification`` by walking
  the ordered ``RULES`` table. It knows nothing about processes or state; the
  manager decides what to do with the result.
"""

import codecs
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .constants import MAX_PENDING_LINE, MSG_GENERIC


class Category(Enum):
    CHALLENGE = "challenge"
    TOKEN_PROMPT = "token_prompt"
    PASSWORD_PROMPT = "password_prompt"
    SUCCESS = "success"
    BENIGN = "benign"
    SUPPRESSED = "suppressed"
    FATAL = "fatal"
    WARNING = "warning"
    TEARDOWN = "teardown"
    GENERIC = "generic"
    UNKNOWN = "unknown"


PROMPTS = (Category.TOKEN_PROMPT, Category.PASSWORD_PROMPT)


@dataclass(frozen=True)
class Rule:
    """One row of the classification table.

    ``phrases`` are matched by lower-cased containment.
    """
    category: Category
    phrases: tuple
    reason: Optional[str] = None
    kill: bool = False
    severe: bool = False
    history_label: Optional[str] = None
    split_only: bool = False

    def matches(self, lower: str) -> bool:
        return any(phrase in lower for phrase in self.phrases)


CHALLENGE_RULE = Rule(Category.CHALLENGE, ("enter next passcode",))

# Order matters: the first matching row wins.
RULES = (
    Rule(Category.TOKEN_PROMPT, (
        "passcode:",
        "enter pin",
        "please enter your username and password",
    )),
    Rule(Category.PASSWORD_PROMPT, ("password:",)),
    Rule(Category.SUCCESS, (
        "established dtls",
        "esp session established",
        "connected as",
        "cstp connected",
        "configured as",
        "got connect response",
    )),
    Rule(Category.BENIGN, (
        "got results:",
        "dns in a rdata",
        "route: writing to routing socket",
    ), split_only=True),
    Rule(Category.SUPPRESSED, (
        "got http response",
        "unexpected 404 result from server",
        "get `http",
        "post `http",
        "no dtls address",
        "set up udp failed; using ssl instead",
    )),
    Rule(Category.FATAL, ("sudo", "permission denied"),
         reason="Requires admin privileges"),
    Rule(Category.FATAL, ("operation not permitted",),
         reason="Operation not permitted", kill=True),
    Rule(Category.FATAL, ("administrator username or password was incorrect", "-60005"),
         reason="Admin password incorrect", kill=True),
    Rule(Category.FATAL, ("failed to open tun device", "failed to connect utun unit"),
         reason="Tun setup failed", kill=True),
    Rule(Category.FATAL, ("login failed",),
         reason="Login failed", kill=True, severe=True,
         history_label="Failed - Login Failed"),
    Rule(Category.FATAL, ("fgets (stdin): inappropriate ioctl for device",),
         reason="Credential input error", kill=True, severe=True,
         history_label="Failed - Credential Error"),
    Rule(Category.WARNING, (
        "cstp dead peer detection detected dead peer!",
        "failed to reconnect to host",
    )),
    Rule(Category.TEARDOWN, ("send bye", "terminating")),
    Rule(Category.GENERIC, ("error",), reason=MSG_GENERIC),
)


def error_prefixed(line: str) -> str:
    """Prefix with ``ERROR:`` unless the line already starts with it."""
    if line.lower().startswith("error"):
        return line
    return f"ERROR: {line}"


def strip_error_label(line: str) -> str:
    lower = line.lower()
    if lower.startswith("error: "):
        return line[7:]
    if lower.startswith("error:"):
        return line[6:]
    return line


@dataclass(frozen=True)
class Classification:
    """Result of classifying one line."""
    line: str
    category: Category
    display: Optional[str]
    rule: Optional[Rule] = None
    challenge: bool = False

    @property
    def is_prompt(self) -> bool:
        return self.category in PROMPTS

    @property
    def reason(self) -> Optional[str]:
        return self.rule.reason if self.rule else None

    @property
    def kill(self) -> bool:
        return bool(self.rule and self.rule.kill)

    @property
    def severe(self) -> bool:
        return bool(self.rule and self.rule.severe)

    @property
    def history_label(self) -> str:
        if self.rule and self.rule.history_label:
            return self.rule.history_label
        return f"Failed - {self.reason if self.category is Category.FATAL else self.line}"


class OutputClassifier:
    """Classifies openconnect output lines against ``RULES``."""

    def __init__(self, split_tunnel: bool = False, rules=RULES):
        self.split_tunnel = split_tunnel
        self.rules = rules

    def classify(self, line: str, stream: str = "stderr") -> Classification:
        """Classify a complete line.

        Args:
            line: Line without its terminator
            stream: "stdout" or "stderr"; unknown stderr lines count as errors

        Returns:
            Classification with the text to show in the log
        """
        line = line.strip()
        lower = line.lower()
        challenge = CHALLENGE_RULE.matches(lower)

        for rule in self.rules:
            if rule.split_only and not self.split_tunnel:
                continue
            if rule.matches(lower):
                return Classification(
                    line=line,
                    category=rule.category,
                    display=self._display(rule.category, line),
                    rule=rule,
                    challenge=challenge,
                )

        if challenge:
            return Classification(line, Category.CHALLENGE, line, CHALLENGE_RULE, True)

        display = error_prefixed(line) if stream == "stderr" else line
        return Classification(line, Category.UNKNOWN, display)

    def is_prompt(self, text: str) -> bool:
        lower = text.strip().lower()
        return any(rule.matches(lower) for rule in self.rules if rule.category in PROMPTS)

    @staticmethod
    def _display(category: Category, line: str) -> Optional[str]:
        if category is Category.SUPPRESSED:
            return None
        if category is Category.BENIGN:
            return strip_error_label(line).strip()
        if category is Category.WARNING:
            return f"WARNING: {line}"
        if category in (Category.FATAL, Category.GENERIC):
            return error_prefixed(line)
        return line


@dataclass(frozen=True)
class ScannedLine:
    """A line produced by ``StreamScanner``.

    ``partial`` marks an unterminated prompt reported early; ``handled`` marks
    the completed form of a line that was already reported as partial.
    """
    text: str
    partial: bool = False
    handled: bool = False


class StreamScanner:
    """Splits a byte stream into lines across arbitrary chunk boundaries."""

    def __init__(
            self,
            name: str = "stderr",
            prompt_probe: Optional[Callable[[str], bool]] = None,
            max_pending: int = MAX_PENDING_LINE,
            encoding: str = "utf-8",
    ):
        self.name = name
        self.prompt_probe = prompt_probe
        self.max_pending = max_pending
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = ""
        self._tail_reported = False

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, chunk: bytes) -> list[ScannedLine]:
        """Consume a chunk and return every line it completed."""
        text = self._decoder.decode(chunk)
        data = (self._pending + text).replace("\r\n", "\n").replace("\r", "\n")
        parts = data.split("\n")
        self._pending = parts.pop()

        if len(self._pending.encode("utf-8", errors="replace")) > self.max_pending:
            parts.append(self._pending)
            self._pending = ""

        lines = []
        for part in parts:
            lines.extend(self._emit(part))

        tail = self._pending.strip()
        if (tail and not self._tail_reported and self.prompt_probe is not None
                and self.prompt_probe(tail)):
            self._tail_reported = True
            lines.append(ScannedLine(tail, partial=True))
        return lines

    def flush(self) -> list[ScannedLine]:
        """Emit whatever is left once the stream hit EOF."""
        rest = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        return self._emit(rest)

    def _emit(self, part: str) -> list[ScannedLine]:
        handled = self._tail_reported
        self._tail_reported = False
        text = part.strip()
        if not text:
            return []
        return [ScannedLine(text, handled=handled)]
