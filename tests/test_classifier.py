"""Tests for output classification and line scanning."""

import pytest

from turtlediver.classifier import Category, OutputClassifier, StreamScanner


@pytest.fixture
def classifier():
    return OutputClassifier()


class TestOutputClassifier:
    """Tests for the rule table."""

    @pytest.mark.parametrize("line, category", [
        ("Enter PASSCODE:", Category.TOKEN_PROMPT),
        ("Please enter your username and password.", Category.TOKEN_PROMPT),
        ("Password:", Category.PASSWORD_PROMPT),
        ("Established DTLS connection (using GnuTLS)", Category.SUCCESS),
        ("Got CONNECT response: HTTP/1.1 200 OK", Category.SUCCESS),
        ("Got HTTP response: HTTP/1.1 200 OK", Category.SUPPRESSED),
        ("No DTLS address", Category.SUPPRESSED),
        ("Login failed.", Category.FATAL),
        ("CSTP Dead Peer Detection detected dead peer!", Category.WARNING),
        ("Send BYE packet: Server request", Category.TEARDOWN),
        ("SSL connection error", Category.GENERIC),
        ("POST https://vpn.example.com/", Category.UNKNOWN),
    ])
    def test_categories(self, classifier, line, category):
        assert classifier.classify(line).category is category

    def test_first_matching_row_wins(self, classifier):
        """Test prompts take precedence over later rows."""
        result = classifier.classify("Error: Password:")
        assert result.category is Category.PASSWORD_PROMPT

    def test_matching_is_case_insensitive(self, classifier):
        assert classifier.classify("LOGIN FAILED").reason == "Login failed"

    @pytest.mark.parametrize("line, reason, kill, severe", [
        ("sudo: a password is required", "Requires admin privileges", False, False),
        ("open: Permission denied", "Requires admin privileges", False, False),
        ("ioctl: Operation not permitted", "Operation not permitted", True, False),
        ("Error -60005 from authorization", "Admin password incorrect", True, False),
        ("Failed to connect utun unit", "Tun setup failed", True, False),
        ("Login failed.", "Login failed", True, True),
        ("fgets (stdin): Inappropriate ioctl for device", "Credential input error", True, True),
    ])
    def test_fatal_rules(self, classifier, line, reason, kill, severe):
        result = classifier.classify(line)
        assert result.category is Category.FATAL
        assert result.reason == reason
        assert result.kill is kill
        assert result.severe is severe

    def test_history_labels(self, classifier):
        """Test labels for explicit, reason-based and line-based failures."""
        assert classifier.classify("Login failed.").history_label == "Failed - Login Failed"
        assert classifier.classify("Failed to open tun device").history_label == "Failed - Tun setup failed"
        assert classifier.classify("TLS error").history_label == "Failed - TLS error"

    def test_display_prefixes(self, classifier):
        assert classifier.classify("Login failed.").display == "ERROR: Login failed."
        assert classifier.classify("Error: bad thing").display == "Error: bad thing"
        assert classifier.classify("Failed to reconnect to host").display == \
            "WARNING: Failed to reconnect to host"
        assert classifier.classify("No DTLS address").display is None

    def test_unknown_lines_by_stream(self, classifier):
        """Test only stderr lines are flagged as errors."""
        assert classifier.classify("Hello", "stderr").display == "ERROR: Hello"
        assert classifier.classify("Hello", "stdout").display == "Hello"

    def test_benign_only_in_split_mode(self):
        """Test resolver chatter is downgraded only when slicing."""
        line = "Error: Got results: [<DNS IN A rdata: 10.0.0.5>]"

        full = OutputClassifier(split_tunnel=False).classify(line)
        split = OutputClassifier(split_tunnel=True).classify(line)

        assert full.category is Category.GENERIC
        assert split.category is Category.BENIGN
        assert split.display == "Got results: [<DNS IN A rdata: 10.0.0.5>]"

    def test_challenge_flag(self, classifier):
        """Test a challenge line is also a token prompt."""
        result = classifier.classify("Enter Next PASSCODE:")
        assert result.challenge
        assert result.category is Category.TOKEN_PROMPT

    def test_challenge_without_prompt(self, classifier):
        result = classifier.classify("Wait for the tokencode to change, enter next passcode")
        assert result.category is Category.CHALLENGE
        assert result.challenge

    def test_is_prompt(self, classifier):
        assert classifier.is_prompt("  Password:")
        assert classifier.is_prompt("Enter PIN")
        assert not classifier.is_prompt("Passw")


class TestStreamScanner:
    """Tests for splitting chunks into lines."""

    def test_lines_across_chunks(self):
        scanner = StreamScanner()
        assert scanner.feed(b"Connected as 10.") == []
        lines = scanner.feed(b"0.0.2\nNext")
        assert [line.text for line in lines] == ["Connected as 10.0.0.2"]
        assert scanner.pending == "Next"

    def test_carriage_returns(self):
        scanner = StreamScanner()
        lines = scanner.feed(b"one\r\ntwo\rthree\n")
        assert [line.text for line in lines] == ["one", "two", "three"]

    def test_blank_lines_dropped(self):
        scanner = StreamScanner()
        assert [line.text for line in scanner.feed(b"\n\n  \nx\n")] == ["x"]

    def test_split_multibyte_character(self):
        """Test a UTF-8 sequence cut between chunks is decoded intact."""
        data = "Verbunden über DTLS\n".encode("utf-8")
        cut = data.index("ü".encode("utf-8")) + 1
        scanner = StreamScanner()

        assert scanner.feed(data[:cut]) == []
        lines = scanner.feed(data[cut:])

        assert lines[0].text == "Verbunden über DTLS"

    def test_partial_prompt_reported_once(self):
        """Test an unterminated prompt is surfaced early, then marked handled."""
        scanner = StreamScanner(prompt_probe=OutputClassifier().is_prompt)

        assert scanner.feed(b"Passw") == []
        early = scanner.feed(b"ord:")
        assert len(early) == 1
        assert early[0].text == "Password:"
        assert early[0].partial

        assert scanner.feed(b" ") == []

        done = scanner.feed(b"\n")
        assert len(done) == 1
        assert done[0].handled
        assert not done[0].partial

    def test_handled_flag_resets(self):
        scanner = StreamScanner(prompt_probe=OutputClassifier().is_prompt)
        scanner.feed(b"Password:")
        scanner.feed(b"\n")

        lines = scanner.feed(b"Password:\n")

        assert len(lines) == 1
        assert not lines[0].handled

    def test_oversized_pending_line_forced_out(self):
        scanner = StreamScanner(max_pending=16)
        lines = scanner.feed(b"x" * 20)
        assert [line.text for line in lines] == ["x" * 20]
        assert scanner.pending == ""

    def test_flush_returns_remainder(self):
        scanner = StreamScanner()
        scanner.feed(b"tail without newline")
        assert [line.text for line in scanner.flush()] == ["tail without newline"]
        assert scanner.flush() == []
