"""Tests for one-time token generation."""

import stat
from contextlib import contextmanager

import pyotp
import pytest

from turtlediver.config import ConnectionConfig
from turtlediver.errors import TokenGenerationError
from turtlediver.tokens import (
    AutoTokenGenerator,
    StokenGenerator,
    TotpTokenGenerator,
    generate_totp,
)

TOTP_SECRET = "JBSWY3DPEHPK3PXP"


@pytest.fixture
def fake_stoken(tmp_path):
    """Write a fake stoken script; returns (factory, args_file)."""
    args_file = tmp_path / "args.txt"

    def _make(body):
        script = tmp_path / "stoken"
        script.write_text(f'#!/bin/sh\necho "$@" >> "{args_file}"\n{body}\n')
        script.chmod(script.stat().st_mode | stat.S_IEXEC)
        return StokenGenerator(command=[str(script)])

    return _make, args_file


class TestStokenGenerator:
    """Tests for StokenGenerator against a fake stoken."""

    def test_token_with_pin(self, fake_stoken):
        make, args_file = fake_stoken
        generator = make("echo 123456")

        assert generator.tokencode("1234") == "123456"
        assert args_file.read_text().split() == ["tokencode", "-p", "1234"]

    def test_empty_passcode_omits_pin(self, fake_stoken):
        make, args_file = fake_stoken
        make("echo 123456").tokencode("")
        assert args_file.read_text().split() == ["tokencode"]

    def test_token_file(self, fake_stoken, tmp_path):
        make, args_file = fake_stoken
        token = tmp_path / "token.sdtid"
        token.write_text("seed")

        make("echo 123456").tokencode("1234", token_file=str(token))

        assert args_file.read_text().split() == ["tokencode", "--file", str(token), "-p", "1234"]

    def test_retry_with_file_only(self, fake_stoken, tmp_path):
        """Test empty output with a token file retries without the PIN."""
        make, args_file = fake_stoken
        generator = make('[ "$#" -eq 3 ] && echo 654321')

        assert generator.tokencode("1234", token_file=str(tmp_path / "t")) == "654321"
        assert len(args_file.read_text().splitlines()) == 2

    def test_rc_file_exported(self, fake_stoken, tmp_path):
        """Test the rc file reaches stoken through STOKEN_RC."""
        make, _ = fake_stoken
        rc = tmp_path / "stokenrc"

        assert make('echo "$STOKEN_RC"').tokencode("1234", rc_file=str(rc)) == str(rc)

    def test_empty_output_raises(self, fake_stoken):
        make, _ = fake_stoken
        generator = make("echo 'bad pin' >&2")

        with pytest.raises(TokenGenerationError) as excinfo:
            generator.tokencode("1234")

        message = str(excinfo.value)
        assert "stoken error: bad pin" in message
        assert "Tried path:" in message
        assert "STOKEN_RC not set" in message

    def test_missing_binary(self, tmp_path):
        generator = StokenGenerator(command=[str(tmp_path / "nope")])
        with pytest.raises(TokenGenerationError):
            generator.tokencode("1234")

    def test_scoped_resource_released(self, fake_stoken, tmp_path):
        """Test a scoped token file is released on success and failure."""
        make, _ = fake_stoken
        events = []

        @contextmanager
        def scoped():
            events.append("enter")
            try:
                yield str(tmp_path / "token")
            finally:
                events.append("exit")

        make("echo 123456").tokencode("1234", token_file=scoped())
        assert events == ["enter", "exit"]

        with pytest.raises(TokenGenerationError):
            make("true").tokencode("1234", token_file=scoped())
        assert events == ["enter", "exit", "enter", "exit"]

    def test_scoped_resource_unavailable(self, fake_stoken):
        make, _ = fake_stoken

        @contextmanager
        def denied():
            raise PermissionError("access revoked")
            yield

        with pytest.raises(TokenGenerationError, match="Cannot access token file"):
            make("echo 123456").tokencode("1234", token_file=denied())

    def test_generate_uses_config(self, fake_stoken):
        make, args_file = fake_stoken
        config = ConnectionConfig(passcode="9999")
        assert make("echo 111111").generate(config) == "111111"
        assert "9999" in args_file.read_text()


class TestTotp:
    """Tests for TOTP codes."""

    def test_generate_totp(self):
        code = generate_totp(TOTP_SECRET)
        assert len(code) == 6
        assert code.isdigit()

    def test_secret_is_normalized(self):
        assert pyotp.TOTP(TOTP_SECRET).verify(generate_totp("jbsw y3dp ehpk 3pxp"), valid_window=1)

    @pytest.mark.parametrize("secret", ["", "   ", "not base32!"])
    def test_invalid_secret(self, secret):
        with pytest.raises(TokenGenerationError):
            generate_totp(secret)

    def test_auto_prefers_totp(self, fake_stoken):
        make, args_file = fake_stoken
        generator = AutoTokenGenerator(stoken=make("echo 123456"))

        code = generator.generate(ConnectionConfig(passcode="1", totp_secret=TOTP_SECRET))

        assert pyotp.TOTP(TOTP_SECRET).verify(code, valid_window=1)
        assert not args_file.exists()

    def test_auto_falls_back_to_stoken(self, fake_stoken):
        make, _ = fake_stoken
        generator = AutoTokenGenerator(stoken=make("echo 123456"))
        assert generator.generate(ConnectionConfig(passcode="1")) == "123456"

    def test_totp_generator(self):
        code = TotpTokenGenerator().generate(ConnectionConfig(totp_secret=TOTP_SECRET))
        assert pyotp.TOTP(TOTP_SECRET).verify(code, valid_window=1)
