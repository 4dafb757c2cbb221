"""Tests for vmsupervisor.utils module."""

from __future__ import annotations

import subprocess

import pytest

from vmsupervisor.exceptions import ConfigError
from vmsupervisor.utils import (
    ensure_directory,
    format_command,
    get_env,
    get_env_bool,
    log,
    parse_int,
    parse_int_env,
    remove_file,
    remove_file_quietly,
    run,
)


class TestLog:
    def test_info_level(self, capsys):
        log("INFO", "test message")
        captured = capsys.readouterr()
        assert "[INFO]" in captured.out
        assert "test message" in captured.out

    def test_debug_suppressed_by_default(self, capsys):
        log("DEBUG", "should not appear")
        captured = capsys.readouterr()
        assert captured.out == ""


class TestGetEnv:
    def test_returns_value(self, monkeypatch):
        monkeypatch.setenv("TEST_VAR", "hello")
        assert get_env("TEST_VAR") == "hello"

    def test_returns_default(self, monkeypatch):
        monkeypatch.delenv("TEST_VAR", raising=False)
        assert get_env("TEST_VAR", "fallback") == "fallback"


class TestGetEnvBool:
    @pytest.mark.parametrize("value", ["1", "true", "yes", "on", "TRUE", "Yes"])
    def test_truthy_values(self, monkeypatch, value):
        monkeypatch.setenv("TEST_BOOL", value)
        assert get_env_bool("TEST_BOOL") is True

    @pytest.mark.parametrize("value", ["0", "false", "no", "off", "random"])
    def test_falsy_values(self, monkeypatch, value):
        monkeypatch.setenv("TEST_BOOL", value)
        assert get_env_bool("TEST_BOOL") is False

    def test_default_when_unset(self, monkeypatch):
        monkeypatch.delenv("TEST_BOOL", raising=False)
        assert get_env_bool("TEST_BOOL", True) is True


class TestParseInt:
    def test_valid_value(self):
        assert parse_int("timeout", "42") == 42

    def test_non_integer_raises(self):
        with pytest.raises(ConfigError, match="must be an integer"):
            parse_int("timeout", "abc")

    def test_below_min_raises(self):
        with pytest.raises(ConfigError, match="must be >= 1"):
            parse_int("timeout", 0, min_val=1)

    def test_above_max_raises(self):
        with pytest.raises(ConfigError, match="must be <= 65535"):
            parse_int("port", 70000, max_val=65535)


class TestParseIntEnv:
    def test_valid_value(self, monkeypatch):
        monkeypatch.setenv("MY_INT", "42")
        assert parse_int_env("MY_INT", 10) == 42

    def test_default_value(self, monkeypatch):
        monkeypatch.delenv("MY_INT", raising=False)
        assert parse_int_env("MY_INT", 10) == 10

    def test_invalid_env_raises(self, monkeypatch):
        monkeypatch.setenv("MY_INT", "ten")
        with pytest.raises(ConfigError, match="MY_INT must be an integer"):
            parse_int_env("MY_INT", 10)


class TestFiles:
    def test_ensure_directory_nested(self, tmp_path):
        target = tmp_path / "a" / "b"
        ensure_directory(target)
        ensure_directory(target)
        assert target.is_dir()

    def test_remove_file(self, tmp_path):
        target = tmp_path / "f"
        target.write_text("x")
        assert remove_file(target) is True
        assert not target.exists()
        assert remove_file(target) is False

    def test_remove_file_propagates_other_errors(self, tmp_path):
        target = tmp_path / "dir"
        target.mkdir()
        with pytest.raises(OSError):
            remove_file(target)

    def test_remove_file_quietly_warns(self, tmp_path, capsys):
        target = tmp_path / "dir"
        target.mkdir()
        remove_file_quietly(target, "pid file")
        assert "[WARN]" in capsys.readouterr().out


class TestRun:
    def test_format_command(self):
        assert format_command(["bhyvectl", "--destroy", "--vm=a"]) == "bhyvectl --destroy --vm=a"

    def test_run_captures_output(self):
        result = run(["echo", "hello"], capture_output=True)
        assert result.stdout.strip() == "hello"

    def test_run_raises_on_failure(self):
        with pytest.raises(subprocess.CalledProcessError):
            run(["false"])

    def test_run_without_check(self):
        assert run(["false"], check=False).returncode != 0
