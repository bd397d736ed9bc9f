"""
Tests for run_cmd against real (harmless) subprocesses.
"""

import logging
import sys

import pytest

from nixos_installer.errors import ExternalToolError
from nixos_installer.lib.command import fmt_argv, last_command, run_cmd


def test_captures_output():
    r = run_cmd([sys.executable, "-c", "import sys; print('out'); print('err', file=sys.stderr)"])
    assert r.returncode == 0
    assert r.stdout.strip() == "out"
    assert r.output == "out\nerr"


def test_failure_carries_output():
    with pytest.raises(ExternalToolError) as exc:
        run_cmd([sys.executable, "-c", "import sys; print('boom'); sys.exit(3)"])
    assert exc.value.returncode == 3
    assert "boom" in str(exc.value)


def test_check_false_returns_result():
    r = run_cmd([sys.executable, "-c", "raise SystemExit(2)"], check=False)
    assert r.returncode == 2


def test_missing_binary():
    with pytest.raises(ExternalToolError) as exc:
        run_cmd(["definitely-not-a-real-tool-xyz"])
    assert exc.value.returncode == 127


def test_stdin_not_logged(caplog):
    caplog.set_level(logging.DEBUG)
    r = run_cmd([sys.executable, "-c", "import sys; sys.stdin.read()"], input_text="top-secret")
    assert r.returncode == 0
    assert "top-secret" not in caplog.text


def test_last_command_tracks_latest():
    run_cmd([sys.executable, "-c", "pass"])
    assert last_command() == fmt_argv([sys.executable, "-c", "pass"])


def test_fmt_argv_quotes():
    assert fmt_argv(["echo", "a b"]) == "echo 'a b'"
