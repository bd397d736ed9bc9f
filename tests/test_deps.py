"""
Tests for the tool check and nix-shell re-exec.
"""

import pytest

from nixos_installer.errors import PreconditionError
from nixos_installer.lib.deps import (
    REEXEC_MARKER,
    ensure_dependencies,
    missing_tools,
    packages_for,
    reexec_argv,
)


def _which_without(*absent):
    return lambda cmd: None if cmd in absent else f"/usr/bin/{cmd}"


class Recorder:
    def __init__(self):
        self.calls = []

    def __call__(self, file, argv, env):
        self.calls.append((file, argv, env))


def test_missing_tools_and_packages():
    missing = missing_tools(_which_without("sgdisk", "findmnt", "wipefs"))
    assert missing == ["findmnt", "wipefs", "sgdisk"]
    assert packages_for(missing) == ["gptfdisk", "util-linux"]


def test_reexec_argv_quotes_arguments():
    argv = reexec_argv(["gptfdisk"], ["--machine", "elara", "--log-path", "/tmp/my log"])
    assert argv[:4] == ["nix-shell", "-p", "gptfdisk", "--run"]
    assert "-m nixos_installer --machine elara" in argv[4]
    assert "'/tmp/my log'" in argv[4]


class TestEnsureDependencies:
    def test_all_present(self):
        execvpe = Recorder()
        ensure_dependencies([], dry_run=False, which=_which_without(), execvpe=execvpe, environ={})
        assert execvpe.calls == []

    def test_reexec_inside_nix_shell(self):
        execvpe = Recorder()
        ensure_dependencies(["--dry-run"], dry_run=True, which=_which_without("sgdisk"), execvpe=execvpe, environ={})
        file, argv, env = execvpe.calls[0]
        assert file == "nix-shell"
        assert "gptfdisk" in argv
        assert env[REEXEC_MARKER] == "1"

    def test_no_second_reexec(self):
        execvpe = Recorder()
        with pytest.raises(PreconditionError, match="sgdisk"):
            ensure_dependencies(
                [],
                dry_run=False,
                which=_which_without("sgdisk"),
                execvpe=execvpe,
                environ={REEXEC_MARKER: "1"},
            )
        assert execvpe.calls == []

    def test_dry_run_continues_without_nix_shell(self):
        execvpe = Recorder()
        ensure_dependencies([], dry_run=True, which=_which_without("sgdisk", "nix-shell"), execvpe=execvpe, environ={})
        assert execvpe.calls == []
