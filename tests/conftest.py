"""
Pytest configuration and shared fixtures for the NixOS installer tests.

Nothing here touches a real disk: every test drives the installer through
FakeDiskOps (tests/fakes.py) and a recording command runner.
"""

import os
import shutil
from pathlib import Path
from typing import Callable

import pytest

from nixos_installer.lib.diskops import KeySource
from nixos_installer.lib.env import GIB
from nixos_installer.logging_utils import reset_logging
from nixos_installer.request import InstallationRequest

from fakes import FakeDisk, FakeDiskOps, FakeRunner, make_dual_boot_ops


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    reset_logging()


# ==============================================================================
# Environment
# ==============================================================================


@pytest.fixture
def as_root(monkeypatch):
    """Pretend to be root with every tool on PATH."""
    monkeypatch.setattr(os, "geteuid", lambda: 0)
    monkeypatch.setattr(shutil, "which", lambda cmd: f"/run/current-system/sw/bin/{cmd}")


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def mount_root(tmp_path) -> str:
    root = tmp_path / "mnt"
    root.mkdir()
    return str(root)


@pytest.fixture
def checkout(tmp_path) -> Path:
    """A minimal flake checkout with two machines and a templates dir."""
    repo = tmp_path / "nix-config"
    for name in ("elara", "magos", "templates"):
        (repo / "machines" / name).mkdir(parents=True)
        (repo / "machines" / name / "configuration.nix").write_text("{ ... }: { }\n")
    (repo / "flake.nix").write_text(
        "{\n  outputs = { self, nixpkgs }: {\n    globalConfig = { defaultUser = \"ex1tium\"; };\n  };\n}\n"
    )
    return repo


@pytest.fixture
def key_file(tmp_path) -> str:
    path = tmp_path / "luks.key"
    path.write_text("correct horse battery staple\n")
    return str(path)


@pytest.fixture
def secret_key() -> KeySource:
    return KeySource(secret="hunter2")


# ==============================================================================
# Disks
# ==============================================================================


@pytest.fixture
def blank_ops() -> FakeDiskOps:
    """A single empty 20 GiB virtio disk."""
    return FakeDiskOps(disks=[FakeDisk("/dev/vda", 20 * GIB)])


@pytest.fixture
def dual_boot_ops() -> FakeDiskOps:
    """ESP + Windows + 100 GiB of free space on /dev/nvme0n1."""
    return make_dual_boot_ops(free=100 * GIB)


# ==============================================================================
# Requests
# ==============================================================================


@pytest.fixture
def make_request(mount_root) -> Callable[..., InstallationRequest]:
    def _make(**overrides) -> InstallationRequest:
        fields = dict(
            mode="fresh",
            machine="elara",
            disk="/dev/vda",
            filesystem="btrfs",
            encrypt=False,
            passphrase=None,
            repo_url="https://example.invalid/nix-config.git",
            branch="main",
            mount_root=mount_root,
            dry_run=False,
            non_interactive=True,
            assume_yes=False,
            erase_confirmation="ERASE",
        )
        fields.update(overrides)
        return InstallationRequest(**fields)

    return _make
