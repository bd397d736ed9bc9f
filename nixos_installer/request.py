"""Selection resolution: flags and prompts become one immutable request.

Interactive and non-interactive runs share validate_selections(); the only
difference is that a non-interactive run validates up front, before any
prompt could have filled the gaps.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .errors import ValidationError
from .lib.env import BRANCH_DEFAULT, PATHS, REPO_URL_DEFAULT

MODES = ("fresh", "dual-boot", "manual")
FILESYSTEMS = ("btrfs", "ext4")

_DISK_RE = re.compile(r"^/dev/(sd[a-z]+|vd[a-z]+|hd[a-z]+|xvd[a-z]+|nvme\d+n\d+|mmcblk\d+)$")


@dataclass(frozen=True)
class PassphraseSource:
    """LUKS passphrase origin: a key file, or an interactive prompt."""

    key_file: Optional[str] = None

    @property
    def interactive(self) -> bool:
        return self.key_file is None


@dataclass
class Selections:
    """Mutable draft filled from flags, the YAML config and prompts."""

    mode: Optional[str] = None
    machine: Optional[str] = None
    disk: Optional[str] = None
    filesystem: Optional[str] = None
    encrypt: Optional[bool] = None
    luks_pass: Optional[str] = None
    user: Optional[str] = None
    repo_url: str = REPO_URL_DEFAULT
    branch: str = BRANCH_DEFAULT
    config_dir: Optional[str] = None
    root_size: Optional[int] = None
    esp: Optional[str] = None
    root_part: Optional[str] = None
    home_part: Optional[str] = None
    erase_confirmation: Optional[str] = None
    mount_root: str = PATHS.mount_root
    dry_run: bool = False
    non_interactive: bool = False
    assume_yes: bool = False


@dataclass(frozen=True)
class InstallationRequest:
    mode: str
    machine: str
    disk: str
    filesystem: str
    encrypt: bool
    passphrase: Optional[PassphraseSource]
    repo_url: str
    branch: str
    mount_root: str
    dry_run: bool
    non_interactive: bool
    assume_yes: bool
    user: Optional[str] = None
    config_dir: Optional[str] = None
    root_size: Optional[int] = None
    esp: Optional[str] = None
    root_part: Optional[str] = None
    home_part: Optional[str] = None
    erase_confirmation: Optional[str] = field(default=None, repr=False)

    @property
    def subvolumes_enabled(self) -> bool:
        return self.filesystem == "btrfs"


def is_disk_path(path: str) -> bool:
    return bool(_DISK_RE.match(path))


def validate_selections(
    sel: Selections,
    *,
    machines: Optional[Sequence[str]] = None,
    allow_prompted_passphrase: bool = False,
) -> List[str]:
    """Return every problem with the selections (empty list means valid)."""

    problems: List[str] = []
    missing: List[str] = []

    if not sel.mode:
        missing.append("--mode")
    if not sel.machine:
        missing.append("--machine")
    if not sel.disk:
        missing.append("--disk")
    if sel.encrypt is None:
        missing.append("--encrypt/--no-encrypt")
    if sel.encrypt and not sel.luks_pass and not allow_prompted_passphrase:
        missing.append("--luks-pass")
    if sel.mode == "manual":
        if not sel.esp:
            missing.append("--esp")
        if not sel.root_part:
            missing.append("--root-part")
    if missing:
        problems.append(f"Missing mandatory fields: {' '.join(missing)}")

    if sel.mode and sel.mode not in MODES:
        problems.append(f"Invalid mode: {sel.mode} (expected {'|'.join(MODES)})")
    if sel.filesystem and sel.filesystem not in FILESYSTEMS:
        problems.append(f"Unsupported filesystem: {sel.filesystem} (expected {'|'.join(FILESYSTEMS)})")
    if sel.disk and not is_disk_path(sel.disk):
        problems.append(f"Not a whole-disk device path: {sel.disk}")
    if sel.luks_pass and not os.path.isfile(sel.luks_pass):
        problems.append(f"LUKS passphrase file not found: {sel.luks_pass}")
    if sel.root_size is not None and sel.root_size <= 0:
        problems.append(f"Invalid --root-size: {sel.root_size}")
    if sel.root_size is not None and sel.mode and sel.mode != "dual-boot":
        problems.append("--root-size only applies to dual-boot mode")
    if machines is not None and sel.machine and sel.machine not in machines:
        problems.append(f"Unknown machine: {sel.machine} (available: {', '.join(machines) or 'none'})")
    for flag, value in (("--esp", sel.esp), ("--root-part", sel.root_part), ("--home-part", sel.home_part)):
        if value and not value.startswith("/dev/"):
            problems.append(f"{flag} must be a /dev path: {value}")

    return problems


def check_non_interactive(sel: Selections) -> None:
    """Fail fast, before any disk I/O, when a non-interactive run is incomplete."""

    if not sel.non_interactive:
        return
    problems = validate_selections(sel)
    if problems:
        raise ValidationError(problems)


def build_request(sel: Selections, *, machines: Optional[Sequence[str]] = None) -> InstallationRequest:
    problems = validate_selections(
        sel,
        machines=machines,
        allow_prompted_passphrase=not sel.non_interactive,
    )
    if problems:
        raise ValidationError(problems)

    passphrase: Optional[PassphraseSource] = None
    if sel.encrypt:
        passphrase = PassphraseSource(key_file=sel.luks_pass)

    return InstallationRequest(
        mode=str(sel.mode),
        machine=str(sel.machine),
        disk=str(sel.disk),
        filesystem=sel.filesystem or "btrfs",
        encrypt=bool(sel.encrypt),
        passphrase=passphrase,
        repo_url=sel.repo_url,
        branch=sel.branch,
        mount_root=sel.mount_root.rstrip("/") or "/",
        dry_run=sel.dry_run,
        non_interactive=sel.non_interactive,
        assume_yes=sel.assume_yes,
        user=sel.user,
        config_dir=sel.config_dir,
        root_size=sel.root_size,
        esp=sel.esp,
        root_part=sel.root_part,
        home_part=sel.home_part,
        erase_confirmation=sel.erase_confirmation,
    )
