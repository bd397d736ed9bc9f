from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from ..errors import ExternalToolError, MountError
from ..request import InstallationRequest
from .diskops import DiskOps, KeySource
from .env import FS_LABEL, LUKS_MAPPING
from .layout import PartitionLayout
from .poll import wait_for_device
from .prompts import Prompter

logger = logging.getLogger(__name__)

ESP_MOUNT_OPTIONS = ("fmask=0022", "dmask=0022")
PROBE_NAME = ".nixos-install-probe"


@dataclass(frozen=True)
class Subvolume:
    name: str
    mountpoint: str


DEFAULT_SUBVOLUMES = (
    Subvolume("@root", "/"),
    Subvolume("@home", "/home"),
    Subvolume("@nix", "/nix"),
    Subvolume("@snapshots", "/.snapshots"),
)


@dataclass(frozen=True)
class SubvolumeSet:
    """Fixed btrfs layout; the root subvolume is always mounted first."""

    subvolumes: Tuple[Subvolume, ...] = DEFAULT_SUBVOLUMES
    hints: Tuple[str, ...] = ("compress=zstd", "noatime")

    def options_for(self, sv: Subvolume) -> Tuple[str, ...]:
        return (f"subvol={sv.name}", *self.hints)

    def mount_order(self) -> List[Subvolume]:
        return list(self.subvolumes)

    def by_mountpoint(self) -> dict:
        return {sv.mountpoint: self.options_for(sv) for sv in self.subvolumes}


def subvolume_set(*, rotational: bool) -> SubvolumeSet:
    hints = ("compress=zstd", "noatime") if rotational else ("compress=zstd", "noatime", "ssd")
    return SubvolumeSet(hints=hints)


def target_path(mount_root: str, mountpoint: str) -> str:
    rel = mountpoint.strip("/")
    return os.path.join(mount_root, rel) if rel else mount_root


@dataclass(frozen=True)
class MountedSystem:
    mount_root: str
    filesystem: str
    root_partition: str
    root_device: str
    esp: str
    home: Optional[str] = None
    mapping: Optional[str] = None
    subvolumes: Optional[SubvolumeSet] = field(default=None)

    @property
    def boot(self) -> str:
        return target_path(self.mount_root, "/boot")

    def required_mounts(self) -> List[str]:
        points = [self.mount_root]
        if self.subvolumes is not None:
            points += [target_path(self.mount_root, sv.mountpoint) for sv in self.subvolumes.mount_order()[1:]]
        points.append(self.boot)
        if self.home:
            points.append(target_path(self.mount_root, "/home"))
        return list(dict.fromkeys(points))


def resolve_key(request: InstallationRequest, prompter: Prompter) -> KeySource:
    src = request.passphrase
    if src is not None and not src.interactive:
        return KeySource(key_file=src.key_file)
    return KeySource(secret=prompter.secret("LUKS passphrase"))


def _setup_btrfs(ops: DiskOps, device: str, mount_root: str, subvols: SubvolumeSet) -> None:
    ops.format(device, "btrfs", FS_LABEL)

    # subvolumes are created on the top-level volume, then remounted individually
    ops.make_dirs(mount_root)
    ops.mount(device, mount_root)
    for sv in subvols.mount_order():
        ops.create_subvolume(os.path.join(mount_root, sv.name))
    ops.unmount(mount_root)

    for sv in subvols.mount_order():
        target = target_path(mount_root, sv.mountpoint)
        ops.make_dirs(target)
        ops.mount(device, target, subvols.options_for(sv))


def setup_filesystem(
    ops: DiskOps,
    request: InstallationRequest,
    layout: PartitionLayout,
    *,
    prompter: Prompter,
    rotational: bool = False,
    key: Optional[KeySource] = None,
    timeout_s: float = 30.0,
    sleep: Callable[[float], None] = time.sleep,
) -> MountedSystem:
    """Format (optionally encrypt) the root, mount the layout under the mount root."""

    mount_root = request.mount_root

    def wait(dev: str) -> None:
        if not ops.dry_run:
            wait_for_device(dev, ops.is_block_device, timeout_s=timeout_s, sleep=sleep)

    wait(layout.root)
    ops.wipe_signatures(layout.root)

    device = layout.root
    mapping: Optional[str] = None
    if request.encrypt:
        key = key or resolve_key(request, prompter)
        logger.info("Creating LUKS2 container on %s", layout.root)
        ops.luks_format(layout.root, key)
        ops.luks_open(layout.root, LUKS_MAPPING, key)
        mapping = LUKS_MAPPING
        device = f"/dev/mapper/{LUKS_MAPPING}"
        wait(device)

    subvols: Optional[SubvolumeSet] = None
    if request.subvolumes_enabled:
        subvols = subvolume_set(rotational=rotational)
        _setup_btrfs(ops, device, mount_root, subvols)
    else:
        ops.format(device, "ext4", FS_LABEL)
        ops.make_dirs(mount_root)
        ops.mount(device, mount_root)

    boot = target_path(mount_root, "/boot")
    wait(layout.esp)
    ops.make_dirs(boot)
    ops.mount(layout.esp, boot, ESP_MOUNT_OPTIONS)

    if layout.home:
        home = target_path(mount_root, "/home")
        wait(layout.home)
        ops.make_dirs(home)
        ops.mount(layout.home, home)

    system = MountedSystem(
        mount_root=mount_root,
        filesystem=request.filesystem,
        root_partition=layout.root,
        root_device=device,
        esp=layout.esp,
        home=layout.home,
        mapping=mapping,
        subvolumes=subvols,
    )
    verify_mounts(ops, system)
    return system


def verify_mounts(ops: DiskOps, system: MountedSystem, *, probe: bool = True) -> None:
    """Every required mount point must be mounted and writable."""

    if ops.dry_run:
        logger.info("DRY-RUN: would verify mounts %s", ", ".join(system.required_mounts()))
        return

    missing = [p for p in system.required_mounts() if not ops.is_mountpoint(p)]
    if missing:
        raise MountError(f"Not mounted: {', '.join(missing)}")

    if probe:
        for point in system.required_mounts():
            probe_file = os.path.join(point, PROBE_NAME)
            try:
                ops.write_file(probe_file, "")
                ops.remove_file(probe_file)
            except (ExternalToolError, OSError) as e:
                raise MountError(f"Cannot write to {point}: {e}") from e

    logger.info("All filesystem mounts verified: %s", ", ".join(system.required_mounts()))
