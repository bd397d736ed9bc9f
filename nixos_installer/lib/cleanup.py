"""Reclaim the target disk and mount root from an abandoned earlier run.

Signatures are wiped only on partitions this run is about to reformat; other
partitions on the disk (Windows, recovery, an existing ESP) are never
touched.
"""

from __future__ import annotations

import glob
import logging
import os
import tempfile
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..errors import ExternalToolError, PreconditionError
from ..request import InstallationRequest
from .block import mounts_beneath
from .diskops import DiskOps
from .env import LUKS_MAPPING
from .prompts import Prompter
from .users import OVERRIDE_NAME

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CleanupEvidence:
    mounts: List[str] = field(default_factory=list)
    mapping_open: bool = False
    signatures: Dict[str, str] = field(default_factory=dict)
    stale: Dict[str, str] = field(default_factory=dict)

    @property
    def found(self) -> bool:
        return bool(self.mounts or self.mapping_open or self.signatures)


def reformat_targets(ops: DiskOps, request: InstallationRequest) -> List[str]:
    """Partitions the coming steps will reformat (dual-boot: none yet)."""

    if request.mode == "fresh":
        return [p.path for p in ops.partitions(request.disk) if p.number in (1, 2)]
    if request.mode == "manual" and request.root_part:
        return [request.root_part]
    return []


def inspect(ops: DiskOps, request: InstallationRequest) -> CleanupEvidence:
    mounts = mounts_beneath(ops.mount_targets(), request.mount_root)
    mapping_open = ops.mapping_exists(LUKS_MAPPING)

    targets = reformat_targets(ops, request)
    signatures: Dict[str, str] = {}
    for dev in targets:
        if not ops.is_block_device(dev):
            continue
        fstype = ops.fs_type(dev)
        if fstype:
            signatures[dev] = fstype

    stale: Dict[str, str] = {}
    for p in ops.partitions(request.disk):
        if p.path not in targets and p.fstype:
            stale[p.path] = p.fstype

    for m in mounts:
        logger.info("Found existing mount point: %s", m)
    if mapping_open:
        logger.info("Found open LUKS mapping /dev/mapper/%s", LUKS_MAPPING)
    for dev, fstype in signatures.items():
        logger.info("Found existing %s signature on %s", fstype, dev)
    fate = "removed with the partition table" if request.mode == "fresh" else "left untouched"
    for dev, fstype in stale.items():
        logger.info("Other %s signature on %s (%s)", fstype, dev, fate)

    return CleanupEvidence(mounts=mounts, mapping_open=mapping_open, signatures=signatures, stale=stale)


def unmount_tree(ops: DiskOps, root: str) -> List[str]:
    """Unmount everything at or beneath root, deepest first."""

    targets = mounts_beneath(ops.mount_targets(), root)
    for target in targets:
        logger.info("Unmounting: %s", target)
        try:
            ops.unmount(target)
        except ExternalToolError:
            logger.warning("Failed to unmount %s, falling back to lazy unmount", target)
            ops.unmount(target, lazy=True)
    return targets


def delete_subvolumes(ops: DiskOps, device: str) -> List[str]:
    """Delete every btrfs subvolume on device, in reverse listing order."""

    if ops.dry_run:
        logger.info("DRY-RUN: would delete btrfs subvolumes on %s", device)
        return []

    tmp = tempfile.mkdtemp(prefix="btrfs_cleanup_")
    deleted: List[str] = []
    try:
        try:
            ops.mount(device, tmp)
        except ExternalToolError as e:
            logger.warning("Could not mount %s for btrfs cleanup: %s", device, e)
            return deleted
        try:
            for sv in reversed(ops.list_subvolumes(tmp)):
                logger.info("Deleting btrfs subvolume: %s", sv)
                ops.delete_subvolume(os.path.join(tmp, sv))
                deleted.append(sv)
        finally:
            ops.unmount(tmp)
    finally:
        os.rmdir(tmp)
    return deleted


def remove_stale_files(ops: DiskOps, config_dir: Optional[str]) -> None:
    if config_dir:
        for path in glob.glob(os.path.join(config_dir, "machines", "*", OVERRIDE_NAME)):
            logger.info("Removing stale override %s", path)
            ops.remove_file(path)
    if ops.dry_run:
        logger.info("DRY-RUN: would remove empty btrfs_cleanup_* dirs in %s", tempfile.gettempdir())
        return
    for path in glob.glob(os.path.join(tempfile.gettempdir(), "btrfs_cleanup_*")):
        if os.path.ismount(path) or os.listdir(path):
            logger.warning("Leaving temporary mount dir %s in place (not empty)", path)
            continue
        os.rmdir(path)


def _describe(evidence: CleanupEvidence, request: InstallationRequest) -> List[str]:
    lines = ["Previous installation artifacts detected. Cleanup will:"]
    if evidence.mounts:
        lines.append(f"  - unmount {len(evidence.mounts)} mount point(s) under {request.mount_root}")
    if evidence.mapping_open:
        lines.append(f"  - close /dev/mapper/{LUKS_MAPPING}")
    for dev, fstype in evidence.signatures.items():
        extra = " and delete its subvolumes" if fstype == "btrfs" else ""
        lines.append(f"  - wipe the {fstype} signature on {dev}{extra}")
    return lines


def run_cleanup(
    ops: DiskOps,
    request: InstallationRequest,
    *,
    prompter: Prompter,
    config_dir: Optional[str] = None,
) -> CleanupEvidence:
    evidence = inspect(ops, request)
    if not evidence.found:
        logger.info("No cleanup needed - disk appears clean")
        return evidence

    if not (request.non_interactive or request.assume_yes):
        for line in _describe(evidence, request):
            prompter.say(line)
        if not prompter.confirm("Proceed with cleanup?"):
            raise PreconditionError("Cleanup cancelled by user")

    logger.info("Starting environment cleanup")
    unmount_tree(ops, request.mount_root)

    if evidence.mapping_open:
        logger.info("Closing /dev/mapper/%s", LUKS_MAPPING)
        ops.luks_close(LUKS_MAPPING)

    for dev, fstype in evidence.signatures.items():
        if fstype == "btrfs":
            delete_subvolumes(ops, dev)
        mounted_at = (ops.describe(dev) or {}).get("mountpoint")
        if mounted_at and not ops.dry_run:
            raise PreconditionError(f"{dev} is still mounted at {mounted_at}; refusing to wipe it")
        logger.info("Wiping filesystem signatures from %s", dev)
        ops.wipe_signatures(dev)

    remove_stale_files(ops, config_dir)
    validate_clean_state(ops, request)
    logger.info("Environment cleanup completed")
    return evidence


def validate_clean_state(ops: DiskOps, request: InstallationRequest) -> None:
    if ops.dry_run:
        logger.info("DRY-RUN: skipping clean-state validation")
        return
    remaining = mounts_beneath(ops.mount_targets(), request.mount_root)
    if remaining:
        raise PreconditionError(f"Mount points remain under {request.mount_root}: {', '.join(remaining)}")
    if not ops.is_block_device(request.disk):
        raise PreconditionError(f"Selected disk {request.disk} is not accessible")
    logger.info("Disk state validation passed")
