from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from ..errors import (
    ConfirmationRequiredError,
    InsufficientSpaceError,
    NoEspFoundError,
    PreconditionError,
    ValidationError,
)
from ..request import InstallationRequest
from .block import ByteRange, PartitionInfo, human_bytes, largest_free_range, partition_path
from .diskops import DiskOps, PartitionSpec
from .env import ERASE_TOKEN, ESP_LABEL, ESP_PARTTYPE, ESP_SIZE, MIN_DUAL_BOOT_BYTES, PARTITION_ALIGN_BYTES, PATHS
from .poll import wait_for_device

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PartitionLayout:
    esp: str
    root: str
    home: Optional[str] = None

    def devices(self) -> List[str]:
        return [p for p in (self.esp, self.root, self.home) if p]


@dataclass(frozen=True)
class DualBootPlan:
    esp: PartitionInfo
    free: ByteRange
    number: int
    start_sector: int
    end_sector: int
    sector_size: int

    @property
    def extent(self) -> ByteRange:
        return ByteRange(self.start_sector * self.sector_size, (self.end_sector + 1) * self.sector_size - 1)


def find_esp(partitions: List[PartitionInfo]) -> Optional[PartitionInfo]:
    return next((p for p in partitions if (p.parttype or "").lower() == ESP_PARTTYPE), None)


def plan_dual_boot(ops: DiskOps, disk: str, requested: Optional[int]) -> DualBootPlan:
    """Work out where the new root partition goes without touching the disk."""

    info = ops.disk_info(disk)
    if info.label != "gpt":
        raise PreconditionError(f"Dual-boot requires a GPT disk; {disk} has label {info.label or 'none'}")

    parts = ops.partitions(disk)
    esp = find_esp(parts)
    if esp is None:
        raise NoEspFoundError(f"No EFI System Partition found on {disk}")
    logger.info("Found existing ESP: %s", esp.path)

    free = largest_free_range(ops.free_ranges(disk))

    # start on a 1 MiB boundary so sgdisk keeps the start we ask for
    sector = info.sector_size
    align = max(PARTITION_ALIGN_BYTES // sector, 1) * sector
    start_sector = -(-free.start // align) * align // sector if free else 0
    available = max(free.end + 1 - start_sector * sector, 0) if free else 0
    size = requested if requested is not None else available

    if requested is None and available < MIN_DUAL_BOOT_BYTES:
        raise InsufficientSpaceError(
            f"Insufficient free space on {disk}: {human_bytes(available)} (need {human_bytes(MIN_DUAL_BOOT_BYTES)})",
            requested=MIN_DUAL_BOOT_BYTES,
            available=available,
        )
    if free is None or size > available or size > info.size:
        raise InsufficientSpaceError(
            f"Requested {human_bytes(size)} but largest aligned free segment on {disk} is {human_bytes(available)}",
            requested=size,
            available=available,
        )

    end_sector = (start_sector * sector + size) // sector - 1
    if (end_sector + 1) * sector - 1 > free.end or end_sector < start_sector:
        raise InsufficientSpaceError(
            f"Requested {human_bytes(size)} does not fit the sector-aligned free segment on {disk}",
            requested=size,
            available=available,
        )

    number = max((p.number for p in parts), default=0) + 1
    return DualBootPlan(
        esp=esp,
        free=free,
        number=number,
        start_sector=start_sector,
        end_sector=end_sector,
        sector_size=sector,
    )


def _wait_for_layout(ops: DiskOps, disk: str, layout: PartitionLayout, timeout_s: float, sleep: Callable[[float], None]) -> None:
    if ops.dry_run:
        logger.info("DRY-RUN: skipping device wait for %s", ", ".join(layout.devices()))
        return
    for dev in layout.devices():
        wait_for_device(
            dev,
            ops.is_block_device,
            timeout_s=timeout_s,
            on_timeout=lambda: ops.refresh_partitions(disk),
            sleep=sleep,
        )


def partition_fresh(
    ops: DiskOps,
    disk: str,
    confirmation: Optional[str],
    *,
    timeout_s: float = 30.0,
    sleep: Callable[[float], None] = time.sleep,
) -> PartitionLayout:
    """GPT label, FAT32 ESP and one root partition spanning the rest."""

    if confirmation != ERASE_TOKEN:
        raise ConfirmationRequiredError(
            f"Fresh mode erases every partition on {disk}; confirmation token {ERASE_TOKEN!r} is required"
        )

    logger.info("Creating fresh GPT partition table on %s", disk)
    ops.zap_table(disk)
    ops.create_partition(disk, PartitionSpec(1, "0", f"+{ESP_SIZE}", "ef00", "ESP"))
    ops.create_partition(disk, PartitionSpec(2, "0", "0", "8300", "nixos"))
    ops.refresh_partitions(disk)

    layout = PartitionLayout(esp=partition_path(disk, 1), root=partition_path(disk, 2))
    _wait_for_layout(ops, disk, layout, timeout_s, sleep)

    ops.format(layout.esp, "vfat", ESP_LABEL)
    logger.info("Fresh partitions created: esp=%s root=%s", layout.esp, layout.root)
    return layout


def _extents(parts: List[PartitionInfo]) -> List[Tuple[int, int, int, Optional[str]]]:
    return sorted((p.number, p.start, p.end, p.parttype) for p in parts)


def partition_dual_boot(
    ops: DiskOps,
    disk: str,
    requested: Optional[int],
    *,
    backup_dir: str = PATHS.esp_backup_dir,
    timeout_s: float = 30.0,
    sleep: Callable[[float], None] = time.sleep,
) -> PartitionLayout:
    """Add one root partition inside the largest free segment, touching nothing else."""

    plan = plan_dual_boot(ops, disk, requested)
    before = ops.partitions(disk)

    backup = os.path.join(backup_dir, f"esp-backup-{datetime.now():%Y%m%d-%H%M%S}.tar")
    logger.info("Backing up ESP %s to %s", plan.esp.path, backup)
    ops.archive(plan.esp.path, backup)

    logger.info(
        "Creating partition %d on %s sectors %d-%d (%s)",
        plan.number,
        disk,
        plan.start_sector,
        plan.end_sector,
        human_bytes(plan.extent.size),
    )
    ops.create_partition(
        disk,
        PartitionSpec(plan.number, str(plan.start_sector), str(plan.end_sector), "8300", "nixos"),
    )
    ops.refresh_partitions(disk)

    layout = PartitionLayout(esp=plan.esp.path, root=partition_path(disk, plan.number))
    _wait_for_layout(ops, disk, layout, timeout_s, sleep)

    if not ops.dry_run:
        after = ops.partitions(disk)
        created = [p for p in after if p.number == plan.number]
        untouched = [p for p in after if p.number != plan.number]
        if _extents(untouched) != _extents(before):
            raise PreconditionError(f"Existing partitions on {disk} changed unexpectedly")
        if not created or not plan.free.contains(created[0].extent):
            raise PreconditionError(f"New partition on {disk} is outside the planned free segment")
        layout = PartitionLayout(esp=plan.esp.path, root=created[0].path)

    logger.info("Dual-boot partition ready: esp=%s root=%s", layout.esp, layout.root)
    return layout


def validate_manual(ops: DiskOps, esp: str, root: str, home: Optional[str] = None) -> PartitionLayout:
    problems: List[str] = []
    for role, path in (("ESP", esp), ("root", root), ("home", home)):
        if not path:
            continue
        if not ops.is_block_device(path):
            problems.append(f"{role} partition {path} is not a block device")
            continue
        desc = ops.describe(path) or {}
        if desc.get("has_children"):
            problems.append(f"{role} partition {path} is itself partitioned")
    if problems:
        raise ValidationError(problems)
    return PartitionLayout(esp=esp, root=root, home=home)


def apply_layout(
    ops: DiskOps,
    request: InstallationRequest,
    *,
    backup_dir: str = PATHS.esp_backup_dir,
    timeout_s: float = 30.0,
    sleep: Callable[[float], None] = time.sleep,
) -> PartitionLayout:
    if request.mode == "fresh":
        return partition_fresh(ops, request.disk, request.erase_confirmation, timeout_s=timeout_s, sleep=sleep)
    if request.mode == "dual-boot":
        return partition_dual_boot(
            ops,
            request.disk,
            request.root_size,
            backup_dir=backup_dir,
            timeout_s=timeout_s,
            sleep=sleep,
        )
    if request.mode == "manual":
        return validate_manual(ops, str(request.esp), str(request.root_part), request.home_part)
    raise ValidationError(f"Invalid partition mode: {request.mode}")
