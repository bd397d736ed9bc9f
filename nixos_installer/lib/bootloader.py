from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import List, Optional

from ..errors import PreconditionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BootloaderReport:
    kind: Optional[str]
    entries: List[str]


def _first_existing(*paths: str) -> Optional[str]:
    return next((p for p in paths if os.path.isfile(p)), None)


def _systemd_boot(boot: str) -> Optional[BootloaderReport]:
    binary = _first_existing(
        os.path.join(boot, "EFI", "systemd", "systemd-bootx64.efi"),
        os.path.join(boot, "efi", "EFI", "systemd", "systemd-bootx64.efi"),
    )
    if binary is None:
        return None
    entries_dir = os.path.join(boot, "loader", "entries")
    entries = sorted(os.listdir(entries_dir)) if os.path.isdir(entries_dir) else []
    return BootloaderReport(kind="systemd-boot", entries=entries)


def _grub(boot: str) -> Optional[BootloaderReport]:
    binary = _first_existing(
        os.path.join(boot, "EFI", "BOOT", "BOOTX64.EFI"),
        os.path.join(boot, "efi", "EFI", "BOOT", "BOOTX64.EFI"),
    )
    cfg = os.path.join(boot, "grub", "grub.cfg")
    # a bare BOOTX64.EFI is also what Windows leaves behind, so grub.cfg is required
    if binary is None or not os.path.isfile(cfg):
        return None
    with open(cfg, "r", encoding="utf-8", errors="replace") as f:
        entries = [line.strip() for line in f if line.lstrip().startswith("menuentry")]
    return BootloaderReport(kind="grub", entries=entries)


def inspect_bootloader(boot: str) -> BootloaderReport:
    for probe in (_systemd_boot, _grub):
        report = probe(boot)
        if report is not None:
            return report
    return BootloaderReport(kind=None, entries=[])


def verify_bootloader(boot: str) -> BootloaderReport:
    report = inspect_bootloader(boot)
    if report.kind is None:
        raise PreconditionError(f"No bootloader installation detected under {boot}; the system will not boot")
    if not report.entries:
        raise PreconditionError(f"{report.kind} is installed under {boot} but has no boot entries")
    logger.info("%s detected with %d boot entr%s", report.kind, len(report.entries), "y" if len(report.entries) == 1 else "ies")
    return report
