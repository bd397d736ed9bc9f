"""Cross-check hardware-configuration.nix against the live mount table.

A wrong UUID in the generated descriptor only shows up at the next boot, so
the file is checked right after nixos-generate-config and repaired once
(patched in place, or regenerated from a template) when it disagrees.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from ..errors import ConsistencyError
from .diskops import DiskOps
from .env import LUKS_MAPPING, PATHS
from .filesystem import ESP_MOUNT_OPTIONS, MountedSystem, target_path

logger = logging.getLogger(__name__)

_BLOCK_RE = re.compile(r'fileSystems\."(?P<mp>[^"]+)"\s*=\s*\{(?P<body>.*?)\};', re.DOTALL)
_DEVICE_RE = re.compile(r'device\s*=\s*"([^"]*)"')
_FSTYPE_RE = re.compile(r'fsType\s*=\s*"([^"]*)"')
_OPTIONS_RE = re.compile(r"options\s*=\s*\[(.*?)\]", re.DOTALL)
_QUOTED_RE = re.compile(r'"([^"]*)"')

TEMPLATE = """\
# Regenerated by nixos-install-machine: the nixos-generate-config output did
# not match the mounted filesystems. A backup of that output sits next to
# this file.
{{ config, lib, pkgs, modulesPath, ... }}:

{{
  imports = [ (modulesPath + "/installer/scan/not-detected.nix") ];

  boot.initrd.availableKernelModules = [ "ahci" "xhci_pci" "nvme" "usb_storage" "sd_mod" "virtio_pci" "virtio_blk" ];
  boot.initrd.kernelModules = [ ];
  boot.kernelModules = [ ];
  boot.extraModulePackages = [ ];
{luks}
{blocks}
  swapDevices = [ ];

  networking.useDHCP = lib.mkDefault true;
  nixpkgs.hostPlatform = lib.mkDefault "x86_64-linux";
}}
"""


@dataclass(frozen=True)
class FsEntry:
    mountpoint: str
    device: str
    fs_type: str
    options: Tuple[str, ...] = ()


@dataclass(frozen=True)
class LiveFacts:
    """What the descriptor must agree with, read from the mounted target."""

    root_uuid: Optional[str]
    esp_uuid: Optional[str]
    luks_uuid: Optional[str] = None
    home_uuid: Optional[str] = None
    home_fs: Optional[str] = None
    filesystem: str = "btrfs"
    subvolume_options: Dict[str, Tuple[str, ...]] = field(default_factory=dict)


@dataclass(frozen=True)
class HardwareDescriptor:
    path: str
    text: str
    entries: Dict[str, FsEntry]

    @property
    def root_uuid(self) -> Optional[str]:
        return _uuid_of(self.entries.get("/"))

    @property
    def esp_uuid(self) -> Optional[str]:
        return _uuid_of(self.entries.get("/boot"))

    def subvolume_options(self) -> Dict[str, Tuple[str, ...]]:
        return {
            mp: e.options for mp, e in self.entries.items() if any(o.startswith("subvol=") for o in e.options)
        }


def _uuid_of(entry: Optional[FsEntry]) -> Optional[str]:
    if entry is None or not entry.device.startswith("/dev/disk/by-uuid/"):
        return None
    return entry.device.rsplit("/", 1)[-1]


def descriptor_path(mount_root: str) -> str:
    return os.path.join(mount_root, PATHS.hardware_config_rel)


def parse_descriptor(path: str, text: str) -> HardwareDescriptor:
    entries: Dict[str, FsEntry] = {}
    for m in _BLOCK_RE.finditer(text):
        body = m.group("body")
        device = _DEVICE_RE.search(body)
        fstype = _FSTYPE_RE.search(body)
        options = _OPTIONS_RE.search(body)
        entries[m.group("mp")] = FsEntry(
            mountpoint=m.group("mp"),
            device=device.group(1) if device else "",
            fs_type=fstype.group(1) if fstype else "",
            options=tuple(_QUOTED_RE.findall(options.group(1))) if options else (),
        )
    return HardwareDescriptor(path=path, text=text, entries=entries)


def live_facts(ops: DiskOps, system: MountedSystem) -> LiveFacts:
    subvolume_options: Dict[str, Tuple[str, ...]] = {}
    if system.subvolumes is not None:
        subvolume_options = dict(system.subvolumes.by_mountpoint())
        if system.home:
            # a separate home partition shadows the @home subvolume
            subvolume_options.pop("/home", None)

    home_uuid = home_fs = None
    if system.home:
        home_uuid = ops.mount_uuid(target_path(system.mount_root, "/home"))
        home_fs = ops.fs_type(system.home)

    return LiveFacts(
        root_uuid=ops.mount_uuid(system.mount_root),
        esp_uuid=ops.mount_uuid(system.boot),
        luks_uuid=ops.fs_uuid(system.root_partition) if system.mapping else None,
        home_uuid=home_uuid,
        home_fs=home_fs,
        filesystem=system.filesystem,
        subvolume_options=subvolume_options,
    )


def check_descriptor(desc: HardwareDescriptor, facts: LiveFacts) -> List[str]:
    """Return every disagreement between the descriptor and the live mounts."""

    problems: List[str] = []
    for what, uuid in (("root", facts.root_uuid), ("ESP", facts.esp_uuid), ("LUKS", facts.luks_uuid)):
        if uuid and uuid not in desc.text:
            problems.append(f"{what} UUID {uuid} not referenced")
    for mp, wanted in facts.subvolume_options.items():
        entry = desc.entries.get(mp)
        if entry is None:
            problems.append(f'no fileSystems."{mp}" entry')
            continue
        missing = [o for o in wanted if o not in entry.options]
        if missing:
            problems.append(f'fileSystems."{mp}" lacks options {" ".join(missing)}')
    return problems


def expected_entries(facts: LiveFacts) -> List[FsEntry]:
    root_dev = f"/dev/disk/by-uuid/{facts.root_uuid}"
    entries: List[FsEntry] = []
    if facts.subvolume_options:
        for mp, opts in facts.subvolume_options.items():
            entries.append(FsEntry(mp, root_dev, "btrfs", opts))
    else:
        entries.append(FsEntry("/", root_dev, facts.filesystem))
    entries.append(FsEntry("/boot", f"/dev/disk/by-uuid/{facts.esp_uuid}", "vfat", ESP_MOUNT_OPTIONS))
    if facts.home_uuid:
        entries.append(FsEntry("/home", f"/dev/disk/by-uuid/{facts.home_uuid}", facts.home_fs or "auto"))
    return entries


def render_block(entry: FsEntry) -> str:
    lines = [
        f'fileSystems."{entry.mountpoint}" = {{',
        f'    device = "{entry.device}";',
        f'    fsType = "{entry.fs_type}";',
    ]
    if entry.options:
        quoted = " ".join(f'"{o}"' for o in entry.options)
        lines.append(f"    options = [ {quoted} ];")
    lines.append("  };")
    return "\n".join(lines)


def _luks_line(facts: LiveFacts) -> str:
    return f'  boot.initrd.luks.devices."{LUKS_MAPPING}".device = "/dev/disk/by-uuid/{facts.luks_uuid}";\n'


def patch_descriptor(desc: HardwareDescriptor, facts: LiveFacts) -> Optional[str]:
    """Rewrite the fileSystems blocks in place; None when the file is not patchable."""

    text = desc.text
    closing = text.rstrip().rfind("}")
    if not desc.entries or closing < 0:
        return None

    appended: List[str] = []
    for entry in expected_entries(facts):
        current = desc.entries.get(entry.mountpoint)
        if current is not None:
            extra = tuple(o for o in current.options if o not in entry.options and not o.startswith("subvol="))
            entry = FsEntry(entry.mountpoint, entry.device, entry.fs_type, entry.options + extra)
        block = render_block(entry)
        pattern = re.compile(r'fileSystems\."' + re.escape(entry.mountpoint) + r'"\s*=\s*\{.*?\};', re.DOTALL)
        if pattern.search(text):
            text = pattern.sub(lambda _m: block, text, count=1)
        else:
            appended.append(f"  {block}\n")

    if facts.luks_uuid and facts.luks_uuid not in text:
        appended.insert(0, _luks_line(facts))

    if appended:
        closing = text.rstrip().rfind("}")
        text = text[:closing] + "\n" + "\n".join(appended) + text[closing:]
    return text


def render_template(facts: LiveFacts) -> str:
    blocks = "\n".join(f"  {render_block(e)}\n" for e in expected_entries(facts))
    luks = _luks_line(facts) if facts.luks_uuid else ""
    return TEMPLATE.format(luks=luks, blocks=blocks)


def backup_descriptor(ops: DiskOps, path: str, now: Optional[datetime] = None) -> str:
    """Copy path aside under a timestamped name; earlier backups are kept."""

    base = f"{path}.backup-{(now or datetime.now()):%Y%m%d-%H%M%S}"
    dest = base
    n = 1
    while os.path.exists(dest):
        dest = f"{base}.{n}"
        n += 1
    logger.info("Backing up %s to %s", path, dest)
    ops.copy_file(path, dest)
    return dest


def ensure_consistent(ops: DiskOps, system: MountedSystem) -> Optional[HardwareDescriptor]:
    """Check the generated descriptor; repair and recheck once on mismatch."""

    path = descriptor_path(system.mount_root)
    if ops.dry_run:
        logger.info("DRY-RUN: would cross-check %s against the live mounts", path)
        return None

    text = ops.read_file(path)
    if text is None:
        raise ConsistencyError(f"Hardware configuration not found at {path}")

    facts = live_facts(ops, system)
    if not facts.root_uuid or not facts.esp_uuid:
        raise ConsistencyError(f"Cannot determine live UUIDs under {system.mount_root}")
    logger.info("Detected UUIDs - root: %s, ESP: %s", facts.root_uuid, facts.esp_uuid)

    desc = parse_descriptor(path, text)
    problems = check_descriptor(desc, facts)
    if not problems:
        logger.info("Hardware configuration matches the live mounts")
        return desc

    for p in problems:
        logger.warning("Hardware configuration: %s", p)
    backup_descriptor(ops, path)

    repaired = patch_descriptor(desc, facts)
    if repaired is None:
        logger.warning("Hardware configuration not patchable, regenerating from template")
        repaired = render_template(facts)
    ops.write_file(path, repaired)

    desc = parse_descriptor(path, ops.read_file(path) or "")
    problems = check_descriptor(desc, facts)
    if problems:
        raise ConsistencyError(f"{path} still disagrees with the live mounts", problems=problems)
    logger.info("Hardware configuration repaired")
    return desc


def verify_descriptor(ops: DiskOps, system: MountedSystem) -> HardwareDescriptor:
    """Post-install re-check; no repair at this point."""

    path = descriptor_path(system.mount_root)
    text = ops.read_file(path)
    if text is None:
        raise ConsistencyError(f"Hardware configuration missing after install: {path}")
    desc = parse_descriptor(path, text)
    problems = check_descriptor(desc, live_facts(ops, system))
    if problems:
        raise ConsistencyError(f"{path} disagrees with the live mounts after install", problems=problems)
    return desc
