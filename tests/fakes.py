"""In-memory stand-ins for the disk and the external tools.

FakeDiskOps keeps partition tables, filesystems, LUKS mappings and the mount
table in memory. Directories and files under the (temporary) mount root are
real, so probe files, hardware-configuration.nix and bootloader artifacts can
be checked with plain filesystem calls.
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from nixos_installer.errors import ExternalToolError
from nixos_installer.lib.block import ByteRange, DiskInfo, PartitionInfo, parse_size, partition_path
from nixos_installer.lib.command import CmdResult
from nixos_installer.lib.diskops import DiskOps, KeySource, PartitionSpec
from nixos_installer.lib.env import ESP_PARTTYPE, GIB
from nixos_installer.lib.prompts import Prompter

LINUX_PARTTYPE = "0fc63daf-8483-4772-8e79-3d69d8477de4"
MSFT_PARTTYPE = "ebd0a0a2-b9e5-4433-87c0-68b6b72699c7"

_TYPECODES = {"ef00": ESP_PARTTYPE, "8300": LINUX_PARTTYPE, "0700": MSFT_PARTTYPE}
_GPT_RESERVED_SECTORS = 34
MIB = 1024 ** 2
_ALIGN = MIB


@dataclass
class FakePart:
    number: int
    start: int
    end: int
    parttype: str
    name: str = ""


@dataclass
class FakeDisk:
    path: str
    size: int
    sector_size: int = 512
    rotational: bool = False
    model: str = "QEMU HARDDISK"
    label: Optional[str] = "gpt"
    parts: Dict[int, FakePart] = field(default_factory=dict)

    @property
    def usable(self) -> ByteRange:
        ss = self.sector_size
        return ByteRange(_GPT_RESERVED_SECTORS * ss, self.size - _GPT_RESERVED_SECTORS * ss - 1)


@dataclass
class FakeFs:
    fstype: str
    uuid: str
    label: str = ""
    subvolumes: List[str] = field(default_factory=list)


def fail(argv: Sequence[str], msg: str) -> ExternalToolError:
    return ExternalToolError(list(argv), 1, msg)


class FakeDiskOps(DiskOps):
    def __init__(self, *, dry_run: bool = False, disks: Sequence[FakeDisk] = ()) -> None:
        super().__init__(dry_run=dry_run)
        self.disks: Dict[str, FakeDisk] = {d.path: d for d in disks}
        self.fs: Dict[str, FakeFs] = {}
        self.mounts: Dict[str, Tuple[str, Tuple[str, ...]]] = {}
        self.mappings: Dict[str, str] = {}
        self.extra_devices: set = set()
        self.archives: List[Tuple[str, str]] = []
        self.privileged: List[Tuple[str, ...]] = []
        self.busy: set = set()
        self.late_nodes: Dict[str, int] = {}
        self.refreshes = 0
        self.generator: Optional[Callable[["FakeDiskOps", str], str]] = None
        self._uuid_seq = 0

    # -- helpers used by tests -------------------------------------------------

    def add_partition(self, disk: str, number: int, start: int, end: int, parttype: str = LINUX_PARTTYPE) -> str:
        self.disks[disk].parts[number] = FakePart(number, start, end, parttype)
        return partition_path(disk, number)

    def add_fs(self, device: str, fstype: str, subvolumes: Sequence[str] = ()) -> FakeFs:
        fs = FakeFs(fstype=fstype, uuid=self._new_uuid(fstype), subvolumes=list(subvolumes))
        self.fs[device] = fs
        return fs

    def destructive_names(self, *, applied_only: bool = True) -> List[str]:
        ops = self.applied_ops() if applied_only else self.journal
        return [op.name for op in ops]

    def _new_uuid(self, fstype: str) -> str:
        self._uuid_seq += 1
        n = self._uuid_seq
        if fstype == "vfat":
            return f"{0xAB00 + n:04X}-{0xCD00 + n:04X}"
        return f"{n:08x}-1111-4222-8333-{n:012x}"

    def _owner(self, device: str) -> Optional[Tuple[FakeDisk, FakePart]]:
        for disk in self.disks.values():
            for part in disk.parts.values():
                if partition_path(disk.path, part.number) == device:
                    return disk, part
        return None

    def _mount_of(self, path: str) -> Tuple[str, str]:
        """Return (target, device) of the mount that holds path."""

        path = path.rstrip("/")
        best = ""
        for target in self.mounts:
            if (path == target or path.startswith(target + "/")) and len(target) > len(best):
                best = target
        if not best:
            raise fail(["btrfs"], f"{path} is not on a mounted filesystem")
        return best, self.mounts[best][0]

    # -- destructive implementations -------------------------------------------

    def _zap_table(self, disk: str) -> None:
        d = self.disks[disk]
        for n in list(d.parts):
            self.fs.pop(partition_path(disk, n), None)
        d.parts.clear()
        d.label = "gpt"

    def _create_partition(self, disk: str, spec: PartitionSpec) -> None:
        d = self.disks[disk]
        ss = d.sector_size
        if spec.number in d.parts:
            raise fail(["sgdisk"], f"partition {spec.number} already exists")

        if spec.start == "0":
            last = max((p.end for p in d.parts.values()), default=d.usable.start - 1)
            start = -(-(last + 1) // _ALIGN) * _ALIGN
        else:
            start = int(spec.start) * ss

        if spec.end == "0":
            end = d.usable.end
        elif spec.end.startswith("+"):
            end = start + parse_size(spec.end[1:]) - 1
        else:
            end = (int(spec.end) + 1) * ss - 1

        new = ByteRange(start, end)
        if not d.usable.contains(new):
            raise fail(["sgdisk"], "partition outside usable area")
        for p in d.parts.values():
            if not (end < p.start or start > p.end):
                raise fail(["sgdisk"], f"overlaps partition {p.number}")
        d.parts[spec.number] = FakePart(spec.number, start, end, _TYPECODES[spec.typecode], spec.name)

    def _refresh_partitions(self, disk: str) -> None:
        self.refreshes += 1

    def _format(self, device: str, fstype: str, label: str) -> None:
        if not self.is_block_device(device):
            raise fail(["mkfs"], f"{device} does not exist")
        fs = self.add_fs(device, fstype)
        fs.label = label

    def _wipe_signatures(self, device: str) -> None:
        if any(dev == device for dev, _ in self.mounts.values()):
            raise fail(["wipefs", device], f"{device} is mounted")
        self.fs.pop(device, None)

    def _luks_format(self, device: str, key: KeySource) -> None:
        if not (key.key_file or key.secret):
            raise fail(["cryptsetup"], "no passphrase")
        self.add_fs(device, "crypto_LUKS")

    def _luks_open(self, device: str, name: str, key: KeySource) -> None:
        fs = self.fs.get(device)
        if fs is None or fs.fstype != "crypto_LUKS":
            raise fail(["cryptsetup", "open"], f"{device} is not a LUKS device")
        self.mappings[name] = device

    def _luks_close(self, name: str) -> None:
        if name not in self.mappings:
            raise fail(["cryptsetup", "close", name], "no such mapping")
        if any(dev == f"/dev/mapper/{name}" for dev, _ in self.mounts.values()):
            raise fail(["cryptsetup", "close", name], "device busy")
        del self.mappings[name]

    def _mount(self, device: str, target: str, options: Tuple[str, ...]) -> None:
        fs = self.fs.get(device)
        if fs is None:
            raise fail(["mount", device], f"{device} has no filesystem")
        if not os.path.isdir(target):
            raise fail(["mount", device, target], f"mount point {target} does not exist")
        for opt in options:
            if opt.startswith("subvol=") and opt[len("subvol=") :] not in fs.subvolumes:
                raise fail(["mount", device, target], f"no subvolume {opt}")
        self.mounts[target.rstrip("/")] = (device, tuple(options))

    def _unmount(self, target: str, lazy: bool) -> None:
        target = target.rstrip("/")
        if target not in self.mounts:
            raise fail(["umount", target], "not mounted")
        if target in self.busy and not lazy:
            raise fail(["umount", target], "target is busy")
        del self.mounts[target]

    def _make_dirs(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)

    def _create_subvolume(self, path: str) -> None:
        _, device = self._mount_of(os.path.dirname(path))
        self.fs[device].subvolumes.append(os.path.basename(path))

    def _delete_subvolume(self, path: str) -> None:
        target, device = self._mount_of(os.path.dirname(path))
        self.fs[device].subvolumes.remove(os.path.relpath(path, target))

    def _archive(self, device: str, dest: str) -> None:
        self.archives.append((device, dest))

    def _write_file(self, path: str, text: str) -> None:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(text)

    def _copy_file(self, src: str, dst: str) -> None:
        shutil.copyfile(src, dst)

    def _remove_file(self, path: str) -> None:
        if os.path.exists(path):
            os.remove(path)

    def _run_privileged(self, argv: Tuple[str, ...], cwd: Optional[str]) -> None:
        self.privileged.append(argv)
        root = argv[argv.index("--root") + 1]
        if argv[0] == "nixos-generate-config":
            text = (self.generator or generate_hardware_config)(self, root)
            self._write_file(os.path.join(root, "etc/nixos/hardware-configuration.nix"), text)
        elif argv[0] == "nixos-install":
            boot = os.path.join(root, "boot")
            os.makedirs(os.path.join(boot, "EFI", "systemd"), exist_ok=True)
            os.makedirs(os.path.join(boot, "loader", "entries"), exist_ok=True)
            open(os.path.join(boot, "EFI", "systemd", "systemd-bootx64.efi"), "wb").close()
            with open(os.path.join(boot, "loader", "entries", "nixos-generation-1.conf"), "w") as f:
                f.write("title NixOS\n")

    # -- queries ---------------------------------------------------------------

    def disk_info(self, disk: str) -> DiskInfo:
        if disk not in self.disks:
            raise fail(["lsblk", disk], f"{disk} is not a block device")
        d = self.disks[disk]
        return DiskInfo(d.path, d.size, d.sector_size, d.rotational, d.model, d.label)

    def list_disks(self) -> List[DiskInfo]:
        return [self.disk_info(p) for p in sorted(self.disks)]

    def partitions(self, disk: str) -> List[PartitionInfo]:
        d = self.disks[disk]
        out = []
        for n in sorted(d.parts):
            p = d.parts[n]
            path = partition_path(disk, n)
            fs = self.fs.get(path)
            mountpoint = next((t for t, (dev, _) in self.mounts.items() if dev == path), None)
            out.append(
                PartitionInfo(
                    number=n,
                    path=path,
                    start=p.start,
                    end=p.end,
                    parttype=p.parttype,
                    fstype=fs.fstype if fs else None,
                    uuid=fs.uuid if fs else None,
                    mountpoint=mountpoint,
                )
            )
        return out

    def free_ranges(self, disk: str) -> List[ByteRange]:
        d = self.disks[disk]
        ranges: List[ByteRange] = []
        cursor = d.usable.start
        for p in sorted(d.parts.values(), key=lambda p: p.start):
            if p.start > cursor:
                ranges.append(ByteRange(cursor, p.start - 1))
            cursor = max(cursor, p.end + 1)
        if cursor <= d.usable.end:
            ranges.append(ByteRange(cursor, d.usable.end))
        return ranges

    def describe(self, path: str) -> Optional[Dict[str, Any]]:
        if path in self.disks:
            return {"path": path, "type": "disk", "has_children": bool(self.disks[path].parts), "mountpoint": None}
        if not self.is_block_device(path):
            return None
        mountpoint = next((t for t, (dev, _) in self.mounts.items() if dev == path), None)
        fs = self.fs.get(path)
        return {
            "path": path,
            "type": "part",
            "has_children": False,
            "mountpoint": mountpoint,
            "fstype": fs.fstype if fs else None,
        }

    def is_block_device(self, path: str) -> bool:
        if self.late_nodes.get(path, 0) > 0:
            self.late_nodes[path] -= 1
            return False
        if path in self.disks or path in self.extra_devices or self._owner(path) is not None:
            return True
        return path.startswith("/dev/mapper/") and path[len("/dev/mapper/") :] in self.mappings

    def mount_targets(self) -> List[str]:
        return list(self.mounts)

    def mount_uuid(self, path: str) -> Optional[str]:
        entry = self.mounts.get(path.rstrip("/"))
        if entry is None:
            return None
        fs = self.fs.get(entry[0])
        return fs.uuid if fs else None

    def fs_type(self, device: str) -> Optional[str]:
        fs = self.fs.get(device)
        return fs.fstype if fs else None

    def fs_uuid(self, device: str) -> Optional[str]:
        fs = self.fs.get(device)
        return fs.uuid if fs else None

    def list_subvolumes(self, mountpoint: str) -> List[str]:
        entry = self.mounts.get(mountpoint.rstrip("/"))
        if entry is None:
            return []
        fs = self.fs.get(entry[0])
        return list(fs.subvolumes) if fs else []

    def mapping_exists(self, name: str) -> bool:
        return name in self.mappings


def generate_hardware_config(ops: FakeDiskOps, root: str) -> str:
    """Mimic nixos-generate-config: by-uuid devices, only subvol= for btrfs."""

    root = root.rstrip("/")
    lines = [
        "# Do not modify this file!  It was generated by 'nixos-generate-config'",
        "{ config, lib, pkgs, modulesPath, ... }:",
        "",
        "{",
        '  imports = [ (modulesPath + "/installer/scan/not-detected.nix") ];',
        "",
    ]
    for name, backing in ops.mappings.items():
        lines.append(f'  boot.initrd.luks.devices."{name}".device = "/dev/disk/by-uuid/{ops.fs[backing].uuid}";')
    for target in sorted(ops.mounts, key=lambda t: (t.count("/"), t)):
        if target != root and not target.startswith(root + "/"):
            continue
        device, options = ops.mounts[target]
        fs = ops.fs[device]
        mp = "/" + os.path.relpath(target, root) if target != root else "/"
        opts = [o for o in options if o.startswith("subvol=")]
        if fs.fstype == "vfat":
            opts = ["fmask=0022", "dmask=0022"]
        lines += [
            f'  fileSystems."{mp}" =',
            f'    {{ device = "/dev/disk/by-uuid/{fs.uuid}";',
            f'      fsType = "{fs.fstype}";',
        ]
        if opts:
            lines.append("      options = [ " + " ".join(f'"{o}"' for o in opts) + " ];")
        lines.append("    };")
        lines.append("")
    lines += ["  swapDevices = [ ];", "}", ""]
    return "\n".join(lines)


class FakeRunner:
    """Records argv lists; answers every command with exit 0 unless told otherwise."""

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self._rules: List[Tuple[Tuple[str, ...], CmdResult]] = []

    def on(self, *prefix: str, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        self._rules.insert(0, (prefix, CmdResult(list(prefix), returncode, stdout, stderr)))

    def __call__(self, argv: Sequence[str], *, check: bool = True, **kwargs: Any) -> CmdResult:
        argv = list(argv)
        self.calls.append(argv)
        result = CmdResult(argv, 0, "", "")
        for prefix, canned in self._rules:
            if _matches(prefix, argv):
                result = CmdResult(argv, canned.returncode, canned.stdout, canned.stderr)
                break
        if check and result.returncode != 0:
            raise ExternalToolError(argv, result.returncode, result.output)
        return result

    def commands(self, name: str) -> List[List[str]]:
        return [c for c in self.calls if c and c[0] == name]


def _matches(prefix: Sequence[str], argv: Sequence[str]) -> bool:
    """prefix[0] is the program; the remaining words must appear in order."""

    if not argv or argv[0] != prefix[0]:
        return False
    rest = iter(argv[1:])
    return all(word in rest for word in prefix[1:])


def make_dual_boot_ops(*, free: int, dry_run: bool = False) -> FakeDiskOps:
    """Disk holding an ESP and a Windows partition, followed by `free` bytes."""

    esp_start, esp_end = MIB, 513 * MIB - 1
    win_start, win_end = 513 * MIB, 513 * MIB + 60 * GIB - 1
    size = win_end + 1 + free + _GPT_RESERVED_SECTORS * 512
    ops = FakeDiskOps(dry_run=dry_run, disks=[FakeDisk("/dev/nvme0n1", size)])
    esp = ops.add_partition("/dev/nvme0n1", 1, esp_start, esp_end, ESP_PARTTYPE)
    win = ops.add_partition("/dev/nvme0n1", 2, win_start, win_end, MSFT_PARTTYPE)
    ops.add_fs(esp, "vfat")
    ops.add_fs(win, "ntfs")
    return ops


class ScriptedPrompter(Prompter):
    """Prompter answering from a list of canned inputs."""

    def __init__(self, answers: Sequence[str] = (), *, secrets: Sequence[str] = (), **kwargs: Any) -> None:
        self.answers = list(answers)
        self.secrets = list(secrets)
        self.shown: List[str] = []
        super().__init__(
            input_fn=self._next_answer,
            secret_fn=self._next_secret,
            output_fn=self.shown.append,
            **kwargs,
        )

    def _next_answer(self, prompt: str) -> str:
        self.shown.append(prompt)
        return self.answers.pop(0)

    def _next_secret(self, prompt: str) -> str:
        return self.secrets.pop(0)
