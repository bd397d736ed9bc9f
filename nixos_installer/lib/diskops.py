"""Narrow interface over the tools that touch the target disk.

Every destructive primitive goes through DiskOps._destructive(), which is the
one place the dry-run policy is applied: in dry-run the operation is logged
and journaled but never executed. Read-only queries always execute.
SystemDiskOps shells out to the real tools; tests use a recording fake.
"""

from __future__ import annotations

import logging
import os
import stat
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..errors import ExternalToolError
from .block import (
    ByteRange,
    DiskInfo,
    PartedTable,
    PartitionInfo,
    decode_mount_target,
    parse_lsblk,
    parse_parted_machine,
    parse_subvolume_list,
    partition_number,
    partition_path,
)
from .command import Runner, run_cmd

logger = logging.getLogger(__name__)

_LSBLK_COLUMNS = "NAME,PATH,TYPE,SIZE,PARTTYPE,FSTYPE,UUID,MOUNTPOINT,ROTA,MODEL"


@dataclass(frozen=True)
class DiskOp:
    name: str
    args: Tuple[Any, ...]
    applied: bool


@dataclass(frozen=True)
class KeySource:
    """Where cryptsetup reads the LUKS passphrase from."""

    key_file: Optional[str] = None
    secret: Optional[str] = field(default=None, repr=False)

    def argv(self) -> List[str]:
        return ["--key-file", self.key_file or "-"]

    @property
    def stdin(self) -> Optional[str]:
        return None if self.key_file else self.secret


@dataclass(frozen=True)
class PartitionSpec:
    """One sgdisk --new request; start/end use sgdisk syntax (sectors, 0, +512MiB)."""

    number: int
    start: str
    end: str
    typecode: str
    name: str


class DiskOps:
    def __init__(self, *, dry_run: bool = False) -> None:
        self.dry_run = dry_run
        self.journal: List[DiskOp] = []

    def _destructive(self, name: str, *args: Any) -> Any:
        applied = not self.dry_run
        self.journal.append(DiskOp(name=name, args=args, applied=applied))
        if not applied:
            logger.info("DRY-RUN %s %s", name, " ".join(str(a) for a in args))
            return None
        return getattr(self, f"_{name}")(*args)

    def applied_ops(self) -> List[DiskOp]:
        return [op for op in self.journal if op.applied]

    # -- destructive primitives ------------------------------------------------

    def zap_table(self, disk: str) -> None:
        self._destructive("zap_table", disk)

    def create_partition(self, disk: str, spec: PartitionSpec) -> None:
        self._destructive("create_partition", disk, spec)

    def refresh_partitions(self, disk: str) -> None:
        self._destructive("refresh_partitions", disk)

    def format(self, device: str, fstype: str, label: str) -> None:
        self._destructive("format", device, fstype, label)

    def wipe_signatures(self, device: str) -> None:
        self._destructive("wipe_signatures", device)

    def luks_format(self, device: str, key: KeySource) -> None:
        self._destructive("luks_format", device, key)

    def luks_open(self, device: str, name: str, key: KeySource) -> None:
        self._destructive("luks_open", device, name, key)

    def luks_close(self, name: str) -> None:
        self._destructive("luks_close", name)

    def mount(self, device: str, target: str, options: Sequence[str] = ()) -> None:
        self._destructive("mount", device, target, tuple(options))

    def unmount(self, target: str, lazy: bool = False) -> None:
        self._destructive("unmount", target, lazy)

    def make_dirs(self, path: str) -> None:
        self._destructive("make_dirs", path)

    def create_subvolume(self, path: str) -> None:
        self._destructive("create_subvolume", path)

    def delete_subvolume(self, path: str) -> None:
        self._destructive("delete_subvolume", path)

    def archive(self, device: str, dest: str) -> None:
        self._destructive("archive", device, dest)

    def write_file(self, path: str, text: str) -> None:
        self._destructive("write_file", path, text)

    def copy_file(self, src: str, dst: str) -> None:
        self._destructive("copy_file", src, dst)

    def remove_file(self, path: str) -> None:
        self._destructive("remove_file", path)

    def run_privileged(self, argv: Sequence[str], cwd: Optional[str] = None) -> None:
        self._destructive("run_privileged", tuple(argv), cwd)

    # -- read-only queries -----------------------------------------------------

    def disk_info(self, disk: str) -> DiskInfo:
        raise NotImplementedError

    def list_disks(self) -> List[DiskInfo]:
        raise NotImplementedError

    def partitions(self, disk: str) -> List[PartitionInfo]:
        raise NotImplementedError

    def free_ranges(self, disk: str) -> List[ByteRange]:
        raise NotImplementedError

    def describe(self, path: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def is_block_device(self, path: str) -> bool:
        raise NotImplementedError

    def mount_targets(self) -> List[str]:
        raise NotImplementedError

    def is_mountpoint(self, path: str) -> bool:
        return path.rstrip("/") in {t.rstrip("/") for t in self.mount_targets()}

    def mount_uuid(self, path: str) -> Optional[str]:
        raise NotImplementedError

    def fs_type(self, device: str) -> Optional[str]:
        raise NotImplementedError

    def fs_uuid(self, device: str) -> Optional[str]:
        raise NotImplementedError

    def list_subvolumes(self, mountpoint: str) -> List[str]:
        raise NotImplementedError

    def mapping_exists(self, name: str) -> bool:
        raise NotImplementedError

    def read_file(self, path: str) -> Optional[str]:
        try:
            return Path(path).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None


class SystemDiskOps(DiskOps):
    """DiskOps backed by sgdisk/parted/cryptsetup/btrfs/mount."""

    def __init__(self, *, dry_run: bool = False, sudo: bool = False, runner: Runner = run_cmd) -> None:
        super().__init__(dry_run=dry_run)
        self.sudo = sudo
        self.runner = runner

    def _priv(self, argv: Sequence[str]) -> List[str]:
        return ["sudo", *argv] if self.sudo else list(argv)

    def _run(self, argv: Sequence[str], **kw: Any):
        return self.runner(self._priv(argv), **kw)

    # destructive implementations

    def _zap_table(self, disk: str) -> None:
        self._run(["sgdisk", "--zap-all", disk])
        self._run(["sgdisk", "--clear", disk])

    def _create_partition(self, disk: str, spec: PartitionSpec) -> None:
        n = spec.number
        self._run(
            [
                "sgdisk",
                f"--new={n}:{spec.start}:{spec.end}",
                f"--typecode={n}:{spec.typecode}",
                f"--change-name={n}:{spec.name}",
                disk,
            ]
        )

    def _refresh_partitions(self, disk: str) -> None:
        self._run(["partprobe", disk], check=False)
        self._run(["udevadm", "settle", "--timeout=10"], check=False)

    def _format(self, device: str, fstype: str, label: str) -> None:
        if fstype == "vfat":
            argv = ["mkfs.vfat", "-F", "32", "-n", label, device]
        elif fstype == "btrfs":
            argv = ["mkfs.btrfs", "-f", "-L", label, device]
        elif fstype == "ext4":
            argv = ["mkfs.ext4", "-F", "-L", label, device]
        else:
            raise ValueError(f"Unsupported filesystem: {fstype}")
        self._run(argv)

    def _wipe_signatures(self, device: str) -> None:
        self._run(["wipefs", "-a", device])

    def _luks_format(self, device: str, key: KeySource) -> None:
        self._run(
            ["cryptsetup", "-q", "luksFormat", "--type", "luks2", *key.argv(), device],
            input_text=key.stdin,
        )

    def _luks_open(self, device: str, name: str, key: KeySource) -> None:
        self._run(["cryptsetup", "open", *key.argv(), device, name], input_text=key.stdin)

    def _luks_close(self, name: str) -> None:
        self._run(["cryptsetup", "close", name])

    def _mount(self, device: str, target: str, options: Tuple[str, ...]) -> None:
        argv = ["mount"]
        if options:
            argv += ["-o", ",".join(options)]
        self._run([*argv, device, target])

    def _unmount(self, target: str, lazy: bool) -> None:
        self._run(["umount", "-l", target] if lazy else ["umount", target])

    def _make_dirs(self, path: str) -> None:
        self._run(["mkdir", "-p", path])

    def _create_subvolume(self, path: str) -> None:
        self._run(["btrfs", "subvolume", "create", path])

    def _delete_subvolume(self, path: str) -> None:
        self._run(["btrfs", "subvolume", "delete", path])

    def _archive(self, device: str, dest: str) -> None:
        tmp = tempfile.mkdtemp(prefix="nixos_install_esp_")
        try:
            self._run(["mount", "-o", "ro", device, tmp])
            try:
                self._run(["tar", "-C", tmp, "-cpf", dest, "."])
            finally:
                self._run(["umount", tmp])
        finally:
            os.rmdir(tmp)

    def _write_file(self, path: str, text: str) -> None:
        self._run(["mkdir", "-p", os.path.dirname(path) or "/"])
        self._run(["tee", path], input_text=text)

    def _copy_file(self, src: str, dst: str) -> None:
        self._run(["cp", "-a", src, dst])

    def _remove_file(self, path: str) -> None:
        self._run(["rm", "-f", path])

    def _run_privileged(self, argv: Tuple[str, ...], cwd: Optional[str]) -> None:
        self._run(argv, cwd=cwd)

    # queries

    def _parted(self, disk: str) -> Optional[PartedTable]:
        r = self._run(["parted", "-m", "-s", disk, "unit", "B", "print", "free"], check=False)
        if r.returncode != 0:
            logger.debug("parted could not read %s: %s", disk, r.stderr.strip())
            return None
        return parse_parted_machine(r.stdout)

    def _lsblk(self, path: str, *, no_deps: bool = False) -> List[Dict[str, Any]]:
        argv = ["lsblk", "-J", "-b", "-p", "-o", _LSBLK_COLUMNS]
        if no_deps:
            argv.insert(1, "-d")
        r = self.runner([*argv, path] if path else argv, check=False)
        if r.returncode != 0:
            return []
        return parse_lsblk(r.stdout)

    def disk_info(self, disk: str) -> DiskInfo:
        devs = self._lsblk(disk, no_deps=True)
        if not devs:
            raise ExternalToolError(["lsblk", disk], 1, f"{disk} is not a block device")
        dev = devs[0]
        table = self._parted(disk)
        return DiskInfo(
            path=disk,
            size=table.size if table and table.size else dev["size"],
            sector_size=table.sector_size if table else 512,
            rotational=dev["rota"],
            model=(dev.get("model") or "").strip(),
            label=table.label if table else None,
        )

    def list_disks(self) -> List[DiskInfo]:
        return [
            DiskInfo(path=d["path"], size=d["size"], rotational=d["rota"], model=(d.get("model") or "").strip())
            for d in self._lsblk("", no_deps=True)
            if d.get("type") == "disk"
        ]

    def partitions(self, disk: str) -> List[PartitionInfo]:
        table = self._parted(disk)
        meta = {d["path"]: d for d in self._lsblk(disk) if d.get("type") == "part"}
        out: List[PartitionInfo] = []
        for entry in table.partitions if table else []:
            path = next(
                (p for p in meta if partition_number(disk, p) == entry.number),
                partition_path(disk, entry.number),
            )
            m = meta.get(path, {})
            out.append(
                PartitionInfo(
                    number=entry.number,
                    path=path,
                    start=entry.start,
                    end=entry.end,
                    parttype=m.get("parttype"),
                    fstype=m.get("fstype"),
                    uuid=m.get("uuid"),
                    mountpoint=m.get("mountpoint"),
                )
            )
        return out

    def free_ranges(self, disk: str) -> List[ByteRange]:
        table = self._parted(disk)
        return list(table.free) if table else []

    def describe(self, path: str) -> Optional[Dict[str, Any]]:
        devs = self._lsblk(path)
        return devs[0] if devs else None

    def is_block_device(self, path: str) -> bool:
        try:
            return stat.S_ISBLK(os.stat(path).st_mode)
        except OSError:
            return False

    def mount_targets(self) -> List[str]:
        r = self.runner(["findmnt", "-rn", "-o", "TARGET"], check=False)
        return [decode_mount_target(line) for line in r.stdout.splitlines() if line.strip()]

    def is_mountpoint(self, path: str) -> bool:
        return self.runner(["mountpoint", "-q", path], check=False).returncode == 0

    def mount_uuid(self, path: str) -> Optional[str]:
        r = self.runner(["findmnt", "-n", "-o", "UUID", "--mountpoint", path], check=False)
        return r.stdout.strip() or None

    def _blkid(self, device: str, tag: str) -> Optional[str]:
        r = self._run(["blkid", "-s", tag, "-o", "value", device], check=False)
        return r.stdout.strip() or None

    def fs_type(self, device: str) -> Optional[str]:
        return self._blkid(device, "TYPE")

    def fs_uuid(self, device: str) -> Optional[str]:
        return self._blkid(device, "UUID")

    def list_subvolumes(self, mountpoint: str) -> List[str]:
        r = self._run(["btrfs", "subvolume", "list", mountpoint], check=False)
        return parse_subvolume_list(r.stdout) if r.returncode == 0 else []

    def mapping_exists(self, name: str) -> bool:
        return os.path.exists(f"/dev/mapper/{name}")
