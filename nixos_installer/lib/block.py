from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

_SIZE_UNITS = {
    "": 1,
    "b": 1,
    "k": 1024,
    "kib": 1024,
    "kb": 1000,
    "m": 1024 ** 2,
    "mib": 1024 ** 2,
    "mb": 1000 ** 2,
    "g": 1024 ** 3,
    "gib": 1024 ** 3,
    "gb": 1000 ** 3,
    "t": 1024 ** 4,
    "tib": 1024 ** 4,
    "tb": 1000 ** 4,
}


@dataclass(frozen=True)
class ByteRange:
    """Inclusive byte range, the way parted reports it."""

    start: int
    end: int

    @property
    def size(self) -> int:
        return self.end - self.start + 1

    def contains(self, other: "ByteRange") -> bool:
        return self.start <= other.start and other.end <= self.end


@dataclass(frozen=True)
class PartitionInfo:
    number: int
    path: str
    start: int
    end: int
    parttype: Optional[str] = None
    fstype: Optional[str] = None
    uuid: Optional[str] = None
    mountpoint: Optional[str] = None

    @property
    def size(self) -> int:
        return self.end - self.start + 1

    @property
    def extent(self) -> ByteRange:
        return ByteRange(self.start, self.end)


@dataclass(frozen=True)
class DiskInfo:
    path: str
    size: int
    sector_size: int = 512
    rotational: bool = False
    model: str = ""
    label: Optional[str] = None


@dataclass(frozen=True)
class PartedEntry:
    number: int
    start: int
    end: int
    fstype: str = ""
    name: str = ""
    flags: str = ""


@dataclass(frozen=True)
class PartedTable:
    size: int
    sector_size: int
    label: Optional[str]
    model: str
    partitions: List[PartedEntry] = field(default_factory=list)
    free: List[ByteRange] = field(default_factory=list)


def partition_path(disk: str, n: int) -> str:
    # nvme/mmcblk devices use p suffix
    if disk.endswith(tuple("0123456789")):
        return f"{disk}p{n}"
    return f"{disk}{n}"


def partition_number(disk: str, path: str) -> Optional[int]:
    m = re.fullmatch(re.escape(disk) + r"p?(\d+)", path)
    return int(m.group(1)) if m else None


def parse_size(spec: str | int) -> int:
    """Parse '20GiB', '512M', '1.5T' or a plain byte count into bytes."""

    if isinstance(spec, int):
        return spec
    m = re.fullmatch(r"\s*(\d+(?:\.\d+)?)\s*([A-Za-z]*)\s*", str(spec))
    if not m:
        raise ValueError(f"Invalid size: {spec!r}")
    unit = m.group(2).lower()
    if unit not in _SIZE_UNITS:
        raise ValueError(f"Unknown size unit in {spec!r}")
    return int(float(m.group(1)) * _SIZE_UNITS[unit])


def human_bytes(n: int) -> str:
    value = float(n)
    for unit in ("B", "KiB", "MiB", "GiB", "TiB"):
        if value < 1024 or unit == "TiB":
            return f"{value:.1f}{unit}"
        value /= 1024
    return f"{value:.1f}TiB"


def _bytes(col: str) -> int:
    return int(col.strip().rstrip("B"))


def parse_parted_machine(text: str) -> PartedTable:
    """Parse `parted -m -s DISK unit B print free` output."""

    size = 0
    sector_size = 512
    label: Optional[str] = None
    model = ""
    partitions: List[PartedEntry] = []
    free: List[ByteRange] = []

    for raw in text.splitlines():
        line = raw.strip().rstrip(";")
        if not line or line == "BYT":
            continue
        cols = line.split(":")
        if cols[0].startswith("/"):
            # /dev/sda:21474836480B:scsi:512:512:gpt:ATA VBOX HARDDISK:;
            size = _bytes(cols[1])
            if len(cols) > 3 and cols[3].isdigit():
                sector_size = int(cols[3])
            label = cols[5] if len(cols) > 5 and cols[5] not in {"", "unknown"} else None
            model = cols[6] if len(cols) > 6 else ""
            continue
        if len(cols) < 4 or not cols[0].isdigit():
            continue
        start, end = _bytes(cols[1]), _bytes(cols[2])
        if len(cols) > 4 and cols[4].strip() == "free":
            free.append(ByteRange(start, end))
            continue
        partitions.append(
            PartedEntry(
                number=int(cols[0]),
                start=start,
                end=end,
                fstype=cols[4].strip() if len(cols) > 4 else "",
                name=cols[5].strip() if len(cols) > 5 else "",
                flags=cols[6].strip() if len(cols) > 6 else "",
            )
        )

    return PartedTable(
        size=size,
        sector_size=sector_size,
        label=label,
        model=model,
        partitions=partitions,
        free=free,
    )


def largest_free_range(ranges: List[ByteRange]) -> Optional[ByteRange]:
    if not ranges:
        return None
    # ties resolve to the lowest offset
    return max(ranges, key=lambda r: (r.size, -r.start))


def _flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true"}


def parse_lsblk(text: str) -> List[Dict[str, Any]]:
    """Flatten `lsblk -J -b -p` output into a list of device dicts.

    Children carry a `parent` key with the parent device path.
    """

    data = json.loads(text or "{}")
    out: List[Dict[str, Any]] = []

    def walk(nodes: List[Dict[str, Any]], parent: Optional[str]) -> None:
        for n in nodes or []:
            dev = dict(n)
            dev["path"] = dev.get("path") or dev.get("name")
            dev["parent"] = parent
            dev["size"] = int(dev.get("size") or 0)
            dev["rota"] = _flag(dev.get("rota", False))
            if dev.get("parttype"):
                dev["parttype"] = str(dev["parttype"]).lower()
            children = dev.pop("children", None) or []
            dev["has_children"] = bool(children)
            out.append(dev)
            walk(children, dev["path"])

    walk(data.get("blockdevices") or [], None)
    return out


def decode_mount_target(raw: str) -> str:
    """Undo the \\xNN escaping findmnt applies in raw (-r) output."""

    return re.sub(r"\\x([0-9a-fA-F]{2})", lambda m: chr(int(m.group(1), 16)), raw)


def mounts_beneath(targets: List[str], root: str) -> List[str]:
    """Return mount targets at or beneath root, deepest first."""

    root = root.rstrip("/") or "/"
    prefix = root + "/" if root != "/" else "/"
    hits = [t for t in targets if t == root or t.startswith(prefix)]
    return sorted(set(hits), key=lambda t: (t.count("/"), t), reverse=True)


def parse_subvolume_list(text: str) -> List[str]:
    """Parse `btrfs subvolume list` into subvolume paths in listing order."""

    paths: List[str] = []
    for line in text.splitlines():
        m = re.search(r"\bpath\s+(\S.*)$", line.strip())
        if m:
            paths.append(m.group(1).strip())
    return paths
