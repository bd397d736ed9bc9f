"""Optional YAML installer config.

Keys mirror the long command-line flags (``root-size`` or ``root_size``);
values become argparse defaults, so an explicit flag always wins.

    machine: elara
    disk: /dev/nvme0n1
    mode: dual-boot
    root-size: 80GiB
    encrypt: true
    luks-pass: /root/luks.key
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict

import yaml

from .errors import ValidationError

logger = logging.getLogger(__name__)

KNOWN_KEYS = {
    "machine",
    "disk",
    "filesystem",
    "encrypt",
    "luks_pass",
    "mode",
    "user",
    "repo",
    "branch",
    "config_dir",
    "root_size",
    "esp",
    "root_part",
    "home_part",
    "confirm_erase",
    "mount_root",
    "state",
    "log_path",
    "dry_run",
    "non_interactive",
    "yes",
    "quiet",
    "debug",
}

_BOOL_KEYS = {"encrypt", "dry_run", "non_interactive", "yes", "quiet", "debug"}


def load_settings(path: str) -> Dict[str, Any]:
    p = Path(path)
    if not p.is_file():
        raise ValidationError(f"Config file not found: {path}")

    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ValidationError(f"Config file {path} is not valid YAML: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError(f"Config file {path} must contain a mapping, got {type(data).__name__}")

    out: Dict[str, Any] = {}
    problems = []
    for raw_key, value in data.items():
        key = str(raw_key).replace("-", "_")
        if key not in KNOWN_KEYS:
            problems.append(f"Unknown config key: {raw_key}")
            continue
        if key in _BOOL_KEYS and not isinstance(value, bool):
            problems.append(f"Config key {raw_key} must be true or false")
            continue
        out[key] = value if isinstance(value, bool) or value is None else str(value)
    if problems:
        raise ValidationError(problems)

    logger.info("Loaded installer config %s (%s)", path, ", ".join(sorted(out)) or "empty")
    return out
