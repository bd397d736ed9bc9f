from __future__ import annotations

import logging
import os
import re
from typing import List, Optional

from ..errors import ValidationError
from .diskops import DiskOps

logger = logging.getLogger(__name__)

OVERRIDE_NAME = "_user-override.nix"

_USERNAME_RE = re.compile(r"^[a-z][a-z0-9_-]*$")
RESERVED_USERS = {
    "root",
    "bin",
    "daemon",
    "adm",
    "lp",
    "sync",
    "shutdown",
    "halt",
    "mail",
    "news",
    "uucp",
    "operator",
    "games",
    "ftp",
    "nobody",
    "systemd-network",
    "systemd-resolve",
    "messagebus",
    "sshd",
    "nixbld",
}


def username_problems(name: str) -> List[str]:
    problems: List[str] = []
    if not _USERNAME_RE.match(name):
        problems.append(f"Invalid username {name!r}: must start with a lowercase letter and use only a-z, 0-9, _ or -")
    if len(name) > 32:
        problems.append(f"Invalid username {name!r}: longer than 32 characters")
    if name in RESERVED_USERS:
        problems.append(f"Username {name!r} is reserved for the system")
    return problems


def override_path(config_dir: str, machine: str) -> str:
    return os.path.join(config_dir, "machines", machine, OVERRIDE_NAME)


def render_override(user: str) -> str:
    return f'{{ ... }}:\n{{\n  mySystem.user = "{user}";\n}}\n'


def resolve_user(
    ops: DiskOps,
    *,
    config_dir: str,
    machine: str,
    detected: str,
    requested: Optional[str],
) -> tuple[str, Optional[str]]:
    """Pick the primary user; write an override file when it differs from the flake.

    Returns the user and the override path (None when no override was needed
    or the run is a dry run).
    """

    user = requested or detected
    problems = username_problems(user)
    if problems:
        raise ValidationError(problems)

    if user == detected:
        logger.info("Using primary user from configuration: %s", user)
        return user, None

    path = override_path(config_dir, machine)
    if ops.dry_run:
        logger.info("DRY-RUN: would write user override %s (%s)", path, user)
        return user, None

    # the checkout lives outside the target, so this is a plain file write
    with open(path, "w", encoding="utf-8") as f:
        f.write(render_override(user))
    logger.info("Primary user overridden to %s via %s", user, path)
    return user, path
