from __future__ import annotations

import logging
import os
import shlex
import shutil
import sys
from typing import Callable, Dict, List, Optional, Sequence

from ..errors import PreconditionError

logger = logging.getLogger(__name__)

REEXEC_MARKER = "NIXOS_INSTALLER_REEXEC"

# command -> nixpkgs attribute providing it
REQUIRED_TOOLS: Dict[str, str] = {
    "git": "git",
    "parted": "parted",
    "lsblk": "util-linux",
    "findmnt": "util-linux",
    "wipefs": "util-linux",
    "sgdisk": "gptfdisk",
    "cryptsetup": "cryptsetup",
    "btrfs": "btrfs-progs",
    "mkfs.vfat": "dosfstools",
    "mkfs.ext4": "e2fsprogs",
    "tar": "gnutar",
}


def missing_tools(which: Optional[Callable[[str], Optional[str]]] = None) -> List[str]:
    which = which or shutil.which
    return [cmd for cmd in REQUIRED_TOOLS if which(cmd) is None]


def packages_for(tools: Sequence[str]) -> List[str]:
    return sorted({REQUIRED_TOOLS[t] for t in tools})


def reexec_argv(packages: Sequence[str], argv: Sequence[str]) -> List[str]:
    inner = " ".join(shlex.quote(a) for a in [sys.executable, "-m", "nixos_installer", *argv])
    return ["nix-shell", "-p", *packages, "--run", inner]


def ensure_dependencies(
    argv: Sequence[str],
    *,
    dry_run: bool,
    which: Optional[Callable[[str], Optional[str]]] = None,
    execvpe: Optional[Callable[..., None]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> None:
    """Make sure every disk tool is callable, re-executing inside nix-shell if not."""

    which = which or shutil.which
    execvpe = execvpe or os.execvpe
    env = dict(os.environ if environ is None else environ)
    missing = missing_tools(which)
    if not missing:
        logger.info("All dependencies available")
        return

    packages = packages_for(missing)
    logger.warning("Missing tools: %s (packages: %s)", " ".join(missing), " ".join(packages))

    if which("nix-shell") is not None and not env.get(REEXEC_MARKER):
        new_argv = reexec_argv(packages, argv)
        logger.info("Re-executing inside nix-shell: %s", " ".join(new_argv))
        env[REEXEC_MARKER] = "1"
        execvpe(new_argv[0], new_argv, env)
        return

    if dry_run:
        logger.warning("Continuing dry run without: %s", " ".join(missing))
        return
    raise PreconditionError(
        f"Missing required tools: {' '.join(missing)}; run inside nix-shell -p {' '.join(packages)}"
    )
