from __future__ import annotations

import logging
import os
from typing import List, Optional

from ..errors import PreconditionError
from .env import PATHS
from .nix import NixTool

logger = logging.getLogger(__name__)

EXCLUDED_MACHINE_DIRS = {"templates"}


def resolve_checkout(nix: NixTool, *, repo_url: str, branch: str, config_dir: Optional[str] = None) -> str:
    """Return the flake checkout to install from, cloning it when needed."""

    if config_dir:
        if not os.path.isfile(os.path.join(config_dir, "flake.nix")):
            raise PreconditionError(f"{config_dir} does not contain a flake.nix")
        logger.info("Using existing configuration checkout %s", config_dir)
        return config_dir

    dest = nix.clone(repo_url, branch, PATHS.config_checkout)
    if not os.path.isfile(os.path.join(dest, "flake.nix")):
        raise PreconditionError(f"Cloned repository {repo_url} has no flake.nix")
    return dest


def discover_machines(config_dir: str) -> List[str]:
    machines_dir = os.path.join(config_dir, "machines")
    if not os.path.isdir(machines_dir):
        raise PreconditionError(f"No machines/ directory in {config_dir}")
    machines = sorted(
        name
        for name in os.listdir(machines_dir)
        if name not in EXCLUDED_MACHINE_DIRS
        and not name.startswith(".")
        and os.path.isdir(os.path.join(machines_dir, name))
    )
    if not machines:
        raise PreconditionError(f"No machine configurations found in {machines_dir}")
    logger.info("Discovered machines: %s", ", ".join(machines))
    return machines
