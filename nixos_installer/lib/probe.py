from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from ..errors import ExternalToolError, PreconditionError
from .block import human_bytes
from .command import Runner, run_cmd
from .env import GIB, PATHS
from .prompts import Prompter

logger = logging.getLogger(__name__)

CONNECTIVITY_URLS = ("https://nixos.org", "https://cache.nixos.org", "https://github.com")
CONNECTIVITY_IPS = ("8.8.8.8",)
MIN_MEMORY_BYTES = 2 * GIB
MIN_TMP_BYTES = 5 * GIB


@dataclass(frozen=True)
class EnvironmentReport:
    use_sudo: bool
    boot_mode: str
    online: bool
    on_nixos: bool
    memory_bytes: Optional[int] = None
    tmp_free_bytes: Optional[int] = None
    warnings: List[str] = field(default_factory=list)


def detect_boot_mode(efivars: str = PATHS.efivars) -> str:
    return "uefi" if os.path.isdir(efivars) else "bios"


def available_memory(meminfo: str = "/proc/meminfo") -> Optional[int]:
    try:
        with open(meminfo, "r", encoding="utf-8") as f:
            for line in f:
                if line.startswith("MemAvailable:"):
                    return int(line.split()[1]) * 1024
    except OSError:
        return None
    return None


def free_space(path: str = PATHS.log_dir) -> Optional[int]:
    try:
        return shutil.disk_usage(path).free
    except OSError:
        return None


def is_online(runner: Runner = run_cmd) -> bool:
    """Any of the NixOS endpoints (or a public resolver) answering is enough."""

    attempts = [["curl", "-fsSL", "--head", "--connect-timeout", "5", u] for u in CONNECTIVITY_URLS]
    attempts += [["ping", "-c", "1", "-W", "3", ip] for ip in CONNECTIVITY_IPS]
    for argv in attempts:
        try:
            if runner(argv, check=False).returncode == 0:
                return True
        except ExternalToolError as e:
            logger.debug("Connectivity probe %s unavailable: %s", argv[0], e)
    return False


def check_privileges(runner: Runner, *, dry_run: bool, geteuid: Optional[Callable[[], int]] = None) -> bool:
    """Return whether privileged commands need a sudo prefix."""

    if (geteuid or os.geteuid)() == 0:
        return False
    if shutil.which("sudo") is None:
        if dry_run:
            logger.warning("Not root and sudo not found; continuing because this is a dry run")
            return False
        raise PreconditionError("Root privileges or sudo are required")
    if not dry_run:
        try:
            runner(["sudo", "-v"])
        except ExternalToolError as e:
            raise PreconditionError("Sudo access required for installation") from e
    return True


def probe_environment(
    *,
    prompter: Prompter,
    dry_run: bool,
    have_checkout: bool = False,
    runner: Runner = run_cmd,
    geteuid: Optional[Callable[[], int]] = None,
) -> EnvironmentReport:
    logger.info("Validating installation environment")
    warnings: List[str] = []

    use_sudo = check_privileges(runner, dry_run=dry_run, geteuid=geteuid)

    on_nixos = os.path.exists(PATHS.nixos_marker)
    if not on_nixos:
        logger.warning("Not running on a NixOS installer image - some tools may be missing")
        warnings.append("not on NixOS")
        if not prompter.non_interactive and not prompter.confirm("Continue anyway?"):
            raise PreconditionError("Aborted: not running on NixOS")

    online = is_online(runner)
    if not online:
        if not have_checkout:
            raise PreconditionError("Network connectivity required to fetch the configuration repository")
        logger.warning("No network connectivity; relying on the local checkout and binary cache contents")
        warnings.append("offline")

    memory = available_memory()
    if memory is not None and memory < MIN_MEMORY_BYTES:
        logger.warning("Low available memory: %s", human_bytes(memory))
        warnings.append("low memory")
    tmp_free = free_space()
    if tmp_free is not None and tmp_free < MIN_TMP_BYTES:
        logger.warning("Low free space in %s: %s", PATHS.log_dir, human_bytes(tmp_free))
        warnings.append("low tmp space")

    boot_mode = detect_boot_mode()
    logger.info("Boot mode: %s", boot_mode)
    if boot_mode != "uefi":
        logger.warning("Legacy BIOS boot detected; the generated layout expects UEFI firmware")
        warnings.append("bios boot")

    logger.info("Environment validation completed")
    return EnvironmentReport(
        use_sudo=use_sudo,
        boot_mode=boot_mode,
        online=online,
        on_nixos=on_nixos,
        memory_bytes=memory,
        tmp_free_bytes=tmp_free,
        warnings=warnings,
    )
