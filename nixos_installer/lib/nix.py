from __future__ import annotations

import logging
import os
import re
import shutil
from typing import List

from ..errors import ExternalToolError
from .command import Runner, run_cmd
from .diskops import DiskOps

logger = logging.getLogger(__name__)

NIX_FLAGS = (
    "--extra-experimental-features",
    "nix-command flakes",
    "--option",
    "warn-dirty",
    "false",
    "--option",
    "eval-cache",
    "false",
    "--option",
    "pure-eval",
    "false",
    "--option",
    "allow-import-from-derivation",
    "true",
    "--option",
    "max-jobs",
    "auto",
    "--option",
    "cores",
    "0",
    "--option",
    "substitute",
    "true",
    "--option",
    "builders-use-substitutes",
    "true",
)
BUILD_FLAGS = NIX_FLAGS + ("--option", "build-timeout", "3600")
EVAL_FLAGS = NIX_FLAGS + ("--option", "restrict-eval", "false")

DEFAULT_USER = "nixos"

_DEFAULT_USER_RE = re.compile(r'defaultUser\s*=\s*"([^"]*)"')


def toplevel_ref(machine: str) -> str:
    return f".#nixosConfigurations.{machine}.config.system.build.toplevel"


class NixTool:
    """git/nix/nixos-* invocations.

    Evaluation and the no-op build are read-only and always execute; hardware
    generation and the install itself write to the target, so they go through
    the DiskOps dry-run gate.
    """

    def __init__(self, *, ops: DiskOps, runner: Runner = run_cmd) -> None:
        self.ops = ops
        self.runner = runner

    def clone(self, url: str, branch: str, dest: str) -> str:
        if os.path.isdir(dest):
            logger.info("Removing previous checkout %s", dest)
            shutil.rmtree(dest)
        logger.info("Cloning %s (branch %s) into %s", url, branch, dest)
        self.runner(["git", "clone", "--depth", "1", "--branch", branch, url, dest])
        return dest

    def default_user(self, config_dir: str) -> str:
        """Primary user declared by the flake (globalConfig.defaultUser)."""

        attempts: List[List[str]] = [
            [
                "nix",
                *EVAL_FLAGS,
                "eval",
                "--impure",
                "--raw",
                "--expr",
                f'((import {config_dir}/.).globalConfig).defaultUser or ""',
            ],
            ["nix", *EVAL_FLAGS, "eval", "--raw", f"{config_dir}#globalConfig.defaultUser"],
        ]
        for argv in attempts:
            try:
                r = self.runner(argv, check=False)
            except ExternalToolError as e:
                logger.debug("nix eval unavailable: %s", e)
                break
            if r.returncode == 0 and r.stdout.strip():
                return r.stdout.strip()

        flake = os.path.join(config_dir, "flake.nix")
        if os.path.isfile(flake):
            with open(flake, "r", encoding="utf-8") as f:
                m = _DEFAULT_USER_RE.search(f.read())
            if m and m.group(1):
                return m.group(1)
        return DEFAULT_USER

    def dry_build(self, config_dir: str, machine: str) -> None:
        ref = toplevel_ref(machine)
        logger.info("Validating configuration build: %s", ref)
        try:
            self.runner(["nix", *BUILD_FLAGS, "build", "--dry-run", ref], cwd=config_dir)
        except ExternalToolError:
            logger.error("Configuration build validation failed for %s", machine)
            raise
        logger.info("Configuration build validation passed")

    def generate_hardware_config(self, mount_root: str) -> None:
        logger.info("Generating hardware configuration under %s", mount_root)
        self.ops.run_privileged(["nixos-generate-config", "--root", mount_root])

    def install(self, config_dir: str, machine: str, mount_root: str) -> None:
        argv = ["nixos-install", "--no-root-password", "--flake", f".#{machine}", "--root", mount_root]
        logger.info("Installing NixOS for %s into %s", machine, mount_root)
        self.ops.run_privileged(argv, cwd=config_dir)
