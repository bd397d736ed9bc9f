from __future__ import annotations

import argparse
import logging
import sys
from typing import Callable, List, Optional

from . import __version__
from .context import InstallContext
from .errors import ExternalToolError, InstallerError, Interruption, ValidationError
from .lib.block import parse_size
from .lib.command import Runner, run_cmd
from .lib.diskops import DiskOps, SystemDiskOps
from .lib.env import BRANCH_DEFAULT, PATHS, REPO_URL_DEFAULT, default_log_path
from .lib.prompts import Prompter
from .lifecycle import RunLifecycle
from .logging_utils import configure_logging, log_tail
from .pipeline import Step, run_pipeline
from .request import FILESYSTEMS, MODES, Selections, check_non_interactive
from .settings import load_settings
from .state_store import InstallationState
from .steps import (
    BootstrapDependenciesStep,
    BuildValidateStep,
    CleanupStep,
    DiscoverMachinesStep,
    FetchConfigStep,
    FilesystemStep,
    HardwareConfigStep,
    InstallStep,
    PartitionStep,
    PostValidateStep,
    SelectDiskStep,
    SelectEncryptionStep,
    SelectFilesystemStep,
    SelectMachineStep,
    SelectModeStep,
    UserResolutionStep,
    ValidateEnvironmentStep,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def build_steps() -> List[Step]:
    return [
        ValidateEnvironmentStep(),
        BootstrapDependenciesStep(),
        FetchConfigStep(),
        DiscoverMachinesStep(),
        SelectModeStep(),
        SelectMachineStep(),
        SelectFilesystemStep(),
        SelectEncryptionStep(),
        SelectDiskStep(),
        CleanupStep(),
        PartitionStep(),
        FilesystemStep(),
        UserResolutionStep(),
        BuildValidateStep(),
        HardwareConfigStep(),
        InstallStep(),
        PostValidateStep(),
    ]


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="nixos-install-machine",
        description="Install a NixOS machine configuration from a flake repository onto a disk.",
    )
    p.add_argument("-m", "--machine", help="Machine configuration to install (machines/<name>)")
    p.add_argument("-d", "--disk", help="Target disk, e.g. /dev/nvme0n1")
    p.add_argument("-f", "--filesystem", help=f"Root filesystem ({'|'.join(FILESYSTEMS)}, default btrfs)")
    p.add_argument("--mode", help=f"Partitioning mode ({'|'.join(MODES)})")
    p.add_argument("-u", "--user", help="Primary user (default: the flake's defaultUser)")

    enc = p.add_mutually_exclusive_group()
    enc.add_argument("-e", "--encrypt", dest="encrypt", action="store_const", const=True, help="Enable LUKS2 encryption")
    enc.add_argument("-E", "--no-encrypt", dest="encrypt", action="store_const", const=False, help="Disable encryption")
    p.add_argument("--luks-pass", metavar="FILE", help="File holding the LUKS passphrase (required non-interactively)")

    p.add_argument("-r", "--repo", default=REPO_URL_DEFAULT, help="Configuration repository URL")
    p.add_argument("-b", "--branch", default=BRANCH_DEFAULT, help="Configuration repository branch")
    p.add_argument("--config-dir", metavar="DIR", help="Use an existing checkout instead of cloning")

    p.add_argument("--root-size", metavar="SIZE", help="Dual-boot root size, e.g. 80GiB (default: largest free segment)")
    p.add_argument("--esp", metavar="DEV", help="Manual mode: existing ESP partition")
    p.add_argument("--root-part", metavar="DEV", help="Manual mode: partition to format as root")
    p.add_argument("--home-part", metavar="DEV", help="Manual mode: optional separate /home partition")
    p.add_argument("--confirm-erase", metavar="TOKEN", help="Fresh mode: must be ERASE")
    p.add_argument("--mount-root", default=PATHS.mount_root, help="Where the target is mounted (default /mnt)")

    p.add_argument("--config", metavar="FILE", help="YAML file with defaults for any long option")
    p.add_argument("--state", metavar="FILE", help="Write a run record (json|yaml)")
    p.add_argument("--log-path", metavar="FILE", help="Log file (default /tmp/nixos-install-<timestamp>.log)")

    p.add_argument("--dry-run", action="store_true", help="Run every step without changing any disk")
    p.add_argument("--non-interactive", action="store_true", help="Never prompt; all required options must be given")
    p.add_argument("--yes", action="store_true", help="Assume yes for confirmations (the ERASE token is still required)")
    p.add_argument("--quiet", action="store_true", help="Only warnings and errors on the console")
    p.add_argument("--debug", action="store_true", help="Debug logging (command output included)")
    p.add_argument("-v", "--version", action="version", version=f"%(prog)s {__version__}")
    return p


def parse_args(argv: List[str]) -> argparse.Namespace:
    """Parse flags; values from --config become defaults so flags still win."""

    parser = build_parser()
    args = parser.parse_args(argv)
    if args.config:
        parser.set_defaults(**load_settings(args.config))
        args = parser.parse_args(argv)
    return args


def selections_from_args(args: argparse.Namespace) -> Selections:
    root_size: Optional[int] = None
    if args.root_size:
        try:
            root_size = parse_size(args.root_size)
        except ValueError as e:
            raise ValidationError(str(e)) from e

    return Selections(
        mode=args.mode,
        machine=args.machine,
        disk=args.disk,
        filesystem=args.filesystem,
        encrypt=args.encrypt,
        luks_pass=args.luks_pass,
        user=args.user,
        repo_url=args.repo,
        branch=args.branch,
        config_dir=args.config_dir,
        root_size=root_size,
        esp=args.esp,
        root_part=args.root_part,
        home_part=args.home_part,
        erase_confirmation=args.confirm_erase,
        mount_root=args.mount_root,
        dry_run=args.dry_run,
        non_interactive=args.non_interactive,
        assume_yes=args.yes,
    )


def _report_failure(e: BaseException, state: InstallationState, log_path: str) -> None:
    step = getattr(e, "step", None) or state.failed_step or state.current_step or "startup"
    command = getattr(e, "command", None) or state.last_command
    if isinstance(e, ValidationError) and len(e.problems) > 1:
        logger.error("Installation failed at step %s:", step)
        for problem in e.problems:
            logger.error("  - %s", problem)
    else:
        logger.error("Installation failed at step %s: %s", step, e)
    if command and not isinstance(e, ExternalToolError):
        logger.error("Last command: %s", command)

    for h in logging.getLogger().handlers:
        h.flush()
    tail = log_tail(log_path)
    if tail:
        print(f"--- last {len(tail)} log lines ({log_path}) ---", file=sys.stderr)
        for line in tail:
            print(line, file=sys.stderr)


def run(
    argv: Optional[List[str]] = None,
    *,
    ops: Optional[DiskOps] = None,
    runner: Optional[Runner] = None,
    prompter: Optional[Prompter] = None,
    sleep: Optional[Callable[[float], None]] = None,
    output_fn: Callable[[str], None] = print,
) -> int:
    """Run the installer pipeline and map the outcome to an exit code."""

    argv_list = list(sys.argv[1:] if argv is None else argv)
    try:
        args = parse_args(argv_list)
    except ValidationError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    log_path = configure_logging(args.log_path or default_log_path(), quiet=args.quiet, debug=args.debug)
    state = InstallationState(log_path=log_path, dry_run=args.dry_run)

    try:
        sel = selections_from_args(args)
        check_non_interactive(sel)
    except ValidationError as e:
        _report_failure(e, state, log_path)
        return EXIT_FAILURE

    if sel.dry_run:
        logger.info("DRY-RUN: no disk will be modified")

    runner = runner or run_cmd
    ctx = InstallContext(
        selections=sel,
        ops=ops or SystemDiskOps(dry_run=sel.dry_run, runner=runner),
        prompter=prompter or Prompter(non_interactive=sel.non_interactive, assume_yes=sel.assume_yes),
        state=state,
        argv=argv_list,
        runner=runner,
    )
    if sleep is not None:
        ctx.sleep = sleep

    try:
        with RunLifecycle(ctx, state_path=args.state, quiet=args.quiet, output_fn=output_fn) as lifecycle:
            ctx.lifecycle = lifecycle
            run_pipeline(ctx, build_steps())
    except (KeyboardInterrupt, Interruption) as e:
        logger.error("Interrupted during step %s", state.current_step)
        _report_failure(e, state, log_path)
        return EXIT_INTERRUPTED
    except InstallerError as e:
        _report_failure(e, state, log_path)
        return EXIT_FAILURE
    except Exception as e:
        logger.exception("Unexpected error")
        _report_failure(e, state, log_path)
        return EXIT_FAILURE

    if sel.dry_run:
        logger.info("Dry run completed: %d steps executed, nothing was changed", len(state.completed_steps))
    else:
        logger.info("Installation completed successfully")
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    return run(argv)
