from __future__ import annotations

import logging

from ..context import InstallContext
from ..lib.deps import ensure_dependencies
from ..lib.diskops import SystemDiskOps
from ..lib.probe import probe_environment

logger = logging.getLogger(__name__)


class ValidateEnvironmentStep:
    step_id = "validate_env"
    description = "System validation"

    def run(self, ctx: InstallContext) -> None:
        report = probe_environment(
            prompter=ctx.prompter,
            dry_run=ctx.dry_run,
            have_checkout=bool(ctx.selections.config_dir),
            runner=ctx.runner,
        )
        ctx.environment = report
        if isinstance(ctx.ops, SystemDiskOps):
            ctx.ops.sudo = report.use_sudo
        if ctx.lifecycle is not None:
            ctx.lifecycle.start_refresher(report.use_sudo)


class BootstrapDependenciesStep:
    step_id = "bootstrap_deps"
    description = "Dependency bootstrap"

    def run(self, ctx: InstallContext) -> None:
        ensure_dependencies(ctx.argv, dry_run=ctx.dry_run)
