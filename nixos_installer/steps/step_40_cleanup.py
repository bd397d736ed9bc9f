from __future__ import annotations

from ..context import InstallContext
from ..lib.cleanup import run_cleanup


class CleanupStep:
    step_id = "cleanup"
    description = "Clean up previous installation attempts"

    def run(self, ctx: InstallContext) -> None:
        run_cleanup(ctx.ops, ctx.require_request(), prompter=ctx.prompter, config_dir=ctx.config_dir)
