from __future__ import annotations

from ..context import InstallContext


class BuildValidateStep:
    step_id = "build_validate"
    description = "Validate configuration build"

    def run(self, ctx: InstallContext) -> None:
        ctx.nix.dry_build(ctx.require_checkout(), ctx.require_request().machine)
