from __future__ import annotations

from ..context import InstallContext


class InstallStep:
    step_id = "install"
    description = "Install NixOS"

    def run(self, ctx: InstallContext) -> None:
        request = ctx.require_request()
        ctx.nix.install(ctx.require_checkout(), request.machine, request.mount_root)
