from __future__ import annotations

import logging

from ..context import InstallContext
from ..lib.users import resolve_user

logger = logging.getLogger(__name__)


class UserResolutionStep:
    step_id = "user_resolution"
    description = "Resolve primary user"

    def run(self, ctx: InstallContext) -> None:
        request = ctx.require_request()
        config_dir = ctx.require_checkout()

        detected = ctx.nix.default_user(config_dir)
        requested = request.user
        if requested is None and not request.non_interactive and not request.assume_yes:
            requested = ctx.prompter.ask("Primary user", default=detected)

        ctx.user, ctx.override_path = resolve_user(
            ctx.ops,
            config_dir=config_dir,
            machine=request.machine,
            detected=detected,
            requested=requested,
        )
