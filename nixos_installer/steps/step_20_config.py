from __future__ import annotations

import logging

from ..context import InstallContext
from ..lib.repo import discover_machines, resolve_checkout

logger = logging.getLogger(__name__)


class FetchConfigStep:
    step_id = "fetch_config"
    description = "Clone configuration repository"

    def run(self, ctx: InstallContext) -> None:
        sel = ctx.selections
        ctx.config_dir = resolve_checkout(
            ctx.nix,
            repo_url=sel.repo_url,
            branch=sel.branch,
            config_dir=sel.config_dir,
        )


class DiscoverMachinesStep:
    step_id = "discover_machines"
    description = "Discover machine configurations"

    def run(self, ctx: InstallContext) -> None:
        ctx.machines = discover_machines(ctx.require_checkout())
