from __future__ import annotations

from ..context import InstallContext
from ..errors import ValidationError
from ..lib.hwconfig import ensure_consistent


class HardwareConfigStep:
    step_id = "hardware_config"
    description = "Generate hardware configuration"

    def run(self, ctx: InstallContext) -> None:
        if ctx.system is None:
            raise ValidationError("Target filesystems are not mounted")
        ctx.nix.generate_hardware_config(ctx.system.mount_root)
        ensure_consistent(ctx.ops, ctx.system)
