from __future__ import annotations

from ..context import InstallContext
from ..lib.layout import apply_layout


class PartitionStep:
    step_id = "partition"
    description = "Partition disk"

    def run(self, ctx: InstallContext) -> None:
        ctx.layout = apply_layout(
            ctx.ops,
            ctx.require_request(),
            timeout_s=ctx.device_timeout_s,
            sleep=ctx.sleep,
        )
