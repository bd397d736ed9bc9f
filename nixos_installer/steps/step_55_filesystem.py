from __future__ import annotations

from ..context import InstallContext
from ..errors import ValidationError
from ..lib.filesystem import setup_filesystem


class FilesystemStep:
    step_id = "filesystem"
    description = "Create and mount filesystems"

    def run(self, ctx: InstallContext) -> None:
        if ctx.layout is None:
            raise ValidationError("No partition layout to format")
        ctx.system = setup_filesystem(
            ctx.ops,
            ctx.require_request(),
            ctx.layout,
            prompter=ctx.prompter,
            rotational=ctx.rotational,
            key=ctx.luks_key,
            timeout_s=ctx.device_timeout_s,
            sleep=ctx.sleep,
        )
