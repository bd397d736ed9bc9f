from __future__ import annotations

import logging

from ..context import InstallContext
from ..errors import ValidationError
from ..lib.bootloader import verify_bootloader
from ..lib.filesystem import verify_mounts
from ..lib.hwconfig import verify_descriptor

logger = logging.getLogger(__name__)


class PostValidateStep:
    step_id = "post_validate"
    description = "Post-installation validation"

    def run(self, ctx: InstallContext) -> None:
        if ctx.dry_run:
            logger.info("DRY-RUN: skipping post-installation validation")
            return
        if ctx.system is None:
            raise ValidationError("Target filesystems are not mounted")

        verify_mounts(ctx.ops, ctx.system, probe=False)
        verify_descriptor(ctx.ops, ctx.system)
        verify_bootloader(ctx.system.boot)
        logger.info("Post-installation validation passed")
