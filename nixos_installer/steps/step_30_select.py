"""Selection steps: each fills one gap in the Selections draft.

Flags (and the YAML config) always win; a prompt is only shown for a value
that is still missing, and never in non-interactive runs. The last step
turns the draft into the immutable InstallationRequest.
"""

from __future__ import annotations

import logging

from ..context import InstallContext
from ..errors import ConfirmationRequiredError, PreconditionError, ValidationError
from ..lib.block import human_bytes
from ..lib.diskops import KeySource
from ..lib.env import ERASE_TOKEN
from ..lib.layout import plan_dual_boot
from ..request import FILESYSTEMS, MODES, build_request

logger = logging.getLogger(__name__)

_MODE_LABELS = {
    "fresh": "fresh      - erase the whole disk",
    "dual-boot": "dual-boot  - install into free space next to an existing OS",
    "manual": "manual     - use partitions you created yourself",
}


class SelectModeStep:
    step_id = "select_mode"
    description = "Select installation mode"

    def run(self, ctx: InstallContext) -> None:
        sel = ctx.selections
        if not sel.mode:
            sel.mode = ctx.prompter.choose("Installation mode", MODES, labels=[_MODE_LABELS[m] for m in MODES])
        logger.info("Mode: %s", sel.mode)


class SelectMachineStep:
    step_id = "select_machine"
    description = "Select machine configuration"

    def run(self, ctx: InstallContext) -> None:
        sel = ctx.selections
        if not sel.machine:
            sel.machine = ctx.prompter.choose("Machine", ctx.machines)
        logger.info("Machine: %s", sel.machine)


class SelectFilesystemStep:
    step_id = "select_filesystem"
    description = "Select filesystem"

    def run(self, ctx: InstallContext) -> None:
        sel = ctx.selections
        if not sel.filesystem:
            if ctx.prompter.non_interactive:
                sel.filesystem = "btrfs"
            else:
                labels = ["btrfs (subvolumes, compression, snapshots) [recommended]", "ext4 (single volume)"]
                sel.filesystem = ctx.prompter.choose("Filesystem", FILESYSTEMS, labels=labels)
        logger.info("Filesystem: %s", sel.filesystem)


class SelectEncryptionStep:
    step_id = "select_encryption"
    description = "Select encryption"

    def run(self, ctx: InstallContext) -> None:
        sel = ctx.selections
        if sel.encrypt is None:
            sel.encrypt = ctx.prompter.confirm("Enable LUKS2 full-disk encryption?", default=False)
        if sel.encrypt and not sel.luks_pass and not ctx.prompter.non_interactive:
            ctx.luks_key = KeySource(secret=ctx.prompter.secret("LUKS passphrase"))
        logger.info("Encryption: %s", "LUKS2" if sel.encrypt else "none")


class SelectDiskStep:
    step_id = "select_disk"
    description = "Select target disk"

    def run(self, ctx: InstallContext) -> None:
        sel = ctx.selections
        prompter = ctx.prompter
        ops = ctx.ops

        if not sel.disk:
            disks = ops.list_disks()
            labels = [f"{d.path}  {human_bytes(d.size)}  {d.model}".rstrip() for d in disks]
            sel.disk = prompter.choose("Target disk", [d.path for d in disks], labels=labels)

        if not ops.is_block_device(sel.disk):
            raise ValidationError(f"Disk {sel.disk} is not a block device")

        ctx.request = build_request(sel, machines=ctx.machines)
        request = ctx.request
        ctx.rotational = ops.disk_info(request.disk).rotational

        interactive = not (request.non_interactive or request.assume_yes)
        if request.mode == "fresh":
            if sel.erase_confirmation != ERASE_TOKEN and not request.non_interactive:
                prompter.say(f"WARNING: this will erase ALL data on {request.disk}")
                sel.erase_confirmation = prompter.ask(f"Type {ERASE_TOKEN} to continue")
                ctx.request = build_request(sel, machines=ctx.machines)
            if sel.erase_confirmation != ERASE_TOKEN:
                raise ConfirmationRequiredError(
                    f"Fresh install on {request.disk} not confirmed; pass --confirm-erase {ERASE_TOKEN}"
                )
        elif request.mode == "dual-boot":
            plan = plan_dual_boot(ops, request.disk, request.root_size)
            logger.info(
                "Dual-boot: new partition %d (%s) next to ESP %s",
                plan.number,
                human_bytes(plan.extent.size),
                plan.esp.path,
            )
            if interactive and not prompter.confirm(f"Use free space on {request.disk} for NixOS?"):
                raise PreconditionError("Installation cancelled by user")
        elif interactive and not prompter.confirm(f"Format {request.root_part} as the NixOS root?"):
            raise PreconditionError("Installation cancelled by user")

        logger.info("Target disk: %s", request.disk)
