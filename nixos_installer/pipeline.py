from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Protocol, Sequence

from .context import InstallContext
from .errors import InstallerError
from .lib.command import last_command
from .state_store import mark_step_completed

logger = logging.getLogger(__name__)


class Step(Protocol):
    """A single step of the install; steps run once, in order."""

    step_id: str
    description: str

    def run(self, ctx: InstallContext) -> None:
        ...


@dataclass(frozen=True)
class PipelineResult:
    ran_steps: List[str]


def run_pipeline(ctx: InstallContext, steps: Sequence[Step]) -> PipelineResult:
    """Run steps in order, logging a step counter against the precomputed total.

    The failing step and the last external command are recorded on the state
    and attached to the raised InstallerError.
    """

    state = ctx.state
    state.total_steps = len(steps)
    ran: List[str] = []

    for index, step in enumerate(steps, start=1):
        state.step_index = index
        state.current_step = step.step_id
        logger.info("Step %d/%d: %s", index, state.total_steps, step.description)

        try:
            step.run(ctx)
        except BaseException as e:
            state.failed_step = step.step_id
            state.last_command = last_command()
            state.last_error = str(e) or type(e).__name__
            if isinstance(e, InstallerError):
                e.step = e.step or step.step_id
                e.command = e.command or state.last_command
            raise

        mark_step_completed(state, step.step_id)
        ran.append(step.step_id)

    state.current_step = None
    return PipelineResult(ran_steps=ran)
