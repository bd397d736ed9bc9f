from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, List, Optional, Sequence

from .errors import ValidationError
from .lib.command import Runner, run_cmd
from .lib.diskops import DiskOps, KeySource
from .lib.filesystem import MountedSystem
from .lib.layout import PartitionLayout
from .lib.nix import NixTool
from .lib.probe import EnvironmentReport
from .lib.prompts import Prompter
from .request import InstallationRequest, Selections
from .state_store import InstallationState

if TYPE_CHECKING:
    from .lifecycle import RunLifecycle


@dataclass
class InstallContext:
    """Everything the steps hand to each other during one run."""

    selections: Selections
    ops: DiskOps
    prompter: Prompter
    state: InstallationState
    argv: Sequence[str] = ()
    runner: Runner = run_cmd
    nix_tool: Optional[NixTool] = None
    environment: Optional[EnvironmentReport] = None
    config_dir: Optional[str] = None
    machines: List[str] = field(default_factory=list)
    request: Optional[InstallationRequest] = None
    rotational: bool = False
    layout: Optional[PartitionLayout] = None
    system: Optional[MountedSystem] = None
    user: Optional[str] = None
    override_path: Optional[str] = None
    device_timeout_s: float = 30.0
    sleep: Callable[[float], None] = time.sleep
    lifecycle: Optional["RunLifecycle"] = None
    luks_key: Optional[KeySource] = field(default=None, repr=False)

    @property
    def nix(self) -> NixTool:
        if self.nix_tool is None:
            self.nix_tool = NixTool(ops=self.ops, runner=self.runner)
        return self.nix_tool

    @property
    def dry_run(self) -> bool:
        return self.selections.dry_run

    def require_request(self) -> InstallationRequest:
        if self.request is None:
            raise ValidationError("Selections have not been resolved yet")
        return self.request

    def require_checkout(self) -> str:
        if self.config_dir is None:
            raise ValidationError("Configuration repository has not been fetched yet")
        return self.config_dir
