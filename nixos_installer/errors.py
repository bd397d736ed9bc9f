from __future__ import annotations

from typing import Optional, Sequence


class InstallerError(RuntimeError):
    """Base class for every fatal installer condition."""

    def __init__(self, message: str, *, step: Optional[str] = None, command: Optional[str] = None) -> None:
        super().__init__(message)
        self.step = step
        self.command = command


class ValidationError(InstallerError):
    """Bad or missing input, raised before any disk I/O."""

    def __init__(self, problems: Sequence[str] | str) -> None:
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class PreconditionError(InstallerError):
    """The disk or environment is not in a state we may mutate."""


class NoEspFoundError(PreconditionError):
    pass


class InsufficientSpaceError(PreconditionError):
    def __init__(self, message: str, *, requested: int, available: int) -> None:
        super().__init__(message)
        self.requested = requested
        self.available = available


class ConfirmationRequiredError(PreconditionError):
    pass


class MountError(PreconditionError):
    pass


class DeviceNotReadyError(InstallerError):
    def __init__(self, device: str, timeout_s: float) -> None:
        super().__init__(f"Device {device} not available after {timeout_s:g}s")
        self.device = device
        self.timeout_s = timeout_s


class ExternalToolError(InstallerError):
    """A wrapped external command exited non-zero."""

    def __init__(self, argv: Sequence[str], returncode: int, output: str = "") -> None:
        self.argv = list(argv)
        self.returncode = returncode
        self.output = output
        msg = f"Command failed ({returncode}): {' '.join(self.argv)}"
        if output.strip():
            msg = f"{msg}\n{output.rstrip()}"
        super().__init__(msg)


class ConsistencyError(InstallerError):
    """hardware-configuration.nix disagrees with the live mount table."""

    def __init__(self, message: str, *, problems: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.problems = list(problems)


class Interruption(InstallerError):
    """External signal (SIGTERM) delivered while the run was active."""
