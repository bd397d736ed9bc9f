from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from typing import Callable, List, Mapping, Optional, Sequence

from ..errors import ExternalToolError

logger = logging.getLogger(__name__)

_last_argv: Optional[List[str]] = None


@dataclass(frozen=True)
class CmdResult:
    argv: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        return "\n".join(s for s in (self.stdout.strip(), self.stderr.strip()) if s)


Runner = Callable[..., CmdResult]


def fmt_argv(argv: Sequence[str]) -> str:
    return " ".join(shlex.quote(a) for a in argv)


def last_command() -> Optional[str]:
    """Return the most recent command line handed to run_cmd, if any."""

    return fmt_argv(_last_argv) if _last_argv else None


def run_cmd(
    argv: Sequence[str],
    *,
    check: bool = True,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    input_text: str | None = None,
    timeout_s: float | None = None,
) -> CmdResult:
    """Run a command with consistent logging.

    - Always logs the command and remembers it as the last external command.
    - Captures stdout/stderr; on failure both are attached to the error.
    - input_text is never logged (it carries LUKS secrets).
    """

    global _last_argv

    argv_list = list(argv)
    _last_argv = argv_list
    logger.info("CMD %s", fmt_argv(argv_list))

    try:
        p = subprocess.run(
            argv_list,
            input=input_text,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=cwd,
            env=dict(os.environ, **(env or {})),
            timeout=timeout_s,
        )
    except FileNotFoundError as e:
        raise ExternalToolError(argv_list, 127, str(e)) from e
    except subprocess.TimeoutExpired as e:
        raise ExternalToolError(argv_list, 124, f"timed out after {timeout_s}s") from e

    if p.stdout:
        logger.debug("STDOUT %s", p.stdout.strip())
    if p.stderr:
        logger.debug("STDERR %s", p.stderr.strip())

    result = CmdResult(argv=argv_list, returncode=p.returncode, stdout=p.stdout, stderr=p.stderr)
    if check and p.returncode != 0:
        raise ExternalToolError(argv_list, p.returncode, result.output)

    return result
