from __future__ import annotations

import logging
import os
from collections import deque
from pathlib import Path
from typing import List, Optional

_FALLBACK_NAME = "nixos-install.log"


def configure_logging(
    log_path: str,
    *,
    quiet: bool = False,
    debug: bool = False,
    also_console: bool = True,
) -> str:
    """Configure logging.

    Every run appends to a timestamped log file. If the requested path is not
    writable (e.g. a read-only /tmp on an odd live image) we fall back to a
    file in the working directory and return that path instead.

    Returns the actual file path being used.
    """

    root = logging.getLogger()
    root.setLevel(logging.DEBUG if debug else logging.INFO)

    # Avoid duplicate handlers if configure_logging() is called multiple times.
    if getattr(root, "_nixos_installer_configured", False):
        return getattr(root, "_nixos_installer_log_path", log_path)

    fmt = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )

    try:
        Path(os.path.dirname(log_path) or ".").mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
        chosen_path = log_path
    except OSError:
        chosen_path = str(Path.cwd() / _FALLBACK_NAME)
        file_handler = logging.FileHandler(chosen_path, mode="a", encoding="utf-8")
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    if also_console:
        console = logging.StreamHandler()
        console.setFormatter(fmt)
        if quiet:
            console.setLevel(logging.WARNING)
        elif not debug:
            console.setLevel(logging.INFO)
        root.addHandler(console)

    setattr(root, "_nixos_installer_configured", True)
    setattr(root, "_nixos_installer_log_path", chosen_path)

    logging.getLogger(__name__).info("Logging initialized (requested=%s, actual=%s)", log_path, chosen_path)
    return chosen_path


def reset_logging() -> None:
    """Drop the handlers configure_logging() installed (used between test runs)."""

    root = logging.getLogger()
    if not getattr(root, "_nixos_installer_configured", False):
        return
    for h in list(root.handlers):
        if isinstance(h, (logging.FileHandler, logging.StreamHandler)) and not _is_capture(h):
            root.removeHandler(h)
            h.close()
    setattr(root, "_nixos_installer_configured", False)


def _is_capture(handler: logging.Handler) -> bool:
    # pytest's caplog/LogCaptureHandler must survive a reset
    return type(handler).__module__.startswith("_pytest")


def log_tail(path: Optional[str], n: int = 20) -> List[str]:
    if not path or not os.path.isfile(path):
        return []
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        return [line.rstrip("\n") for line in deque(f, maxlen=n)]
