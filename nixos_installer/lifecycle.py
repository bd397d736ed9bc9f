"""Run-wide resources: the sudo keepalive thread, SIGTERM handling and teardown.

RunLifecycle is entered once by main.run(); its teardown runs on every exit
path (success, failure, Ctrl-C, SIGTERM) and is safe to call twice.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from datetime import datetime
from typing import Any, Callable, Optional

from .context import InstallContext
from .errors import InstallerError, Interruption
from .lib.cleanup import unmount_tree
from .lib.env import LUKS_MAPPING
from .state_store import save_state

logger = logging.getLogger(__name__)

SUDO_REFRESH_INTERVAL_S = 60.0


def _sudo_refresh() -> None:
    # bypasses run_cmd so the keepalive never becomes the "last command"
    subprocess.run(["sudo", "-n", "-v"], stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, check=False)


def _raise_interruption(signum: int, frame: Any) -> None:
    raise Interruption(f"Received signal {signal.Signals(signum).name}")


class RunLifecycle:
    def __init__(
        self,
        ctx: InstallContext,
        *,
        state_path: Optional[str] = None,
        quiet: bool = False,
        refresh: Callable[[], None] = _sudo_refresh,
        refresh_interval_s: float = SUDO_REFRESH_INTERVAL_S,
        output_fn: Callable[[str], None] = print,
    ) -> None:
        self.ctx = ctx
        self.state_path = state_path
        self.quiet = quiet
        self._refresh = refresh
        self._interval = refresh_interval_s
        self._print = output_fn
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._old_sigterm: Any = None
        self._torn_down = False

    def __enter__(self) -> "RunLifecycle":
        if threading.current_thread() is threading.main_thread():
            self._old_sigterm = signal.signal(signal.SIGTERM, _raise_interruption)
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            outcome = "success"
            if exc_type is not None:
                interrupted = issubclass(exc_type, (KeyboardInterrupt, Interruption))
                outcome = "interrupted" if interrupted else "failed"
            self.teardown(outcome)
        finally:
            if self._old_sigterm is not None:
                signal.signal(signal.SIGTERM, self._old_sigterm)
                self._old_sigterm = None
        return False

    # -- privilege refresh -----------------------------------------------------

    @property
    def refreshing(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start_refresher(self, use_sudo: bool) -> None:
        """Keep sudo credentials warm for long nix builds (sudo users only)."""

        if not use_sudo or self.ctx.dry_run or self.refreshing:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._refresh_loop, name="sudo-keepalive", daemon=True)
        self._thread.start()
        logger.info("Started sudo credential refresher (every %ss)", self._interval)

    def _refresh_loop(self) -> None:
        while not self._stop.wait(self._interval):
            self._refresh()

    def stop_refresher(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    # -- teardown --------------------------------------------------------------

    def teardown(self, outcome: str = "success") -> None:
        if self._torn_down:
            return
        self._torn_down = True
        ctx = self.ctx
        logger.info("Teardown (%s)", outcome)

        self.stop_refresher()

        mount_root = ctx.request.mount_root if ctx.request else ctx.selections.mount_root
        try:
            unmount_tree(ctx.ops, mount_root)
        except (InstallerError, OSError) as e:
            logger.error("Teardown could not unmount %s: %s", mount_root, e)

        try:
            if ctx.ops.mapping_exists(LUKS_MAPPING):
                logger.info("Closing /dev/mapper/%s", LUKS_MAPPING)
                ctx.ops.luks_close(LUKS_MAPPING)
        except (InstallerError, OSError) as e:
            logger.error("Teardown could not close /dev/mapper/%s: %s", LUKS_MAPPING, e)

        if outcome == "success" and not ctx.dry_run and ctx.override_path and os.path.exists(ctx.override_path):
            logger.info("Removing user override %s", ctx.override_path)
            os.remove(ctx.override_path)

        state = ctx.state
        state.outcome = outcome
        state.finished_at = datetime.now().isoformat(timespec="seconds")
        if self.state_path:
            try:
                save_state(self.state_path, state)
            except OSError as e:
                logger.error("Could not write run record %s: %s", self.state_path, e)

        if not self.quiet:
            self._print(f"Done - log: {state.log_path}")
