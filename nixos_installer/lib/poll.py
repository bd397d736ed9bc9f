from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from ..errors import DeviceNotReadyError

logger = logging.getLogger(__name__)


def poll_until(
    predicate: Callable[[], bool],
    *,
    timeout_s: float,
    interval_s: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Evaluate predicate until it is true or timeout_s elapses.

    Returns the final predicate value; never raises on timeout.
    """

    deadline = clock() + timeout_s
    while True:
        if predicate():
            return True
        if clock() >= deadline:
            return predicate()
        sleep(interval_s)


def wait_for_device(
    device: str,
    exists: Callable[[str], bool],
    *,
    timeout_s: float = 30.0,
    interval_s: float = 1.0,
    on_timeout: Optional[Callable[[], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Block until a device node exists.

    on_timeout (typically a partition-table refresh) gets exactly one chance to
    make the node appear before DeviceNotReadyError is raised.
    """

    logger.info("Waiting for device %s (timeout=%ss)", device, timeout_s)
    if poll_until(lambda: exists(device), timeout_s=timeout_s, interval_s=interval_s, sleep=sleep):
        logger.info("Device %s is ready", device)
        return

    if on_timeout is not None:
        logger.warning("Device %s not ready, refreshing partition table and retrying once", device)
        on_timeout()
        if poll_until(lambda: exists(device), timeout_s=timeout_s, interval_s=interval_s, sleep=sleep):
            logger.info("Device %s is ready after retry", device)
            return

    raise DeviceNotReadyError(device, timeout_s)
