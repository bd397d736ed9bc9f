"""
Tests for the bounded device polling helpers.
"""

import pytest

from nixos_installer.errors import DeviceNotReadyError
from nixos_installer.lib.poll import poll_until, wait_for_device


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class TestPollUntil:
    def test_returns_immediately_when_true(self):
        clock = FakeClock()
        assert poll_until(lambda: True, timeout_s=5, sleep=clock.sleep, clock=clock)
        assert clock.sleeps == []

    def test_gives_up_after_timeout(self):
        clock = FakeClock()
        assert not poll_until(lambda: False, timeout_s=3, interval_s=1, sleep=clock.sleep, clock=clock)
        assert clock.sleeps == [1, 1, 1]

    def test_succeeds_midway(self):
        clock = FakeClock()
        answers = iter([False, False, True])
        assert poll_until(lambda: next(answers), timeout_s=10, sleep=clock.sleep, clock=clock)
        assert len(clock.sleeps) == 2


class TestWaitForDevice:
    def test_device_present(self):
        wait_for_device("/dev/vda1", lambda dev: True, timeout_s=0, sleep=lambda s: None)

    def test_refresh_gets_one_retry(self):
        refreshed = []
        present = set()

        def refresh():
            refreshed.append(True)
            present.add("/dev/vda2")

        wait_for_device(
            "/dev/vda2",
            lambda dev: dev in present,
            timeout_s=0,
            on_timeout=refresh,
            sleep=lambda s: None,
        )
        assert refreshed == [True]

    def test_raises_after_retry(self):
        refreshed = []
        with pytest.raises(DeviceNotReadyError) as exc:
            wait_for_device(
                "/dev/vda2",
                lambda dev: False,
                timeout_s=0,
                on_timeout=lambda: refreshed.append(True),
                sleep=lambda s: None,
            )
        assert refreshed == [True]
        assert exc.value.device == "/dev/vda2"
