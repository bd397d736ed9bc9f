"""
Tests for primary-user resolution and the per-machine override file.
"""

import pytest

from nixos_installer.errors import ValidationError
from nixos_installer.lib.users import OVERRIDE_NAME, resolve_user, username_problems

from fakes import FakeDiskOps


class TestUsername:
    @pytest.mark.parametrize("name", ["ex1tium", "alice", "a_b-c", "x" * 32])
    def test_valid(self, name):
        assert username_problems(name) == []

    @pytest.mark.parametrize("name", ["Alice", "1user", "", "has space", "x" * 33])
    def test_invalid(self, name):
        assert username_problems(name)

    @pytest.mark.parametrize("name", ["root", "nobody", "nixbld"])
    def test_reserved(self, name):
        assert any("reserved" in p for p in username_problems(name))


class TestResolveUser:
    def test_detected_user_needs_no_override(self, checkout):
        user, path = resolve_user(
            FakeDiskOps(), config_dir=str(checkout), machine="elara", detected="ex1tium", requested=None
        )
        assert (user, path) == ("ex1tium", None)
        assert not (checkout / "machines" / "elara" / OVERRIDE_NAME).exists()

    def test_different_user_writes_override(self, checkout):
        user, path = resolve_user(
            FakeDiskOps(), config_dir=str(checkout), machine="elara", detected="ex1tium", requested="alice"
        )
        assert user == "alice"
        assert path == str(checkout / "machines" / "elara" / OVERRIDE_NAME)
        assert 'mySystem.user = "alice";' in (checkout / "machines" / "elara" / OVERRIDE_NAME).read_text()

    def test_dry_run_writes_nothing(self, checkout):
        user, path = resolve_user(
            FakeDiskOps(dry_run=True), config_dir=str(checkout), machine="elara", detected="ex1tium", requested="alice"
        )
        assert (user, path) == ("alice", None)
        assert not (checkout / "machines" / "elara" / OVERRIDE_NAME).exists()

    def test_invalid_requested_user(self, checkout):
        with pytest.raises(ValidationError):
            resolve_user(FakeDiskOps(), config_dir=str(checkout), machine="elara", detected="ex1tium", requested="root")
