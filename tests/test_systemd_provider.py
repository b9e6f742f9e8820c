"""Tests for the systemd provider."""
from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Any

import pytest

from nodefleet.providers import systemd as systemd_module
from nodefleet.providers.systemd import SystemdError, SystemdProvider


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


@pytest.fixture
def provider(tmp_path: Path) -> SystemdProvider:
    """Return a provider instance scoped to the temporary path."""
    systemd_dir = tmp_path / "systemd"
    systemd_dir.mkdir(parents=True, exist_ok=True)
    return SystemdProvider(systemd_dir=systemd_dir, systemctl_bin="systemctl")


def test_unit_name_and_path(provider: SystemdProvider, tmp_path: Path) -> None:
    """Service names gain a ``.service`` suffix exactly once."""
    assert provider.unit_name("autonomi_uploader_1") == "autonomi_uploader_1.service"
    assert provider.unit_name("autonomi_uploader_1.service") == "autonomi_uploader_1.service"
    assert provider.unit_path("autonomi_uploader_1") == (
        tmp_path / "systemd" / "autonomi_uploader_1.service"
    )


def test_start_with_enable_on_inactive_unit(
    fake_systemctl: Any,
    provider: SystemdProvider,
) -> None:
    """An inactive, disabled unit is enabled then started."""
    fake = fake_systemctl

    changed = provider.start("autonomi_uploader_1", enable_on_boot=True)

    assert changed is True
    unit = "autonomi_uploader_1.service"
    assert fake.mutations() == [("enable", unit, False), ("start", unit, False)]


def test_start_is_noop_for_running_enabled_unit(
    fake_systemctl: Any,
    provider: SystemdProvider,
) -> None:
    """Re-starting a healthy unit never restarts it."""
    unit = "autonomi_uploader_1.service"
    fake = fake_systemctl
    fake.active.add(unit)
    fake.enabled.add(unit)

    changed = provider.start("autonomi_uploader_1", enable_on_boot=True)

    assert changed is False
    assert fake.mutations() == []


def test_stop_inactive_unit_is_noop(
    fake_systemctl: Any,
    provider: SystemdProvider,
) -> None:
    """Stopping a unit that is not running issues no stop."""
    fake = fake_systemctl

    assert provider.stop("autonomi_uploader_1") is False
    assert fake.mutations() == []


def test_stop_running_unit(
    fake_systemctl: Any,
    provider: SystemdProvider,
) -> None:
    """Running units are stopped."""
    unit = "autonomi_uploader_2.service"
    fake = fake_systemctl
    fake.active.add(unit)

    assert provider.stop("autonomi_uploader_2") is True
    assert fake.mutations() == [("stop", unit, False)]
    assert fake.active == set()


def test_daemon_reload_passes_dry_run(
    fake_systemctl: Any,
    provider: SystemdProvider,
) -> None:
    """daemon-reload forwards the dry-run flag."""
    fake = fake_systemctl

    provider.daemon_reload(dry_run=True)

    assert fake.calls == [("daemon-reload", None, True)]


def test_run_command_raises_on_failure(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
) -> None:
    """Non-zero exits surface as SystemdError with stderr."""

    def fake_run(args: list[str], **kwargs: object) -> DummyResult:
        return DummyResult(returncode=5, stderr="Unit not found.")

    monkeypatch.setattr(systemd_module.subprocess, "run", fake_run)

    with pytest.raises(SystemdError, match="Unit not found"):
        provider._systemctl("start", "missing.service")


def test_run_command_missing_binary(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
) -> None:
    """A missing systemctl binary raises SystemdError."""

    def fake_run(args: list[str], **kwargs: object) -> DummyResult:
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(systemd_module.subprocess, "run", fake_run)

    with pytest.raises(SystemdError, match="not found"):
        provider.daemon_reload()


def test_probe_failure_is_not_an_error(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
) -> None:
    """State probes use ``check=False`` and report inactive on non-zero exit."""

    def fake_run(args: list[str], **kwargs: object) -> DummyResult:
        return DummyResult(returncode=3, stdout="inactive")

    monkeypatch.setattr(systemd_module.subprocess, "run", fake_run)

    assert provider.is_active("autonomi_uploader_1") is False
    assert provider.is_enabled("autonomi_uploader_1") is False


def test_dry_run_does_not_execute(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
) -> None:
    """Dry runs never shell out for mutating commands."""

    def fake_run(args: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        raise AssertionError(f"unexpected call {args}")

    monkeypatch.setattr(systemd_module.subprocess, "run", fake_run)

    result = provider._systemctl("start", "autonomi_uploader_1.service", dry_run=True)

    assert result.returncode == 0
