"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import subprocess
from collections.abc import Sequence

import pytest

from nodefleet.providers.systemd import SystemdProvider


class FakeSystemctl:
    """Track unit state and record every systemctl invocation."""

    def __init__(self) -> None:
        """Start with no active or enabled units."""
        self.active: set[str] = set()
        self.enabled: set[str] = set()
        self.calls: list[tuple[str, str | None, bool]] = []

    def __call__(
        self,
        command: str,
        unit: str | None = None,
        *,
        check: bool = True,
        dry_run: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        self.calls.append((command, unit, dry_run))
        returncode = 0
        if command == "is-active":
            returncode = 0 if unit in self.active else 3
        elif command == "is-enabled":
            returncode = 0 if unit in self.enabled else 1
        elif not dry_run and unit:
            if command == "start":
                self.active.add(unit)
            elif command == "stop":
                self.active.discard(unit)
            elif command == "enable":
                self.enabled.add(unit)
        return subprocess.CompletedProcess([command], returncode, "", "")

    def mutations(self) -> list[tuple[str, str | None, bool]]:
        """Return calls other than state probes."""
        return [call for call in self.calls if not call[0].startswith("is-")]


@pytest.fixture
def fake_systemctl(monkeypatch: pytest.MonkeyPatch) -> FakeSystemctl:
    """Route every ``SystemdProvider._systemctl`` call through a stateful fake."""
    fake = FakeSystemctl()

    def _systemctl(
        provider: SystemdProvider,
        command: str,
        unit: str | None = None,
        *,
        check: bool = True,
        dry_run: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        return fake(command, unit, check=check, dry_run=dry_run)

    monkeypatch.setattr(SystemdProvider, "_systemctl", _systemctl)
    return fake


class RecordingRunner:
    """Stand-in for a subprocess runner returning canned results by subcommand."""

    def __init__(
        self, responses: dict[str, subprocess.CompletedProcess[str]] | None = None
    ) -> None:
        """Map the first non-flag argument to a canned result."""
        self.responses = dict(responses or {})
        self.calls: list[list[str]] = []

    def __call__(self, argv: Sequence[str]) -> subprocess.CompletedProcess[str]:
        self.calls.append(list(argv))
        subcommand = next((arg for arg in argv[1:] if not arg.startswith("-")), "")
        return self.responses.get(
            subcommand, subprocess.CompletedProcess(list(argv), 0, "", "")
        )


@pytest.fixture
def recording_runner() -> RecordingRunner:
    """Return a runner that records calls and succeeds by default."""
    return RecordingRunner()
