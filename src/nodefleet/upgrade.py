"""Rolling upgrades for node services and uploader instances.

Node upgrades delegate the per-node stop/replace/start cycle to the node
manager's own ``upgrade`` command; this module only paces the run and builds
that command. Uploader upgrades drive the cycle themselves: stop every
uploader, swap the autonomi binary, re-render scripts and start them again.
Failures propagate immediately; nothing is retried.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .arguments import optional_flags
from .config import ConfigError
from .descriptors import DescriptorGenerator
from .instances import Instance
from .providers.artifact_installer import ArtifactInstaller, InstallResult
from .providers.node_manager import NodeManagerClient
from .providers.systemd import SystemdProvider

LOGGER = logging.getLogger(__name__)

Step = tuple[str, str, str | None]


@dataclass(frozen=True, slots=True)
class UpgradeRequest:
    """Inputs for one node upgrade run."""

    interval: int | None
    force: bool | None = None
    env: str | None = None
    version: str | None = None
    pre_upgrade_delay: float | None = None

    def validate(self) -> int:
        """Return the interval, raising :class:`ConfigError` when it is unusable."""
        if self.interval is None:
            raise ConfigError("An upgrade interval is required (node_manager.interval).")
        if isinstance(self.interval, bool) or self.interval < 0:
            raise ConfigError(
                f"Upgrade interval must be a non-negative integer. Got {self.interval!r}."
            )
        if self.pre_upgrade_delay is not None and self.pre_upgrade_delay < 0:
            raise ConfigError("pre_upgrade_delay must be non-negative.")
        return self.interval


def build_upgrade_command(request: UpgradeRequest) -> list[str]:
    """Return the ``upgrade`` arguments for *request*."""
    interval = request.validate()
    return [
        "upgrade",
        f"--interval={interval}",
        *optional_flags(
            [
                ("--force", request.force),
                ("--env", request.env),
                ("--version", request.version),
            ]
        ),
    ]


@dataclass(slots=True)
class NodeUpgradeOutcome:
    """Record of a node upgrade run."""

    states: list[str] = field(default_factory=list)
    command: list[str] = field(default_factory=list)
    delayed_seconds: float | None = None
    stdout: str = ""
    dry_run: bool = False


@dataclass(slots=True)
class NodeUpgradeOrchestrator:
    """Pace and execute ``safenode-manager upgrade`` on this host."""

    client: NodeManagerClient
    sleep: Callable[[float], None] = time.sleep

    def run(self, request: UpgradeRequest, *, dry_run: bool = False) -> NodeUpgradeOutcome:
        """Walk ``idle -> optional-delay -> command-built -> executed -> done``."""
        outcome = NodeUpgradeOutcome(states=["idle"], dry_run=dry_run)
        request.validate()

        if request.pre_upgrade_delay:
            outcome.states.append("optional-delay")
            outcome.delayed_seconds = request.pre_upgrade_delay
            if not dry_run:
                LOGGER.debug("Sleeping %.1fs before upgrade", request.pre_upgrade_delay)
                self.sleep(request.pre_upgrade_delay)

        args = build_upgrade_command(request)
        outcome.command = self.client.command(args)
        outcome.states.append("command-built")
        if dry_run:
            return outcome

        result = self.client.upgrade(args)
        outcome.stdout = result.stdout or ""
        outcome.states.append("executed")
        outcome.states.append("done")
        return outcome


@dataclass(slots=True)
class UploaderUpgradeReport:
    """Record of an uploader upgrade run."""

    instances: list[Instance] = field(default_factory=list)
    install: InstallResult | None = None
    stopped: list[str] = field(default_factory=list)
    scripts_changed: list[str] = field(default_factory=list)
    started: list[str] = field(default_factory=list)
    steps: list[Step] = field(default_factory=list)


@dataclass(slots=True)
class UploaderUpgradeOrchestrator:
    """Stop uploaders, replace the autonomi binary, refresh scripts, restart."""

    installer: ArtifactInstaller
    systemd: SystemdProvider
    descriptors: DescriptorGenerator
    discover: Callable[[], list[Instance]]

    def run(self, url: str, *, dry_run: bool = False) -> UploaderUpgradeReport:
        """Upgrade every uploader discovered on this host to the archive at *url*."""
        report = UploaderUpgradeReport(instances=self.discover())
        report.steps.append(
            ("uploaders.discover", "success", f"{len(report.instances)} instance(s)")
        )

        for instance in report.instances:
            if self.systemd.stop(instance.service_name, dry_run=dry_run):
                report.stopped.append(instance.service_name)
        report.steps.append(
            ("systemd.stop", "success", ", ".join(report.stopped) or "none running")
        )

        report.install = self.installer.replace_binary(
            url, self.descriptors.binary_dir, dry_run=dry_run
        )
        report.steps.append(("binary.replace", report.install.status, url))

        for instance in report.instances:
            if self.descriptors.ensure_upload_script(instance, dry_run=dry_run):
                report.scripts_changed.append(instance.user)
        report.steps.append(
            ("script.render", "success", ", ".join(report.scripts_changed) or "unchanged")
        )

        for instance in report.instances:
            if self.systemd.start(instance.service_name, enable_on_boot=True, dry_run=dry_run):
                report.started.append(instance.service_name)
        report.steps.append(("systemd.start", "success", ", ".join(report.started) or "none"))
        return report


__all__ = [
    "NodeUpgradeOrchestrator",
    "NodeUpgradeOutcome",
    "UpgradeRequest",
    "UploaderUpgradeOrchestrator",
    "UploaderUpgradeReport",
    "build_upgrade_command",
]
