"""Provision uploader instances on a host.

For each instance ``1..N`` the workflow makes sure the autonomi binary, the
instance's OS user, its uploader script and its unit file exist, then starts
and enables the service. Every step re-probes the host first, so re-running
with the same inputs writes nothing and restarts nothing.
"""
from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from .bootstrap.service_accounts import (
    EnsureOutcome,
    Runner,
    ServiceAccountPlan,
    ServiceAccountSpec,
    ensure_principal,
)
from .descriptors import DescriptorGenerator, SecretMap
from .instances import Instance
from .providers.artifact_installer import ArtifactInstaller, InstallResult
from .providers.systemd import SystemdProvider

Step = tuple[str, str, str | None]


@dataclass(slots=True)
class InstanceProvision:
    """What happened to one instance during provisioning."""

    instance: Instance
    user: EnsureOutcome
    script_changed: bool
    descriptor: str
    service_changed: bool

    @property
    def changed(self) -> int:
        """Return the number of host mutations made for this instance."""
        return sum(
            [
                self.user == "created",
                self.script_changed,
                self.descriptor == "written",
                self.service_changed,
            ]
        )


@dataclass(slots=True)
class ProvisionReport:
    """Aggregated outcome of :meth:`UploaderProvisioner.provision`."""

    install: InstallResult | None = None
    instances: list[InstanceProvision] = field(default_factory=list)
    reloaded: bool = False
    steps: list[Step] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def changed(self) -> int:
        """Return the total number of host mutations."""
        total = sum(item.changed for item in self.instances)
        if self.install is not None and self.install.changed:
            total += 1
        return total


@dataclass(slots=True)
class UploaderProvisioner:
    """Bring a host's uploader instances to the desired state."""

    installer: ArtifactInstaller
    systemd: SystemdProvider
    descriptors: DescriptorGenerator
    account_runner: Runner | None = None
    ensure_user: Callable[..., tuple[EnsureOutcome, ServiceAccountPlan]] = ensure_principal

    def provision(
        self,
        instances: Sequence[Instance],
        secrets: SecretMap,
        host: str,
        url: str,
        *,
        dry_run: bool = False,
    ) -> ProvisionReport:
        """Provision *instances* using the archive at *url* and *secrets* for *host*."""
        report = ProvisionReport()

        # Resolve every credential before touching the host.
        for instance in instances:
            secrets.secret_for(host, instance.index)
        report.steps.append(("secrets.resolve", "success", f"{len(instances)} secret(s)"))

        report.install = self.installer.ensure_binary(
            url, self.descriptors.binary_dir, dry_run=dry_run
        )
        report.steps.append(("binary.ensure", report.install.status, str(report.install.binary)))

        for instance in instances:
            user_outcome, plan = self.ensure_user(
                ServiceAccountSpec(name=instance.user, home=instance.home),
                runner=self.account_runner,
                dry_run=dry_run,
            )
            for warning in plan.warnings:
                report.warnings.append(warning)
                report.steps.append((f"user.{instance.index}", "warning", warning))
            script_changed = self.descriptors.ensure_upload_script(instance, dry_run=dry_run)
            descriptor = self.descriptors.ensure_service_descriptor(
                instance, secrets, host, dry_run=dry_run
            )
            report.instances.append(
                InstanceProvision(
                    instance=instance,
                    user=user_outcome,
                    script_changed=script_changed,
                    descriptor=descriptor.status,
                    service_changed=False,
                )
            )
            report.steps.append(
                (
                    f"instance.{instance.index}",
                    "success",
                    f"user={user_outcome} script_changed={script_changed} "
                    f"unit={descriptor.status}",
                )
            )

        if any(item.descriptor == "written" for item in report.instances):
            self.systemd.daemon_reload(dry_run=dry_run)
            report.reloaded = True
            report.steps.append(("systemd.daemon-reload", "success", None))

        for item in report.instances:
            item.service_changed = self.systemd.start(
                item.instance.service_name, enable_on_boot=True, dry_run=dry_run
            )
        started = [item.instance.service_name for item in report.instances if item.service_changed]
        report.steps.append(("systemd.start", "success", ", ".join(started) or "all running"))
        return report


__all__ = ["InstanceProvision", "ProvisionReport", "UploaderProvisioner"]
