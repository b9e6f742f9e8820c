"""Inspect, plan and create the per-instance OS users that run uploaders."""
from __future__ import annotations

import pwd
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal


class ProvisioningError(RuntimeError):
    """Raised when an OS user cannot be created."""


@dataclass(slots=True)
class ServiceAccountSpec:
    """Desired attributes for an uploader's OS user."""

    name: str
    home: Path | None = None
    shell: str | None = "/bin/bash"
    create_home: bool = True
    system: bool = False


@dataclass(slots=True)
class ServiceAccountStatus:
    """Current state of the account on the host."""

    user_exists: bool
    uid: int | None = None
    gid: int | None = None
    home: Path | None = None
    shell: str | None = None


@dataclass(slots=True)
class ServiceAccountAction:
    """Single remediation step required to satisfy the desired state."""

    kind: Literal["create-user"]
    description: str
    command: list[str]


@dataclass(slots=True)
class ServiceAccountPlan:
    """Actions and warnings required to satisfy the spec."""

    spec: ServiceAccountSpec
    status: ServiceAccountStatus
    actions: list[ServiceAccountAction] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


EnsureOutcome = Literal["created", "already-present"]
Runner = Callable[[list[str]], subprocess.CompletedProcess[str]]


def inspect_service_account(spec: ServiceAccountSpec) -> ServiceAccountStatus:
    """Return the current status for *spec* from the passwd database."""
    try:
        pw_entry = pwd.getpwnam(spec.name)
    except KeyError:
        return ServiceAccountStatus(user_exists=False)
    return ServiceAccountStatus(
        user_exists=True,
        uid=pw_entry.pw_uid,
        gid=pw_entry.pw_gid,
        home=Path(pw_entry.pw_dir),
        shell=pw_entry.pw_shell,
    )


def plan_service_account(spec: ServiceAccountSpec) -> ServiceAccountPlan:
    """Return a plan describing how to satisfy *spec* on the current host."""
    status = inspect_service_account(spec)
    plan = ServiceAccountPlan(spec=spec, status=status)

    if not status.user_exists:
        command = ["useradd", "--user-group"]
        if spec.system:
            command.append("--system")
        if spec.home:
            command.extend(["--home-dir", str(spec.home)])
        command.append("--create-home" if spec.create_home else "--no-create-home")
        if spec.shell:
            command.extend(["--shell", spec.shell])
        command.append(spec.name)
        plan.actions.append(
            ServiceAccountAction(
                kind="create-user",
                description=f"Create user '{spec.name}'.",
                command=command,
            )
        )
        return plan

    if spec.home and status.home and status.home != spec.home:
        plan.warnings.append(
            f"User '{spec.name}' home '{status.home}' differs from desired '{spec.home}'."
        )
    if spec.shell and status.shell and status.shell != spec.shell:
        plan.warnings.append(
            f"User '{spec.name}' shell '{status.shell}' differs from desired '{spec.shell}'."
        )
    return plan


def apply_service_account_plan(
    plan: ServiceAccountPlan,
    *,
    runner: Runner | None = None,
    dry_run: bool = False,
) -> None:
    """Execute the commands described by *plan*."""
    if runner is None:
        runner = _default_runner

    for action in plan.actions:
        if dry_run:
            continue
        try:
            runner(action.command)
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or exc.stdout or "").strip() or "no output"
            raise ProvisioningError(
                f"{action.description} failed (exit {exc.returncode}): {detail}"
            ) from exc
        except FileNotFoundError as exc:
            raise ProvisioningError(f"{action.command[0]} not found: {exc}") from exc


def ensure_principal(
    spec: ServiceAccountSpec,
    *,
    runner: Runner | None = None,
    dry_run: bool = False,
) -> tuple[EnsureOutcome, ServiceAccountPlan]:
    """Create the user described by *spec* unless it already exists."""
    plan = plan_service_account(spec)
    if not plan.actions:
        return "already-present", plan
    apply_service_account_plan(plan, runner=runner, dry_run=dry_run)
    return "created", plan


def _default_runner(command: list[str]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(command, check=True, capture_output=True, text=True)  # noqa: S603,S607


__all__ = [
    "EnsureOutcome",
    "ProvisioningError",
    "ServiceAccountAction",
    "ServiceAccountPlan",
    "ServiceAccountSpec",
    "ServiceAccountStatus",
    "apply_service_account_plan",
    "ensure_principal",
    "inspect_service_account",
    "plan_service_account",
]
