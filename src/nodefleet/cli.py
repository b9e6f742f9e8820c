"""Typer-powered command line for ``nodefleet``.

Every command runs inside a structured logging scope. Commands that mutate
the host additionally hold the host lock so two runs never interleave on the
same machine. Errors abort the command immediately with an exit code from
:class:`~nodefleet.exit_codes.ExitCode`; nothing is retried.
"""
from __future__ import annotations

import json
import os
import shutil
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .bootstrap import ProvisioningError
from .config import AppConfig, ConfigError, load_config
from .descriptors import DescriptorGenerator, SecretMap
from .exit_codes import ExitCode
from .genesis import GenesisCoordinator
from .instances import discover_instances, enumerate_instances
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .providers import (
    ArtifactInstaller,
    ArtifactInstallError,
    NodeManagerClient,
    NodeManagerError,
    ParseError,
    SystemdError,
    SystemdProvider,
    archive_url,
)
from .templates import TemplateEngine, TemplateError
from .upgrade import NodeUpgradeOrchestrator, UpgradeRequest, UploaderUpgradeOrchestrator
from .uploaders import UploaderProvisioner
from .workload import MetricsLog, UploadWorkload

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to nodefleet's YAML config file.",
)
DRY_RUN_OPTION = typer.Option(
    False,
    "--dry-run",
    help="Report the actions that would be taken without applying changes.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON.",
)

_ERROR_EXIT_CODES: tuple[tuple[type[Exception], ExitCode], ...] = (
    (ConfigError, ExitCode.VALIDATION),
    (TemplateError, ExitCode.VALIDATION),
    (ProvisioningError, ExitCode.ENVIRONMENT),
    (ArtifactInstallError, ExitCode.ENVIRONMENT),
    (LockTimeoutError, ExitCode.ENVIRONMENT),
    (SystemdError, ExitCode.PROVIDER),
    (NodeManagerError, ExitCode.PROVIDER),
    (ParseError, ExitCode.PROVIDER),
)
ORCHESTRATION_ERRORS = tuple(error for error, _ in _ERROR_EXIT_CODES)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Storage-network fleet orchestrator.

        Installs and upgrades uploader instances, upgrades node services via
        the node manager, and bootstraps the genesis node. Run once per host.
        """
    ).strip(),
)
uploaders_app = typer.Typer(help="Provision, upgrade and run uploader instances.")
nodes_app = typer.Typer(help="Upgrade node services through the node manager.")
genesis_app = typer.Typer(help="Inspect and bootstrap the genesis node.")
config_app = typer.Typer(help="Inspect the resolved configuration.")

app.add_typer(uploaders_app, name="uploaders")
app.add_typer(nodes_app, name="nodes")
app.add_typer(genesis_app, name="genesis")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    systemd_provider: SystemdProvider
    node_manager: NodeManagerClient
    installer: ArtifactInstaller
    descriptors: DescriptorGenerator


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc

    templates = TemplateEngine.with_overrides(config.templates_dir)
    uploader_config = config.uploaders
    runtime = RuntimeContext(
        config=config,
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        templates=templates,
        systemd_provider=SystemdProvider(
            systemd_dir=config.systemd.unit_dir,
            systemctl_bin=config.systemd.systemctl_bin,
        ),
        node_manager=NodeManagerClient(bin=config.node_manager.bin),
        installer=ArtifactInstaller(download_dir=uploader_config.download_dir),
        descriptors=DescriptorGenerator(
            templates=templates,
            systemd_dir=config.systemd.unit_dir,
            binary_dir=config.binary_dir,
            nodefleet_bin=shutil.which("nodefleet") or "nodefleet",
            environment=uploader_config.environment,
            metrics_file=uploader_config.metrics_file,
            file_size_kb=uploader_config.file_size_kb,
            upload_interval=uploader_config.upload_interval,
            set_owner=os.geteuid() == 0,
        ),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the nodefleet version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"nodefleet {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=int(rc))


def _orchestration_failed(op: OperationScope, exc: Exception) -> NoReturn:
    rc = next(code for error, code in _ERROR_EXIT_CODES if isinstance(exc, error))
    errors = [str(exc)]
    if isinstance(exc, NodeManagerError) and exc.stderr:
        console.print(exc.stderr, markup=False)
    _command_error(op, str(exc), rc=rc, errors=errors)


def _record_steps(op: OperationScope, steps: Sequence[tuple[str, str, str | None]]) -> None:
    for name, status, detail in steps:
        op.add_step(name, status=status, detail=detail)


def _print_json(payload: Mapping[str, object]) -> None:
    console.print_json(data=payload, default=str)


def _uploader_url(config: AppConfig, version: str | None) -> str:
    uploader_config = config.uploaders
    if version is None and uploader_config.archive_url:
        return uploader_config.archive_url
    resolved = uploader_config.autonomi_version if version is None else version
    try:
        return archive_url(resolved, uploader_config.platform)
    except ValueError as exc:
        raise ConfigError(f"Invalid autonomi version {resolved!r}: {exc}") from exc


def _discover(config: AppConfig):  # noqa: ANN202 - returns a bound discovery callable
    uploader_config = config.uploaders

    def discover() -> list:
        return discover_instances(
            user_prefix=uploader_config.user_prefix,
            service_prefix=uploader_config.service_prefix,
            home_root=uploader_config.home_root,
        )

    return discover


# ----------------------------------------------------------------------
# config
# ----------------------------------------------------------------------
@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Print the resolved configuration."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("config show", args={"json": json_output}) as op:
        payload = runtime.config.to_dict()
        if json_output:
            _print_json(payload)
        else:
            table = Table(title="nodefleet configuration")
            table.add_column("Key")
            table.add_column("Value")
            for key, value in payload.items():
                table.add_row(key, json.dumps(value) if isinstance(value, dict) else str(value))
            console.print(table)
        op.success("Reported configuration.", changed=0)


# ----------------------------------------------------------------------
# uploaders
# ----------------------------------------------------------------------
@uploaders_app.command("list")
def uploaders_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List uploader instances discovered from the OS user database."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("uploaders list", args={"json": json_output}) as op:
        try:
            instances = _discover(runtime.config)()
            rows = []
            for instance in instances:
                descriptor = runtime.descriptors.descriptor_for(instance)
                rows.append(
                    {
                        "index": instance.index,
                        "user": instance.user,
                        "service": instance.service_name,
                        "unit": str(descriptor.path),
                        "unit_exists": descriptor.exists,
                        "active": runtime.systemd_provider.is_active(instance.service_name),
                    }
                )
        except ORCHESTRATION_ERRORS as exc:
            _orchestration_failed(op, exc)

        if json_output:
            _print_json({"instances": rows})
        else:
            table = Table(title="Uploader instances")
            for column in ("Index", "User", "Service", "Unit", "Active"):
                table.add_column(column)
            for row in rows:
                table.add_row(
                    str(row["index"]),
                    str(row["user"]),
                    str(row["service"]),
                    "present" if row["unit_exists"] else "[yellow]missing[/yellow]",
                    "[green]yes[/green]" if row["active"] else "[red]no[/red]",
                )
            console.print(table)
        op.success("Listed uploader instances.", changed=0, context={"count": len(rows)})


@uploaders_app.command("provision")
def uploaders_provision(
    ctx: typer.Context,
    count: int | None = typer.Option(
        None,
        "--count",
        min=0,
        help="Number of uploader instances to run on this host.",
    ),
    secrets_file: Path | None = typer.Option(
        None,
        "--secrets",
        dir_okay=False,
        help="YAML/JSON mapping of host name to per-instance secret keys.",
    ),
    host: str | None = typer.Option(
        None,
        "--host",
        help="Host identity used to look up secrets (defaults to config/hostname).",
    ),
    version: str | None = typer.Option(
        None,
        "--version",
        help="autonomi version to install when the binary is missing.",
    ),
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Install autonomi and create, start and enable uploader instances."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    resolved_count = config.uploaders.count if count is None else count
    resolved_host = host or config.host
    with runtime.logger.operation(
        "uploaders provision",
        args={"count": resolved_count, "host": resolved_host, "dry_run": dry_run},
        target={"kind": "host", "name": resolved_host},
    ) as op:
        try:
            secrets_path = secrets_file or config.uploaders.secrets_file
            if secrets_path is None:
                raise ConfigError("A secret map is required (--secrets or uploaders.secrets_file).")
            secrets = SecretMap.from_file(secrets_path)
            instances = enumerate_instances(
                resolved_count,
                user_prefix=config.uploaders.user_prefix,
                service_prefix=config.uploaders.service_prefix,
                home_root=config.uploaders.home_root,
            )
            provisioner = UploaderProvisioner(
                installer=runtime.installer,
                systemd=runtime.systemd_provider,
                descriptors=runtime.descriptors,
            )
            with runtime.locks.host_lock() as lock:
                op.set_lock_wait_ms(lock.wait_ms)
                report = provisioner.provision(
                    instances,
                    secrets,
                    resolved_host,
                    _uploader_url(config, version),
                    dry_run=dry_run,
                )
        except ORCHESTRATION_ERRORS as exc:
            _orchestration_failed(op, exc)

        _record_steps(op, report.steps)
        if dry_run:
            console.print(
                f"[yellow]Dry run[/yellow]: {report.changed} change(s) would be made "
                f"for {len(instances)} instance(s)."
            )
            op.success("Provision dry-run complete.", changed=0)
            return
        console.print(
            f"[green]Provisioned {len(instances)} uploader instance(s) "
            f"({report.changed} change(s)).[/green]"
        )
        if report.warnings:
            for warning in report.warnings:
                console.print(f"[yellow]Warning:[/yellow] {warning}")
            op.warning(
                "Uploaders provisioned with warnings.",
                warnings=report.warnings,
                changed=report.changed,
            )
            return
        op.success("Uploaders provisioned.", changed=report.changed)


@uploaders_app.command("upgrade")
def uploaders_upgrade(
    ctx: typer.Context,
    version: str | None = typer.Option(
        None,
        "--version",
        help="autonomi version to upgrade to (defaults to uploaders.autonomi_version).",
    ),
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Stop uploaders, replace the autonomi binary, refresh scripts and restart."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "uploaders upgrade",
        args={"version": version, "dry_run": dry_run},
        target={"kind": "host", "name": runtime.config.host},
    ) as op:
        orchestrator = UploaderUpgradeOrchestrator(
            installer=runtime.installer,
            systemd=runtime.systemd_provider,
            descriptors=runtime.descriptors,
            discover=_discover(runtime.config),
        )
        try:
            url = _uploader_url(runtime.config, version)
            op.add_step("archive.resolve", status="success", detail=url)
            with runtime.locks.host_lock() as lock:
                op.set_lock_wait_ms(lock.wait_ms)
                report = orchestrator.run(url, dry_run=dry_run)
        except ORCHESTRATION_ERRORS as exc:
            _orchestration_failed(op, exc)

        _record_steps(op, report.steps)
        if dry_run:
            console.print(
                f"[yellow]Dry run[/yellow]: would upgrade {len(report.instances)} "
                f"uploader(s) from {url}."
            )
            op.success("Uploader upgrade dry-run complete.", changed=0)
            return
        console.print(
            f"[green]Upgraded autonomi for {len(report.instances)} uploader(s).[/green]"
        )
        op.success(
            "Uploaders upgraded.",
            changed=1 + len(report.scripts_changed) + len(report.started),
        )


@uploaders_app.command("run-workload")
def uploaders_run_workload(
    ctx: typer.Context,
    autonomi_bin: str = typer.Option("autonomi", "--autonomi-bin", help="autonomi executable."),
    metrics_file: Path = typer.Option(
        ...,
        "--metrics-file",
        dir_okay=False,
        help="CSV file receiving one row per upload.",
    ),
    file_size_kb: int = typer.Option(1024, "--file-size-kb", min=1, help="Upload size in KB."),
    interval: float = typer.Option(10.0, "--interval", min=0, help="Seconds between uploads."),
    iterations: int | None = typer.Option(
        None,
        "--iterations",
        min=1,
        help="Stop after this many uploads (default: run forever).",
    ),
) -> None:
    """Upload random files forever, appending timings to the metrics CSV."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "uploaders run-workload",
        args={"metrics_file": metrics_file, "file_size_kb": file_size_kb, "interval": interval},
    ) as op:
        workload = UploadWorkload(
            autonomi_bin=autonomi_bin,
            metrics=MetricsLog(metrics_file),
            work_dir=metrics_file.parent / "uploads",
            file_size_kb=file_size_kb,
        )
        results = workload.run_forever(interval, iterations=iterations)
        failures = sum(1 for result in results if not result.success)
        console.print(f"Completed {len(results)} upload(s), {failures} failure(s).")
        op.success("Workload finished.", changed=len(results))


# ----------------------------------------------------------------------
# nodes
# ----------------------------------------------------------------------
@nodes_app.command("upgrade")
def nodes_upgrade(
    ctx: typer.Context,
    interval: int | None = typer.Option(
        None,
        "--interval",
        min=0,
        help="Milliseconds between node upgrades (defaults to node_manager.interval).",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Force the upgrade even if the version is unchanged.",
    ),
    env: str | None = typer.Option(None, "--env", help="Environment overrides for nodes."),
    version: str | None = typer.Option(None, "--version", help="Pin the node version."),
    pre_upgrade_delay: float | None = typer.Option(
        None,
        "--pre-upgrade-delay",
        min=0,
        help="Seconds to wait before starting, to stagger co-located hosts.",
    ),
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Upgrade all node services on this host via the node manager."""
    runtime = _get_runtime(ctx)
    defaults = runtime.config.upgrade
    request = UpgradeRequest(
        interval=runtime.config.node_manager.interval if interval is None else interval,
        force=force or defaults.force,
        env=env or defaults.env,
        version=version or defaults.version,
        pre_upgrade_delay=(
            defaults.pre_upgrade_delay if pre_upgrade_delay is None else pre_upgrade_delay
        ),
    )
    with runtime.logger.operation(
        "nodes upgrade",
        args={
            "interval": request.interval,
            "force": request.force,
            "env": request.env,
            "version": request.version,
            "pre_upgrade_delay": request.pre_upgrade_delay,
            "dry_run": dry_run,
        },
        target={"kind": "host", "name": runtime.config.host},
    ) as op:
        orchestrator = NodeUpgradeOrchestrator(client=runtime.node_manager)
        try:
            with runtime.locks.host_lock() as lock:
                op.set_lock_wait_ms(lock.wait_ms)
                outcome = orchestrator.run(request, dry_run=dry_run)
        except ORCHESTRATION_ERRORS as exc:
            _orchestration_failed(op, exc)

        command_text = " ".join(outcome.command)
        op.add_step("upgrade.command", status="success", detail=command_text)
        if dry_run:
            op.add_step("upgrade.execute", status="skipped", detail="dry-run")
            console.print(f"[yellow]Dry run[/yellow]: would run `{command_text}`.")
            op.success("Node upgrade dry-run complete.", changed=0)
            return
        op.add_step("upgrade.execute", status="success", detail=" -> ".join(outcome.states))
        if outcome.stdout.strip():
            console.print(outcome.stdout.rstrip(), markup=False)
        console.print("[green]Node upgrade complete.[/green]")
        op.success("Nodes upgraded.", changed=1)


# ----------------------------------------------------------------------
# genesis
# ----------------------------------------------------------------------
@genesis_app.command("status")
def genesis_status(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Report whether this host's node manager already runs a genesis node."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("genesis status", args={"json": json_output}) as op:
        try:
            status = runtime.node_manager.status()
        except ORCHESTRATION_ERRORS as exc:
            _orchestration_failed(op, exc)
        payload = {
            "genesis_exists": status.genesis_exists,
            "nodes": len(status.nodes),
            "empty": status.empty,
        }
        if json_output:
            _print_json(payload)
        elif status.genesis_exists:
            console.print("[green]Genesis node present.[/green]")
        else:
            console.print("[yellow]No genesis node registered.[/yellow]")
        op.success("Reported genesis status.", changed=0, context=payload)


@genesis_app.command("bootstrap")
def genesis_bootstrap(
    ctx: typer.Context,
    interval: int | None = typer.Option(
        None,
        "--interval",
        min=0,
        help="Milliseconds between node starts (defaults to node_manager.interval).",
    ),
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Add the genesis node if none exists yet, then start node services."""
    runtime = _get_runtime(ctx)
    resolved_interval = runtime.config.node_manager.interval if interval is None else interval
    with runtime.logger.operation(
        "genesis bootstrap",
        args={"interval": resolved_interval, "dry_run": dry_run},
        target={"kind": "host", "name": runtime.config.host},
    ) as op:
        coordinator = GenesisCoordinator(
            client=runtime.node_manager,
            config=runtime.config.genesis,
            interval=resolved_interval,
        )
        try:
            with runtime.locks.host_lock() as lock:
                op.set_lock_wait_ms(lock.wait_ms)
                outcome = coordinator.bootstrap(dry_run=dry_run)
        except ORCHESTRATION_ERRORS as exc:
            _orchestration_failed(op, exc)

        _record_steps(op, outcome.steps)
        if dry_run:
            if outcome.add_command is not None:
                console.print(
                    f"[yellow]Dry run[/yellow]: would run `{' '.join(outcome.add_command)}`."
                )
            else:
                console.print("[yellow]Dry run[/yellow]: genesis node already present.")
            op.success("Genesis bootstrap dry-run complete.", changed=0)
            return
        if outcome.genesis_existed:
            console.print("Genesis node already present; services started.")
            op.success("Genesis already present.", changed=0)
            return
        console.print(f"[green]Genesis node added at {outcome.rpc_address}.[/green]")
        op.success("Genesis node bootstrapped.", changed=2)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
