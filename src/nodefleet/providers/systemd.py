"""Systemd provider for starting, stopping and enabling managed services."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Thin, idempotent wrapper over ``systemctl``.

    ``start`` and ``enable`` probe the unit state first and do nothing when
    the unit is already in the requested state, so re-running an
    orchestration never restarts a healthy service.
    """

    systemd_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"

    def unit_name(self, service: str) -> str:
        """Return the systemd unit name for *service*."""
        safe = service.replace("/", "-")
        return safe if safe.endswith(".service") else f"{safe}.service"

    def unit_path(self, service: str) -> Path:
        """Return the full path for the service's unit file."""
        return self.systemd_dir / self.unit_name(service)

    def is_active(self, service: str) -> bool:
        """Return ``True`` when the unit is running."""
        result = self._systemctl("is-active", self.unit_name(service), check=False)
        return result.returncode == 0

    def is_enabled(self, service: str) -> bool:
        """Return ``True`` when the unit is enabled at boot."""
        result = self._systemctl("is-enabled", self.unit_name(service), check=False)
        return result.returncode == 0

    def start(self, service: str, *, enable_on_boot: bool = False, dry_run: bool = False) -> bool:
        """Start *service* (and optionally enable it); return whether anything changed."""
        changed = False
        if enable_on_boot:
            changed = self.enable(service, dry_run=dry_run)
        if self.is_active(service):
            return changed
        self._systemctl("start", self.unit_name(service), dry_run=dry_run)
        return True

    def stop(self, service: str, *, dry_run: bool = False) -> bool:
        """Stop *service*; stopping an inactive unit is a no-op."""
        if not self.is_active(service):
            return False
        self._systemctl("stop", self.unit_name(service), dry_run=dry_run)
        return True

    def enable(self, service: str, *, dry_run: bool = False) -> bool:
        """Enable *service* at boot unless it already is."""
        if self.is_enabled(service):
            return False
        self._systemctl("enable", self.unit_name(service), dry_run=dry_run)
        return True

    def daemon_reload(self, *, dry_run: bool = False) -> None:
        """Ask systemd to re-read unit files."""
        self._systemctl("daemon-reload", dry_run=dry_run)

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        unit: str | None = None,
        *,
        check: bool = True,
        dry_run: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin, command]
        if unit is not None:
            args.append(unit)
        return self._run_command(
            args,
            check=check,
            error_prefix=f"{self.systemctl_bin} {command}",
            dry_run=dry_run,
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        dry_run: bool,
    ) -> subprocess.CompletedProcess[str]:
        if dry_run:
            return subprocess.CompletedProcess(list(args), returncode=0, stdout="", stderr="")
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = result.stdout or ""
            stderr = result.stderr or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["SystemdProvider", "SystemdError"]
