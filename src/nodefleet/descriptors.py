"""Generate per-instance systemd units and uploader scripts.

A unit embeds the instance's secret key, so regenerating it could silently
swap the identity of a running uploader. Units are therefore written exactly
once: an existing file is never touched, whatever the secret map says now.
The uploader script carries no credentials and is re-rendered whenever its
content would change.
"""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

import yaml

from .instances import Instance
from .templates import TemplateEngine, TemplateError

UNIT_TEMPLATE = "systemd/uploader.service.j2"
SCRIPT_TEMPLATE = "uploader/upload-random-data.sh.j2"
SCRIPT_NAME = "upload-random-data.sh"
UNIT_MODE = 0o700
SCRIPT_MODE = 0o744


@dataclass(slots=True)
class SecretMap:
    """Per-host ordered lists of uploader secret keys (index 1 is the first entry)."""

    hosts: dict[str, list[str]] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, object]) -> SecretMap:
        """Build a map from ``{host: [secret, ...]}`` (or comma-separated strings).

        Every entry must be a non-empty string; anything else raises
        :class:`TemplateError` rather than being coerced into a credential.
        """
        hosts: dict[str, list[str]] = {}
        for host, raw in payload.items():
            if isinstance(raw, str):
                items: Sequence[object] = raw.split(",")
            elif isinstance(raw, Sequence):
                items = raw
            else:
                raise TemplateError(f"Secrets for host '{host}' must be a list or string.")
            hosts[str(host)] = [
                _clean_secret(item, host, index) for index, item in enumerate(items, start=1)
            ]
        return cls(hosts=hosts)

    @classmethod
    def from_file(cls, path: Path) -> SecretMap:
        """Load a YAML (or JSON) secret map from *path*.

        Scalars are read verbatim, so hex keys such as ``0x1f2e`` are not
        turned into integers.
        """
        try:
            text = path.read_text(encoding="utf-8")
            payload = yaml.load(text, Loader=yaml.BaseLoader) or {}  # noqa: S506
        except (OSError, yaml.YAMLError) as exc:
            raise TemplateError(f"Failed to load secret map {path}: {exc}") from exc
        if not isinstance(payload, Mapping):
            raise TemplateError(f"Secret map {path} must contain a mapping of host to secrets.")
        return cls.from_mapping(payload)

    def secrets_for(self, host: str) -> list[str]:
        """Return the ordered secrets for *host*."""
        try:
            return list(self.hosts[host])
        except KeyError:
            raise TemplateError(f"Secret map has no entry for host '{host}'.") from None

    def secret_for(self, host: str, index: int) -> str:
        """Return the secret for instance *index* on *host*."""
        secrets = self.secrets_for(host)
        if index < 1 or index > len(secrets):
            raise TemplateError(
                f"Secret map for host '{host}' has {len(secrets)} secret(s); "
                f"none for instance {index}."
            )
        secret = secrets[index - 1]
        if not secret:
            raise TemplateError(f"Secret for instance {index} on host '{host}' is empty.")
        return secret


def _clean_secret(item: object, host: object, index: int) -> str:
    if not isinstance(item, str):
        raise TemplateError(
            f"Secret {index} for host '{host}' must be a string. Got {item!r}; "
            "quote it in the secret map."
        )
    secret = item.replace('"', "").strip()
    if not secret:
        raise TemplateError(f"Secret {index} for host '{host}' is empty.")
    return secret


@dataclass(frozen=True, slots=True)
class ServiceDescriptor:
    """Where and how an instance's unit is described on disk."""

    instance: Instance
    path: Path
    exec_start: Path
    owner: str
    mode: int
    exists: bool


@dataclass(frozen=True, slots=True)
class DescriptorResult:
    """Outcome of :meth:`DescriptorGenerator.ensure_service_descriptor`."""

    status: Literal["written", "skipped-existing"]
    descriptor: ServiceDescriptor

    @property
    def changed(self) -> bool:
        """Return ``True`` when a unit file was written."""
        return self.status == "written"


@dataclass(slots=True)
class DescriptorGenerator:
    """Render unit files and uploader scripts for :class:`Instance` objects."""

    templates: TemplateEngine
    systemd_dir: Path = Path("/etc/systemd/system")
    binary_dir: Path = Path("/usr/local/bin")
    nodefleet_bin: str = "nodefleet"
    environment: tuple[str, ...] = ()
    metrics_file: str = "upload-metrics.csv"
    file_size_kb: int = 1024
    upload_interval: float = 10.0
    set_owner: bool = True

    def script_path(self, instance: Instance) -> Path:
        """Return the path of the instance's uploader script."""
        return instance.home / SCRIPT_NAME

    def descriptor_for(self, instance: Instance) -> ServiceDescriptor:
        """Probe disk and describe *instance*'s unit."""
        path = self.systemd_dir / instance.unit_name
        return ServiceDescriptor(
            instance=instance,
            path=path,
            exec_start=self.script_path(instance),
            owner=instance.user,
            mode=UNIT_MODE,
            exists=path.exists(),
        )

    def ensure_service_descriptor(
        self,
        instance: Instance,
        secrets: SecretMap,
        host: str,
        *,
        dry_run: bool = False,
    ) -> DescriptorResult:
        """Write *instance*'s unit unless one is already on disk.

        The secret is resolved first so a missing credential always fails,
        even for instances whose unit already exists.
        """
        secret = secrets.secret_for(host, instance.index)
        descriptor = self.descriptor_for(instance)
        if descriptor.exists:
            return DescriptorResult(status="skipped-existing", descriptor=descriptor)
        if dry_run:
            return DescriptorResult(status="written", descriptor=descriptor)

        context = {
            "instance_index": instance.index,
            "service_user": instance.user,
            "working_directory": str(instance.home),
            "exec_start": str(descriptor.exec_start),
            "secret_key": secret,
            "environment": list(self.environment),
        }
        owner = instance.user if self.set_owner else None
        self.templates.render_to_path(
            UNIT_TEMPLATE,
            descriptor.path,
            context,
            mode=UNIT_MODE,
            owner=owner,
            group=owner,
        )
        return DescriptorResult(
            status="written",
            descriptor=ServiceDescriptor(
                instance=instance,
                path=descriptor.path,
                exec_start=descriptor.exec_start,
                owner=descriptor.owner,
                mode=descriptor.mode,
                exists=True,
            ),
        )

    def ensure_upload_script(self, instance: Instance, *, dry_run: bool = False) -> bool:
        """Render the uploader script into the instance's home; return whether it changed."""
        context = {
            "nodefleet_bin": self.nodefleet_bin,
            "autonomi_bin": str(self.binary_dir / "autonomi"),
            "working_directory": str(instance.home),
            "metrics_file": self.metrics_file,
            "file_size_kb": self.file_size_kb,
            "upload_interval": self.upload_interval,
        }
        path = self.script_path(instance)
        if dry_run:
            rendered = self.templates.render_to_string(SCRIPT_TEMPLATE, context)
            return not path.exists() or path.read_text(encoding="utf-8") != rendered
        owner = instance.user if self.set_owner else None
        return self.templates.render_to_path(
            SCRIPT_TEMPLATE,
            path,
            context,
            mode=SCRIPT_MODE,
            owner=owner,
            group=owner,
        )


__all__ = [
    "DescriptorGenerator",
    "DescriptorResult",
    "SecretMap",
    "ServiceDescriptor",
]
