"""Configuration loader for nodefleet.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/nodefleet/config.yml`` (or an override path).
3. Environment variables prefixed with ``NODEFLEET_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export NODEFLEET_NODE_MANAGER__INTERVAL=30000
    export NODEFLEET_GENESIS__PUBLIC_RPC=true

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
import platform
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - exercised only without PyYAML
    raise RuntimeError(
        "PyYAML is required to load nodefleet configuration. Install with "
        "`pip install nodefleet` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "NODEFLEET_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

DEFAULT_PLATFORM = "x86_64-unknown-linux-musl"
DEFAULT_NODE_ARCHIVE_URL = (
    "https://sn-node.s3.eu-west-2.amazonaws.com/safenode-latest-x86_64-unknown-linux-musl.tar.gz"
)
CUSTOM_EVM_NETWORK = "evm-custom"
ALLOWED_PROVIDERS = {"aws", "digital-ocean"}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails or a required value is missing."""


@dataclass(frozen=True)
class NodeManagerConfig:
    """Location of the node manager binary and its shared pacing interval."""

    bin: str = "safenode-manager"
    interval: int | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"bin": self.bin, "interval": self.interval}


@dataclass(frozen=True)
class UploaderConfig:
    """Settings for uploader instances and the autonomi CLI artifact."""

    count: int = 0
    user_prefix: str = "safe"
    home_root: Path = Path("/home")
    service_prefix: str = "autonomi_uploader_"
    autonomi_version: str = "latest"
    platform: str = DEFAULT_PLATFORM
    archive_url: str | None = None
    download_dir: Path = Path("/tmp")
    secrets_file: Path | None = None
    file_size_kb: int = 1024
    upload_interval: float = 10.0
    metrics_file: str = "upload-metrics.csv"
    environment: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "count": self.count,
            "user_prefix": self.user_prefix,
            "home_root": str(self.home_root),
            "service_prefix": self.service_prefix,
            "autonomi_version": self.autonomi_version,
            "platform": self.platform,
            "archive_url": self.archive_url,
            "download_dir": str(self.download_dir),
            "secrets_file": str(self.secrets_file) if self.secrets_file else None,
            "file_size_kb": self.file_size_kb,
            "upload_interval": self.upload_interval,
            "metrics_file": self.metrics_file,
            "environment": list(self.environment),
        }


@dataclass(frozen=True)
class GenesisConfig:
    """Inputs required to bootstrap the genesis node on this host."""

    provider: str = "digital-ocean"
    public_rpc: bool = False
    public_ip: str | None = None
    private_ip: str | None = None
    rewards_address: str | None = None
    max_archived_log_files: int = 5
    max_log_files: int = 10
    log_format: str | None = None
    env: str | None = None
    version: str | None = None
    node_archive_url: str = DEFAULT_NODE_ARCHIVE_URL
    evm_network_type: str = "evm-arbitrum-one"
    evm_rpc_url: str | None = None
    evm_payment_token_address: str | None = None
    evm_data_payments_address: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "provider": self.provider,
            "public_rpc": self.public_rpc,
            "public_ip": self.public_ip,
            "private_ip": self.private_ip,
            "rewards_address": self.rewards_address,
            "max_archived_log_files": self.max_archived_log_files,
            "max_log_files": self.max_log_files,
            "log_format": self.log_format,
            "env": self.env,
            "version": self.version,
            "node_archive_url": self.node_archive_url,
            "evm_network_type": self.evm_network_type,
            "evm_rpc_url": self.evm_rpc_url,
            "evm_payment_token_address": self.evm_payment_token_address,
            "evm_data_payments_address": self.evm_data_payments_address,
        }


@dataclass(frozen=True)
class UpgradeConfig:
    """Optional defaults applied to ``nodes upgrade`` runs."""

    force: bool = False
    env: str | None = None
    version: str | None = None
    pre_upgrade_delay: float | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "force": self.force,
            "env": self.env,
            "version": self.version,
            "pre_upgrade_delay": self.pre_upgrade_delay,
        }


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    unit_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"unit_dir": str(self.unit_dir), "systemctl_bin": self.systemctl_bin}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for nodefleet."""

    config_file: Path
    host: str
    binary_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    node_manager: NodeManagerConfig
    uploaders: UploaderConfig
    genesis: GenesisConfig
    upgrade: UpgradeConfig
    systemd: SystemdConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "host": self.host,
            "binary_dir": str(self.binary_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "node_manager": self.node_manager.to_dict(),
            "uploaders": self.uploaders.to_dict(),
            "genesis": self.genesis.to_dict(),
            "upgrade": self.upgrade.to_dict(),
            "systemd": self.systemd.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/nodefleet/config.yml",
    "host": None,  # derived from the machine hostname when absent
    "binary_dir": "/usr/local/bin",
    "logs_dir": "/var/log/nodefleet",
    "runtime_dir": "/run/nodefleet",
    "templates_dir": "/etc/nodefleet/templates",
    "lock_timeout": 30.0,
    "node_manager": {
        "bin": "safenode-manager",
        "interval": None,
    },
    "uploaders": {
        "count": 0,
        "user_prefix": "safe",
        "home_root": "/home",
        "service_prefix": "autonomi_uploader_",
        "autonomi_version": "latest",
        "platform": DEFAULT_PLATFORM,
        "archive_url": None,
        "download_dir": "/tmp",
        "secrets_file": None,
        "file_size_kb": 1024,
        "upload_interval": 10.0,
        "metrics_file": "upload-metrics.csv",
        "environment": [],
    },
    "genesis": {
        "provider": "digital-ocean",
        "public_rpc": False,
        "public_ip": None,
        "private_ip": None,
        "rewards_address": None,
        "max_archived_log_files": 5,
        "max_log_files": 10,
        "log_format": None,
        "env": None,
        "version": None,
        "node_archive_url": DEFAULT_NODE_ARCHIVE_URL,
        "evm_network_type": "evm-arbitrum-one",
        "evm_rpc_url": None,
        "evm_payment_token_address": None,
        "evm_data_payments_address": None,
    },
    "upgrade": {
        "force": False,
        "env": None,
        "version": None,
        "pre_upgrade_delay": None,
    },
    "systemd": {
        "unit_dir": "/etc/systemd/system",
        "systemctl_bin": "systemctl",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], DEFAULTS[section]).keys())
    for section in ("node_manager", "uploaders", "genesis", "upgrade", "systemd")
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    for section, allowed in SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    genesis_map = _as_dict(raw.get("genesis"), "genesis")
    provider = genesis_map.get("provider")
    if provider is not None and str(provider) not in ALLOWED_PROVIDERS:
        allowed_text = ", ".join(sorted(ALLOWED_PROVIDERS))
        raise ConfigError(f"Unsupported hosting provider '{provider}'. Allowed: {allowed_text}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    binary_dir = _to_path(raw.get("binary_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    host = _optional_str(raw.get("host"), "host") or platform.node()

    nm_mapping = _as_dict(raw.get("node_manager"), "node_manager")
    interval_value = nm_mapping.get("interval")
    node_manager = NodeManagerConfig(
        bin=str(nm_mapping.get("bin", "safenode-manager")),
        interval=(
            None
            if interval_value is None
            else _expect_int(interval_value, "node_manager.interval", default=0)
        ),
    )
    if node_manager.interval is not None and node_manager.interval < 0:
        raise ConfigError("node_manager.interval must be non-negative.")

    up_mapping = _as_dict(raw.get("uploaders"), "uploaders")
    count = _expect_int(up_mapping.get("count"), "uploaders.count", default=0)
    if count < 0:
        raise ConfigError("uploaders.count must be non-negative.")
    secrets_value = up_mapping.get("secrets_file")
    environment_raw = up_mapping.get("environment")
    environment = tuple(
        str(item) for item in _as_sequence(environment_raw or [], "uploaders.environment")
    )
    uploaders = UploaderConfig(
        count=count,
        user_prefix=str(up_mapping.get("user_prefix", "safe")),
        home_root=_to_path(up_mapping.get("home_root", "/home")),
        service_prefix=str(up_mapping.get("service_prefix", "autonomi_uploader_")),
        autonomi_version=str(up_mapping.get("autonomi_version", "latest")),
        platform=str(up_mapping.get("platform", DEFAULT_PLATFORM)),
        archive_url=_optional_str(up_mapping.get("archive_url"), "uploaders.archive_url"),
        download_dir=_to_path(up_mapping.get("download_dir", "/tmp")),
        secrets_file=_to_path(secrets_value) if secrets_value else None,
        file_size_kb=_expect_int(
            up_mapping.get("file_size_kb"), "uploaders.file_size_kb", default=1024
        ),
        upload_interval=_expect_non_negative_float(
            up_mapping.get("upload_interval"), "uploaders.upload_interval", default=10.0
        ),
        metrics_file=str(up_mapping.get("metrics_file", "upload-metrics.csv")),
        environment=environment,
    )

    gen_mapping = _as_dict(raw.get("genesis"), "genesis")
    genesis = GenesisConfig(
        provider=str(gen_mapping.get("provider", "digital-ocean")),
        public_rpc=_expect_bool(gen_mapping.get("public_rpc"), "genesis.public_rpc", default=False),
        public_ip=_optional_str(gen_mapping.get("public_ip"), "genesis.public_ip"),
        private_ip=_optional_str(gen_mapping.get("private_ip"), "genesis.private_ip"),
        rewards_address=_optional_str(
            gen_mapping.get("rewards_address"), "genesis.rewards_address"
        ),
        max_archived_log_files=_expect_int(
            gen_mapping.get("max_archived_log_files"),
            "genesis.max_archived_log_files",
            default=5,
        ),
        max_log_files=_expect_int(
            gen_mapping.get("max_log_files"), "genesis.max_log_files", default=10
        ),
        log_format=_optional_str(gen_mapping.get("log_format"), "genesis.log_format"),
        env=_optional_str(gen_mapping.get("env"), "genesis.env"),
        version=_optional_str(gen_mapping.get("version"), "genesis.version"),
        node_archive_url=str(gen_mapping.get("node_archive_url") or DEFAULT_NODE_ARCHIVE_URL),
        evm_network_type=str(gen_mapping.get("evm_network_type", "evm-arbitrum-one")),
        evm_rpc_url=_optional_str(gen_mapping.get("evm_rpc_url"), "genesis.evm_rpc_url"),
        evm_payment_token_address=_optional_str(
            gen_mapping.get("evm_payment_token_address"), "genesis.evm_payment_token_address"
        ),
        evm_data_payments_address=_optional_str(
            gen_mapping.get("evm_data_payments_address"), "genesis.evm_data_payments_address"
        ),
    )

    upg_mapping = _as_dict(raw.get("upgrade"), "upgrade")
    delay_value = upg_mapping.get("pre_upgrade_delay")
    upgrade = UpgradeConfig(
        force=_expect_bool(upg_mapping.get("force"), "upgrade.force", default=False),
        env=_optional_str(upg_mapping.get("env"), "upgrade.env"),
        version=_optional_str(upg_mapping.get("version"), "upgrade.version"),
        pre_upgrade_delay=(
            None
            if delay_value is None
            else _expect_non_negative_float(
                delay_value, "upgrade.pre_upgrade_delay", default=0.0
            )
        ),
    )

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        unit_dir=_to_path(systemd_mapping.get("unit_dir", "/etc/systemd/system")),
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
    )

    return AppConfig(
        config_file=config_file,
        host=host,
        binary_dir=binary_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        templates_dir=templates_dir,
        lock_timeout=lock_timeout,
        node_manager=node_manager,
        uploaders=uploaders,
        genesis=genesis,
        upgrade=upgrade,
        systemd=systemd,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _optional_str(value: object | None, label: str) -> str | None:
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        raise ConfigError(f"Expected {label} to be a string. Got {type(value).__name__}.")
    text = str(value).strip()
    return text or None


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "yes", "1"}:
        return True
    if isinstance(value, str) and value.strip().lower() in {"false", "no", "0"}:
        return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_number(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must be non-negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "CUSTOM_EVM_NETWORK",
    "GenesisConfig",
    "NodeManagerConfig",
    "SystemdConfig",
    "UpgradeConfig",
    "UploaderConfig",
    "load_config",
]
