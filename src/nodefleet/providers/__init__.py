"""Provider interfaces for nodefleet."""
from __future__ import annotations

from .artifact_installer import (
    ArtifactInstaller,
    ArtifactInstallError,
    DownloadError,
    ExtractError,
    InstallResult,
    archive_url,
)
from .node_manager import (
    NodeManagerClient,
    NodeManagerError,
    NodeManagerStatus,
    ParseError,
    parse_status,
)
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "ArtifactInstallError",
    "ArtifactInstaller",
    "DownloadError",
    "ExtractError",
    "InstallResult",
    "NodeManagerClient",
    "NodeManagerError",
    "NodeManagerStatus",
    "ParseError",
    "SystemdError",
    "SystemdProvider",
    "archive_url",
    "parse_status",
]
