"""Download and unpack single-binary release archives.

Archives are ``.tar.gz`` files containing one executable at the top level,
published under a fixed URL pattern parameterised by version and platform
triple. Installation is gated on a stat of the final binary path; the temp
archive is always removed before a fresh download so a stale or partial file
from an interrupted run is never trusted.
"""
from __future__ import annotations

import logging
import os
import tarfile
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath
from typing import Literal
from urllib.parse import urlparse

import requests

from ..config import DEFAULT_PLATFORM

LOGGER = logging.getLogger(__name__)

AUTONOMI_ARCHIVE_BASE = "https://autonomi-cli.s3.eu-west-2.amazonaws.com"


class ArtifactInstallError(RuntimeError):
    """Base class for artifact installation failures."""


class DownloadError(ArtifactInstallError):
    """Raised when an archive cannot be fetched."""


class ExtractError(ArtifactInstallError):
    """Raised when an archive cannot be unpacked into a usable binary."""


InstallStatus = Literal["installed", "already-present", "replaced"]


@dataclass(frozen=True, slots=True)
class InstallResult:
    """Outcome of an :class:`ArtifactInstaller` call."""

    status: InstallStatus
    binary: Path
    url: str
    installed_at: str | None = None

    @property
    def changed(self) -> bool:
        """Return ``True`` when the binary on disk was (re)written."""
        return self.status != "already-present"


def archive_url(version: str, platform: str = DEFAULT_PLATFORM) -> str:
    """Return the autonomi archive URL for *version* and *platform*."""
    normalized = version.strip()
    if not normalized:
        raise ValueError("Version identifier must be a non-empty string.")
    return f"{AUTONOMI_ARCHIVE_BASE}/autonomi-{normalized}-{platform}.tar.gz"


class ArtifactInstaller:
    """Fetch an archive over HTTPS and extract its binary into a directory."""

    def __init__(
        self,
        *,
        binary_name: str = "autonomi",
        download_dir: Path = Path("/tmp"),
        session: requests.Session | None = None,
        timeout: float | None = 60.0,
        chunk_size: int = 1024 * 1024,
    ) -> None:
        """Initialise the installer with the binary name and scratch directory."""
        self.binary_name = binary_name
        self.download_dir = download_dir.expanduser()
        self.session = session
        self.timeout = timeout
        self.chunk_size = chunk_size

    def binary_path(self, dest_dir: Path) -> Path:
        """Return where the binary lives once installed into *dest_dir*."""
        return dest_dir / self.binary_name

    def archive_path(self, url: str) -> Path:
        """Return the temp path the archive for *url* is downloaded to."""
        name = PurePosixPath(urlparse(url).path).name
        if not name:
            raise DownloadError(f"Cannot derive an archive file name from URL: {url}")
        return self.download_dir / name

    def ensure_binary(self, url: str, dest_dir: Path, *, dry_run: bool = False) -> InstallResult:
        """Install the binary from *url* unless it is already in *dest_dir*."""
        binary = self.binary_path(dest_dir)
        if binary.exists():
            return InstallResult(status="already-present", binary=binary, url=url)
        if dry_run:
            return InstallResult(status="installed", binary=binary, url=url)
        self._install(url, dest_dir)
        return InstallResult(
            status="installed",
            binary=binary,
            url=url,
            installed_at=_timestamp(),
        )

    def replace_binary(self, url: str, dest_dir: Path, *, dry_run: bool = False) -> InstallResult:
        """Remove any installed binary and install a fresh copy from *url*."""
        binary = self.binary_path(dest_dir)
        existed = binary.exists()
        if dry_run:
            return InstallResult(
                status="replaced" if existed else "installed",
                binary=binary,
                url=url,
            )
        binary.unlink(missing_ok=True)
        self._install(url, dest_dir)
        return InstallResult(
            status="replaced" if existed else "installed",
            binary=binary,
            url=url,
            installed_at=_timestamp(),
        )

    # ------------------------------------------------------------------
    def _install(self, url: str, dest_dir: Path) -> None:
        archive = self.archive_path(url)
        archive.unlink(missing_ok=True)
        try:
            self._download(url, archive)
            self._extract(archive, dest_dir)
        finally:
            archive.unlink(missing_ok=True)

    def _download(self, url: str, destination: Path) -> None:
        """Stream *url* into *destination* (isolated for testing)."""
        LOGGER.debug("Downloading %s to %s", url, destination)
        session = self.session or requests.Session()
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            with session.get(url, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()
                with destination.open("wb") as handle:
                    for chunk in response.iter_content(chunk_size=self.chunk_size):
                        if chunk:
                            handle.write(chunk)
        except requests.RequestException as exc:
            raise DownloadError(f"Failed to download {url}: {exc}") from exc
        except OSError as exc:
            raise DownloadError(f"Failed to write {destination}: {exc}") from exc

    def _extract(self, archive: Path, dest_dir: Path) -> None:
        try:
            dest_dir.mkdir(parents=True, exist_ok=True)
            with tarfile.open(archive, "r:*") as bundle:
                members = bundle.getmembers()
                for member in members:
                    member_path = PurePosixPath(member.name)
                    if member_path.is_absolute() or ".." in member_path.parts:
                        raise ExtractError(f"Refusing unsafe archive member '{member.name}'.")
                bundle.extractall(dest_dir, members=members, filter="data")
        except (tarfile.TarError, OSError) as exc:
            raise ExtractError(f"Failed to extract {archive}: {exc}") from exc

        binary = self.binary_path(dest_dir)
        if not binary.is_file():
            raise ExtractError(f"Archive {archive.name} did not contain '{self.binary_name}'.")
        os.chmod(binary, 0o755)


def _timestamp() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


__all__ = [
    "ArtifactInstallError",
    "ArtifactInstaller",
    "DownloadError",
    "ExtractError",
    "InstallResult",
    "archive_url",
]
