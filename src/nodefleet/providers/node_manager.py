"""Subprocess wrapper around the node manager CLI (``safenode-manager``)."""
from __future__ import annotations

import json
import logging
import subprocess
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

LOGGER = logging.getLogger(__name__)

Runner = Callable[[Sequence[str]], subprocess.CompletedProcess[str]]


class NodeManagerError(RuntimeError):
    """Raised when the node manager exits non-zero or cannot be executed."""

    def __init__(self, message: str, *, returncode: int | None = None, stderr: str = "") -> None:
        """Record the exit code and error output alongside the message."""
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class ParseError(RuntimeError):
    """Raised when ``status --json`` output is not the expected shape."""


@dataclass(slots=True)
class NodeManagerStatus:
    """Parsed ``status --json`` payload."""

    nodes: list[dict[str, Any]] = field(default_factory=list)
    empty: bool = False

    @property
    def genesis_exists(self) -> bool:
        """Return ``True`` when any listed node is flagged as genesis."""
        return any(node.get("genesis") is True for node in self.nodes)


def parse_status(text: str) -> NodeManagerStatus:
    """Parse ``status --json`` output.

    Empty output means the manager has nothing registered yet and is treated
    as a status with no nodes.
    """
    stripped = text.strip()
    if not stripped:
        return NodeManagerStatus(nodes=[], empty=True)
    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError as exc:
        raise ParseError(f"Node manager status is not valid JSON: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise ParseError("Node manager status must be a JSON object.")
    raw_nodes = payload.get("nodes")
    if not isinstance(raw_nodes, list):
        raise ParseError("Node manager status is missing a 'nodes' array.")
    nodes: list[dict[str, Any]] = []
    for index, entry in enumerate(raw_nodes):
        if not isinstance(entry, Mapping):
            raise ParseError(f"Node entry {index} in status output is not an object.")
        nodes.append(dict(entry))
    return NodeManagerStatus(nodes=nodes)


@dataclass(slots=True)
class NodeManagerClient:
    """Invoke node manager subcommands, surfacing failures as exceptions."""

    bin: str = "safenode-manager"
    runner: Runner | None = None

    def status(self) -> NodeManagerStatus:
        """Return the parsed ``status --json`` output."""
        result = self.run(["status", "--json"])
        return parse_status(result.stdout or "")

    def add(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        """Run ``add`` with the already-built *args* (which start with ``add``)."""
        return self.run(args, verbose=True)

    def start(self, interval: int) -> subprocess.CompletedProcess[str]:
        """Start all registered node services, pausing *interval* ms between them."""
        return self.run(["start", f"--interval={interval}"], verbose=True)

    def upgrade(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        """Run ``upgrade`` with the already-built *args* (which start with ``upgrade``)."""
        return self.run(args)

    def command(self, args: Sequence[str], *, verbose: bool = False) -> list[str]:
        """Return the full argv for *args*."""
        argv = [self.bin]
        if verbose:
            argv.append("-v")
        argv.extend(args)
        return argv

    def run(
        self,
        args: Sequence[str],
        *,
        verbose: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """Execute the node manager with *args*; non-zero exits raise."""
        argv = self.command(args, verbose=verbose)
        LOGGER.debug("Running %s", " ".join(argv))
        runner = self.runner or _default_runner
        try:
            result = runner(argv)
        except FileNotFoundError as exc:
            raise NodeManagerError(f"{self.bin} not found: {exc}") from exc
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            message = stderr or (result.stdout or "").strip() or "no output"
            raise NodeManagerError(
                f"{' '.join(argv[:3])} failed (exit {result.returncode}): {message}",
                returncode=result.returncode,
                stderr=stderr,
            )
        return result


def _default_runner(argv: Sequence[str]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(  # noqa: S603, S607
        list(argv),
        capture_output=True,
        text=True,
        check=False,
    )


__all__ = [
    "NodeManagerClient",
    "NodeManagerError",
    "NodeManagerStatus",
    "ParseError",
    "parse_status",
]
