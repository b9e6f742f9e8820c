"""Synthetic upload workload run by each uploader instance.

Each iteration writes a file of random bytes, uploads it with
``autonomi file upload`` and appends a row to the metrics CSV:
``elapsed_seconds,file_size_kb,chunk_count,store_cost`` on success or
``elapsed_seconds,file_size_kb`` on failure.
"""
from __future__ import annotations

import csv
import logging
import os
import re
import secrets
import subprocess
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

LOGGER = logging.getLogger(__name__)

METRICS_HEADER = ("elapsed_seconds", "file_size_kb", "chunk_count", "store_cost")

_CHUNKS_PATTERN = re.compile(r"(\d+)\s+chunks?\b|chunks?[^0-9\n]*(\d+)", re.IGNORECASE)
_COST_PATTERN = re.compile(r"cost[^0-9\n]*([0-9]+(?:\.[0-9]+)?)", re.IGNORECASE)

Runner = Callable[[Sequence[str], Mapping[str, str]], subprocess.CompletedProcess[str]]


class MetricsLog:
    """Append-only CSV of upload timings; the header is written once."""

    def __init__(self, path: Path) -> None:
        """Bind the log to *path* (created lazily on the first row)."""
        self.path = path

    def record_success(
        self,
        elapsed_seconds: float,
        file_size_kb: int,
        chunk_count: int | None,
        store_cost: str | None,
    ) -> None:
        """Append a four-column success row."""
        self._append(
            [
                f"{elapsed_seconds:.2f}",
                str(file_size_kb),
                "" if chunk_count is None else str(chunk_count),
                store_cost or "",
            ]
        )

    def record_failure(self, elapsed_seconds: float, file_size_kb: int) -> None:
        """Append a two-column failure row."""
        self._append([f"{elapsed_seconds:.2f}", str(file_size_kb)])

    def _append(self, row: list[str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        write_header = not self.path.exists() or self.path.stat().st_size == 0
        with self.path.open("a", encoding="utf-8", newline="") as handle:
            writer = csv.writer(handle, lineterminator="\n")
            if write_header:
                writer.writerow(METRICS_HEADER)
            writer.writerow(row)


@dataclass(frozen=True, slots=True)
class UploadResult:
    """Outcome of a single upload iteration."""

    success: bool
    elapsed_seconds: float
    file_size_kb: int
    chunk_count: int | None = None
    store_cost: str | None = None


def parse_upload_output(text: str) -> tuple[int | None, str | None]:
    """Extract the chunk count and store cost from ``autonomi file upload`` output."""
    chunk_count: int | None = None
    store_cost: str | None = None
    chunk_match = _CHUNKS_PATTERN.search(text)
    if chunk_match:
        chunk_count = int(chunk_match.group(1) or chunk_match.group(2))
    cost_match = _COST_PATTERN.search(text)
    if cost_match:
        store_cost = cost_match.group(1)
    return chunk_count, store_cost


@dataclass(slots=True)
class UploadWorkload:
    """Generate, upload and record random files in a loop."""

    autonomi_bin: str
    metrics: MetricsLog
    work_dir: Path
    file_size_kb: int = 1024
    runner: Runner | None = None
    clock: Callable[[], float] = time.monotonic

    def run_once(self) -> UploadResult:
        """Upload one freshly generated file and record the result."""
        self.work_dir.mkdir(parents=True, exist_ok=True)
        path = self.work_dir / f"random-{secrets.token_hex(8)}.bin"
        try:
            _write_random_file(path, self.file_size_kb)
            argv = [self.autonomi_bin, "file", "upload", str(path)]
            runner = self.runner or _default_runner
            started = self.clock()
            try:
                result = runner(argv, dict(os.environ))
            except OSError as exc:
                elapsed = self.clock() - started
                LOGGER.warning("Upload could not run %s: %s", self.autonomi_bin, exc)
                return self._failed(elapsed)
            elapsed = self.clock() - started
        finally:
            path.unlink(missing_ok=True)

        if result.returncode != 0:
            LOGGER.warning(
                "Upload failed (exit %s): %s",
                result.returncode,
                (result.stderr or result.stdout or "").strip(),
            )
            return self._failed(elapsed)

        chunk_count, store_cost = parse_upload_output(
            f"{result.stdout or ''}\n{result.stderr or ''}"
        )
        self.metrics.record_success(elapsed, self.file_size_kb, chunk_count, store_cost)
        return UploadResult(
            success=True,
            elapsed_seconds=elapsed,
            file_size_kb=self.file_size_kb,
            chunk_count=chunk_count,
            store_cost=store_cost,
        )

    def _failed(self, elapsed: float) -> UploadResult:
        self.metrics.record_failure(elapsed, self.file_size_kb)
        return UploadResult(success=False, elapsed_seconds=elapsed, file_size_kb=self.file_size_kb)

    def run_forever(
        self,
        interval: float,
        *,
        iterations: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> list[UploadResult]:
        """Repeat :meth:`run_once`, pausing *interval* seconds between uploads."""
        results: list[UploadResult] = []
        completed = 0
        while iterations is None or completed < iterations:
            results.append(self.run_once())
            completed += 1
            if iterations is None:
                # Unbounded loops keep no history.
                results.clear()
            if iterations is None or completed < iterations:
                sleep(interval)
        return results


def _write_random_file(path: Path, size_kb: int) -> None:
    with path.open("wb") as handle:
        for _ in range(size_kb):
            handle.write(os.urandom(1024))


def _default_runner(
    argv: Sequence[str], env: Mapping[str, str]
) -> subprocess.CompletedProcess[str]:
    return subprocess.run(  # noqa: S603, S607
        list(argv),
        capture_output=True,
        text=True,
        check=False,
        env=dict(env),
    )


__all__ = [
    "METRICS_HEADER",
    "MetricsLog",
    "UploadResult",
    "UploadWorkload",
    "parse_upload_output",
]
