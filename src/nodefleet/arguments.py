"""Helpers for building CLI argument vectors with optional flags."""
from __future__ import annotations

from collections.abc import Iterable


def optional_flags(pairs: Iterable[tuple[str, object | None]]) -> list[str]:
    """Flatten ``(flag, value)`` pairs, dropping unset ones.

    ``True`` emits the bare flag, other values emit ``flag=value``. ``None``,
    ``False`` and blank strings are omitted entirely so no empty flag ever
    reaches the external command.
    """
    argv: list[str] = []
    for flag, value in pairs:
        if value is None or value is False:
            continue
        if value is True:
            argv.append(flag)
            continue
        text = str(value).strip()
        if not text:
            continue
        argv.append(f"{flag}={text}")
    return argv


__all__ = ["optional_flags"]
