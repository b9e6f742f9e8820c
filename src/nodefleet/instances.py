"""Enumerate the uploader instances that should exist on a host.

Instances are numbered ``1..N``. Each one owns an OS user
(``<prefix><index>``) and a systemd service
(``<service_prefix><index>``). Nothing here is persisted; the set is derived
from the desired count or rediscovered from the passwd database each run.
"""
from __future__ import annotations

import pwd
import re
from dataclasses import dataclass
from pathlib import Path

from .config import ConfigError

DEFAULT_USER_PREFIX = "safe"
DEFAULT_SERVICE_PREFIX = "autonomi_uploader_"


@dataclass(frozen=True, slots=True)
class Instance:
    """A single uploader instance on this host."""

    index: int
    user: str
    service_name: str
    home: Path

    @property
    def unit_name(self) -> str:
        """Return the systemd unit file name."""
        return f"{self.service_name}.service"


def make_instance(
    index: int,
    *,
    user_prefix: str = DEFAULT_USER_PREFIX,
    service_prefix: str = DEFAULT_SERVICE_PREFIX,
    home_root: Path = Path("/home"),
) -> Instance:
    """Return the :class:`Instance` numbered *index*."""
    if index < 1:
        raise ValueError(f"Instance index must be >= 1. Got {index}.")
    user = f"{user_prefix}{index}"
    return Instance(
        index=index,
        user=user,
        service_name=f"{service_prefix}{index}",
        home=home_root / user,
    )


def enumerate_instances(
    count: int,
    *,
    user_prefix: str = DEFAULT_USER_PREFIX,
    service_prefix: str = DEFAULT_SERVICE_PREFIX,
    home_root: Path = Path("/home"),
) -> list[Instance]:
    """Return instances ``1..count`` in order.

    Instances above *count* that exist from an earlier, larger run are not
    returned and are left alone.
    """
    if count < 0:
        raise ConfigError(f"Instance count must be non-negative. Got {count}.")
    return [
        make_instance(
            index,
            user_prefix=user_prefix,
            service_prefix=service_prefix,
            home_root=home_root,
        )
        for index in range(1, count + 1)
    ]


def instance_for_user(
    name: str,
    *,
    user_prefix: str = DEFAULT_USER_PREFIX,
    service_prefix: str = DEFAULT_SERVICE_PREFIX,
    home_root: Path = Path("/home"),
) -> Instance:
    """Derive the instance owned by the OS user *name*."""
    match = re.fullmatch(rf"{re.escape(user_prefix)}([0-9]+)", name)
    if match is None:
        raise ValueError(f"User '{name}' does not follow the '{user_prefix}<N>' convention.")
    return make_instance(
        int(match.group(1)),
        user_prefix=user_prefix,
        service_prefix=service_prefix,
        home_root=home_root,
    )


def discover_instances(
    *,
    user_prefix: str = DEFAULT_USER_PREFIX,
    service_prefix: str = DEFAULT_SERVICE_PREFIX,
    home_root: Path = Path("/home"),
) -> list[Instance]:
    """Return instances for every existing ``<prefix><N>`` OS user, sorted by index."""
    found: dict[int, Instance] = {}
    for entry in pwd.getpwall():
        try:
            instance = instance_for_user(
                entry.pw_name,
                user_prefix=user_prefix,
                service_prefix=service_prefix,
                home_root=home_root,
            )
        except ValueError:
            continue
        found[instance.index] = instance
    return [found[index] for index in sorted(found)]


__all__ = [
    "Instance",
    "discover_instances",
    "enumerate_instances",
    "instance_for_user",
    "make_instance",
]
