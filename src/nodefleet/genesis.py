"""Bootstrap the genesis node on the host that should own it.

The node manager's ``status --json`` output is the only source of truth for
whether a genesis node exists. This is a read-then-act sequence with no
cross-host coordination: launching the bootstrap concurrently on several
candidate hosts can create more than one genesis node. Designate the genesis
host out of band and run the bootstrap there only.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .arguments import optional_flags
from .config import CUSTOM_EVM_NETWORK, ConfigError, GenesisConfig
from .providers.node_manager import NodeManagerClient, NodeManagerStatus

LOGGER = logging.getLogger(__name__)

Step = tuple[str, str, str | None]


def resolve_rpc_address(config: GenesisConfig) -> str:
    """Return the address the genesis node's RPC endpoint should bind to.

    With public RPC enabled, Digital Ocean droplets use their public address
    directly, while AWS instances bind the private interface address that the
    provider maps the public address onto. Without public RPC the private
    address is always used.
    """
    if config.public_rpc and config.provider == "digital-ocean":
        address, label = config.public_ip, "genesis.public_ip"
    else:
        address, label = config.private_ip, "genesis.private_ip"
    if not address:
        raise ConfigError(
            f"{label} is required to resolve the RPC address "
            f"(provider={config.provider}, public_rpc={config.public_rpc})."
        )
    return address


def build_add_node_args(config: GenesisConfig, rpc_address: str) -> list[str]:
    """Return the ``add --first ...`` arguments for the genesis node."""
    if not config.rewards_address:
        raise ConfigError("genesis.rewards_address is required to add the genesis node.")

    args = [
        "add",
        "--first",
        f"--rpc-address={rpc_address}",
        f"--rewards-address={config.rewards_address}",
        f"--max-archived-log-files={config.max_archived_log_files}",
        f"--max-log-files={config.max_log_files}",
        *optional_flags(
            [
                ("--log-format", config.log_format),
                ("--env", config.env),
            ]
        ),
    ]
    if config.version:
        args.append(f"--version={config.version}")
    else:
        args.append(f"--url={config.node_archive_url}")

    args.append(config.evm_network_type)
    if config.evm_network_type == CUSTOM_EVM_NETWORK:
        custom = [
            ("--rpc-url", config.evm_rpc_url),
            ("--payment-token-address", config.evm_payment_token_address),
            ("--data-payments-address", config.evm_data_payments_address),
        ]
        missing = [flag.lstrip("-") for flag, value in custom if not value]
        if missing:
            raise ConfigError(
                f"{CUSTOM_EVM_NETWORK} requires values for: {', '.join(missing)}."
            )
        args.extend(optional_flags(custom))
    return args


@dataclass(slots=True)
class GenesisOutcome:
    """Record of a genesis bootstrap run."""

    rpc_address: str
    genesis_existed: bool = False
    status_empty: bool = False
    add_command: list[str] | None = None
    start_command: list[str] | None = None
    steps: list[Step] = field(default_factory=list)
    dry_run: bool = False


@dataclass(slots=True)
class GenesisCoordinator:
    """Create the genesis node exactly once, then start node services."""

    client: NodeManagerClient
    config: GenesisConfig
    interval: int | None

    def genesis_exists(self) -> tuple[bool, NodeManagerStatus]:
        """Query the node manager; empty output counts as no genesis."""
        status = self.client.status()
        return status.genesis_exists, status

    def bootstrap(self, *, dry_run: bool = False) -> GenesisOutcome:
        """Add the genesis node if absent, then start services."""
        if self.interval is None:
            raise ConfigError("node_manager.interval is required to start the genesis node.")
        rpc_address = resolve_rpc_address(self.config)
        outcome = GenesisOutcome(rpc_address=rpc_address, dry_run=dry_run)
        outcome.steps.append(("rpc.resolve", "success", rpc_address))

        exists, status = self.genesis_exists()
        outcome.genesis_existed = exists
        outcome.status_empty = status.empty
        outcome.steps.append(
            (
                "status.query",
                "success",
                "empty" if status.empty else f"{len(status.nodes)} node(s), genesis={exists}",
            )
        )

        if exists:
            outcome.steps.append(("genesis.add", "skipped", "genesis already present"))
        else:
            args = build_add_node_args(self.config, rpc_address)
            outcome.add_command = self.client.command(args, verbose=True)
            if dry_run:
                outcome.steps.append(("genesis.add", "skipped", "dry-run"))
            else:
                LOGGER.debug("Adding genesis node with %s", outcome.add_command)
                self.client.add(args)
                outcome.steps.append(("genesis.add", "success", " ".join(outcome.add_command)))

        outcome.start_command = self.client.command(
            ["start", f"--interval={self.interval}"], verbose=True
        )
        if dry_run:
            outcome.steps.append(("services.start", "skipped", "dry-run"))
        else:
            self.client.start(self.interval)
            outcome.steps.append(("services.start", "success", f"interval={self.interval}"))
        return outcome


__all__ = [
    "GenesisCoordinator",
    "GenesisOutcome",
    "build_add_node_args",
    "resolve_rpc_address",
]
