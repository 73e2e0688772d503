"""Network profiles keyed by network id."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, replace
from datetime import timedelta

MAINNET_BOOTNODE = "/dnsaddr/mainnet.ethsana.org"
TESTNET_BOOTNODE = "/dnsaddr/testnet.ethsana.org"

# Chain id -1 tells the node to take the value reported by the chain backend.
UNKNOWN_CHAIN_ID = -1


@dataclass(frozen=True, slots=True)
class NetworkProfile:
    bootnodes: tuple[str, ...]
    block_time: timedelta
    chain_id: int


_KNOWN_NETWORKS: dict[int, tuple[tuple[str, ...], int]] = {
    1: ((MAINNET_BOOTNODE,), 100),
    5: ((TESTNET_BOOTNODE,), 5),  # staging
    100: ((MAINNET_BOOTNODE,), 100),
    31337: ((), 31337),
}


def profile_for_network(network_id: int, default_block_time: int) -> NetworkProfile:
    bootnodes, chain_id = _KNOWN_NETWORKS.get(network_id, ((), UNKNOWN_CHAIN_ID))
    return NetworkProfile(
        bootnodes=bootnodes,
        block_time=timedelta(seconds=default_block_time),
        chain_id=chain_id,
    )


def resolve_network_profile(
    network_id: int,
    default_block_time: int,
    *,
    bootnodes: Sequence[str] | None = None,
    block_time: int | None = None,
) -> NetworkProfile:
    """Build the profile for ``network_id`` and apply explicit overrides.

    ``None`` means the caller did not set the option. An explicitly set boot
    node list wins even when empty; a block time override only applies when
    it is non-zero. The chain id always comes from the table.
    """
    profile = profile_for_network(network_id, default_block_time)
    if bootnodes is not None:
        profile = replace(profile, bootnodes=tuple(bootnodes))
    if block_time:
        profile = replace(profile, block_time=timedelta(seconds=block_time))
    return profile


__all__ = [
    "MAINNET_BOOTNODE",
    "NetworkProfile",
    "TESTNET_BOOTNODE",
    "UNKNOWN_CHAIN_ID",
    "profile_for_network",
    "resolve_network_profile",
]
