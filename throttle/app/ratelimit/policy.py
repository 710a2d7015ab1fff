"""Resolution of the burst/rate pair that applies to a key.

Overrides are classified once, when the resolver is built: keys that parse
as a multi-host CIDR block become block overrides, everything else (plain
addresses, single-host networks such as ``/32``, usernames) is matched
exactly. Exact overrides always win over blocks; among blocks the first
configured match wins.
"""

import ipaddress
from typing import Any, Mapping, Optional, Tuple, Union

from pydantic import ValidationError

from throttle.app.core.config import OverrideConfig, ThrottleOptions
from throttle.app.core.logging import get_logger
from throttle.app.exceptions import ConfigurationError
from throttle.app.ratelimit.models import Network, Override, Policy

logger = get_logger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def parse_network(value: str) -> Optional[Network]:
    """Parse CIDR notation (host bits allowed), or None if ``value`` is not a network."""
    try:
        return ipaddress.ip_network(value.strip(), strict=False)
    except ValueError:
        return None


def parse_address(value: str) -> Optional[IPAddress]:
    """Parse a bare IP address, or None for anything else (e.g. a username)."""
    try:
        return ipaddress.ip_address(value.strip())
    except ValueError:
        return None


def classify_override_key(key: str) -> Tuple[Optional[str], Optional[Network]]:
    """Classify an override key as an exact key or a CIDR block.

    Returns:
        ``(exact_key, None)`` for exact-match keys, ``(None, network)`` for
        multi-host blocks. Single-host networks are exact keys, normalised
        to the bare address.
    """
    network = parse_network(key)
    if network is None:
        return key, None
    if network.num_addresses == 1:
        return str(network.network_address), None
    return None, network


def first_in_chain(key: str) -> str:
    """First element of a comma-delimited forwarded-for chain."""
    return key.split(",", 1)[0].strip()


class PolicyResolver:
    """Resolves the effective (burst, rate) for an observed key.

    Override tables are built at construction and never mutated, so
    ``resolve`` needs no locking.
    """

    def __init__(
        self,
        default_burst: float,
        default_rate: float,
        overrides: Optional[Mapping[str, Any]] = None,
    ):
        """Initialize resolver.

        Args:
            default_burst: Bucket capacity for keys without an override
            default_rate: Fill rate (tokens/second) for keys without an override
            overrides: Mapping of exact key or CIDR block to an
                ``OverrideConfig`` (or a dict with ``burst`` and ``rate``)

        Raises:
            ConfigurationError: If an override lacks a valid burst or rate
        """
        self.default_burst = default_burst
        self.default_rate = default_rate
        self._exact: dict[str, Override] = {}
        self._blocks: list[Override] = []

        for key, value in (overrides or {}).items():
            try:
                config = OverrideConfig.model_validate(value)
            except ValidationError as e:
                raise ConfigurationError(
                    f"Invalid override for {key!r}: burst and rate must both be set and non-negative",
                    errors=e.errors(include_url=False),
                ) from e

            exact_key, network = classify_override_key(key)
            if network is None:
                self._exact[exact_key] = Override(burst=config.burst, rate=config.rate)
            else:
                self._blocks.append(Override(burst=config.burst, rate=config.rate, network=network))

        logger.debug(
            f"Policy resolver built with {len(self._exact)} exact and "
            f"{len(self._blocks)} block overrides"
        )

    @classmethod
    def from_options(cls, options: ThrottleOptions) -> "PolicyResolver":
        return cls(options.burst, options.rate, options.overrides)

    @property
    def exact_overrides(self) -> Mapping[str, Override]:
        return dict(self._exact)

    @property
    def block_overrides(self) -> Tuple[Override, ...]:
        return tuple(self._blocks)

    def _match_block(self, address: Optional[IPAddress]) -> Optional[Override]:
        if address is None:
            return None
        for block in self._blocks:
            # Mixed IPv4/IPv6 containment is simply False
            if address in block.network:
                return block
        return None

    def resolve(self, key: str) -> Policy:
        """Resolve the policy for ``key``.

        Order: exact override for the raw key, exact override for the first
        element of a comma-delimited chain (as written, then in canonical
        address form), first containing block, defaults.

        Args:
            key: Identity string (IP, forwarded-for chain or username)

        Returns:
            Policy keyed on the effective (first-in-chain) key
        """
        effective = first_in_chain(key)

        override = self._exact.get(key)
        if override is None and effective != key:
            override = self._exact.get(effective)
        if override is None:
            address = parse_address(effective)
            # Single-host override keys are stored in canonical form
            if address is not None:
                override = self._exact.get(str(address))
            if override is None:
                override = self._match_block(address)

        if override is None:
            return Policy(key=effective, burst=self.default_burst, rate=self.default_rate)
        return Policy(key=effective, burst=override.burst, rate=override.rate)
