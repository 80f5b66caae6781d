"""
Peer Addresses and Selection

Peers come from an external presence/directory service as host:port pairs.
The transfer engine never discovers peers itself; it only shuffles, probes
and picks from the list it is given.
"""

import random
from dataclasses import dataclass
from typing import Iterable, List, Optional, Protocol, Sequence

from ..errors import ConfigurationError

# The catalog handshake listens next to the transfer port
CATALOG_PORT_OFFSET = 1


@dataclass(frozen=True)
class PeerAddress:
    """A peer's transfer endpoint."""
    host: str
    port: int

    @property
    def catalog_port(self) -> int:
        return self.port + CATALOG_PORT_OFFSET

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"

    @classmethod
    def parse(cls, value: str) -> 'PeerAddress':
        """
        Parse "host:port".

        Raises:
            ConfigurationError: On a malformed address
        """
        host, sep, port = value.strip().rpartition(':')
        if not sep or not host:
            raise ConfigurationError(f"Invalid peer address: {value!r} (use host:port)")
        try:
            port_number = int(port)
        except ValueError:
            raise ConfigurationError(f"Invalid peer port: {value!r}") from None
        if not 0 < port_number <= 65535:
            raise ConfigurationError(f"Peer port out of range: {value!r}")
        return cls(host=host, port=port_number)


def parse_peers(values: Iterable[str]) -> List[PeerAddress]:
    """Parse a list of host:port strings, skipping blanks."""
    return [PeerAddress.parse(v) for v in values if v and v.strip()]


def shuffled(peers: Sequence[PeerAddress], rng: Optional[random.Random] = None) -> List[PeerAddress]:
    """A shuffled copy of the peer list, so nodes don't all hit the same peer first."""
    result = list(peers)
    (rng or random).shuffle(result)
    return result


class PeerSelector(Protocol):
    """Strategy choosing which peer serves one chunk attempt."""

    def select(self, peers: Sequence[PeerAddress], chunk_index: int,
               attempt: int) -> PeerAddress:
        ...


class RandomPeerSelector:
    """
    Uniform random choice over the pool, independently for every attempt.

    No health or latency tracking.
    """

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()

    def select(self, peers: Sequence[PeerAddress], chunk_index: int,
               attempt: int) -> PeerAddress:
        if not peers:
            raise ValueError("Peer pool is empty")
        return self._rng.choice(peers)
