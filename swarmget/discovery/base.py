"""Discovery source interface and the static source."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable

from swarmget.models import PeerAddress


class DiscoverySource(ABC):
    """A collaborator that can be polled repeatedly for peer addresses.

    Implementations raise ``DiscoveryFailure`` for failed queries; the
    coordinator logs them and retries with backoff.
    """

    name: str = "source"

    @abstractmethod
    async def query_peers(self, info_hash: bytes) -> list[PeerAddress]:
        """Return peer addresses for the swarm identified by ``info_hash``."""

    def next_interval(self) -> float | None:
        """Interval the source asks for before the next query, if any."""
        return None

    async def close(self) -> None:
        """Release resources held by the source."""
        return


class StaticPeerSource(DiscoverySource):
    """Returns a fixed list of addresses (magnet ``x.pe`` hints, ``--peer``)."""

    name = "static"

    def __init__(self, addresses: Iterable[PeerAddress]) -> None:
        self.addresses = list(dict.fromkeys(addresses))

    async def query_peers(self, info_hash: bytes) -> list[PeerAddress]:
        return list(self.addresses)
