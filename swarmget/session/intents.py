"""Intents submitted to the swarm controller's inbox.

Peer connections, the discovery coordinator, the liveness monitor, metadata
fetches and piece verifications never touch swarm state directly. They put
one of these records on the controller's queue and the controller's run loop
applies it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Union

from swarmget.models import Manifest, PeerAddress

if TYPE_CHECKING:  # pragma: no cover
    from swarmget.peer.connection import PeerConnection


@dataclass(frozen=True)
class PeersDiscovered:
    source: str
    addresses: tuple[PeerAddress, ...]


@dataclass(frozen=True)
class DiscoveryFailed:
    source: str
    error: Exception
    retry_in: float


@dataclass(frozen=True)
class PeerEstablished:
    connection: PeerConnection


@dataclass(frozen=True)
class ConnectFailed:
    address: PeerAddress
    error: Exception
    penalize: bool = False


@dataclass(frozen=True)
class PeerClosed:
    address: PeerAddress
    error: Exception | None = None
    penalize: bool = False
    connection: PeerConnection | None = field(default=None, compare=False)


@dataclass(frozen=True)
class BitfieldReceived:
    address: PeerAddress
    bitfield: bytes


@dataclass(frozen=True)
class HaveReceived:
    address: PeerAddress
    piece_index: int


@dataclass(frozen=True)
class PeerChoked:
    """Remote choked us; the listed requests will not be served."""

    address: PeerAddress
    dropped: tuple[tuple[int, int], ...] = ()


@dataclass(frozen=True)
class PeerUnchoked:
    address: PeerAddress


@dataclass(frozen=True)
class BlockReceived:
    address: PeerAddress
    piece_index: int
    offset: int
    data: bytes = field(repr=False)


@dataclass(frozen=True)
class MetadataFetched:
    address: PeerAddress
    manifest: Manifest


@dataclass(frozen=True)
class MetadataFailed:
    address: PeerAddress
    error: Exception
    corrupt: bool = False


@dataclass(frozen=True)
class PieceVerified:
    piece_index: int


@dataclass(frozen=True)
class PieceCorrupt:
    piece_index: int


@dataclass(frozen=True)
class StorageFailed:
    error: Exception


@dataclass(frozen=True)
class LivenessTick:
    now: float


@dataclass(frozen=True)
class CancelRequested:
    pass


Intent = Union[
    PeersDiscovered,
    DiscoveryFailed,
    PeerEstablished,
    ConnectFailed,
    PeerClosed,
    BitfieldReceived,
    HaveReceived,
    PeerChoked,
    PeerUnchoked,
    BlockReceived,
    MetadataFetched,
    MetadataFailed,
    PieceVerified,
    PieceCorrupt,
    StorageFailed,
    LivenessTick,
    CancelRequested,
]
