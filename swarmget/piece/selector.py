"""Rarest-first piece and block selection.

The selector owns swarm-wide availability counts, each peer's advertised
pieces and the in-flight table. A block is in flight to at most one peer; a
peer never has more than ``max_requests_per_peer`` blocks in flight.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Hashable

from swarmget.models import PieceState
from swarmget.storage.store import PieceStore
from swarmget.utils.bitfield import parse_bitfield, validate_bitfield

BlockKey = tuple[int, int]


@dataclass(frozen=True)
class BlockRequest:
    piece_index: int
    offset: int
    length: int

    @property
    def key(self) -> BlockKey:
        return (self.piece_index, self.offset)


@dataclass
class InFlight:
    peer: Hashable
    length: int
    sent_at: float


class PieceSelector:
    """Chooses the next blocks to request from a peer."""

    def __init__(self, store: PieceStore, max_requests_per_peer: int = 5) -> None:
        self.store = store
        self.max_requests_per_peer = max_requests_per_peer
        self.availability: Counter[int] = Counter()
        self.peer_pieces: dict[Hashable, set[int]] = {}
        self.in_flight: dict[BlockKey, InFlight] = {}
        self.peer_requests: dict[Hashable, set[BlockKey]] = {}

    @property
    def num_pieces(self) -> int:
        return self.store.num_pieces

    def add_peer_bitfield(self, peer: Hashable, bitfield: bytes) -> set[int]:
        """Replace a peer's piece set from its bitfield.

        Raises:
            ValueError: If the bitfield has the wrong length or spare bits set

        """
        validate_bitfield(bitfield, self.num_pieces)
        pieces = parse_bitfield(bitfield, self.num_pieces)
        old = self.peer_pieces.get(peer, set())
        for idx in old - pieces:
            self.availability[idx] -= 1
        for idx in pieces - old:
            self.availability[idx] += 1
        self.peer_pieces[peer] = pieces
        return pieces

    def add_peer_have(self, peer: Hashable, piece_index: int) -> bool:
        """Record one announced piece; returns True if it was new.

        Raises:
            ValueError: If the index is out of range

        """
        if not 0 <= piece_index < self.num_pieces:
            msg = f"Have for piece {piece_index} outside 0..{self.num_pieces - 1}"
            raise ValueError(msg)
        pieces = self.peer_pieces.setdefault(peer, set())
        if piece_index in pieces:
            return False
        pieces.add(piece_index)
        self.availability[piece_index] += 1
        return True

    def remove_peer(self, peer: Hashable) -> list[BlockKey]:
        """Forget a peer and free every block it had in flight."""
        for idx in self.peer_pieces.pop(peer, set()):
            self.availability[idx] -= 1
            if self.availability[idx] <= 0:
                del self.availability[idx]
        freed = sorted(self.peer_requests.pop(peer, set()))
        for key in freed:
            self.in_flight.pop(key, None)
        return freed

    def is_wanted(self, piece_index: int) -> bool:
        return self.store.piece_state(piece_index) != PieceState.VERIFIED

    def peer_has_wanted(self, peer: Hashable) -> bool:
        """Whether the peer advertises any piece that is not verified yet."""
        return any(self.is_wanted(idx) for idx in self.peer_pieces.get(peer, ()))

    def in_flight_count(self, peer: Hashable) -> int:
        return len(self.peer_requests.get(peer, ()))

    def _candidate_pieces(self, peer: Hashable) -> list[int]:
        pieces = [idx for idx in self.peer_pieces.get(peer, ()) if self.is_wanted(idx)]
        pieces.sort(key=lambda idx: (self.availability[idx], idx))
        return pieces

    def next_requests(
        self,
        peer: Hashable,
        now: float,
        limit: int | None = None,
    ) -> list[BlockRequest]:
        """Pick and register new requests for ``peer``, rarest piece first."""
        slots = self.max_requests_per_peer - self.in_flight_count(peer)
        if limit is not None:
            slots = min(slots, limit)
        if slots <= 0:
            return []
        chosen: list[BlockRequest] = []
        for piece_index in self._candidate_pieces(peer):
            for block in self.store.pieces[piece_index].get_missing_blocks():
                key = (piece_index, block.begin)
                if key in self.in_flight:
                    continue
                chosen.append(BlockRequest(piece_index, block.begin, block.length))
                self.in_flight[key] = InFlight(peer, block.length, now)
                self.peer_requests.setdefault(peer, set()).add(key)
                if len(chosen) >= slots:
                    return chosen
        return chosen

    def owner(self, key: BlockKey) -> Hashable | None:
        entry = self.in_flight.get(key)
        return entry.peer if entry else None

    def release(self, key: BlockKey) -> Hashable | None:
        """Drop one in-flight entry; returns the peer that held it."""
        entry = self.in_flight.pop(key, None)
        if entry is None:
            return None
        requests = self.peer_requests.get(entry.peer)
        if requests is not None:
            requests.discard(key)
        return entry.peer

    def mark_received(self, peer: Hashable, key: BlockKey) -> bool:
        """Clear the in-flight entry for a delivered block if ``peer`` held it."""
        if self.owner(key) != peer:
            return False
        self.release(key)
        return True

    def release_peer_blocks(self, peer: Hashable, keys: list[BlockKey] | tuple[BlockKey, ...]) -> int:
        released = 0
        for key in keys:
            if self.owner(key) == peer:
                self.release(key)
                released += 1
        return released

    def expire(self, now: float, timeout: float) -> list[tuple[Hashable, BlockKey]]:
        """Release requests outstanding for longer than ``timeout``."""
        expired = [
            (entry.peer, key)
            for key, entry in self.in_flight.items()
            if now - entry.sent_at >= timeout
        ]
        for _, key in expired:
            self.release(key)
        return expired

    def check_invariants(self) -> None:
        """Raise AssertionError if the in-flight bookkeeping is inconsistent."""
        seen: set[BlockKey] = set()
        for peer, keys in self.peer_requests.items():
            assert len(keys) <= self.max_requests_per_peer, f"{peer} over request cap"
            for key in keys:
                assert key not in seen, f"block {key} in flight to two peers"
                assert self.in_flight[key].peer == peer
                seen.add(key)
        assert seen == set(self.in_flight), "orphaned in-flight entries"
