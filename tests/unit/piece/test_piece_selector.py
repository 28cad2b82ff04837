"""Unit tests for rarest-first selection and the in-flight table."""

from __future__ import annotations

import pytest

from swarmget.models import StorageConfig
from swarmget.piece.selector import PieceSelector
from swarmget.storage.store import PieceStore
from swarmget.utils.bitfield import encode_bitfield

from helpers.content import make_content

pytestmark = [pytest.mark.unit, pytest.mark.piece]

PIECE = 32 * 1024
BLOCK = 16 * 1024


@pytest.fixture
def content():
    return make_content(4 * PIECE, piece_length=PIECE)


@pytest.fixture
def store(content, tmp_path):
    piece_store = PieceStore(content.manifest, tmp_path, StorageConfig())
    yield piece_store
    piece_store.close()


@pytest.fixture
def selector(store):
    return PieceSelector(store, max_requests_per_peer=3)


def _bits(*pieces):
    return encode_bitfield(pieces, 4)


class TestAvailability:
    def test_bitfield_counts(self, selector):
        selector.add_peer_bitfield("a", _bits(0, 1))
        selector.add_peer_bitfield("b", _bits(1, 2))
        assert selector.availability[1] == 2
        assert selector.availability[0] == 1
        selector.add_peer_bitfield("a", _bits(0))
        assert selector.availability[1] == 1

    def test_have(self, selector):
        assert selector.add_peer_have("a", 3)
        assert not selector.add_peer_have("a", 3)
        assert selector.availability[3] == 1

    def test_invalid_bitfield(self, selector):
        with pytest.raises(ValueError):
            selector.add_peer_bitfield("a", b"\x00\x00")
        with pytest.raises(ValueError):
            selector.add_peer_bitfield("a", b"\x0f")

    def test_invalid_have(self, selector):
        with pytest.raises(ValueError):
            selector.add_peer_have("a", 4)

    def test_remove_peer(self, selector):
        selector.add_peer_bitfield("a", _bits(0, 1))
        selector.next_requests("a", now=0.0)
        freed = selector.remove_peer("a")
        assert len(freed) == 3
        assert selector.in_flight == {}
        assert 0 not in selector.availability
        selector.check_invariants()


class TestNextRequests:
    """Rarest-first choice with per-peer caps."""

    def test_rarest_first(self, selector):
        selector.add_peer_bitfield("a", _bits(0, 1, 2, 3))
        selector.add_peer_bitfield("b", _bits(0, 1, 2))
        selector.add_peer_bitfield("c", _bits(0, 1))
        requests = selector.next_requests("a", now=0.0)
        assert [(r.piece_index, r.offset) for r in requests] == [(3, 0), (3, BLOCK), (2, 0)]

    def test_cap_and_limit(self, selector):
        selector.add_peer_bitfield("a", _bits(0, 1, 2, 3))
        assert len(selector.next_requests("a", now=0.0, limit=1)) == 1
        assert len(selector.next_requests("a", now=0.0)) == 2
        assert selector.next_requests("a", now=0.0) == []
        selector.check_invariants()

    def test_block_in_flight_to_one_peer(self, selector):
        selector.add_peer_bitfield("a", _bits(0))
        selector.add_peer_bitfield("b", _bits(0))
        first = selector.next_requests("a", now=0.0)
        assert len(first) == 2
        assert selector.next_requests("b", now=0.0) == []
        selector.check_invariants()

    @pytest.mark.asyncio
    async def test_verified_piece_not_requested(self, selector, store, content):
        store.write_block(0, 0, content.piece(0)[:BLOCK])
        store.write_block(0, BLOCK, content.piece(0)[BLOCK:])
        await store.open()
        await store.verify_piece(0)
        selector.add_peer_bitfield("a", _bits(0))
        assert not selector.peer_has_wanted("a")
        assert selector.next_requests("a", now=0.0) == []

    def test_received_block_not_requested_again(self, selector, store, content):
        store.write_block(1, 0, content.piece(1)[:BLOCK])
        selector.add_peer_bitfield("a", _bits(1))
        assert [(r.piece_index, r.offset) for r in selector.next_requests("a", now=0.0)] == [
            (1, BLOCK)
        ]


class TestRelease:
    def test_mark_received_only_for_owner(self, selector):
        selector.add_peer_bitfield("a", _bits(0))
        selector.next_requests("a", now=0.0)
        assert not selector.mark_received("b", (0, 0))
        assert selector.mark_received("a", (0, 0))
        assert selector.owner((0, 0)) is None
        assert selector.in_flight_count("a") == 1

    def test_expire(self, selector):
        selector.add_peer_bitfield("a", _bits(0, 1))
        selector.next_requests("a", now=0.0, limit=1)
        selector.next_requests("a", now=10.0, limit=1)
        expired = selector.expire(now=31.0, timeout=30.0)
        assert expired == [("a", (0, 0))]
        assert selector.in_flight_count("a") == 1
        selector.check_invariants()

    def test_release_peer_blocks(self, selector):
        selector.add_peer_bitfield("a", _bits(0, 1))
        selector.next_requests("a", now=0.0)
        assert selector.release_peer_blocks("b", [(0, 0)]) == 0
        assert selector.release_peer_blocks("a", [(0, 0), (0, BLOCK), (1, 0), (3, 0)]) == 3
        assert selector.in_flight == {}
        selector.check_invariants()
