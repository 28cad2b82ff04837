"""Metadata exchange (BEP 10 + BEP 9 ``ut_metadata``) for magnet downloads.

The info dictionary is fetched in 16 KiB pieces over an established peer
connection and accepted only when its SHA-1 equals the swarm's info hash.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import time
from typing import TYPE_CHECKING, Any

from swarmget.core.bencode import BencodeDecoder, encode
from swarmget.core.manifest import manifest_from_bytes
from swarmget.exceptions import (
    BencodeError,
    ManifestError,
    MetadataUnavailable,
    PeerError,
    ProtocolViolation,
)
from swarmget.models import Manifest, MetadataConfig
from swarmget.peer.messages import ExtendedMessage

if TYPE_CHECKING:  # pragma: no cover
    from swarmget.peer.connection import PeerConnection

logger = logging.getLogger(__name__)

METADATA_PIECE_SIZE = 16384
EXTENDED_HANDSHAKE_ID = 0
LOCAL_UT_METADATA_ID = 1
UT_METADATA = "ut_metadata"

MSG_REQUEST = 0
MSG_DATA = 1
MSG_REJECT = 2


def build_extended_handshake(
    metadata_size: int | None = None,
    client: str = "swarmget",
) -> bytes:
    """Bencoded BEP 10 handshake advertising ``ut_metadata``."""
    payload: dict[bytes, Any] = {
        b"m": {UT_METADATA.encode(): LOCAL_UT_METADATA_ID},
        b"v": client.encode(),
    }
    if metadata_size is not None:
        payload[b"metadata_size"] = metadata_size
    return encode(payload)


def metadata_request(piece: int) -> bytes:
    return encode({b"msg_type": MSG_REQUEST, b"piece": piece})


def metadata_reject(piece: int) -> bytes:
    return encode({b"msg_type": MSG_REJECT, b"piece": piece})


def metadata_data(piece: int, total_size: int, data: bytes) -> bytes:
    return encode({b"msg_type": MSG_DATA, b"piece": piece, b"total_size": total_size}) + data


def split_metadata_message(body: bytes) -> tuple[dict[bytes, Any], bytes]:
    """Split a ``ut_metadata`` body into its dictionary header and trailing data."""
    decoder = BencodeDecoder(body)
    try:
        header = decoder.decode()
    except BencodeError as e:
        msg = f"Malformed ut_metadata message: {e}"
        raise ProtocolViolation(msg) from e
    if not isinstance(header, dict):
        msg = "ut_metadata header is not a dictionary"
        raise ProtocolViolation(msg)
    return header, body[decoder.pos :]


class MetadataExchange:
    """Fetches the manifest of a hash-only swarm from connected peers."""

    def __init__(self, info_hash: bytes, config: MetadataConfig) -> None:
        self.info_hash = info_hash
        self.config = config

    async def fetch_manifest(self, connection: PeerConnection) -> Manifest:
        """Download and validate the info dictionary from one peer.

        Raises:
            MetadataUnavailable: The peer lacks the extension, rejects the
                request, disconnects or times out
            ManifestError: The assembled data does not hash to the info hash
                or does not describe a valid manifest

        """
        deadline = time.monotonic() + self.config.fetch_timeout
        try:
            await asyncio.wait_for(
                connection.extensions_ready.wait(), timeout=self._remaining(deadline)
            )
        except asyncio.TimeoutError as e:
            msg = f"{connection.address} sent no extended handshake"
            raise MetadataUnavailable(msg) from e

        remote_id = connection.remote_extensions.get(UT_METADATA)
        size = connection.metadata_size
        if not remote_id or not size:
            msg = f"{connection.address} does not offer ut_metadata"
            raise MetadataUnavailable(msg)
        if size > self.config.max_metadata_size:
            msg = f"{connection.address} advertises oversized metadata ({size} bytes)"
            raise MetadataUnavailable(msg)

        num_pieces = math.ceil(size / METADATA_PIECE_SIZE)
        pieces: list[bytes | None] = [None] * num_pieces
        try:
            for idx in range(num_pieces):
                await connection.send(ExtendedMessage(remote_id, metadata_request(idx)))
        except PeerError as e:
            raise MetadataUnavailable(str(e)) from e

        while any(p is None for p in pieces):
            header, data = await self._next_message(connection, deadline)
            msg_type = header.get(b"msg_type")
            idx = header.get(b"piece")
            if msg_type == MSG_REJECT:
                msg = f"{connection.address} rejected metadata piece {idx}"
                raise MetadataUnavailable(msg)
            if msg_type != MSG_DATA or not isinstance(idx, int) or not 0 <= idx < num_pieces:
                continue
            expected = min(METADATA_PIECE_SIZE, size - idx * METADATA_PIECE_SIZE)
            if len(data) != expected:
                msg = f"Metadata piece {idx} has {len(data)} bytes, expected {expected}"
                raise ManifestError(msg, {"peer": str(connection.address)})
            pieces[idx] = data

        raw = b"".join(p for p in pieces if p is not None)
        manifest = manifest_from_bytes(raw, expected_hash=self.info_hash)
        logger.info(
            "Fetched metadata for %s from %s (%d bytes)",
            manifest.name,
            connection.address,
            size,
        )
        return manifest

    @staticmethod
    def _remaining(deadline: float) -> float:
        return max(0.0, deadline - time.monotonic())

    async def _next_message(
        self,
        connection: PeerConnection,
        deadline: float,
    ) -> tuple[dict[bytes, Any], bytes]:
        getter = asyncio.ensure_future(connection.metadata_inbox.get())
        closed = asyncio.ensure_future(connection.wait_closed())
        try:
            done, _ = await asyncio.wait(
                {getter, closed},
                timeout=self._remaining(deadline),
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (getter, closed):
                if not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task
        if getter in done:
            return getter.result()
        if closed in done:
            msg = f"{connection.address} disconnected during metadata exchange"
            raise MetadataUnavailable(msg)
        msg = f"Metadata exchange with {connection.address} timed out"
        raise MetadataUnavailable(msg)
