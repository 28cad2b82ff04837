"""Async peer connection: one protocol session over one TCP stream.

A connection owns its socket, its choke/interest flags and its outstanding
request table. Everything that concerns the swarm as a whole (availability,
received blocks, disconnects) leaves the connection as an intent on the
controller's inbox.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any

from swarmget.core.bencode import BencodeDecoder
from swarmget.exceptions import (
    BencodeError,
    HandshakeFailure,
    PeerBusy,
    PeerChoking,
    PeerError,
    ProtocolViolation,
)
from swarmget.models import ConnectionState, NetworkConfig, PeerAddress
from swarmget.peer.messages import (
    HANDSHAKE_LENGTH,
    BitfieldMessage,
    CancelMessage,
    ChokeMessage,
    ExtendedMessage,
    Handshake,
    HaveMessage,
    InterestedMessage,
    KeepAliveMessage,
    NotInterestedMessage,
    PeerMessage,
    PieceMessage,
    RequestMessage,
    UnchokeMessage,
    read_message,
)
from swarmget.peer.metadata import (
    EXTENDED_HANDSHAKE_ID,
    LOCAL_UT_METADATA_ID,
    build_extended_handshake,
    metadata_reject,
    split_metadata_message,
)
from swarmget.session.intents import (
    BitfieldReceived,
    BlockReceived,
    HaveReceived,
    PeerChoked,
    PeerClosed,
    PeerUnchoked,
)
from swarmget.utils.tasks import BackgroundTaskGroup

THROUGHPUT_WINDOW = 10.0


@dataclass
class RequestInfo:
    """An outstanding block request."""

    piece_index: int
    begin: int
    length: int
    timestamp: float


class PeerConnection:
    """Protocol session with a single remote peer."""

    def __init__(
        self,
        address: PeerAddress,
        info_hash: bytes,
        peer_id: bytes,
        config: NetworkConfig,
        inbox: asyncio.Queue,
    ) -> None:
        self.address = address
        self.info_hash = info_hash
        self.peer_id = peer_id
        self.config = config
        self.inbox = inbox
        self.logger = logging.getLogger(__name__)

        self.state = ConnectionState.CONNECTING
        self.remote_peer_id: bytes | None = None
        self.remote_supports_extensions = False

        self.am_choking = True
        self.am_interested = False
        self.peer_choking = True
        self.peer_interested = False

        self.outstanding_requests: dict[tuple[int, int], RequestInfo] = {}

        # BEP 10 state
        self.remote_extensions: dict[str, int] = {}
        self.metadata_size: int | None = None
        self.extensions_ready = asyncio.Event()
        self.metadata_inbox: asyncio.Queue[tuple[dict[bytes, Any], bytes]] = asyncio.Queue()

        self.bytes_received = 0
        self._samples: deque[tuple[float, int]] = deque()
        self.last_received = time.monotonic()
        self.last_sent = time.monotonic()

        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._write_lock = asyncio.Lock()
        self._tasks = BackgroundTaskGroup()
        self._closed = asyncio.Event()
        self.close_error: Exception | None = None

    def __str__(self) -> str:
        """Return string representation of the connection."""
        return f"PeerConnection({self.address}, state={self.state.value})"

    @property
    def is_established(self) -> bool:
        return self.state == ConnectionState.ESTABLISHED

    @property
    def is_closed(self) -> bool:
        return self.state == ConnectionState.CLOSED

    def can_request(self) -> bool:
        """Check if we can make new requests."""
        return (
            self.is_established
            and not self.peer_choking
            and len(self.outstanding_requests) < self.config.max_requests_per_peer
        )

    def available_slots(self) -> int:
        """Number of requests that may still be issued."""
        return max(0, self.config.max_requests_per_peer - len(self.outstanding_requests))

    def throughput(self, now: float | None = None) -> float:
        """Download rate in bytes/second over the rolling window."""
        now = time.monotonic() if now is None else now
        self._trim_samples(now)
        if not self._samples:
            return 0.0
        return sum(size for _, size in self._samples) / THROUGHPUT_WINDOW

    def _trim_samples(self, now: float) -> None:
        while self._samples and now - self._samples[0][0] > THROUGHPUT_WINDOW:
            self._samples.popleft()

    async def connect(self) -> None:
        """Open the TCP stream and exchange handshakes.

        Raises:
            HandshakeFailure: If the connection cannot be opened or the remote
                handshake is invalid or for another swarm

        """
        self.state = ConnectionState.CONNECTING
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.address.ip, self.address.port),
                timeout=self.config.connection_timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            self.state = ConnectionState.CLOSED
            msg = f"Failed to connect to {self.address}: {e!r}"
            raise HandshakeFailure(msg) from e

        self.state = ConnectionState.HANDSHAKING
        try:
            self._writer.write(Handshake(self.info_hash, self.peer_id).encode())
            await self._writer.drain()
            data = await asyncio.wait_for(
                self._reader.readexactly(HANDSHAKE_LENGTH),
                timeout=self.config.handshake_timeout,
            )
            remote = Handshake.decode(data)
            if remote.info_hash != self.info_hash:
                msg = "Info hash mismatch in handshake"
                raise HandshakeFailure(msg, {"peer": str(self.address)})
        except HandshakeFailure:
            await self._close_transport()
            raise
        except (OSError, asyncio.TimeoutError, asyncio.IncompleteReadError) as e:
            await self._close_transport()
            msg = f"Handshake with {self.address} failed: {e!r}"
            raise HandshakeFailure(msg) from e

        self.remote_peer_id = remote.peer_id
        self.remote_supports_extensions = remote.supports_extensions
        self.state = ConnectionState.ESTABLISHED
        self.last_received = time.monotonic()
        self.logger.debug("Handshake complete with %s", self.address)

        if self.remote_supports_extensions:
            await self.send(ExtendedMessage(EXTENDED_HANDSHAKE_ID, build_extended_handshake()))
        else:
            self.extensions_ready.set()

    def start(self) -> asyncio.Task:
        """Start the reader and keep-alive tasks; returns the reader task."""
        self._tasks.create(self._keepalive_loop(), name=f"keepalive-{self.address}")
        return self._tasks.create(self._message_loop(), name=f"reader-{self.address}")

    async def send(self, message: PeerMessage) -> None:
        """Send one message."""
        if self._writer is None or self.is_closed:
            msg = f"Connection to {self.address} is closed"
            raise PeerError(msg)
        async with self._write_lock:
            try:
                self._writer.write(message.encode())
                await self._writer.drain()
            except (OSError, RuntimeError) as e:
                msg = f"Send to {self.address} failed: {e!r}"
                raise PeerError(msg) from e
        self.last_sent = time.monotonic()

    async def send_interested(self) -> None:
        if not self.am_interested:
            self.am_interested = True
            await self.send(InterestedMessage())

    async def send_have(self, piece_index: int) -> None:
        await self.send(HaveMessage(piece_index))

    async def request_block(self, piece_index: int, offset: int, length: int) -> None:
        """Request one block.

        Raises:
            PeerChoking: If the remote is choking us
            PeerBusy: If the outstanding-request limit is reached

        """
        if self.peer_choking:
            msg = f"{self.address} is choking"
            raise PeerChoking(msg)
        if len(self.outstanding_requests) >= self.config.max_requests_per_peer:
            msg = f"{self.address} has {len(self.outstanding_requests)} outstanding requests"
            raise PeerBusy(msg)
        self.outstanding_requests[(piece_index, offset)] = RequestInfo(
            piece_index, offset, length, time.monotonic()
        )
        try:
            await self.send(RequestMessage(piece_index, offset, length))
        except PeerError:
            self.outstanding_requests.pop((piece_index, offset), None)
            raise

    async def cancel_block(self, piece_index: int, offset: int) -> None:
        """Withdraw an outstanding request."""
        info = self.outstanding_requests.pop((piece_index, offset), None)
        if info is not None and not self.is_closed:
            with contextlib.suppress(PeerError):
                await self.send(CancelMessage(piece_index, offset, info.length))

    async def close(self, error: Exception | None = None) -> None:
        """Close the connection; the reader task reports ``PeerClosed``."""
        if self.close_error is None:
            self.close_error = error
        await self._tasks.cancel_and_wait(timeout=2.0)
        await self._close_transport()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def _close_transport(self) -> None:
        self.state = ConnectionState.CLOSED
        self._closed.set()
        writer, self._writer = self._writer, None
        if writer is not None:
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()

    async def _keepalive_loop(self) -> None:
        interval = self.config.keepalive_interval
        while not self.is_closed:
            await asyncio.sleep(max(0.05, interval - (time.monotonic() - self.last_sent)))
            if time.monotonic() - self.last_sent >= interval:
                try:
                    await self.send(KeepAliveMessage())
                except PeerError:
                    return

    async def _message_loop(self) -> None:
        """Read and dispatch messages until the stream ends or misbehaves."""
        error: Exception | None = None
        penalize = False
        try:
            while not self.is_closed:
                assert self._reader is not None
                try:
                    message = await asyncio.wait_for(
                        read_message(self._reader, self.config.max_message_length),
                        timeout=self.config.peer_timeout,
                    )
                except asyncio.TimeoutError:
                    msg = f"{self.address} silent for {self.config.peer_timeout:.0f}s"
                    raise PeerError(msg) from None
                self.last_received = time.monotonic()
                if message is None:
                    continue
                await self._handle_message(message)
        except ProtocolViolation as e:
            self.logger.warning("Protocol violation from %s: %s", self.address, e)
            error, penalize = e, True
        except (asyncio.IncompleteReadError, ConnectionError, OSError) as e:
            error = PeerError(f"Connection to {self.address} lost: {e!r}")
        except PeerError as e:
            error = e
        except asyncio.CancelledError:
            error = self.close_error
            raise
        finally:
            await self._close_transport()
            if isinstance(error, ProtocolViolation):
                penalize = True
            self.inbox.put_nowait(PeerClosed(self.address, error, penalize, connection=self))

    async def _handle_message(self, message: PeerMessage) -> None:
        if isinstance(message, PieceMessage):
            self._handle_piece(message)
        elif isinstance(message, KeepAliveMessage):
            return
        elif isinstance(message, ChokeMessage):
            self.peer_choking = True
            dropped = tuple(self.outstanding_requests)
            self.outstanding_requests.clear()
            self.inbox.put_nowait(PeerChoked(self.address, dropped))
        elif isinstance(message, UnchokeMessage):
            self.peer_choking = False
            self.inbox.put_nowait(PeerUnchoked(self.address))
        elif isinstance(message, InterestedMessage):
            self.peer_interested = True
        elif isinstance(message, NotInterestedMessage):
            self.peer_interested = False
        elif isinstance(message, HaveMessage):
            self.inbox.put_nowait(HaveReceived(self.address, message.piece_index))
        elif isinstance(message, BitfieldMessage):
            self.inbox.put_nowait(BitfieldReceived(self.address, message.bitfield))
        elif isinstance(message, ExtendedMessage):
            await self._handle_extended(message)
        # Requests are never served: every remote stays choked.

    def _handle_piece(self, message: PieceMessage) -> None:
        key = (message.piece_index, message.begin)
        info = self.outstanding_requests.get(key)
        if info is None:
            self.logger.debug(
                "Unrequested block %d:%d from %s", message.piece_index, message.begin, self.address
            )
            return
        if len(message.block) != info.length:
            msg = f"Block {key} has {len(message.block)} bytes, requested {info.length}"
            raise ProtocolViolation(msg)
        del self.outstanding_requests[key]
        now = time.monotonic()
        self.bytes_received += len(message.block)
        self._samples.append((now, len(message.block)))
        self._trim_samples(now)
        self.inbox.put_nowait(
            BlockReceived(self.address, message.piece_index, message.begin, message.block)
        )

    async def _handle_extended(self, message: ExtendedMessage) -> None:
        if message.extended_id == EXTENDED_HANDSHAKE_ID:
            try:
                decoder = BencodeDecoder(message.body)
                payload = decoder.decode()
            except BencodeError as e:
                msg = f"Malformed extended handshake: {e}"
                raise ProtocolViolation(msg) from e
            if not isinstance(payload, dict):
                msg = "Extended handshake is not a dictionary"
                raise ProtocolViolation(msg)
            m = payload.get(b"m")
            if isinstance(m, dict):
                self.remote_extensions = {
                    k.decode("utf-8", errors="replace"): v
                    for k, v in m.items()
                    if isinstance(v, int) and not isinstance(v, bool) and v > 0
                }
            size = payload.get(b"metadata_size")
            if isinstance(size, int) and size > 0:
                self.metadata_size = size
            self.extensions_ready.set()
        elif message.extended_id == LOCAL_UT_METADATA_ID:
            header, data = split_metadata_message(message.body)
            if header.get(b"msg_type") == 0 and "ut_metadata" in self.remote_extensions:
                await self.send(
                    ExtendedMessage(
                        self.remote_extensions["ut_metadata"],
                        metadata_reject(header.get(b"piece", 0)),
                    )
                )
            else:
                self.metadata_inbox.put_nowait((header, data))
