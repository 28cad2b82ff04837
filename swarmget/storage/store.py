"""Piece store: buffers blocks, verifies pieces and persists them to disk.

Blocks are held in memory until their piece is complete. Only a piece whose
SHA-1 matches the manifest is written, split into per-file segments, so files
on disk never claim data that was not verified.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Hashable

import aiofiles

from swarmget.exceptions import StorageIOError
from swarmget.models import (
    DEFAULT_BLOCK_SIZE,
    Manifest,
    PieceState,
    StorageConfig,
    VerifyResult,
)
from swarmget.storage.layout import FileLayout
from swarmget.utils.backoff import backoff_delay


@dataclass
class PieceBlock:
    """Represents a block within a piece."""

    piece_index: int
    begin: int
    length: int
    data: bytes = b""
    received: bool = False
    source: Hashable | None = None

    def reset(self) -> None:
        self.data = b""
        self.received = False
        self.source = None


@dataclass
class PieceData:
    """Represents a piece with all its blocks."""

    piece_index: int
    length: int
    expected_hash: bytes
    block_size: int = DEFAULT_BLOCK_SIZE
    blocks: list[PieceBlock] = field(default_factory=list)
    state: PieceState = PieceState.MISSING

    def __post_init__(self):
        """Initialize blocks after creation."""
        if not self.blocks:
            self.blocks = [
                PieceBlock(self.piece_index, begin, min(self.block_size, self.length - begin))
                for begin in range(0, self.length, self.block_size)
            ]

    def block_at(self, begin: int) -> PieceBlock | None:
        if begin % self.block_size:
            return None
        idx = begin // self.block_size
        if idx >= len(self.blocks):
            return None
        return self.blocks[idx]

    def is_complete(self) -> bool:
        """Check if every block has been received."""
        return all(block.received for block in self.blocks)

    def get_data(self) -> bytes:
        """Get the complete piece data."""
        if not self.is_complete():
            msg = f"Piece {self.piece_index} is not complete"
            raise ValueError(msg)
        return b"".join(block.data for block in self.blocks)

    def get_missing_blocks(self) -> list[PieceBlock]:
        """Get list of missing blocks in ascending offset order."""
        return [block for block in self.blocks if not block.received]

    def reset(self) -> None:
        """Drop all buffered data; the piece becomes missing again."""
        for block in self.blocks:
            block.reset()
        self.state = PieceState.MISSING


def _sha1(data: bytes) -> bytes:
    return hashlib.sha1(data).digest()  # nosec B324 - SHA-1 required by BitTorrent protocol (BEP 3)


class PieceStore:
    """Owns the piece table of one swarm and its files under the destination."""

    def __init__(
        self,
        manifest: Manifest,
        destination: str | Path,
        config: StorageConfig,
        block_size: int = DEFAULT_BLOCK_SIZE,
    ) -> None:
        self.manifest = manifest
        self.config = config
        self.block_size = block_size
        self.layout = FileLayout(manifest, destination)
        self.pieces = [
            PieceData(i, manifest.piece_size(i), manifest.piece_hashes[i], block_size)
            for i in range(manifest.num_pieces)
        ]
        self.logger = logging.getLogger(__name__)
        self.closed = False
        self._executor = ThreadPoolExecutor(
            max_workers=config.hash_workers, thread_name_prefix="swarmget-hash"
        )

    @property
    def num_pieces(self) -> int:
        return len(self.pieces)

    @property
    def bytes_verified(self) -> int:
        return sum(p.length for p in self.pieces if p.state == PieceState.VERIFIED)

    @property
    def all_verified(self) -> bool:
        return all(p.state == PieceState.VERIFIED for p in self.pieces)

    def piece_state(self, piece_index: int) -> PieceState:
        return self.pieces[piece_index].state

    def bitmap(self) -> tuple[bool, ...]:
        """Per-piece verified flags."""
        return tuple(p.state == PieceState.VERIFIED for p in self.pieces)

    async def open(self) -> None:
        """Create directories and size every file; existing bytes are kept.

        Raises:
            StorageIOError: If the files cannot be created

        """
        loop = asyncio.get_running_loop()
        try:
            for entry, path in zip(self.manifest.files, self.layout.paths):
                path.parent.mkdir(parents=True, exist_ok=True)
                async with aiofiles.open(path, "ab"):
                    pass
                if path.stat().st_size != entry.length:
                    await loop.run_in_executor(self._executor, os.truncate, path, entry.length)
        except OSError as e:
            msg = f"Cannot prepare files under {self.layout.destination}: {e}"
            raise StorageIOError(msg) from e

    async def scan_existing(self) -> list[int]:
        """Re-hash data already on disk and mark matching pieces verified."""
        loop = asyncio.get_running_loop()
        found: list[int] = []
        for piece in self.pieces:
            if piece.state == PieceState.VERIFIED:
                continue
            try:
                data = await self._read_piece(piece.piece_index)
            except OSError as e:
                self.logger.debug("Cannot read piece %d for resume: %s", piece.piece_index, e)
                continue
            digest = await loop.run_in_executor(self._executor, _sha1, data)
            if digest == piece.expected_hash:
                piece.state = PieceState.VERIFIED
                found.append(piece.piece_index)
        if found:
            self.logger.info("Resumed %d/%d pieces from disk", len(found), self.num_pieces)
        return found

    async def _read_piece(self, piece_index: int) -> bytes:
        parts: list[bytes] = []
        for segment in self.layout.piece_segments(piece_index):
            async with aiofiles.open(segment.path, "rb") as f:
                await f.seek(segment.file_offset)
                chunk = await f.read(segment.length)
            if len(chunk) != segment.length:
                return b""
            parts.append(chunk)
        return b"".join(parts)

    def write_block(
        self,
        piece_index: int,
        offset: int,
        data: bytes,
        source: Hashable | None = None,
    ) -> bool:
        """Buffer one block; returns False if it is unknown, mis-sized or already held."""
        if self.closed or not 0 <= piece_index < self.num_pieces:
            return False
        piece = self.pieces[piece_index]
        if piece.state == PieceState.VERIFIED:
            return False
        block = piece.block_at(offset)
        if block is None or block.received or len(data) != block.length:
            return False
        block.data = data
        block.received = True
        block.source = source
        piece.state = PieceState.IN_PROGRESS
        return True

    def block_received(self, piece_index: int, offset: int) -> bool:
        block = self.pieces[piece_index].block_at(offset)
        return block is not None and block.received

    def is_piece_complete(self, piece_index: int) -> bool:
        piece = self.pieces[piece_index]
        return piece.state != PieceState.VERIFIED and piece.is_complete()

    def piece_sources(self, piece_index: int) -> set[Hashable]:
        """Peers that supplied the currently buffered blocks of a piece."""
        return {b.source for b in self.pieces[piece_index].blocks if b.source is not None}

    async def verify_piece(self, piece_index: int) -> VerifyResult:
        """Hash a complete piece; write it out if it matches.

        On mismatch every block reverts to missing.

        Raises:
            StorageIOError: If the verified piece cannot be written after
                the configured retries

        """
        piece = self.pieces[piece_index]
        data = piece.get_data()
        loop = asyncio.get_running_loop()
        digest = await loop.run_in_executor(self._executor, _sha1, data)
        if digest != piece.expected_hash:
            self.logger.warning("Hash verification failed for piece %d", piece_index)
            piece.reset()
            return VerifyResult.CORRUPT

        await self._persist(piece_index, data)
        piece.state = PieceState.VERIFIED
        for block in piece.blocks:
            block.data = b""
        self.logger.debug("Verified piece %d", piece_index)
        return VerifyResult.VERIFIED

    async def _persist(self, piece_index: int, data: bytes) -> None:
        attempts = self.config.write_retries + 1
        for attempt in range(attempts):
            if self.closed:
                msg = "Store is closed"
                raise StorageIOError(msg, {"piece": piece_index})
            try:
                for segment in self.layout.piece_segments(piece_index):
                    async with aiofiles.open(segment.path, "r+b") as f:
                        await f.seek(segment.file_offset)
                        await f.write(data[segment.data_offset : segment.data_offset + segment.length])
                return
            except OSError as e:
                if attempt + 1 >= attempts:
                    msg = f"Failed to write piece {piece_index}: {e}"
                    raise StorageIOError(msg, {"piece": piece_index, "attempts": attempts}) from e
                delay = backoff_delay(
                    attempt, self.config.retry_delay, max(self.config.retry_delay, 5.0)
                )
                self.logger.warning(
                    "Write of piece %d failed (%s), retrying in %.2fs", piece_index, e, delay
                )
                await asyncio.sleep(delay)

    async def flush(self) -> None:
        """Flush every file and fsync it to durable storage.

        Raises:
            StorageIOError: If a file cannot be flushed

        """
        loop = asyncio.get_running_loop()
        try:
            for path in self.layout.paths:
                async with aiofiles.open(path, "r+b") as f:
                    await f.flush()
                    if self.config.fsync:
                        await loop.run_in_executor(self._executor, os.fsync, f.fileno())
        except OSError as e:
            msg = f"Failed to flush files: {e}"
            raise StorageIOError(msg) from e

    def discard_partial(self) -> int:
        """Drop buffered blocks of unverified pieces; returns bytes discarded."""
        discarded = 0
        for piece in self.pieces:
            if piece.state == PieceState.IN_PROGRESS:
                discarded += sum(b.length for b in piece.blocks if b.received)
                piece.reset()
        return discarded

    def close(self) -> None:
        self.closed = True
        self._executor.shutdown(wait=False)
