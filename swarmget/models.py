"""Pydantic models for swarmget.

Provides validated data models for content descriptors, manifests,
progress records, terminal outcomes and configuration.
"""

from __future__ import annotations

import math
from enum import Enum
from pathlib import PurePosixPath
from typing import Union

from pydantic import BaseModel, Field, field_validator, model_validator

SHA1_LENGTH = 20
DEFAULT_BLOCK_SIZE = 16 * 1024


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class SwarmStatus(str, Enum):
    """Lifecycle states of a swarm."""

    RESOLVING = "resolving"
    DISCOVERING = "discovering"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transitions are possible."""
        return self in (
            SwarmStatus.COMPLETED,
            SwarmStatus.FAILED,
            SwarmStatus.CANCELLED,
        )


class PieceState(str, Enum):
    """Piece download states."""

    MISSING = "missing"
    IN_PROGRESS = "in_progress"
    VERIFIED = "verified"


class VerifyResult(str, Enum):
    """Outcome of a piece hash check."""

    VERIFIED = "verified"
    CORRUPT = "corrupt"


class ConnectionState(str, Enum):
    """Peer connection states."""

    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    ESTABLISHED = "established"
    CLOSED = "closed"


class FailureReason(str, Enum):
    """Reason tags carried by failed swarms."""

    DISCOVERY_TIMEOUT = "discovery_timeout"
    METADATA_UNAVAILABLE = "metadata_unavailable"
    MANIFEST_CORRUPT = "manifest_corrupt"
    STORAGE_ERROR = "storage_error"
    HARD_TIMEOUT = "hard_timeout"
    INTERNAL_ERROR = "internal_error"


class MessageType(int, Enum):
    """BitTorrent message types."""

    CHOKE = 0
    UNCHOKE = 1
    INTERESTED = 2
    NOT_INTERESTED = 3
    HAVE = 4
    BITFIELD = 5
    REQUEST = 6
    PIECE = 7
    CANCEL = 8
    PORT = 9
    EXTENDED = 20


class PeerAddress(BaseModel):
    """Network address of a swarm member."""

    ip: str = Field(..., min_length=1, description="Peer IP address or hostname")
    port: int = Field(..., ge=1, le=65535, description="Peer port number")

    model_config = {"frozen": True}

    @classmethod
    def parse(cls, value: str) -> PeerAddress:
        """Parse ``host:port`` (IPv6 hosts in brackets)."""
        host, sep, port = value.rpartition(":")
        if not sep or not host or not port.isdigit():
            msg = f"Invalid peer address: {value!r}"
            raise ValueError(msg)
        return cls(ip=host.strip("[]"), port=int(port))

    def __str__(self) -> str:
        """String representation of the address."""
        if ":" in self.ip:
            return f"[{self.ip}]:{self.port}"
        return f"{self.ip}:{self.port}"


class FileEntry(BaseModel):
    """One file of the content, positioned in the concatenated byte stream."""

    path: str = Field(..., description="Relative POSIX path under the destination")
    length: int = Field(..., ge=0, description="File length in bytes")
    offset: int = Field(..., ge=0, description="Offset in the concatenated stream")

    model_config = {"frozen": True}

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Reject paths that would escape the destination directory."""
        parts = PurePosixPath(v).parts
        if not parts or v.startswith("/") or any(p in ("..", "") for p in parts):
            msg = f"Unsafe file path in manifest: {v!r}"
            raise ValueError(msg)
        return v


class Manifest(BaseModel):
    """Resolved metadata: file table, piece length and piece checksums."""

    name: str = Field(..., min_length=1)
    piece_length: int = Field(..., gt=0)
    piece_hashes: list[bytes] = Field(default_factory=list)
    files: list[FileEntry] = Field(..., min_length=1)

    model_config = {"frozen": True}

    @field_validator("piece_hashes")
    @classmethod
    def validate_hashes(cls, v: list[bytes]) -> list[bytes]:
        """Every checksum must be a SHA-1 digest."""
        for digest in v:
            if len(digest) != SHA1_LENGTH:
                msg = f"Piece hash must be {SHA1_LENGTH} bytes, got {len(digest)}"
                raise ValueError(msg)
        return v

    @model_validator(mode="after")
    def validate_layout(self) -> Manifest:
        """File offsets must be contiguous and hashes must cover the stream."""
        expected_offset = 0
        for entry in self.files:
            if entry.offset != expected_offset:
                msg = f"File {entry.path} starts at {entry.offset}, expected {expected_offset}"
                raise ValueError(msg)
            expected_offset += entry.length
        expected_pieces = math.ceil(expected_offset / self.piece_length)
        if len(self.piece_hashes) != expected_pieces:
            msg = (
                f"Manifest has {len(self.piece_hashes)} piece hashes, "
                f"{expected_pieces} required for {expected_offset} bytes"
            )
            raise ValueError(msg)
        return self

    @property
    def total_length(self) -> int:
        """Length of the concatenated stream."""
        last = self.files[-1]
        return last.offset + last.length

    @property
    def num_pieces(self) -> int:
        """Number of pieces."""
        return len(self.piece_hashes)

    def piece_offset(self, index: int) -> int:
        """Offset of a piece in the concatenated stream."""
        return index * self.piece_length

    def piece_size(self, index: int) -> int:
        """Length of a piece; the last one may be shorter."""
        if index < 0 or index >= self.num_pieces:
            msg = f"Piece index {index} out of range"
            raise IndexError(msg)
        return min(self.piece_length, self.total_length - self.piece_offset(index))


class ContentDescriptor(BaseModel):
    """Immutable identifier of the desired content."""

    info_hash: bytes = Field(..., min_length=SHA1_LENGTH, max_length=SHA1_LENGTH)
    display_name: str | None = None
    trackers: list[str] = Field(default_factory=list)
    dht_enabled: bool = False
    peer_hints: list[PeerAddress] = Field(default_factory=list)
    manifest: Manifest | None = None

    model_config = {"frozen": True}

    @property
    def name(self) -> str:
        """Best available human-readable name."""
        if self.manifest is not None:
            return self.manifest.name
        return self.display_name or self.info_hash.hex()


class ProgressSnapshot(BaseModel):
    """Point-in-time progress record of a swarm."""

    state: SwarmStatus
    bytes_downloaded: int = Field(0, ge=0)
    bytes_verified: int = Field(0, ge=0)
    total_bytes: int | None = None
    peer_count: int = Field(0, ge=0)
    piece_bitmap: tuple[bool, ...] = ()
    reason: FailureReason | None = None

    model_config = {"frozen": True}

    @property
    def fraction_complete(self) -> float:
        """Verified fraction of the content in [0, 1]."""
        if not self.total_bytes:
            return 1.0 if self.state == SwarmStatus.COMPLETED else 0.0
        return self.bytes_verified / self.total_bytes


class CompletedFile(BaseModel):
    """A file written by a completed swarm."""

    path: str
    size: int


class CompletedOutcome(BaseModel):
    """All pieces verified and flushed."""

    files: list[CompletedFile]
    total_bytes: int
    elapsed_time: float


class FailedOutcome(BaseModel):
    """Unrecoverable failure; verified data stays on disk."""

    reason: FailureReason
    message: str = ""
    bytes_retained: int = 0


class CancelledOutcome(BaseModel):
    """External cancellation honored."""

    bytes_retained: int = 0


Outcome = Union[CompletedOutcome, FailedOutcome, CancelledOutcome]


class NetworkConfig(BaseModel):
    """Peer connection and wire protocol settings."""

    peer_id_prefix: str = Field("-SG0100-", min_length=1, max_length=20)
    max_peers: int = Field(50, ge=1, le=1000, description="Active session cap")
    min_peers: int = Field(4, ge=0, description="Replenish below this count")
    max_concurrent_connects: int = Field(10, ge=1, le=200)
    connection_timeout: float = Field(10.0, gt=0)
    handshake_timeout: float = Field(10.0, gt=0)
    keepalive_interval: float = Field(120.0, gt=0)
    peer_timeout: float = Field(180.0, gt=0, description="Close silent peers")
    max_requests_per_peer: int = Field(5, ge=1, le=250)
    block_size: int = Field(DEFAULT_BLOCK_SIZE, ge=512, le=128 * 1024)
    max_message_length: int = Field(1024 * 1024 + 16, ge=32 * 1024)
    cooldown_base: float = Field(5.0, ge=0)
    cooldown_max: float = Field(300.0, ge=0)
    violation_cooldown: float = Field(900.0, ge=0)

    @model_validator(mode="after")
    def validate_peer_window(self) -> NetworkConfig:
        """Lower bound of the peer window cannot exceed the cap."""
        if self.min_peers > self.max_peers:
            msg = "min_peers cannot exceed max_peers"
            raise ValueError(msg)
        return self


class TimeoutConfig(BaseModel):
    """Liveness and timeout policy."""

    discovery_timeout: float = Field(30.0, gt=0)
    idle_timeout: float = Field(60.0, gt=0)
    hard_timeout: float = Field(10800.0, gt=0)
    monitor_interval: float = Field(5.0, gt=0)
    request_timeout: float = Field(30.0, gt=0)
    hard_timeout_rewarn_interval: float | None = Field(
        None,
        gt=0,
        description="Repeat the hard-timeout warning this often (None = once)",
    )
    hard_kill_switch: float | None = Field(
        None,
        gt=0,
        description="Fail even an active transfer after this many seconds",
    )


class StorageConfig(BaseModel):
    """Piece store settings."""

    write_retries: int = Field(3, ge=0, le=20)
    retry_delay: float = Field(0.2, ge=0)
    fsync: bool = True
    verify_existing: bool = True
    hash_workers: int = Field(2, ge=1, le=32)
    max_piece_failures: int = Field(8, ge=1)
    suspect_manifest_peers: int = Field(3, ge=1)


class DiscoveryConfig(BaseModel):
    """Discovery polling settings."""

    poll_interval: float = Field(30.0, gt=0)
    refresh_interval: float = Field(
        15.0,
        gt=0,
        description="Earliest early re-poll while below network.min_peers",
    )
    retry_base_delay: float = Field(2.0, gt=0)
    retry_max_delay: float = Field(120.0, gt=0)
    request_timeout: float = Field(15.0, gt=0)
    listen_port: int = Field(6881, ge=1, le=65535, description="Port announced to trackers")
    default_trackers: list[str] = Field(default_factory=list)


class MetadataConfig(BaseModel):
    """Metadata exchange settings."""

    fetch_timeout: float = Field(30.0, gt=0)
    max_concurrent_fetches: int = Field(3, ge=1)
    max_corrupt_attempts: int = Field(3, ge=1)
    max_metadata_size: int = Field(16 * 1024 * 1024, gt=0)


class ObservabilityConfig(BaseModel):
    """Logging and progress reporting settings."""

    log_level: LogLevel = LogLevel.INFO
    log_file: str | None = None
    structured_logging: bool = False
    log_correlation_id: bool = False
    progress_step: int = Field(5, ge=1, le=100, description="Percent per progress tick")


class Config(BaseModel):
    """Root configuration."""

    network: NetworkConfig = Field(default_factory=NetworkConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    metadata: MetadataConfig = Field(default_factory=MetadataConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
