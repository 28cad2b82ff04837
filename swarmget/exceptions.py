"""Exception hierarchy for swarmget.

Peer-scoped errors (handshake failures, protocol violations, busy or choking
peers) are recovered from inside the swarm. Storage and manifest errors are
fatal to the swarm that raised them.
"""

from __future__ import annotations

from typing import Any


class SwarmgetError(Exception):
    """Base exception for all swarmget errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        """Initialize swarmget error."""
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class NetworkError(SwarmgetError):
    """Network-related errors."""


class DiscoveryFailure(NetworkError):
    """A discovery source could not produce peers (non-fatal, retried)."""


class PeerError(NetworkError):
    """Errors scoped to a single peer session."""


class HandshakeFailure(PeerError):
    """The remote end did not complete a valid handshake."""


class ProtocolViolation(PeerError):
    """The remote end sent a malformed or illegal message."""


class PeerBusy(PeerError):
    """The peer already has the maximum number of outstanding requests."""


class PeerChoking(PeerError):
    """The peer is choking the local session."""


class MetadataUnavailable(NetworkError):
    """A peer could not supply the manifest via metadata exchange."""


class DiskError(SwarmgetError):
    """Disk I/O related errors."""


class StorageIOError(DiskError):
    """Writing or flushing content to the destination failed."""


class ValidationError(SwarmgetError):
    """Data validation errors."""


class ConfigurationError(ValidationError):
    """Configuration validation errors."""


class BencodeError(ValidationError):
    """Bencode encoding/decoding errors."""


class MagnetError(ValidationError):
    """Malformed magnet URI."""


class ManifestError(ValidationError):
    """Manifest (info dictionary) is malformed or inconsistent."""


class SwarmStateError(SwarmgetError):
    """An operation was attempted in a swarm state that does not allow it."""
