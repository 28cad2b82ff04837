"""Magnet URI parsing (BEP 9) utilities."""

from __future__ import annotations

import base64
import binascii
import logging
import urllib.parse
from dataclasses import dataclass, field

from swarmget.exceptions import MagnetError
from swarmget.models import ContentDescriptor, PeerAddress

MAGNET_PREFIX = "magnet:?"
BTIH_PREFIX = "urn:btih:"

logger = logging.getLogger(__name__)


@dataclass
class MagnetInfo:
    """Information extracted from a magnet link."""

    info_hash: bytes
    display_name: str | None
    trackers: list[str] = field(default_factory=list)
    peer_hints: list[PeerAddress] = field(default_factory=list)

    def to_descriptor(self, dht_enabled: bool = False) -> ContentDescriptor:
        """Build the immutable content descriptor for a swarm."""
        return ContentDescriptor(
            info_hash=self.info_hash,
            display_name=self.display_name,
            trackers=self.trackers,
            dht_enabled=dht_enabled,
            peer_hints=self.peer_hints,
        )


def _hex_or_base32_to_bytes(btih: str) -> bytes:
    """Decode btih which can be hex (40 chars) or base32 (32 chars)."""
    btih = btih.strip()
    try:
        if len(btih) == 40:
            return bytes.fromhex(btih)
        if len(btih) == 32:
            return base64.b32decode(btih.upper())
    except (ValueError, binascii.Error) as e:
        msg = f"Invalid info hash encoding: {btih}"
        raise MagnetError(msg) from e
    msg = f"Info hash must be 40 hex or 32 base32 characters, got {len(btih)}"
    raise MagnetError(msg)


def is_magnet(uri: str) -> bool:
    """Cheap check used to route CLI input."""
    return uri.strip().lower().startswith(MAGNET_PREFIX)


def parse_magnet(uri: str) -> MagnetInfo:
    """Parse a magnet URI and return `MagnetInfo`.

    Supports: xt=urn:btih:<hash>, dn, tr (multiple), x.pe (multiple peer
    addresses). Unparseable peer addresses are skipped with a warning.
    """
    parsed = urllib.parse.urlparse(uri.strip())
    if parsed.scheme.lower() != "magnet":
        msg = "Not a magnet URI"
        raise MagnetError(msg, {"uri": uri[:80]})

    qs = urllib.parse.parse_qs(parsed.query)
    btih_value = None
    for xt in qs.get("xt", []):
        if xt.lower().startswith(BTIH_PREFIX):
            btih_value = xt[len(BTIH_PREFIX) :]
            break
    if not btih_value:
        msg = "Magnet URI missing xt=urn:btih"
        raise MagnetError(msg, {"uri": uri[:80]})

    trackers: list[str] = []
    for tracker in qs.get("tr", []):
        if tracker not in trackers:
            trackers.append(tracker)

    peer_hints: list[PeerAddress] = []
    for raw in qs.get("x.pe", []):
        try:
            peer_hints.append(PeerAddress.parse(raw))
        except ValueError as e:
            logger.warning("Ignoring invalid x.pe peer %r: %s", raw, e)

    return MagnetInfo(
        info_hash=_hex_or_base32_to_bytes(btih_value),
        display_name=qs.get("dn", [None])[0],
        trackers=trackers,
        peer_hints=peer_hints,
    )


def build_magnet(
    info_hash: bytes,
    display_name: str | None = None,
    trackers: list[str] | None = None,
) -> str:
    """Build a magnet URI for an info hash."""
    params = [("xt", f"{BTIH_PREFIX}{info_hash.hex()}")]
    if display_name:
        params.append(("dn", display_name))
    params.extend(("tr", tracker) for tracker in trackers or [])
    return MAGNET_PREFIX + urllib.parse.urlencode(params, safe=":/")
