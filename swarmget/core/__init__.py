"""Content descriptor parsing: bencode, magnet links, metainfo files."""

from __future__ import annotations

from swarmget.core.magnet import is_magnet, parse_magnet
from swarmget.core.manifest import manifest_from_bytes, manifest_from_info
from swarmget.core.torrent import TorrentParser

__all__ = [
    "TorrentParser",
    "is_magnet",
    "manifest_from_bytes",
    "manifest_from_info",
    "parse_magnet",
]
