"""Metainfo (.torrent) file parsing."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from swarmget.core.bencode import decode, encode
from swarmget.core.manifest import info_hash_of, manifest_from_info
from swarmget.exceptions import BencodeError, ManifestError
from swarmget.models import ContentDescriptor


class TorrentParser:
    """Parser for BitTorrent metainfo files."""

    def parse(self, torrent_path: str | Path) -> ContentDescriptor:
        """Parse a metainfo file into a descriptor with an embedded manifest.

        Raises:
            ManifestError: If the file is missing or malformed

        """
        path = Path(torrent_path)
        if not path.is_file():
            msg = f"Torrent file not found: {path}"
            raise ManifestError(msg)
        with open(path, "rb") as f:
            return self.parse_bytes(f.read())

    def parse_bytes(self, data: bytes) -> ContentDescriptor:
        """Parse metainfo from bytes."""
        try:
            decoded = decode(data)
        except BencodeError as e:
            msg = f"Failed to parse torrent: {e}"
            raise ManifestError(msg) from e
        if not isinstance(decoded, dict) or not isinstance(decoded.get(b"info"), dict):
            msg = "Torrent has no info dictionary"
            raise ManifestError(msg)

        info = decoded[b"info"]
        manifest = manifest_from_info(info)
        return ContentDescriptor(
            info_hash=info_hash_of(encode(info)),
            display_name=manifest.name,
            trackers=self._extract_trackers(decoded),
            manifest=manifest,
        )

    def _extract_trackers(self, data: dict[bytes, Any]) -> list[str]:
        """Flatten announce and announce-list, keeping first-seen order."""
        trackers: list[str] = []
        candidates: list[Any] = []
        if isinstance(data.get(b"announce"), bytes):
            candidates.append(data[b"announce"])
        for tier in data.get(b"announce-list", []) or []:
            if isinstance(tier, list):
                candidates.extend(tier)
        for raw in candidates:
            if not isinstance(raw, bytes):
                continue
            url = raw.decode("utf-8", errors="replace")
            if url and url not in trackers:
                trackers.append(url)
        return trackers


def build_info_dict(
    name: str,
    piece_length: int,
    piece_hashes: list[bytes],
    files: list[tuple[list[str], int]] | None = None,
    length: int | None = None,
) -> dict[bytes, Any]:
    """Assemble an info dictionary (single-file when ``length`` is given)."""
    info: dict[bytes, Any] = {
        b"name": name.encode("utf-8"),
        b"piece length": piece_length,
        b"pieces": b"".join(piece_hashes),
    }
    if files is None:
        info[b"length"] = length or 0
    else:
        info[b"files"] = [
            {b"length": size, b"path": [p.encode("utf-8") for p in parts]}
            for parts, size in files
        ]
    return info
