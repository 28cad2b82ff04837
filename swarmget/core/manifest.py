"""Build a validated ``Manifest`` from a bencoded info dictionary."""

from __future__ import annotations

import hashlib
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from swarmget.core.bencode import decode
from swarmget.exceptions import BencodeError, ManifestError
from swarmget.models import SHA1_LENGTH, FileEntry, Manifest


def info_hash_of(info_bytes: bytes) -> bytes:
    """SHA-1 of the raw bencoded info dictionary."""
    return hashlib.sha1(info_bytes).digest()  # nosec B324 - protocol hash


def _text(value: Any, field: str) -> str:
    if not isinstance(value, bytes):
        msg = f"Field {field!r} must be a byte string"
        raise ManifestError(msg)
    return value.decode("utf-8", errors="replace")


def _length(value: Any, field: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        msg = f"Field {field!r} must be a non-negative integer"
        raise ManifestError(msg)
    return value


def manifest_from_info(info: dict[bytes, Any]) -> Manifest:
    """Build a manifest from a decoded info dictionary.

    Raises:
        ManifestError: If required keys are missing or inconsistent

    """
    if not isinstance(info, dict):
        msg = "Info dictionary is not a dictionary"
        raise ManifestError(msg)
    for key in (b"name", b"piece length", b"pieces"):
        if key not in info:
            msg = f"Missing {key.decode()!r} in info dictionary"
            raise ManifestError(msg)

    name = _text(info[b"name"], "name")
    piece_length = _length(info[b"piece length"], "piece length")
    pieces = info[b"pieces"]
    if not isinstance(pieces, bytes) or len(pieces) % SHA1_LENGTH:
        msg = "Field 'pieces' must be a multiple of 20 bytes"
        raise ManifestError(msg)
    piece_hashes = [
        pieces[i : i + SHA1_LENGTH] for i in range(0, len(pieces), SHA1_LENGTH)
    ]

    entries: list[FileEntry] = []
    try:
        if b"files" in info:
            offset = 0
            for raw in info[b"files"]:
                parts = [_text(p, "path") for p in raw.get(b"path", [])]
                if not parts or not all(parts):
                    msg = "File entry without a usable path"
                    raise ManifestError(msg)
                length = _length(raw.get(b"length"), "length")
                entries.append(
                    FileEntry(path="/".join([name, *parts]), length=length, offset=offset)
                )
                offset += length
        elif b"length" in info:
            entries.append(
                FileEntry(path=name, length=_length(info[b"length"], "length"), offset=0)
            )
        else:
            msg = "Info dictionary specifies neither 'length' nor 'files'"
            raise ManifestError(msg)

        return Manifest(
            name=name,
            piece_length=piece_length,
            piece_hashes=piece_hashes,
            files=entries,
        )
    except PydanticValidationError as e:
        msg = f"Inconsistent manifest: {e}"
        raise ManifestError(msg) from e
    except (AttributeError, TypeError) as e:
        msg = f"Malformed file table: {e}"
        raise ManifestError(msg) from e


def manifest_from_bytes(info_bytes: bytes, expected_hash: bytes | None = None) -> Manifest:
    """Decode raw info bytes, optionally checking them against an info hash."""
    if expected_hash is not None and info_hash_of(info_bytes) != expected_hash:
        msg = "Info dictionary does not match the info hash"
        raise ManifestError(msg, {"expected": expected_hash.hex()})
    try:
        info = decode(info_bytes)
    except BencodeError as e:
        msg = f"Info dictionary is not valid bencode: {e}"
        raise ManifestError(msg) from e
    return manifest_from_info(info)
