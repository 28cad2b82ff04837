"""Build deterministic content, info dictionaries and manifests for tests."""

from __future__ import annotations

import hashlib
import random
from dataclasses import dataclass

from swarmget.core.bencode import encode
from swarmget.core.manifest import manifest_from_info
from swarmget.core.torrent import build_info_dict
from swarmget.models import ContentDescriptor, Manifest


@dataclass
class TestContent:
    """Payload plus everything a swarm needs to fetch it."""

    __test__ = False

    data: bytes
    piece_length: int
    info: dict
    info_bytes: bytes
    info_hash: bytes
    manifest: Manifest

    @property
    def num_pieces(self) -> int:
        return self.manifest.num_pieces

    def piece(self, index: int) -> bytes:
        start = index * self.piece_length
        return self.data[start : start + self.piece_length]

    def descriptor(self, embed_manifest: bool = True, **kwargs) -> ContentDescriptor:
        return ContentDescriptor(
            info_hash=self.info_hash,
            display_name=self.manifest.name,
            manifest=self.manifest if embed_manifest else None,
            **kwargs,
        )


def make_content(
    size: int,
    piece_length: int = 32 * 1024,
    name: str = "payload.bin",
    files: list[tuple[list[str], int]] | None = None,
    seed: int = 1234,
) -> TestContent:
    """Random bytes of ``size`` split into pieces; ``files`` must sum to ``size``."""
    rng = random.Random(seed)
    data = rng.randbytes(size)
    hashes = [
        hashlib.sha1(data[i : i + piece_length]).digest()  # nosec B324
        for i in range(0, size, piece_length)
    ]
    if files is None:
        info = build_info_dict(name, piece_length, hashes, length=size)
    else:
        assert sum(length for _, length in files) == size
        info = build_info_dict(name, piece_length, hashes, files=files)
    info_bytes = encode(info)
    return TestContent(
        data=data,
        piece_length=piece_length,
        info=info,
        info_bytes=info_bytes,
        info_hash=hashlib.sha1(info_bytes).digest(),  # nosec B324
        manifest=manifest_from_info(info),
    )
