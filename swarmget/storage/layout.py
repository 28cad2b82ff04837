"""Mapping between the concatenated piece stream and files on disk."""

from __future__ import annotations

import bisect
from dataclasses import dataclass
from pathlib import Path

from swarmget.exceptions import ManifestError
from swarmget.models import Manifest


@dataclass(frozen=True)
class FileSegment:
    """A contiguous run of stream bytes that lives in one file.

    ``data_offset`` is the position of the run inside the buffer being
    written, ``file_offset`` its position inside the file.
    """

    file_index: int
    path: Path
    file_offset: int
    data_offset: int
    length: int


class FileLayout:
    """Resolves stream ranges into per-file segments."""

    def __init__(self, manifest: Manifest, destination: str | Path) -> None:
        self.manifest = manifest
        self.destination = Path(destination).resolve()
        self.paths = [self._resolve(entry.path) for entry in manifest.files]
        self._indices = [i for i, entry in enumerate(manifest.files) if entry.length > 0]
        self._starts = [manifest.files[i].offset for i in self._indices]

    def _resolve(self, relative: str) -> Path:
        path = (self.destination / relative).resolve()
        if path != self.destination and self.destination not in path.parents:
            msg = f"File path escapes destination: {relative}"
            raise ManifestError(msg)
        return path

    def segments(self, offset: int, length: int) -> list[FileSegment]:
        """Split ``length`` bytes starting at stream ``offset`` by file boundary."""
        if offset < 0 or length < 0 or offset + length > self.manifest.total_length:
            msg = f"Range {offset}+{length} outside stream of {self.manifest.total_length} bytes"
            raise ValueError(msg)
        result: list[FileSegment] = []
        pos = bisect.bisect_right(self._starts, offset) - 1
        consumed = 0
        while consumed < length:
            file_index = self._indices[pos]
            entry = self.manifest.files[file_index]
            file_offset = offset + consumed - entry.offset
            run = min(entry.length - file_offset, length - consumed)
            result.append(
                FileSegment(file_index, self.paths[file_index], file_offset, consumed, run)
            )
            consumed += run
            pos += 1
        return result

    def piece_segments(self, piece_index: int) -> list[FileSegment]:
        return self.segments(
            self.manifest.piece_offset(piece_index), self.manifest.piece_size(piece_index)
        )
