"""Streaming CAR v1 encoder."""

from __future__ import annotations

import hashlib
import io
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Iterable, List, Optional, Sequence

import dag_cbor
from multiformats import CID, varint

from ..dag.nodes import GraphNode, NodeKind

CAR_VERSION = 1

# 4 MiB rounded down to whole 127-byte commitment blocks.
BUF_SIZE = (4 << 20) // 128 * 127


class SourceChangedError(OSError):
    """Raised when a source file no longer matches the bytes it was graphed from."""


@dataclass(frozen=True)
class ArchiveHeader:
    roots: Sequence[CID]
    version: int = CAR_VERSION

    def encode(self) -> bytes:
        return dag_cbor.encode({"roots": list(self.roots), "version": self.version})


@dataclass
class EncodeStats:
    """Bytes written and the archive offset of each node record, in emission order."""

    size: int = 0
    offsets: List[int] = field(default_factory=list)


class TeeWriter(io.RawIOBase):
    """Raw writer that hands every write to all of its sinks, in order."""

    def __init__(self, *sinks: object) -> None:
        super().__init__()
        self._sinks = sinks

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:  # type: ignore[override]
        chunk = bytes(data)
        for sink in self._sinks:
            sink.write(chunk)  # type: ignore[attr-defined]
        return len(chunk)


def encode(root: GraphNode, emission_order: Iterable[GraphNode], sink: BinaryIO) -> EncodeStats:
    """Write the header for ``root`` and one framed record per emitted node to ``sink``."""
    stats = EncodeStats()
    stats.size += _write_frame(sink, ArchiveHeader(roots=[root.cid]).encode())

    reader = _SourceReader()
    try:
        for node in emission_order:
            stats.offsets.append(stats.size)
            if node.is_empty_leaf:
                continue
            stats.size += _write_frame(sink, bytes(node.cid), _node_bytes(node, reader))
    finally:
        reader.close()
    return stats


def _write_frame(sink: BinaryIO, *parts: bytes) -> int:
    length = sum(len(part) for part in parts)
    prefix = varint.encode(length)
    sink.write(prefix)
    for part in parts:
        sink.write(part)
    return len(prefix) + length


def _node_bytes(node: GraphNode, reader: "_SourceReader") -> bytes:
    if node.kind is not NodeKind.CHUNK:
        if node.block is None:
            raise ValueError(f"{node.kind.value} node {node.cid} has no encoded block")
        return node.block
    if node.source is None:
        raise ValueError(f"Chunk {node.cid} has no source file")
    data = reader.read(node.source, node.offset, node.size)
    if hashlib.sha256(data).digest() != node.cid.raw_digest:
        raise SourceChangedError(
            f"{node.source} changed at offset {node.offset} since the graph was built"
        )
    return data


class _SourceReader:
    """Keeps the most recently used source file open across consecutive chunks."""

    def __init__(self) -> None:
        self._path: Optional[Path] = None
        self._handle: Optional[BinaryIO] = None

    def read(self, path: Path, offset: int, length: int) -> bytes:
        handle = self._handle
        if handle is None or self._path != path:
            self.close()
            handle = self._handle = path.open("rb")
            self._path = path
        handle.seek(offset)
        data = handle.read(length)
        if len(data) != length:
            raise SourceChangedError(f"{path} is shorter than expected at offset {offset}")
        return data

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
        self._handle = None
        self._path = None


__all__ = [
    "ArchiveHeader",
    "BUF_SIZE",
    "CAR_VERSION",
    "EncodeStats",
    "SourceChangedError",
    "TeeWriter",
    "encode",
]
