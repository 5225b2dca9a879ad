"""CAR v1 archive encoding and reading."""

from .reader import ArchiveError, ArchiveGraph, ArchiveReader, load_graph
from .writer import (
    BUF_SIZE,
    CAR_VERSION,
    ArchiveHeader,
    EncodeStats,
    SourceChangedError,
    TeeWriter,
    encode,
)

__all__ = [
    "ArchiveError",
    "ArchiveGraph",
    "ArchiveHeader",
    "ArchiveReader",
    "BUF_SIZE",
    "CAR_VERSION",
    "EncodeStats",
    "SourceChangedError",
    "TeeWriter",
    "encode",
    "load_graph",
]
