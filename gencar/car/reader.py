"""CAR v1 reader used to verify and replay generated archives."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import BinaryIO, Dict, Iterator, List, Optional, Tuple

import dag_cbor
from multiformats import CID, varint

from ..dag.nodes import EMPTY_CID, decode_dag_pb
from .writer import CAR_VERSION, ArchiveHeader

_MAX_VARINT_BYTES = 9


class ArchiveError(ValueError):
    """Raised when an archive is malformed or its records do not verify."""


@dataclass
class ArchiveGraph:
    """Graph rebuilt by replaying archive records in order."""

    header: ArchiveHeader
    order: List[CID] = field(default_factory=list)
    links: Dict[CID, List[Tuple[str, CID, int]]] = field(default_factory=dict)
    sizes: Dict[CID, int] = field(default_factory=dict)

    @property
    def root(self) -> CID:
        return self.header.roots[0]


class ArchiveReader:
    """Iterates the header and ``(cid, data)`` records of a CAR v1 stream."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream
        self.header = self._read_header()

    def records(self) -> Iterator[Tuple[CID, bytes]]:
        while True:
            length = _read_varint(self._stream)
            if length is None:
                return
            frame = self._stream.read(length)
            if len(frame) != length:
                raise ArchiveError("Truncated record")
            yield _split_record(frame)

    def _read_header(self) -> ArchiveHeader:
        length = _read_varint(self._stream)
        if length is None:
            raise ArchiveError("Empty archive")
        payload = self._stream.read(length)
        if len(payload) != length:
            raise ArchiveError("Truncated archive header")
        try:
            decoded = dag_cbor.decode(payload)
        except Exception as exc:
            raise ArchiveError(f"Invalid archive header: {exc}") from exc
        if not isinstance(decoded, dict):
            raise ArchiveError("Archive header must be a map")
        version = decoded.get("version")
        roots = decoded.get("roots")
        if version != CAR_VERSION:
            raise ArchiveError(f"Unsupported archive version {version!r}")
        if not isinstance(roots, list) or not roots or not all(isinstance(r, CID) for r in roots):
            raise ArchiveError("Archive header must list at least one root CID")
        return ArchiveHeader(roots=roots, version=version)


def load_graph(stream: BinaryIO) -> ArchiveGraph:
    """Replay every record, checking digests and that references resolve before use."""
    reader = ArchiveReader(stream)
    graph = ArchiveGraph(header=reader.header)
    known = {EMPTY_CID}
    for cid, data in reader.records():
        _verify_digest(cid, data)
        if cid.codec.name == "dag-pb":
            try:
                links, _ = decode_dag_pb(data)
            except ValueError as exc:
                raise ArchiveError(f"Invalid dag-pb block {cid}: {exc}") from exc
            for name, target, _ in links:
                if target not in known:
                    raise ArchiveError(f"{cid} links to {target} ({name!r}) before it appears")
            graph.links[cid] = links
        elif cid.codec.name != "raw":
            raise ArchiveError(f"Unsupported codec {cid.codec.name} for {cid}")
        known.add(cid)
        graph.order.append(cid)
        graph.sizes[cid] = len(data)

    for root in graph.header.roots:
        if root not in known:
            raise ArchiveError(f"Root {root} has no record in the archive")
    return graph


def _verify_digest(cid: CID, data: bytes) -> None:
    if cid.hashfun.name != "sha2-256":
        raise ArchiveError(f"Unsupported hash function {cid.hashfun.name} for {cid}")
    if hashlib.sha256(data).digest() != cid.raw_digest:
        raise ArchiveError(f"Record {cid} does not match its content")


def _split_record(frame: bytes) -> Tuple[CID, bytes]:
    view = memoryview(frame)
    try:
        consumed = 0
        rest = view
        for _ in range(3):  # version, codec, multihash code
            _, size, rest = varint.decode_raw(rest)
            consumed += size
        digest_len, size, rest = varint.decode_raw(rest)
        consumed += size + digest_len
        cid = CID.decode(bytes(view[:consumed]))
    except Exception as exc:
        raise ArchiveError(f"Invalid CID in record: {exc}") from exc
    return cid, bytes(view[consumed:])


def _read_varint(stream: BinaryIO) -> Optional[int]:
    encoded = bytearray()
    while True:
        byte = stream.read(1)
        if not byte:
            if encoded:
                raise ArchiveError("Truncated varint")
            return None
        encoded += byte
        if not byte[0] & 0x80:
            return varint.decode(bytes(encoded))
        if len(encoded) >= _MAX_VARINT_BYTES:
            raise ArchiveError("Varint too long")


__all__ = ["ArchiveError", "ArchiveGraph", "ArchiveReader", "load_graph"]
