"""Object graph nodes and their dag-pb / UnixFS block encoding."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from multiformats import CID, multihash, varint

DEFAULT_CHUNK_SIZE = 256 * 1024

# UnixFS Data.DataType values
UNIXFS_FILE = 2
UNIXFS_DIRECTORY = 1

# protobuf wire types
_WIRE_VARINT = 0
_WIRE_BYTES = 2


def raw_cid(data: bytes) -> CID:
    """CIDv1 of a raw leaf: the sha2-256 digest of its bytes."""
    digest = multihash.wrap(hashlib.sha256(data).digest(), "sha2-256")
    return CID("base32", 1, "raw", digest)


def dag_pb_cid(block: bytes) -> CID:
    digest = multihash.wrap(hashlib.sha256(block).digest(), "sha2-256")
    return CID("base32", 1, "dag-pb", digest)


EMPTY_CID = raw_cid(b"")


class NodeKind(str, Enum):
    CHUNK = "chunk"
    FILE = "file"
    DIRECTORY = "directory"


@dataclass
class Link:
    """Named reference from a file or directory node to a child node."""

    name: str
    node: "GraphNode"


@dataclass
class GraphNode:
    """One node of the object graph.

    Chunk nodes keep only the location of their bytes (``source``, ``offset``);
    the encoder re-reads them. File and directory nodes own their serialized
    dag-pb ``block`` and their children through ``links``.
    """

    kind: NodeKind
    cid: CID
    size: int
    tsize: int
    block: Optional[bytes] = None
    links: List[Link] = field(default_factory=list)
    source: Optional[Path] = None
    offset: int = 0

    @property
    def is_empty_leaf(self) -> bool:
        return self.kind is NodeKind.CHUNK and self.size == 0

    def walk(self) -> Iterator["GraphNode"]:
        """Yield nodes depth-first, children before their parent."""
        for link in self.links:
            yield from link.node.walk()
        yield self

    def to_dict(self, name: str = "") -> Dict[str, Any]:
        """Describe the directory/file tree without descending into file chunks."""
        payload: Dict[str, Any] = {
            "Name": name,
            "Hash": str(self.cid),
            "Size": self.size,
        }
        if self.kind is NodeKind.DIRECTORY:
            payload["Link"] = [link.node.to_dict(link.name) for link in self.links]
        return payload


def chunk_node(data: bytes, source: Path, offset: int) -> GraphNode:
    if not data:
        return empty_leaf()
    return GraphNode(
        kind=NodeKind.CHUNK,
        cid=raw_cid(data),
        size=len(data),
        tsize=len(data),
        source=source,
        offset=offset,
    )


def empty_leaf() -> GraphNode:
    return GraphNode(kind=NodeKind.CHUNK, cid=EMPTY_CID, size=0, tsize=0)


def file_node(children: Sequence[GraphNode]) -> GraphNode:
    """UnixFS file node over ``children`` in order, annotated with their sizes."""
    block_sizes = [child.size for child in children]
    data = encode_unixfs_data(UNIXFS_FILE, filesize=sum(block_sizes), blocksizes=block_sizes)
    links = [Link(name="", node=child) for child in children]
    return _pb_node(NodeKind.FILE, links, data, size=sum(block_sizes))


def directory_node(entries: Sequence[Tuple[str, GraphNode]]) -> GraphNode:
    """UnixFS directory node; entry order is preserved."""
    data = encode_unixfs_data(UNIXFS_DIRECTORY)
    links = [Link(name=name, node=child) for name, child in entries]
    return _pb_node(NodeKind.DIRECTORY, links, data, size=sum(child.size for _, child in entries))


def _pb_node(kind: NodeKind, links: List[Link], data: bytes, *, size: int) -> GraphNode:
    block = encode_dag_pb([(link.name, link.node.cid, link.node.tsize) for link in links], data)
    return GraphNode(
        kind=kind,
        cid=dag_pb_cid(block),
        size=size,
        tsize=len(block) + sum(link.node.tsize for link in links),
        block=block,
        links=links,
    )


# ----------------------------------------------------------------------
# protobuf encoding

def _field_key(number: int, wire_type: int) -> bytes:
    return varint.encode((number << 3) | wire_type)


def _bytes_field(number: int, value: bytes) -> bytes:
    return _field_key(number, _WIRE_BYTES) + varint.encode(len(value)) + value


def _varint_field(number: int, value: int) -> bytes:
    return _field_key(number, _WIRE_VARINT) + varint.encode(value)


def encode_unixfs_data(
    data_type: int, *, filesize: int | None = None, blocksizes: Sequence[int] = ()
) -> bytes:
    out = bytearray(_varint_field(1, data_type))
    if filesize is not None:
        out += _varint_field(3, filesize)
    for block_size in blocksizes:
        out += _varint_field(4, block_size)
    return bytes(out)


def encode_dag_pb(links: Sequence[Tuple[str, CID, int]], data: bytes) -> bytes:
    """Canonical dag-pb: every PBLink (field 2) first, then Data (field 1)."""
    out = bytearray()
    for name, cid, tsize in links:
        link = _bytes_field(1, bytes(cid)) + _bytes_field(2, name.encode("utf-8")) + _varint_field(3, tsize)
        out += _bytes_field(2, link)
    out += _bytes_field(1, data)
    return bytes(out)


def decode_dag_pb(block: bytes) -> Tuple[List[Tuple[str, CID, int]], bytes]:
    """Return ``(links, data)`` of a dag-pb block; raises ValueError when malformed."""
    links: List[Tuple[str, CID, int]] = []
    data = b""
    for number, value in _iter_fields(memoryview(block)):
        if number == 2 and isinstance(value, memoryview):
            name = ""
            tsize = 0
            target: Optional[CID] = None
            for link_number, link_value in _iter_fields(value):
                if link_number == 1 and isinstance(link_value, memoryview):
                    target = CID.decode(bytes(link_value))
                elif link_number == 2 and isinstance(link_value, memoryview):
                    name = bytes(link_value).decode("utf-8")
                elif link_number == 3 and isinstance(link_value, int):
                    tsize = link_value
            if target is None:
                raise ValueError("dag-pb link without a hash")
            links.append((name, target, tsize))
        elif number == 1 and isinstance(value, memoryview):
            data = bytes(value)
        else:
            raise ValueError(f"unexpected dag-pb field {number}")
    return links, data


def _iter_fields(buf: memoryview) -> Iterator[Tuple[int, Any]]:
    while len(buf):
        key, _, buf = varint.decode_raw(buf)
        number, wire_type = key >> 3, key & 0x7
        if wire_type == _WIRE_VARINT:
            value, _, buf = varint.decode_raw(buf)
            yield number, value
        elif wire_type == _WIRE_BYTES:
            length, _, buf = varint.decode_raw(buf)
            if length > len(buf):
                raise ValueError("truncated protobuf field")
            yield number, buf[:length]
            buf = buf[length:]
        else:
            raise ValueError(f"unsupported protobuf wire type {wire_type}")


__all__ = [
    "DEFAULT_CHUNK_SIZE",
    "EMPTY_CID",
    "GraphNode",
    "Link",
    "NodeKind",
    "chunk_node",
    "dag_pb_cid",
    "decode_dag_pb",
    "directory_node",
    "empty_leaf",
    "encode_dag_pb",
    "encode_unixfs_data",
    "file_node",
    "raw_cid",
]
