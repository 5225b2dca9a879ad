"""Streaming Filecoin piece commitment (CommP) computation.

Input bytes are fr32-packed: every 127 input bytes become four 32-byte leaves
holding 254 bits of payload each, the two top bits left zero so every leaf is a
valid field element. Leaves are folded into a binary Merkle tree whose internal
nodes are ``sha256(left || right)`` truncated to 254 bits. The tree covers the
smallest power-of-two padded size that fits the data; the remainder is zero
padding, whose subtree commitments are precomputed.
"""

from __future__ import annotations

import hashlib
from typing import List, Optional, Tuple

from multiformats import CID, multicodec, varint

NODE_SIZE = 32
UNPADDED_QUAD = 127
PADDED_QUAD = 128
MIN_PIECE_SIZE = 128
MAX_PIECE_SIZE = 1 << 36

_LEAF_BITS = 254
_LEAF_MASK = (1 << _LEAF_BITS) - 1
_MAX_LEVEL = (MAX_PIECE_SIZE // NODE_SIZE).bit_length() - 1


class InvalidSizeError(ValueError):
    """Raised for piece sizes that are not usable size classes."""


def compress(left: bytes, right: bytes) -> bytes:
    """Merkle node function: sha256 with the two most significant bits cleared."""
    digest = bytearray(hashlib.sha256(left + right).digest())
    digest[31] &= 0x3F
    return bytes(digest)


def _zero_commitments() -> List[bytes]:
    levels = [bytes(NODE_SIZE)]
    for _ in range(_MAX_LEVEL):
        levels.append(compress(levels[-1], levels[-1]))
    return levels


# ZERO_COMMITMENTS[i] is the root of an all-zero subtree of 2**i leaves.
ZERO_COMMITMENTS = _zero_commitments()


def is_valid_size_class(size: int) -> bool:
    return (
        MIN_PIECE_SIZE <= size <= MAX_PIECE_SIZE
        and size & (size - 1) == 0
    )


def size_class_for(payload_size: int) -> int:
    """Smallest padded piece size whose fr32 capacity holds ``payload_size`` bytes."""
    size = MIN_PIECE_SIZE
    while size // PADDED_QUAD * UNPADDED_QUAD < payload_size:
        size <<= 1
    if size > MAX_PIECE_SIZE:
        raise InvalidSizeError(
            f"{payload_size} bytes exceed the maximum piece size of {MAX_PIECE_SIZE}"
        )
    return size


def _level_of(size: int) -> int:
    return (size // NODE_SIZE).bit_length() - 1


def fr32_pack(quad: bytes) -> bytes:
    """Expand 127 bytes into 128: four 254-bit little-endian words, two zero bits each."""
    value = int.from_bytes(quad, "little")
    out = bytearray()
    for index in range(4):
        out += ((value >> (_LEAF_BITS * index)) & _LEAF_MASK).to_bytes(NODE_SIZE, "little")
    return bytes(out)


class CommPAccumulator:
    """Append-only CommP calculator; feed it with ``write`` then call ``finish`` once."""

    def __init__(self, target_size: int = 0) -> None:
        if target_size and not is_valid_size_class(target_size):
            raise InvalidSizeError(f"{target_size} is not a valid piece size")
        self.target_size = target_size
        self.bytes_written = 0
        self._pending = bytearray()
        self._layers: List[Optional[bytes]] = []
        self._finished = False

    def write(self, data: bytes) -> int:
        if self._finished:
            raise RuntimeError("CommP accumulator already finished")
        length = len(data)
        if not length:
            return 0
        if self.bytes_written + length > MAX_PIECE_SIZE // PADDED_QUAD * UNPADDED_QUAD:
            raise InvalidSizeError(f"Input exceeds the maximum piece size of {MAX_PIECE_SIZE}")
        self.bytes_written += length
        self._pending += data

        full = len(self._pending) - len(self._pending) % UNPADDED_QUAD
        if full:
            view = memoryview(self._pending)
            for start in range(0, full, UNPADDED_QUAD):
                self._absorb(view[start : start + UNPADDED_QUAD])
            view.release()
            del self._pending[:full]
        return length

    def finish(self) -> Tuple[bytes, int]:
        """Return ``(commp, padded piece size)``."""
        if self._finished:
            raise RuntimeError("CommP accumulator already finished")
        self._finished = True

        natural = size_class_for(self.bytes_written)
        size = natural
        if self.target_size:
            if self.target_size < natural:
                raise InvalidSizeError(
                    f"Requested piece size {self.target_size} is smaller than {natural}"
                )
            size = self.target_size

        if self._pending:
            self._pending += bytes(UNPADDED_QUAD - len(self._pending))
            self._absorb(bytes(self._pending))
            self._pending.clear()

        top = _level_of(size)
        for level in range(top):
            if level < len(self._layers) and self._layers[level] is not None:
                node = self._layers[level]
                self._layers[level] = None
                self._push(level + 1, compress(node, ZERO_COMMITMENTS[level]))

        if top < len(self._layers) and self._layers[top] is not None:
            return self._layers[top], size
        return ZERO_COMMITMENTS[top], size

    def _absorb(self, quad: bytes | memoryview) -> None:
        packed = fr32_pack(bytes(quad))
        for start in range(0, PADDED_QUAD, NODE_SIZE):
            self._push(0, packed[start : start + NODE_SIZE])

    def _push(self, level: int, node: bytes) -> None:
        layers = self._layers
        while True:
            if level == len(layers):
                layers.append(None)
            left = layers[level]
            if left is None:
                layers[level] = node
                return
            layers[level] = None
            node = compress(left, node)
            level += 1


def pad_commp(commp: bytes, current_size: int, target_size: int) -> bytes:
    """Extend a commitment to ``target_size`` as if the piece were zero-padded."""
    if len(commp) != NODE_SIZE:
        raise InvalidSizeError(f"CommP must be {NODE_SIZE} bytes, got {len(commp)}")
    if not is_valid_size_class(current_size):
        raise InvalidSizeError(f"{current_size} is not a valid piece size")
    if not is_valid_size_class(target_size):
        raise InvalidSizeError(f"{target_size} is not a valid piece size")
    if target_size < current_size:
        raise InvalidSizeError(
            f"Target piece size {target_size} is smaller than current size {current_size}"
        )

    for level in range(_level_of(current_size), _level_of(target_size)):
        commp = compress(commp, ZERO_COMMITMENTS[level])
    return commp


def piece_cid(commp: bytes) -> CID:
    """CIDv1 for a piece commitment (fil-commitment-unsealed, sha2-256-trunc254-padded)."""
    if len(commp) != NODE_SIZE:
        raise InvalidSizeError(f"CommP must be {NODE_SIZE} bytes, got {len(commp)}")
    code = multicodec.get("sha2-256-trunc254-padded").code
    digest = varint.encode(code) + varint.encode(len(commp)) + commp
    return CID("base32", 1, "fil-commitment-unsealed", digest)


__all__ = [
    "CommPAccumulator",
    "InvalidSizeError",
    "MAX_PIECE_SIZE",
    "MIN_PIECE_SIZE",
    "ZERO_COMMITMENTS",
    "compress",
    "fr32_pack",
    "is_valid_size_class",
    "pad_commp",
    "piece_cid",
    "size_class_for",
]
