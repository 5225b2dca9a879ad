"""Piece commitment accumulation and padding."""

from .accumulator import (
    MAX_PIECE_SIZE,
    MIN_PIECE_SIZE,
    CommPAccumulator,
    InvalidSizeError,
    is_valid_size_class,
    pad_commp,
    piece_cid,
    size_class_for,
)

__all__ = [
    "CommPAccumulator",
    "InvalidSizeError",
    "MAX_PIECE_SIZE",
    "MIN_PIECE_SIZE",
    "is_valid_size_class",
    "pad_commp",
    "piece_cid",
    "size_class_for",
]
