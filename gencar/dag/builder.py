"""Build the content-addressed object graph for a manifest."""

from __future__ import annotations

import os
import stat
from dataclasses import dataclass, field, replace
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Dict, List, Optional, Sequence, Tuple

from ..logging import get_logger
from ..manifest import ManifestError, validate_span
from ..models import FileSpan, Manifest, PathEntry
from .nodes import (
    DEFAULT_CHUNK_SIZE,
    GraphNode,
    chunk_node,
    directory_node,
    empty_leaf,
    file_node,
)


@dataclass
class BuildResult:
    """Object graph of one manifest plus the lookup tables derived from it."""

    root: GraphNode
    path_index: Dict[str, PathEntry]
    emission_order: List[GraphNode]
    _positions: Dict[str, int] = field(default_factory=dict, repr=False)

    @property
    def root_cid(self) -> str:
        return str(self.root.cid)

    def locate(self, offsets: Sequence[int]) -> Dict[str, PathEntry]:
        """Return the path index with archive offsets (aligned to emission order) filled in."""
        located: Dict[str, PathEntry] = {}
        for key, entry in self.path_index.items():
            position = self._positions.get(key)
            located[key] = entry if position is None else replace(entry, offset=offsets[position])
        return located


@dataclass
class _Span:
    span: FileSpan
    source: Path


@dataclass
class _Dir:
    entries: Dict[str, "_Dir | _File"] = field(default_factory=dict)


@dataclass
class _File:
    spans: List[_Span] = field(default_factory=list)


class ObjectGraphBuilder:
    """Turns an ordered manifest into a directory/file/chunk tree.

    Directories appear in the order their first span appears in the manifest;
    spans of the same path are grouped into one file entry. Every node id is
    computed once all of its children exist, and that same post-order is the
    order in which the archive writer emits records.
    """

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self.chunk_size = chunk_size
        self.logger = get_logger("dag.builder")

    def build(self, manifest: Manifest, base_dir: str | Path) -> BuildResult:
        base = Path(base_dir).expanduser().resolve()
        tree = self._plan(manifest, base)

        path_index: Dict[str, PathEntry] = {}
        positions: Dict[str, int] = {}
        emission: List[GraphNode] = []
        root = self._build_dir(tree, PurePosixPath(), path_index, positions, emission)
        self.logger.debug(
            "Built graph for %d span(s): root %s, %d record(s)",
            len(manifest),
            root.cid,
            len(emission),
        )
        return BuildResult(
            root=root,
            path_index=path_index,
            emission_order=emission,
            _positions=positions,
        )

    # ------------------------------------------------------------------
    # Validation and tree layout

    def _plan(self, manifest: Manifest, base: Path) -> _Dir:
        root = _Dir()
        sizes: Dict[Path, int] = {}
        for span in manifest:
            validate_span(span)
            source = self._resolve(span.path, base)
            actual = sizes.get(source)
            if actual is None:
                actual = sizes[source] = _regular_file_size(source)
            if span.end > actual:
                raise ManifestError(
                    f"Span end {span.end} exceeds size {actual} of {source}"
                )
            parts = source.relative_to(base).parts
            self._insert(root, parts, _Span(span=span, source=source))
        return root

    @staticmethod
    def _resolve(path: str, base: Path) -> Path:
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = base / candidate
        resolved = candidate.resolve()
        try:
            relative = resolved.relative_to(base)
        except ValueError:
            raise ManifestError(f"{path} is outside base directory {base}") from None
        if not relative.parts:
            raise ManifestError(f"{path} resolves to the base directory itself")
        return resolved

    @staticmethod
    def _insert(root: _Dir, parts: Tuple[str, ...], item: _Span) -> None:
        current = root
        for depth, name in enumerate(parts[:-1]):
            entry = current.entries.setdefault(name, _Dir())
            if not isinstance(entry, _Dir):
                conflict = "/".join(parts[: depth + 1])
                raise ManifestError(f"{conflict} is used both as a file and a directory")
            current = entry
        entry = current.entries.setdefault(parts[-1], _File())
        if not isinstance(entry, _File):
            raise ManifestError(f"{'/'.join(parts)} is used both as a file and a directory")
        entry.spans.append(item)

    # ------------------------------------------------------------------
    # Bottom-up node construction

    def _build_dir(
        self,
        directory: _Dir,
        rel: PurePosixPath,
        path_index: Dict[str, PathEntry],
        positions: Dict[str, int],
        emission: List[GraphNode],
    ) -> GraphNode:
        children: List[Tuple[str, GraphNode]] = []
        for name, entry in directory.entries.items():
            child_rel = rel / name
            if isinstance(entry, _Dir):
                child = self._build_dir(entry, child_rel, path_index, positions, emission)
            else:
                child = self._build_file(entry, child_rel.as_posix(), path_index, positions, emission)
            children.append((name, child))

        node = directory_node(children)
        key = rel.as_posix()
        if key != ".":
            self._record(key, node, True, path_index, positions, len(emission))
        emission.append(node)
        return node

    def _build_file(
        self,
        entry: _File,
        key: str,
        path_index: Dict[str, PathEntry],
        positions: Dict[str, int],
        emission: List[GraphNode],
    ) -> GraphNode:
        if len(entry.spans) == 1:
            node = self._build_span(entry.spans[0], emission)
            self._record(key, node, False, path_index, positions, len(emission) - 1)
            return node

        span_nodes: List[GraphNode] = []
        for item in entry.spans:
            node = self._build_span(item, emission)
            span_key = f"{key}#{item.span.start}-{item.span.end}"
            self._record(span_key, node, False, path_index, positions, len(emission) - 1)
            if not node.is_empty_leaf:
                span_nodes.append(node)

        if not span_nodes:
            node = empty_leaf()
        elif len(span_nodes) == 1:
            node = span_nodes[0]
        else:
            node = file_node(span_nodes)
            emission.append(node)
        self._record(key, node, False, path_index, positions, len(emission) - 1)
        return node

    def _build_span(self, item: _Span, emission: List[GraphNode]) -> GraphNode:
        span = item.span
        if span.start == span.end:
            return empty_leaf()

        chunks: List[GraphNode] = []
        with item.source.open("rb") as handle:
            handle.seek(span.start)
            offset = span.start
            while offset < span.end:
                length = min(self.chunk_size, span.end - offset)
                data = _read_exact(handle, length, item.source, offset)
                chunk = chunk_node(data, item.source, offset)
                emission.append(chunk)
                chunks.append(chunk)
                offset += length

        if len(chunks) == 1:
            return chunks[0]
        node = file_node(chunks)
        emission.append(node)
        return node

    @staticmethod
    def _record(
        key: str,
        node: GraphNode,
        is_dir: bool,
        path_index: Dict[str, PathEntry],
        positions: Dict[str, int],
        position: int,
    ) -> None:
        path_index[key] = PathEntry(cid=str(node.cid), is_dir=is_dir, size=node.size)
        if node.is_empty_leaf:
            positions.pop(key, None)
        else:
            positions[key] = position


def _regular_file_size(path: Path) -> int:
    try:
        info = os.stat(path)
    except OSError as exc:
        raise ManifestError(f"Cannot open {path}: {exc.strerror or exc}") from exc
    if not stat.S_ISREG(info.st_mode):
        raise ManifestError(f"{path} is not a regular file")
    return info.st_size


def _read_exact(handle: BinaryIO, length: int, source: Path, offset: int) -> bytes:
    data = handle.read(length)
    if len(data) != length:
        raise OSError(f"Short read from {source} at offset {offset}: wanted {length}, got {len(data)}")
    return data


__all__ = ["BuildResult", "ObjectGraphBuilder"]
