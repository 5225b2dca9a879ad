"""Tests for CAR encoding and replay."""

from __future__ import annotations

import io

import pytest
from multiformats import varint

from gencar.car import (
    ArchiveError,
    ArchiveHeader,
    ArchiveReader,
    SourceChangedError,
    TeeWriter,
    encode,
    load_graph,
)
from gencar.dag import GraphNode, NodeKind, ObjectGraphBuilder
from gencar.dag.nodes import raw_cid
from tests._fixtures.dataset_builder import DatasetBuilder, pattern


def _encode(dataset: DatasetBuilder, *relatives: str, chunk_size: int = 1024):
    build = ObjectGraphBuilder(chunk_size=chunk_size).build(
        dataset.manifest(*relatives), dataset.path()
    )
    sink = io.BytesIO()
    stats = encode(build.root, build.emission_order, sink)
    return build, stats, sink.getvalue()


def test_header_names_the_graph_root(dataset: DatasetBuilder) -> None:
    dataset.write({"a.bin": pattern(3000), "dir/b.bin": b"b"})

    build, _, archive = _encode(dataset, "a.bin", "dir/b.bin")

    reader = ArchiveReader(io.BytesIO(archive))
    assert reader.header.version == 1
    assert list(reader.header.roots) == [build.root.cid]


def test_records_follow_emission_order(dataset: DatasetBuilder) -> None:
    content = pattern(2500, seed=4)
    dataset.write({"a.bin": content})

    build, stats, archive = _encode(dataset, "a.bin")

    records = list(ArchiveReader(io.BytesIO(archive)).records())
    assert [cid for cid, _ in records] == [node.cid for node in build.emission_order]
    assert b"".join(data for _, data in records[:3]) == content
    assert stats.size == len(archive)


def test_offsets_point_at_record_frames(dataset: DatasetBuilder) -> None:
    dataset.write({"a.bin": pattern(1500), "b.bin": b"bee"})

    build, stats, archive = _encode(dataset, "a.bin", "b.bin")

    for node, offset in zip(build.emission_order, stats.offsets):
        length, consumed, _ = varint.decode_raw(archive[offset:])
        frame = archive[offset + consumed : offset + consumed + length]
        assert frame.startswith(bytes(node.cid))


def test_load_graph_replays_every_record(dataset: DatasetBuilder) -> None:
    dataset.write({"x/one.bin": pattern(5000), "x/two.bin": b"", "three.bin": b"3"})

    build, _, archive = _encode(dataset, "x/one.bin", "x/two.bin", "three.bin")

    graph = load_graph(io.BytesIO(archive))
    assert graph.root == build.root.cid
    assert graph.order == [node.cid for node in build.emission_order]
    assert [name for name, _, _ in graph.links[build.root.cid]] == ["x", "three.bin"]


def test_encoding_is_deterministic(dataset: DatasetBuilder) -> None:
    dataset.write({"a.bin": pattern(4096), "b/c.bin": pattern(77)})

    _, _, first = _encode(dataset, "a.bin", "b/c.bin")
    _, _, second = _encode(dataset, "a.bin", "b/c.bin")

    assert first == second


def test_encode_detects_source_change(dataset: DatasetBuilder) -> None:
    dataset.write({"a.bin": pattern(2048)})
    build = ObjectGraphBuilder(chunk_size=1024).build(dataset.manifest("a.bin"), dataset.path())
    dataset.write({"a.bin": pattern(2048, seed=9)})

    with pytest.raises(SourceChangedError):
        encode(build.root, build.emission_order, io.BytesIO())


def test_encode_detects_truncated_source(dataset: DatasetBuilder) -> None:
    dataset.write({"a.bin": pattern(2048)})
    build = ObjectGraphBuilder(chunk_size=1024).build(dataset.manifest("a.bin"), dataset.path())
    dataset.write({"a.bin": pattern(100)})

    with pytest.raises(SourceChangedError):
        encode(build.root, build.emission_order, io.BytesIO())


def test_load_graph_rejects_tampered_record(dataset: DatasetBuilder) -> None:
    dataset.write({"a.bin": b"original content"})
    _, _, archive = _encode(dataset, "a.bin")

    tampered = archive.replace(b"original", b"modified")

    with pytest.raises(ArchiveError, match="does not match"):
        load_graph(io.BytesIO(tampered))


def test_load_graph_rejects_truncated_archive(dataset: DatasetBuilder) -> None:
    dataset.write({"a.bin": pattern(500)})
    _, _, archive = _encode(dataset, "a.bin")

    with pytest.raises(ArchiveError):
        load_graph(io.BytesIO(archive[:-10]))


def test_load_graph_requires_root_record(dataset: DatasetBuilder) -> None:
    dataset.write({"a.bin": b"a"})
    build, _, _ = _encode(dataset, "a.bin")
    header = ArchiveHeader(roots=[build.root.cid]).encode()

    with pytest.raises(ArchiveError, match="no record"):
        load_graph(io.BytesIO(varint.encode(len(header)) + header))


def test_reader_rejects_empty_stream() -> None:
    with pytest.raises(ArchiveError, match="Empty"):
        ArchiveReader(io.BytesIO(b""))


def test_tee_writer_feeds_every_sink_through_buffer() -> None:
    first, second = io.BytesIO(), io.BytesIO()

    with io.BufferedWriter(TeeWriter(first, second), buffer_size=16) as writer:
        for _ in range(10):
            writer.write(b"0123456789")

    assert first.getvalue() == second.getvalue() == b"0123456789" * 10


def test_encode_rejects_chunk_without_source() -> None:
    orphan = GraphNode(kind=NodeKind.CHUNK, cid=raw_cid(b"x"), size=1, tsize=1)

    with pytest.raises(ValueError, match="no source"):
        encode(orphan, [orphan], io.BytesIO())
