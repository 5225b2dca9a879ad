"""Tests for the object graph builder."""

from __future__ import annotations

from pathlib import Path

import pytest

from gencar.dag import EMPTY_CID, NodeKind, ObjectGraphBuilder
from gencar.dag.nodes import decode_dag_pb, raw_cid
from gencar.manifest import ManifestError
from gencar.models import FileSpan
from tests._fixtures.dataset_builder import DatasetBuilder, pattern


def test_small_file_is_a_single_raw_leaf(dataset: DatasetBuilder) -> None:
    content = b"hello gencar"
    dataset.write({"hello.txt": content})

    build = ObjectGraphBuilder().build(dataset.manifest("hello.txt"), dataset.path())

    entry = build.path_index["hello.txt"]
    assert entry.cid == str(raw_cid(content))
    assert entry.size == len(content)
    assert not entry.is_dir
    assert [node.kind for node in build.emission_order] == [NodeKind.CHUNK, NodeKind.DIRECTORY]
    assert build.emission_order[-1] is build.root


def test_large_file_is_split_into_chunks(dataset: DatasetBuilder) -> None:
    content = pattern(300 * 1024)
    dataset.write({"big.bin": content})

    build = ObjectGraphBuilder(chunk_size=256 * 1024).build(
        dataset.manifest("big.bin"), dataset.path()
    )

    file_node = build.root.links[0].node
    assert file_node.kind is NodeKind.FILE
    assert [link.node.size for link in file_node.links] == [256 * 1024, 44 * 1024]
    assert file_node.links[0].node.cid == raw_cid(content[: 256 * 1024])
    assert file_node.size == len(content)
    assert [node.kind for node in build.emission_order] == [
        NodeKind.CHUNK,
        NodeKind.CHUNK,
        NodeKind.FILE,
        NodeKind.DIRECTORY,
    ]

    links, _ = decode_dag_pb(file_node.block)
    assert [(name, cid) for name, cid, _ in links] == [
        ("", file_node.links[0].node.cid),
        ("", file_node.links[1].node.cid),
    ]


def test_children_precede_parents_in_emission_order(dataset: DatasetBuilder) -> None:
    dataset.write({"a/b/c.bin": pattern(5000), "a/d.bin": pattern(10), "e.bin": b"e"})

    build = ObjectGraphBuilder(chunk_size=1024).build(
        dataset.manifest("a/b/c.bin", "a/d.bin", "e.bin"), dataset.path()
    )

    seen = set()
    for node in build.emission_order:
        for link in node.links:
            assert link.node.cid in seen
        seen.add(node.cid)
    assert build.emission_order[-1] is build.root
    assert list(build.root.walk()) == build.emission_order


def test_directories_keep_manifest_order(dataset: DatasetBuilder) -> None:
    dataset.write({"b.bin": b"b", "a.bin": b"a", "sub/z.bin": b"z"})

    build = ObjectGraphBuilder().build(
        dataset.manifest("b.bin", "sub/z.bin", "a.bin"), dataset.path()
    )

    assert [link.name for link in build.root.links] == ["b.bin", "sub", "a.bin"]
    assert build.path_index["sub"].is_dir
    assert build.path_index["sub"].size == 1
    assert list(build.path_index) == ["b.bin", "sub/z.bin", "sub", "a.bin"]
    assert "." not in build.path_index


def test_identical_inputs_give_identical_roots(dataset: DatasetBuilder) -> None:
    dataset.write({"x/one.bin": pattern(4000, seed=1), "two.bin": pattern(10, seed=2)})
    manifest = dataset.manifest("x/one.bin", "two.bin")

    first = ObjectGraphBuilder(chunk_size=1024).build(manifest, dataset.path())
    second = ObjectGraphBuilder(chunk_size=1024).build(manifest, dataset.path())
    other = ObjectGraphBuilder(chunk_size=2048).build(manifest, dataset.path())

    assert first.root_cid == second.root_cid
    assert first.root_cid != other.root_cid


def test_relative_paths_resolve_against_base(dataset: DatasetBuilder) -> None:
    dataset.write({"rel/file.bin": b"relative"})
    absolute = dataset.manifest("rel/file.bin")
    relative = [FileSpan(path="rel/file.bin", size=8, start=0, end=8)]

    builder = ObjectGraphBuilder()

    assert builder.build(relative, dataset.path()).root_cid == builder.build(
        absolute, dataset.path()
    ).root_cid


def test_partial_spans_of_one_path_form_a_file(dataset: DatasetBuilder) -> None:
    content = pattern(100)
    dataset.write({"split.bin": content})
    manifest = [dataset.span("split.bin", 0, 40), dataset.span("split.bin", 40, 100)]

    build = ObjectGraphBuilder().build(manifest, dataset.path())

    assert build.path_index["split.bin#0-40"].cid == str(raw_cid(content[:40]))
    assert build.path_index["split.bin#40-100"].cid == str(raw_cid(content[40:]))
    combined = build.path_index["split.bin"]
    assert combined.size == 100
    assert build.root.links[0].node.kind is NodeKind.FILE
    assert combined.cid == str(build.root.links[0].node.cid)


def test_partial_span_reads_only_its_range(dataset: DatasetBuilder) -> None:
    content = pattern(1000)
    dataset.write({"range.bin": content})

    build = ObjectGraphBuilder().build([dataset.span("range.bin", 200, 300)], dataset.path())

    assert build.path_index["range.bin"].cid == str(raw_cid(content[200:300]))
    assert build.path_index["range.bin"].size == 100


def test_empty_span_uses_reserved_leaf_and_is_not_emitted(dataset: DatasetBuilder) -> None:
    dataset.write({"empty.bin": b"", "data.bin": b"abc"})
    manifest = [dataset.span("empty.bin"), dataset.span("data.bin", 1, 1), dataset.span("data.bin")]

    build = ObjectGraphBuilder().build(manifest, dataset.path())

    assert build.path_index["empty.bin"].cid == str(EMPTY_CID)
    assert build.path_index["empty.bin"].size == 0
    assert build.path_index["data.bin#1-1"].cid == str(EMPTY_CID)
    assert all(node.cid != EMPTY_CID for node in build.emission_order)
    located = build.locate(list(range(len(build.emission_order))))
    assert located["empty.bin"].offset is None
    assert located["data.bin#0-3"].offset is not None


def test_empty_manifest_yields_empty_directory(dataset: DatasetBuilder) -> None:
    build = ObjectGraphBuilder().build([], dataset.path())

    assert build.root.kind is NodeKind.DIRECTORY
    assert build.root.links == []
    assert build.emission_order == [build.root]
    assert build.path_index == {}


def test_locate_fills_offsets_in_emission_order(dataset: DatasetBuilder) -> None:
    dataset.write({"a.bin": b"a", "b.bin": b"b"})
    build = ObjectGraphBuilder().build(dataset.manifest("a.bin", "b.bin"), dataset.path())

    located = build.locate([100, 200, 300])

    assert located["a.bin"].offset == 100
    assert located["b.bin"].offset == 200
    assert build.path_index["a.bin"].offset is None


def test_span_beyond_actual_file_size_is_rejected(dataset: DatasetBuilder) -> None:
    dataset.write({"short.bin": b"0123456789"})
    manifest = [FileSpan(path=str(dataset.path() / "short.bin"), size=100, start=0, end=50)]

    with pytest.raises(ManifestError, match="exceeds"):
        ObjectGraphBuilder().build(manifest, dataset.path())


def test_invalid_span_bounds_are_rejected(dataset: DatasetBuilder) -> None:
    dataset.write({"a.bin": b"abc"})
    manifest = [FileSpan(path=str(dataset.path() / "a.bin"), size=3, start=2, end=1)]

    with pytest.raises(ManifestError):
        ObjectGraphBuilder().build(manifest, dataset.path())


def test_path_outside_base_is_rejected(dataset: DatasetBuilder, tmp_path: Path) -> None:
    outside = tmp_path / "outside.bin"
    outside.write_bytes(b"x")
    manifest = [FileSpan(path=str(outside), size=1, start=0, end=1)]

    with pytest.raises(ManifestError, match="outside"):
        ObjectGraphBuilder().build(manifest, dataset.path())


def test_base_directory_itself_is_rejected(dataset: DatasetBuilder) -> None:
    manifest = [FileSpan(path=str(dataset.path()), size=0, start=0, end=0)]

    with pytest.raises(ManifestError):
        ObjectGraphBuilder().build(manifest, dataset.path())


def test_missing_file_is_rejected_before_reading(dataset: DatasetBuilder) -> None:
    dataset.write({"present.bin": b"x"})
    manifest = [
        dataset.span("present.bin"),
        FileSpan(path=str(dataset.path() / "absent.bin"), size=1, start=0, end=1),
    ]

    with pytest.raises(ManifestError, match="Cannot open"):
        ObjectGraphBuilder().build(manifest, dataset.path())


def test_directory_span_is_rejected(dataset: DatasetBuilder) -> None:
    dataset.write({"folder/inner.bin": b"x"})
    manifest = [FileSpan(path=str(dataset.path() / "folder"), size=0, start=0, end=0)]

    with pytest.raises(ManifestError, match="not a regular file"):
        ObjectGraphBuilder().build(manifest, dataset.path())


def test_builder_rejects_non_positive_chunk_size() -> None:
    with pytest.raises(ValueError):
        ObjectGraphBuilder(chunk_size=0)
