"""Manifest parsing: JSON arrays, JSON lines and filesystem walks."""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Iterable, Iterator, List, Mapping, TextIO

from .models import FileSpan, Manifest

if TYPE_CHECKING:  # pragma: no cover - import cycle guard
    from .config import GenerateSettings

_FIELD_ALIASES = {
    "path": ("Path", "path"),
    "size": ("Size", "size"),
    "start": ("Start", "start"),
    "end": ("End", "end"),
}


class ManifestError(ValueError):
    """Raised when manifest input is malformed or out of bounds."""


def span_from_dict(payload: Any) -> FileSpan:
    """Parse one FileSpan from its JSON object form."""
    if not isinstance(payload, Mapping):
        raise ManifestError(f"File span must be an object, got {type(payload).__name__}")

    values: Dict[str, Any] = {}
    for name, aliases in _FIELD_ALIASES.items():
        for alias in aliases:
            if alias in payload:
                values[name] = payload[alias]
                break
        else:
            raise ManifestError(f"File span is missing {aliases[0]!r}: {dict(payload)}")

    path = values["path"]
    if not isinstance(path, str) or not path:
        raise ManifestError(f"File span path must be a non-empty string: {path!r}")
    for name in ("size", "start", "end"):
        value = values[name]
        if isinstance(value, bool) or not isinstance(value, int):
            raise ManifestError(f"File span {name} must be an integer for {path}: {value!r}")

    span = FileSpan(path=path, size=values["size"], start=values["start"], end=values["end"])
    validate_span(span)
    return span


def span_to_dict(span: FileSpan) -> Dict[str, Any]:
    return {"Path": span.path, "Size": span.size, "Start": span.start, "End": span.end}


def validate_span(span: FileSpan) -> None:
    """Check ``0 <= start <= end <= size``."""
    if not 0 <= span.start <= span.end <= span.size:
        raise ManifestError(
            f"Invalid span for {span.path}: start={span.start} end={span.end} size={span.size}"
        )


def parse_manifest(data: Any) -> List[FileSpan]:
    """Parse a decoded JSON array of file spans."""
    if data is None:
        return []
    if not isinstance(data, list):
        raise ManifestError("Manifest must be a JSON array of file spans")
    return [span_from_dict(item) for item in data]


def load_manifest(source: str | Path, *, stdin: TextIO | None = None) -> List[FileSpan]:
    """Read a JSON array manifest from a file, or from stdin when ``source`` is "-"."""
    if str(source) == "-":
        text = (stdin or sys.stdin).read()
        origin = "<stdin>"
    else:
        text = Path(source).read_text(encoding="utf-8")
        origin = str(source)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ManifestError(f"Failed to parse manifest {origin}: {exc}") from exc
    return parse_manifest(data)


def iter_json_lines(path: Path) -> Iterator[List[FileSpan]]:
    """Yield one manifest per non-blank line of a JSON-lines file."""
    with Path(path).open("r", encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError as exc:
                raise ManifestError(f"{path}:{line_number}: invalid JSON: {exc}") from exc
            yield parse_manifest(data)


def walk_manifest(root: str | Path) -> List[FileSpan]:
    """Return whole-file spans for a file, or every regular file under a directory."""
    root_path = Path(root).expanduser()
    if not root_path.exists():
        raise FileNotFoundError(f"Input path not found: {root}")
    if root_path.is_file():
        return [_whole_file_span(root_path)]

    spans: List[FileSpan] = []
    for dirpath, dirnames, filenames in os.walk(root_path):
        dirnames.sort()
        current_dir = Path(dirpath)
        for filename in sorted(filenames):
            path = current_dir / filename
            if path.is_symlink() or not path.is_file():
                continue
            spans.append(_whole_file_span(path))
    return spans


def dump_manifest(spans: Iterable[FileSpan]) -> str:
    return json.dumps([span_to_dict(span) for span in spans])


def iter_manifests(settings: GenerateSettings) -> Iterator[Manifest]:
    """Yield the manifests selected by the input options."""
    if settings.input_json is not None:
        yield from iter_json_lines(settings.input_json)
    elif settings.single:
        yield walk_manifest(settings.input)
    else:
        yield load_manifest(settings.input)


def _whole_file_span(path: Path) -> FileSpan:
    size = path.stat().st_size
    return FileSpan(path=str(path), size=size, start=0, end=size)


__all__ = [
    "ManifestError",
    "dump_manifest",
    "iter_json_lines",
    "iter_manifests",
    "load_manifest",
    "parse_manifest",
    "span_from_dict",
    "span_to_dict",
    "validate_span",
    "walk_manifest",
]
