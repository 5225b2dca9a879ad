"""Core data models shared across gencar components."""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Sequence


@dataclass(frozen=True)
class FileSpan:
    """Byte range ``[start, end)`` of the file at ``path`` whose size is ``size``."""

    path: str
    size: int
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start

    @property
    def is_whole_file(self) -> bool:
        return self.start == 0 and self.end == self.size


Manifest = Sequence[FileSpan]


@dataclass(frozen=True)
class PathEntry:
    """Where a manifest path ended up in the object graph and the archive."""

    cid: str
    is_dir: bool
    size: int
    offset: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "IsDir": self.is_dir,
            "Cid": self.cid,
            "Size": self.size,
            "Offset": self.offset,
        }


@dataclass(frozen=True)
class JobResult:
    """Externally visible outcome of one archive generation job."""

    data_cid: str
    piece_cid: str
    piece_size: int
    car_size: int
    file_name: str
    path_index: Mapping[str, PathEntry] = field(default_factory=dict)
    graph: Optional[Dict[str, Any]] = None

    def to_dict(self, *, verbose: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "DataCid": self.data_cid,
            "PieceCid": self.piece_cid,
            "PieceSize": self.piece_size,
            "CarSize": self.car_size,
            "FileName": self.file_name,
        }
        if verbose:
            payload["Ipld"] = self.graph
            payload["CidMap"] = {
                path: entry.to_dict() for path, entry in self.path_index.items()
            }
        return payload
