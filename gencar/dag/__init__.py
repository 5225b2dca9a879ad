"""Content-addressed object graph construction."""

from .builder import BuildResult, ObjectGraphBuilder
from .nodes import DEFAULT_CHUNK_SIZE, EMPTY_CID, GraphNode, NodeKind

__all__ = [
    "BuildResult",
    "DEFAULT_CHUNK_SIZE",
    "EMPTY_CID",
    "GraphNode",
    "NodeKind",
    "ObjectGraphBuilder",
]
