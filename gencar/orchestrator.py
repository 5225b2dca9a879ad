"""Single-job pipeline: build, encode, commit, name and promote one archive."""

from __future__ import annotations

import io
import os
import uuid
from pathlib import Path
from typing import Optional

from .car import BUF_SIZE, TeeWriter, encode
from .commp import CommPAccumulator, pad_commp, piece_cid
from .dag import DEFAULT_CHUNK_SIZE, ObjectGraphBuilder
from .logging import get_logger
from .models import JobResult, Manifest
from .publish import Publisher

ARCHIVE_SUFFIX = ".car"


class CarGenerator:
    """Coordinates the builder, encoder, accumulator and publisher for one manifest.

    The instance holds no per-job state, so one generator can serve every worker
    of a scheduler; each ``generate`` call creates its own graph, encoder pass
    and accumulator.
    """

    def __init__(
        self,
        builder: ObjectGraphBuilder | None = None,
        publisher: Publisher | None = None,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.builder = builder or ObjectGraphBuilder(chunk_size=chunk_size)
        self.publisher = publisher
        self.logger = get_logger("orchestrator")

    def generate(
        self,
        manifest: Manifest,
        *,
        base_dir: str | Path,
        out_dir: str | Path,
        scratch_dir: str | Path | None = None,
        piece_size: int = 0,
        verbose: bool = False,
    ) -> JobResult:
        """Produce ``<piece cid>.car`` in ``out_dir`` for ``manifest``."""
        out_path = Path(out_dir)
        scratch_path = Path(scratch_dir) if scratch_dir is not None else out_path

        # Manifest problems surface here, before any scratch file exists.
        build = self.builder.build(manifest, base_dir)
        self.logger.info(
            "Building archive for %d span(s), data root %s", len(manifest), build.root_cid
        )

        scratch_file = scratch_path / f"{uuid.uuid4()}{ARCHIVE_SUFFIX}"
        accumulator = CommPAccumulator()
        with scratch_file.open("xb") as handle:
            tee = TeeWriter(handle, accumulator)
            with io.BufferedWriter(tee, buffer_size=BUF_SIZE) as writer:
                stats = encode(build.root, build.emission_order, writer)
            car_size = handle.tell()
        self.logger.debug("Wrote %d bytes to scratch file %s", car_size, scratch_file)

        commp, natural_size = accumulator.finish()
        final_size = natural_size
        if piece_size:
            commp = pad_commp(commp, natural_size, piece_size)
            final_size = piece_size
            self.logger.debug("Padded piece from %d to %d bytes", natural_size, piece_size)

        piece = str(piece_cid(commp))
        file_name = f"{piece}{ARCHIVE_SUFFIX}"
        self._promote(scratch_file, out_path, file_name)

        self.logger.info(
            "Archive %s ready: %d bytes, piece size %d", file_name, car_size, final_size
        )
        return JobResult(
            data_cid=build.root_cid,
            piece_cid=piece,
            piece_size=final_size,
            car_size=car_size,
            file_name=file_name,
            path_index=build.locate(stats.offsets),
            graph=build.root.to_dict() if verbose else None,
        )

    def _promote(self, scratch_file: Path, out_dir: Path, file_name: str) -> Optional[Path]:
        if self.publisher is not None:
            key = self.publisher.key_for(file_name)
            self.publisher.publish(scratch_file, key)
            return None
        destination = out_dir / file_name
        # Identical content yields an identical name; a concurrent replace is harmless.
        os.replace(scratch_file, destination)
        return destination


__all__ = ["ARCHIVE_SUFFIX", "CarGenerator"]
