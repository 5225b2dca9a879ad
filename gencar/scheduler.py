"""Bounded worker pool that runs many archive generation jobs."""

from __future__ import annotations

import queue
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .logging import get_logger, job_context
from .models import JobResult, Manifest
from .orchestrator import CarGenerator

_STOP = object()


class BatchError(RuntimeError):
    """The first job failure of a batch; completed results are kept on ``results``."""

    def __init__(self, index: int, cause: BaseException, results: List[JobResult]) -> None:
        super().__init__(f"Job {index} failed: {cause}")
        self.index = index
        self.cause = cause
        self.results = results


@dataclass
class _BatchState:
    results: Dict[int, JobResult] = field(default_factory=dict)
    error: Optional[Tuple[int, BaseException]] = None
    lock: threading.Lock = field(default_factory=threading.Lock)
    failed: threading.Event = field(default_factory=threading.Event)


class JobScheduler:
    """Runs manifests through a ``CarGenerator`` on exactly ``workers`` threads.

    The producer must take a free worker slot before handing over a manifest,
    so it blocks while every worker is busy. The first failure, including one
    raised by ``on_result``, stops dispatch; jobs already running are allowed
    to finish and queued ones are skipped. ``cancel`` is only observed between
    jobs.
    """

    def __init__(
        self,
        generator: CarGenerator,
        *,
        workers: int = 1,
        cancel_event: threading.Event | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self.generator = generator
        self.workers = workers
        self._cancel = cancel_event or threading.Event()
        self.logger = get_logger("scheduler")

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def run(
        self,
        manifests: Iterable[Manifest],
        *,
        base_dir: str | Path,
        out_dir: str | Path,
        scratch_dir: str | Path | None = None,
        piece_size: int = 0,
        verbose: bool = False,
        on_result: Callable[[JobResult], None] | None = None,
    ) -> List[JobResult]:
        """Run every manifest and return results in manifest order."""
        state = _BatchState()
        slots = threading.Semaphore(self.workers)
        work: "queue.Queue[object]" = queue.Queue()

        def _fail(index: int, exc: BaseException) -> None:
            with state.lock:
                if state.error is None:
                    state.error = (index, exc)
                    self.logger.error("Job %d failed: %s", index, exc)
            state.failed.set()

        def _job(index: int, manifest: Manifest) -> None:
            try:
                with job_context(index):
                    result = self.generator.generate(
                        manifest,
                        base_dir=base_dir,
                        out_dir=out_dir,
                        scratch_dir=scratch_dir,
                        piece_size=piece_size,
                        verbose=verbose,
                    )
            except Exception as exc:
                _fail(index, exc)
                return
            try:
                with state.lock:
                    state.results[index] = result
                    if on_result is not None:
                        on_result(result)
            except Exception as exc:
                # Callback errors, such as a closed stdout, fail the batch like job errors.
                _fail(index, exc)

        def _worker() -> None:
            while True:
                item = work.get()
                if item is _STOP:
                    return
                index, manifest = item  # type: ignore[misc]
                try:
                    if state.failed.is_set() or self._cancel.is_set():
                        continue
                    _job(index, manifest)
                finally:
                    slots.release()

        threads = [
            threading.Thread(target=_worker, name=f"gencar-worker-{number}", daemon=True)
            for number in range(self.workers)
        ]
        for thread in threads:
            thread.start()

        dispatched = 0
        try:
            for index, manifest in enumerate(manifests):
                slots.acquire()
                if state.failed.is_set() or self._cancel.is_set():
                    slots.release()
                    break
                work.put((index, manifest))
                dispatched += 1
        finally:
            for _ in threads:
                work.put(_STOP)
            for thread in threads:
                thread.join()

        ordered = [state.results[index] for index in sorted(state.results)]
        self.logger.info("Completed %d of %d dispatched job(s)", len(ordered), dispatched)
        if state.error is not None:
            index, cause = state.error
            raise BatchError(index, cause, ordered) from cause
        if self._cancel.is_set():
            self.logger.warning("Batch cancelled; remaining manifests were not started")
        return ordered


__all__ = ["BatchError", "JobScheduler"]
