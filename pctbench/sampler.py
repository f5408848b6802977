from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Hashable, Iterable, List, Optional

from pctbench.errors import ContractViolationError
from pctbench.summary import QuantileSummary, TargetedSummary, TargetLike, coerce_targets

logger = logging.getLogger(__name__)

Clock = Callable[[], int]
HasNext = Callable[[], bool]
SummaryFactory = Callable[[Iterable[TargetLike]], TargetedSummary]


class WorkerHandle:
    """
    One worker's private shard plus its iteration clock.

    A handle belongs to exactly one thread between begin() and end(), which
    is why record_next() runs without any lock.
    """

    __slots__ = ("worker", "_shard", "_has_next", "_clock", "_tick", "_started", "_closed")

    def __init__(self, worker: Hashable, shard: TargetedSummary, has_next: HasNext, clock: Clock) -> None:
        self.worker = worker
        self._shard = shard
        self._has_next = has_next
        self._clock = clock
        self._tick = 0
        self._started = False
        self._closed = False

    @property
    def shard(self) -> TargetedSummary:
        return self._shard

    @property
    def closed(self) -> bool:
        return self._closed

    def record_next(self) -> bool:
        """
        Mark an iteration boundary and report whether another iteration exists.

        The first call only starts the clock. Every later call records the
        time elapsed since the previous boundary as one sample, so each
        iteration costs a single clock read.
        """
        if self._closed:
            raise ContractViolationError(f"Worker {self.worker!r} already ended; no further samples allowed")
        now = self._clock()
        if self._started:
            self._shard.insert(now - self._tick)
        else:
            self._started = True
        self._tick = now
        return self._has_next()


class ConcurrentSampler:
    """Hands out per-worker shards and folds them into one summary at report time."""

    def __init__(
        self,
        targets: Iterable[TargetLike],
        *,
        summary_factory: SummaryFactory = QuantileSummary,
        clock: Clock = time.perf_counter_ns,
    ) -> None:
        self._targets = coerce_targets(targets)
        self._factory = summary_factory
        self._clock = clock
        self._lock = threading.Lock()
        self._handles: List[WorkerHandle] = []
        self._active: Dict[Hashable, WorkerHandle] = {}
        self._next_id = 0

    @property
    def targets(self):
        return self._targets

    @property
    def active_workers(self) -> int:
        with self._lock:
            return len(self._active)

    @property
    def shard_count(self) -> int:
        with self._lock:
            return len(self._handles)

    def begin(self, has_next: HasNext, worker: Optional[Hashable] = None) -> WorkerHandle:
        shard = self._factory(self._targets)
        with self._lock:
            if worker is None:
                worker = self._next_id
            self._next_id += 1
            if worker in self._active:
                raise ContractViolationError(f"Worker {worker!r} is already sampling")
            handle = WorkerHandle(worker, shard, has_next, self._clock)
            self._active[worker] = handle
            self._handles.append(handle)
        return handle

    def record_next(self, handle: WorkerHandle) -> bool:
        return handle.record_next()

    def end(self, handle: WorkerHandle) -> None:
        with self._lock:
            if handle.closed or self._active.get(handle.worker) is not handle:
                raise ContractViolationError(f"Worker {handle.worker!r} is not sampling")
            handle._closed = True
            del self._active[handle.worker]
        logger.debug("worker %r ended with %d samples", handle.worker, handle.shard.count())

    def merge(self) -> TargetedSummary:
        with self._lock:
            if self._active:
                raise ContractViolationError(
                    f"{len(self._active)} worker(s) still sampling; call end() on every handle before merging"
                )
            merged = self._factory(self._targets)
            for handle in self._handles:
                merged = merged.merge(handle.shard)
        logger.debug("merged %d shard(s): n=%d size=%d", len(self._handles), merged.count(), merged.size())
        return merged

    def discard(self) -> None:
        """Drop every shard, e.g. when the run was aborted mid-sampling."""
        with self._lock:
            for handle in self._handles:
                handle._closed = True
            dropped = len(self._handles)
            self._handles.clear()
            self._active.clear()
        if dropped:
            logger.info("discarded %d partial shard(s)", dropped)
