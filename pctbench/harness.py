"""
Benchmark harness that the percentile reporter plugs into.

Bench mirrors a parallel benchmark runner: a fixed iteration budget shared
by `parallelism` worker threads, handed out in batches of `grain`. Every
PB.next() call is an iteration boundary and is timed by the worker's
sampling handle, so per-op latency percentiles come out alongside the
usual (count, ns/op) shape.
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, List, Optional

from pctbench.bench_defaults import DEFAULT_EPSILON, DEFAULT_GRAIN, DEFAULT_ITERATIONS, BenchConfig
from pctbench.errors import ConfigError, ContractViolationError
from pctbench.reporter import PercentileReporter, PercentileResult, format_result, label_width
from pctbench.sampler import Clock, SummaryFactory, WorkerHandle
from pctbench.summary import QuantileSummary, Target

logger = logging.getLogger(__name__)


class _IterationBudget:
    def __init__(self, total: int) -> None:
        self._remaining = int(total)
        self._lock = threading.Lock()

    def grab(self, grain: int) -> int:
        with self._lock:
            n = min(grain, self._remaining)
            self._remaining -= n
            return n


class PB:
    """Per-worker iteration source handed to a run_parallel body."""

    def __init__(self, worker: int, budget: _IterationBudget, grain: int, reporter: Optional[PercentileReporter]) -> None:
        self.worker = worker
        self._budget = budget
        self._grain = grain
        self._left = 0
        self._done = False
        self.handle: Optional[WorkerHandle] = reporter.begin_worker(self._take) if reporter is not None else None

    def _take(self) -> bool:
        if self._left == 0:
            self._left = self._budget.grab(self._grain)
            if self._left == 0:
                return False
        self._left -= 1
        return True

    def next(self) -> bool:
        """True while iterations remain. Each call also closes the previous iteration's timing."""
        if self._done:
            return False
        more = self._take() if self.handle is None else self.handle.record_next()
        self._done = not more
        return more


class Bench:
    def __init__(
        self,
        name: str = "",
        *,
        iterations: int = DEFAULT_ITERATIONS,
        parallelism: int = 1,
        epsilon: float = DEFAULT_EPSILON,
        grain: int = DEFAULT_GRAIN,
        summary_factory: SummaryFactory = QuantileSummary,
        percentiles: Iterable[float] = (),
        targets: Iterable[Target] = (),
        clock: Clock = time.perf_counter_ns,
    ) -> None:
        if iterations < 0:
            raise ConfigError(f"iterations must be >= 0, got {iterations}")
        if parallelism < 1:
            raise ConfigError(f"parallelism must be >= 1, got {parallelism}")
        if grain < 1:
            raise ConfigError(f"grain must be >= 1, got {grain}")
        self.name = name
        self.iterations = int(iterations)
        self.parallelism = int(parallelism)
        self.epsilon = float(epsilon)
        self.grain = int(grain)
        self.summary_factory = summary_factory
        self.clock = clock
        self._targets = tuple(targets)
        self._reporter: Optional[PercentileReporter] = None
        self._ran = False
        self._percentiles: List[float] = []
        for p in percentiles:
            self.report_percentile(p)
        self.elapsed_ns = 0
        self.results: List[PercentileResult] = []
        self._reported: Optional[List[PercentileResult]] = None

    @classmethod
    def from_config(cls, config: BenchConfig, name: str = "") -> "Bench":
        return cls(
            name,
            iterations=config.iterations,
            parallelism=config.parallelism,
            epsilon=config.epsilon,
            grain=config.grain,
            summary_factory=config.summary_factory(),
            percentiles=config.percentiles,
            targets=config.extra_targets,
        )

    @property
    def percentiles(self) -> List[float]:
        return list(self._percentiles)

    @property
    def reporter(self) -> Optional[PercentileReporter]:
        return self._reporter

    def report_percentile(self, phi: float) -> None:
        """Ask for phi (in [0, 1]) to be reported by this bench and its sub-benchmarks."""
        if self._ran:
            raise ContractViolationError("Percentiles must be declared before sampling starts")
        self._percentiles.append(Target(phi, self.epsilon).phi)

    def _sub(self, name: str) -> "Bench":
        full = f"{self.name}/{name}" if self.name else name
        return Bench(
            full,
            iterations=self.iterations,
            parallelism=self.parallelism,
            epsilon=self.epsilon,
            grain=self.grain,
            summary_factory=self.summary_factory,
            percentiles=self._percentiles,
            targets=self._targets,
            clock=self.clock,
        )

    def run(self, name: str, fn: Callable[["Bench"], None]) -> List[PercentileResult]:
        """Run fn as a sub-benchmark and report its percentiles once fn returns."""
        inner = self._sub(name)
        try:
            fn(inner)
        except BaseException:
            inner.discard()
            raise
        inner.report()
        self.results.extend(inner.results)
        return inner.results

    def run_parallel(self, body: Callable[[PB], None]) -> None:
        if self._ran:
            raise ContractViolationError(f"{self.name or 'bench'}: run_parallel may only be called once")
        self._ran = True
        budget = _IterationBudget(self.iterations)
        if self._percentiles:
            self._reporter = PercentileReporter(
                self._percentiles,
                epsilon=self.epsilon,
                workers=self.parallelism,
                targets=self._targets,
                summary_factory=self.summary_factory,
                clock=self.clock,
            )
        reporter = self._reporter

        def worker(idx: int) -> None:
            pb = PB(idx, budget, self.grain, reporter)
            try:
                body(pb)
            finally:
                if pb.handle is not None and not pb.handle.closed:
                    reporter.end_worker(pb.handle)

        logger.debug("%s: %d iteration(s) on %d worker(s)", self.name or "bench", self.iterations, self.parallelism)
        start = time.perf_counter_ns()
        with ThreadPoolExecutor(max_workers=self.parallelism, thread_name_prefix="pctbench-worker") as pool:
            futures = [pool.submit(worker, idx) for idx in range(self.parallelism)]
            for fut in futures:
                fut.result()
        self.elapsed_ns = time.perf_counter_ns() - start

    def report(self) -> List[PercentileResult]:
        if self._reporter is None:
            return []
        if self._reported is None:
            self._reported = self._reporter.report(self.iterations, name=self.name)
            self.results.extend(self._reported)
        return list(self._reported)

    def discard(self) -> None:
        if self._reporter is not None:
            self._reporter.discard()

    def lines(self, width: Optional[int] = None) -> List[str]:
        if width is None:
            width = label_width(self.results)
        return [format_result(r, width=width) for r in self.results]
