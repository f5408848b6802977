from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from pctbench.bench_defaults import DEFAULT_EPSILON
from pctbench.errors import ContractViolationError, EmptyError
from pctbench.lexicon import STATE_DISCARDED, STATE_IDLE, STATE_MERGING, STATE_REPORTED, STATE_SAMPLING
from pctbench.sampler import Clock, ConcurrentSampler, HasNext, SummaryFactory, WorkerHandle
from pctbench.summary import PHI_TOLERANCE, QuantileSummary, Target, TargetedSummary, coerce_targets

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PercentileResult:
    label: str
    quantile: float
    per_op_ns: float
    count: int
    total_ns: float
    bench: str = ""

    @property
    def full_label(self) -> str:
        return f"{self.bench}/{self.label}" if self.bench else self.label

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        row["full_label"] = self.full_label
        return row


def percentile_label(phi: float, workers: int = 1) -> str:
    """Benchmark label for phi, e.g. P50, P99.9 or P05, suffixed with -<workers> when workers > 1."""
    label = "P" + format(phi * 100.0, "02.5g")
    if workers > 1:
        label += f"-{workers}"
    return label


def format_ns_per_op(value: float) -> str:
    # column widths follow the go test benchmark output
    y = abs(value)
    if y == 0 or y >= 999.95:
        text = f"{value:10.0f}"
    elif y >= 99.995:
        text = f"{value:12.1f}"
    elif y >= 9.9995:
        text = f"{value:13.2f}"
    elif y >= 0.99995:
        text = f"{value:14.3f}"
    elif y >= 0.099995:
        text = f"{value:15.4f}"
    elif y >= 0.0099995:
        text = f"{value:16.5f}"
    elif y >= 0.00099995:
        text = f"{value:17.6f}"
    else:
        text = f"{value:18.7f}"
    return f"{text} ns/op"


def format_result(result: PercentileResult, name: str = "", width: int = 0) -> str:
    label = f"{name}/{result.label}" if name else result.full_label
    return f"{label:<{width}}\t{result.count:8d}\t{format_ns_per_op(result.per_op_ns)}"


class PercentileReporter:
    """
    Owns one sampling run: per-worker shards while workers run, one merged
    summary afterwards, and one PercentileResult per declared percentile.

    Lifecycle: IDLE -> SAMPLING -> MERGING -> REPORTED. discard() ends the
    run from any state. Nothing goes back to SAMPLING.
    """

    def __init__(
        self,
        percentiles: Iterable[float],
        *,
        epsilon: float = DEFAULT_EPSILON,
        workers: int = 1,
        targets: Iterable[Target] = (),
        summary_factory: SummaryFactory = QuantileSummary,
        clock: Clock = time.perf_counter_ns,
    ) -> None:
        self._percentiles = self._dedupe(percentiles)
        declared = [Target(p, epsilon) for p in self._percentiles] + list(targets)
        self._targets = coerce_targets(declared)
        self._workers = int(workers)
        self._sampler = ConcurrentSampler(self._targets, summary_factory=summary_factory, clock=clock)
        self._lock = threading.Lock()
        self._state = STATE_IDLE
        self._merged: Optional[TargetedSummary] = None

    @staticmethod
    def _dedupe(percentiles: Iterable[float]) -> Tuple[float, ...]:
        out: List[float] = []
        for p in percentiles:
            p = float(p)
            if not any(abs(p - seen) <= PHI_TOLERANCE for seen in out):
                out.append(p)
        return tuple(out)

    @property
    def percentiles(self) -> Tuple[float, ...]:
        return self._percentiles

    @property
    def targets(self) -> Tuple[Target, ...]:
        return self._targets

    @property
    def workers(self) -> int:
        return self._workers

    @property
    def state(self) -> str:
        return self._state

    def begin_worker(self, has_next: HasNext) -> WorkerHandle:
        with self._lock:
            if self._state not in (STATE_IDLE, STATE_SAMPLING):
                raise ContractViolationError(f"Cannot start a worker in state {self._state}")
            self._state = STATE_SAMPLING
            return self._sampler.begin(has_next)

    def record_iteration(self, handle: WorkerHandle) -> bool:
        return handle.record_next()

    def end_worker(self, handle: WorkerHandle) -> None:
        self._sampler.end(handle)

    def _merge(self) -> TargetedSummary:
        with self._lock:
            if self._state == STATE_REPORTED:
                return self._merged
            if self._state == STATE_DISCARDED:
                raise ContractViolationError("Run was discarded; nothing to report")
            active = self._sampler.active_workers
            if active:
                raise ContractViolationError(f"{active} worker(s) still sampling; end every worker before reporting")
            self._state = STATE_MERGING
            self._merged = self._sampler.merge()
            self._state = STATE_REPORTED
            return self._merged

    def report(self, iteration_count: int, name: str = "") -> List[PercentileResult]:
        """
        Merge the shards and build one result per declared percentile.

        iteration_count is the harness's N: the per-op estimate is scaled by
        it to form total_ns. A percentile the summary cannot answer (no
        samples) is logged and left out; the others are still reported.
        """
        if iteration_count < 0:
            raise ContractViolationError(f"iteration_count must be >= 0, got {iteration_count}")
        merged = self._merge()
        results: List[PercentileResult] = []
        for phi in self._percentiles:
            label = percentile_label(phi, self._workers)
            try:
                value = merged.query(phi)
            except EmptyError as exc:
                logger.warning("%s: skipping %s (%s)", name or "bench", label, exc)
                continue
            results.append(
                PercentileResult(
                    label=label,
                    quantile=phi,
                    per_op_ns=value,
                    count=int(iteration_count),
                    total_ns=value * int(iteration_count),
                    bench=name,
                )
            )
        logger.debug("%s: n=%d reported %d/%d percentile(s)", name or "bench", merged.count(), len(results), len(self._percentiles))
        return results

    def merged(self) -> TargetedSummary:
        if self._state != STATE_REPORTED:
            raise ContractViolationError(f"No merged summary in state {self._state}")
        return self._merged

    def query(self, phi: float) -> float:
        return self.merged().query(phi)

    def discard(self) -> None:
        with self._lock:
            self._state = STATE_DISCARDED
            self._merged = None
        self._sampler.discard()


def label_width(results: Sequence[PercentileResult], name: str = "") -> int:
    labels = [f"{name}/{r.label}" if name else r.full_label for r in results]
    return max((len(label) for label in labels), default=0)
