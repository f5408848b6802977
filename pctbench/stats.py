from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from pctbench.errors import EmptyError
from pctbench.summary import TargetLike, TargetedSummary, merge_targets, target_rank


def pctile(arr: np.ndarray, q: float) -> float:
    """Nearest-rank percentile of arr, q in [0, 100]. NaN when arr has no finite value."""
    arr = np.asarray(arr, dtype=float)
    arr = arr[np.isfinite(arr)]
    if arr.size == 0:
        return float("nan")
    ordered = np.sort(arr)
    return float(ordered[target_rank(q / 100.0, int(ordered.size)) - 1])


def summarize_latency_ns(lat_ns: Iterable[float], percentiles: Iterable[float] = (50, 95, 99)) -> Dict[str, float]:
    a = np.asarray(list(lat_ns), dtype=float)
    a = a[np.isfinite(a)]
    summary = {f"lat_p{q:g}_ns": pctile(a, q) for q in percentiles}
    summary.update({
        "lat_mean_ns": float(np.mean(a)) if a.size else float("nan"),
        "lat_max_ns": float(np.max(a)) if a.size else float("nan"),
        "n": float(a.size),
    })
    return summary


class ExactSummary(TargetedSummary):
    """
    Sort-everything variant of the summary contract.

    Retains every sample, so memory grows with n; answers are exact
    nearest-rank quantiles (epsilon = 0). Useful as a baseline for short runs
    and as the reference the streaming summary is tested against.
    """

    def __init__(self, targets: Iterable[TargetLike]) -> None:
        super().__init__(targets)
        self._samples: List[float] = []
        self._sorted: Optional[np.ndarray] = None

    def insert(self, sample: float) -> None:
        self._check_sample(sample)
        self._samples.append(sample)
        self._n += 1
        self._sorted = None

    def _ordered(self) -> np.ndarray:
        if self._sorted is None:
            self._sorted = np.sort(np.asarray(self._samples))
        return self._sorted

    def query(self, phi: float) -> float:
        self._check_query(phi)
        ordered = self._ordered()
        return ordered[target_rank(phi, self._n) - 1].item()

    def merge(self, other: "ExactSummary") -> "ExactSummary":
        if not isinstance(other, ExactSummary):
            raise TypeError(f"Cannot merge ExactSummary with {type(other).__name__}")
        merged = ExactSummary(merge_targets(self, other))
        merged._samples = self._samples + other._samples
        merged._n = self._n + other._n
        return merged

    def compress(self) -> None:
        return None

    def entries(self) -> Tuple[Tuple[float, int, int], ...]:
        return tuple((v.item(), 1, 0) for v in self._ordered())

    def size(self) -> int:
        return self._n

    def min(self) -> float:
        if not self._n:
            raise EmptyError("Cannot get min from empty summary")
        return self._ordered()[0].item()

    def max(self) -> float:
        if not self._n:
            raise EmptyError("Cannot get max from empty summary")
        return self._ordered()[-1].item()

    def samples(self) -> np.ndarray:
        return self._ordered().copy()
