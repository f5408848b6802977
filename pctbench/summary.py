"""
Targeted Greenwald-Khanna quantile summary.

The summary keeps a list of entries (value, g, delta, dup), strictly
ordered by value:

- g:     r_min(v_i) - r_min(v_{i-1}), so a prefix sum of g is the lowest rank
         the last copy of the entry's value can hold.
- delta: r_max(v_i) - r_min(v_i), the rank uncertainty of that last copy.
- dup:   how many of the g samples are copies of the value itself. Equal
         samples always collapse into one entry, so a run of repeats widens
         the entry downwards: its first copy ranks no higher than
         r_max - dup + 1.

The width of an entry is the rank span it may leave unanswered,
g + delta - dup + 1. Every declared target (phi, eps) contributes an allowance

    f_j(r, n) = min(eps * max(r / phi, (n - r) / (1 - phi)), 2 * eps * n)

and entries are only folded together while the width stays within
max(1, min_j f_j(r_min, n)). The banded term halves the allowance around
phi * n and grows towards ranks far away from it; the 2 * eps * n cap is the
plain GK bound. Every entry stays under it, which keeps two summaries
mergeable. Ranks are 1-based.
"""
from __future__ import annotations

import bisect
import itertools
import logging
import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from pctbench.errors import ConfigError, ContractViolationError, EmptyError, InvariantError, QueryError

logger = logging.getLogger(__name__)

PHI_TOLERANCE = 1e-9

Entry = Tuple[float, int, int]
_Row = Tuple[float, int, int, int]


@dataclass(frozen=True)
class Target:
    """A quantile to answer (phi) and the rank error tolerated for it (epsilon)."""
    phi: float
    epsilon: float

    def __post_init__(self) -> None:
        phi = float(self.phi)
        epsilon = float(self.epsilon)
        if not 0.0 <= phi <= 1.0:
            raise ConfigError(f"phi must be in [0, 1], got {self.phi!r}")
        if not 0.0 < epsilon < 1.0:
            raise ConfigError(f"epsilon must be in (0, 1), got {self.epsilon!r}")
        object.__setattr__(self, "phi", phi)
        object.__setattr__(self, "epsilon", epsilon)

    @classmethod
    def parse(cls, text: str, default_epsilon: float) -> "Target":
        phi_s, sep, eps_s = text.strip().partition(":")
        try:
            phi = float(phi_s)
            epsilon = float(eps_s) if sep else float(default_epsilon)
        except ValueError as exc:
            raise ConfigError(f"Malformed target {text!r}; expected PHI or PHI:EPS") from exc
        return cls(phi, epsilon)


TargetLike = Union[Target, Tuple[float, float]]


def coerce_targets(targets: Iterable[TargetLike]) -> Tuple[Target, ...]:
    out: List[Target] = []
    for item in targets:
        t = item if isinstance(item, Target) else Target(*item)
        for idx, seen in enumerate(out):
            if abs(seen.phi - t.phi) <= PHI_TOLERANCE:
                # same quantile declared twice: the tighter error wins
                if t.epsilon < seen.epsilon:
                    out[idx] = t
                break
        else:
            out.append(t)
    if not out:
        raise ConfigError("At least one quantile target must be declared")
    return tuple(sorted(out, key=lambda t: t.phi))


class TargetedSummary:
    """Target bookkeeping shared by the summary implementations."""

    def __init__(self, targets: Iterable[TargetLike]) -> None:
        self._targets = coerce_targets(targets)
        self._eps_min = min(t.epsilon for t in self._targets)
        self._n = 0

    @property
    def targets(self) -> Tuple[Target, ...]:
        return self._targets

    def epsilon_for(self, phi: float) -> float:
        for t in self._targets:
            if abs(t.phi - phi) <= PHI_TOLERANCE:
                return t.epsilon
        declared = ", ".join(f"{t.phi:g}" for t in self._targets)
        raise QueryError(f"Quantile {phi!r} was not declared (declared: {declared})")

    def loosest_epsilon(self, phi: float) -> float:
        """Error this summary guarantees for phi, declared or not."""
        try:
            return self.epsilon_for(phi)
        except QueryError:
            return self._eps_min

    def count(self) -> int:
        return self._n

    def __len__(self) -> int:
        return self._n

    def _check_sample(self, sample: float) -> None:
        # also rejects NaN
        if not sample >= 0:
            raise ContractViolationError(f"Samples must be non-negative durations, got {sample!r}")

    def _check_query(self, phi: float) -> None:
        if not 0.0 <= phi <= 1.0:
            raise QueryError(f"phi must be in [0, 1], got {phi!r}")
        if 0.0 < phi < 1.0:
            self.epsilon_for(phi)
        if self._n == 0:
            raise EmptyError("Cannot query quantile from empty summary")


def merge_targets(first: TargetedSummary, second: TargetedSummary) -> Tuple[Target, ...]:
    phis = coerce_targets(first.targets + second.targets)
    return tuple(
        Target(t.phi, max(first.loosest_epsilon(t.phi), second.loosest_epsilon(t.phi)))
        for t in phis
    )


def target_rank(phi: float, n: int) -> int:
    """1-based nearest rank of phi among n samples."""
    return min(max(math.ceil(phi * n - PHI_TOLERANCE), 1), n)


def _value(row: _Row) -> float:
    return row[0]


def _width(row: _Row) -> int:
    _, g, delta, dup = row
    return g + delta - dup + 1


def _rank_bounds(rows: Sequence[_Row]) -> Tuple[List[int], List[int]]:
    r_min = list(itertools.accumulate(row[1] for row in rows))
    r_max = [r + row[2] for r, row in zip(r_min, rows)]
    return r_min, r_max


def _side_bounds(rows, r_min, r_max, k, value):
    """(lo, hi, dup, next k) that one side contributes to the rank of value."""
    if k < len(rows) and rows[k][0] == value:
        return r_min[k], r_max[k], rows[k][3], k + 1
    lo = r_min[k - 1] if k > 0 else 0
    # every sample of this side below value ranks under the next entry's first copy
    hi = r_max[k] - rows[k][3] if k < len(rows) else r_min[-1]
    return lo, hi, 0, k


def _combine(left: Sequence[_Row], right: Sequence[_Row]) -> List[_Row]:
    """Rank-preserving union of two entry lists; equal values become one entry."""
    if not left or not right:
        return list(left or right)

    l_min, l_max = _rank_bounds(left)
    r_min, r_max = _rank_bounds(right)

    out: List[_Row] = []
    prev = 0
    i = j = 0
    while i < len(left) or j < len(right):
        if j >= len(right):
            value = left[i][0]
        elif i >= len(left):
            value = right[j][0]
        else:
            value = min(left[i][0], right[j][0])
        l_lo, l_hi, l_dup, i = _side_bounds(left, l_min, l_max, i, value)
        r_lo, r_hi, r_dup, j = _side_bounds(right, r_min, r_max, j, value)
        lo, hi, dup = l_lo + r_lo, l_hi + r_hi, l_dup + r_dup
        g, delta = lo - prev, hi - lo
        if g < dup or dup < 1 or delta < 0:
            raise InvariantError(f"merge produced g={g} delta={delta} dup={dup} for value {value!r}")
        out.append((value, g, delta, dup))
        prev = lo
    return out


class QuantileSummary(TargetedSummary):
    """
    Streaming epsilon-approximate quantile summary over a set of targets.

    Not thread-safe: one writer per instance. Per-worker shards are combined
    with merge() once their writers are done.
    """

    def __init__(self, targets: Iterable[TargetLike]) -> None:
        super().__init__(targets)
        self._entries: List[_Row] = []
        self._compress_period = max(1, int(math.floor(1.0 / (2.0 * self._eps_min))))
        self._since_compress = 0

    def allowance(self, rank: int, n: Optional[int] = None) -> float:
        """Largest entry width tolerated for an entry whose r_min is rank."""
        n = self._n if n is None else n
        if not 0 <= rank <= n:
            raise InvariantError(f"rank {rank} outside [0, {n}]")
        bound = math.inf
        for t in self._targets:
            above = rank / t.phi if t.phi > 0.0 else math.inf
            below = (n - rank) / (1.0 - t.phi) if t.phi < 1.0 else math.inf
            bound = min(bound, t.epsilon * max(above, below), 2.0 * t.epsilon * n)
        if math.isnan(bound) or bound < 0.0:
            raise InvariantError(f"allowance({rank}, {n}) = {bound}")
        return max(1.0, bound)

    def insert(self, sample: float) -> None:
        self._check_sample(sample)
        self._n += 1
        entries = self._entries

        pos = bisect.bisect_left(entries, sample, key=_value)
        if pos < len(entries) and entries[pos][0] == sample:
            # a repeat only extends the run, the entry's width is unchanged
            value, g, delta, dup = entries[pos]
            entries[pos] = (value, g + 1, delta, dup + 1)
        else:
            if pos == 0 or pos == len(entries):
                delta = 0
            else:
                # the new sample ranks no higher than its successor's first copy
                _, next_g, next_delta, next_dup = entries[pos]
                delta = next_g + next_delta - next_dup
            entries.insert(pos, (sample, 1, delta, 1))
        self._tick()

    def _tick(self) -> None:
        self._since_compress += 1
        if self._since_compress >= self._compress_period:
            self.compress()

    def compress(self) -> None:
        """
        Fold entries into their upper neighbour while the allowance permits.

        Scans from the highest rank down. The first entry (exact minimum) is
        never folded away and the last one (exact maximum) only absorbs, so
        both extremes stay exact. A second pass right after finds nothing
        left to fold.
        """
        self._since_compress = 0
        entries = self._entries
        if len(entries) < 3:
            return

        ranks = list(itertools.accumulate(row[1] for row in entries))
        if ranks[-1] != self._n:
            raise InvariantError(f"sum(g)={ranks[-1]} but n={self._n}")

        kept: List[_Row] = [entries[-1]]
        kept_rank = ranks[-1]
        for idx in range(len(entries) - 2, 0, -1):
            row = entries[idx]
            next_value, next_g, next_delta, next_dup = kept[-1]
            if row[1] + _width(kept[-1]) <= self.allowance(kept_rank):
                kept[-1] = (next_value, row[1] + next_g, next_delta, next_dup)
            else:
                kept.append(row)
                kept_rank = ranks[idx]
        kept.append(entries[0])
        kept.reverse()

        logger.debug("compress n=%d entries %d -> %d", self._n, len(entries), len(kept))
        self._entries = kept

    def query(self, phi: float) -> float:
        self._check_query(phi)
        entries = self._entries
        if phi == 0.0:
            return entries[0][0]
        if phi == 1.0:
            return entries[-1][0]

        target = target_rank(phi, self._n)
        best_value, best_err = entries[0][0], math.inf
        r_min = 0
        for value, g, delta, dup in entries:
            # this run and every later one starts above the previous r_min
            if r_min + 1 - target >= best_err:
                break
            r_min += g
            # the run of value covers [r_max - dup + 1, r_min] at least
            err = max(target - r_min, r_min + delta - dup + 1 - target, 0)
            if err < best_err:
                best_value, best_err = value, err
        return best_value

    def merge(self, other: "QuantileSummary") -> "QuantileSummary":
        if not isinstance(other, QuantileSummary):
            raise TypeError(f"Cannot merge QuantileSummary with {type(other).__name__}")
        merged = QuantileSummary(merge_targets(self, other))
        merged._n = self._n + other._n
        merged._entries = _combine(self._entries, other._entries)
        merged.compress()
        return merged

    def entries(self) -> Tuple[Entry, ...]:
        return tuple((value, g, delta) for value, g, delta, _ in self._entries)

    def size(self) -> int:
        return len(self._entries)

    def min(self) -> float:
        if not self._entries:
            raise EmptyError("Cannot get min from empty summary")
        return self._entries[0][0]

    def max(self) -> float:
        if not self._entries:
            raise EmptyError("Cannot get max from empty summary")
        return self._entries[-1][0]

    def __repr__(self) -> str:
        targets = ", ".join(f"{t.phi:g}:{t.epsilon:g}" for t in self._targets)
        return f"QuantileSummary(targets=[{targets}], n={self._n}, entries={len(self._entries)})"
