from __future__ import annotations

import time
from typing import Callable, Dict, List, Sequence, Tuple

import numpy as np

from pctbench.errors import ConfigError
from pctbench.harness import PB
from pctbench.lexicon import WL_BUSY_LOOP, WL_SLEEP_MIX

# (delay seconds, cumulative probability)
SLEEP_MIX_CLASSES: Tuple[Tuple[float, float], ...] = (
    (10e-6, 0.50),
    (100e-6, 0.95),
    (1e-3, 0.99),
    (10e-3, 1.00),
)

BUSY_LOOP_SIZE = 4096

_DELAYS = np.array([d for d, _ in SLEEP_MIX_CLASSES], dtype=float)
_CUMULATIVE = np.array([c for _, c in SLEEP_MIX_CLASSES], dtype=float)

Body = Callable[[PB], None]


def worker_generators(seed: int, n: int) -> List[np.random.Generator]:
    """Independent, reproducible generators, one per worker."""
    return [np.random.default_rng(s) for s in np.random.SeedSequence(seed).spawn(n)]


def sleep_mix_delay(rng: np.random.Generator) -> float:
    return float(_DELAYS[int(np.searchsorted(_CUMULATIVE, rng.random(), side="right"))])


def sleep_mix(pb: PB, rng: np.random.Generator, sleep: Callable[[float], None] = time.sleep) -> None:
    while pb.next():
        sleep(sleep_mix_delay(rng))


def busy_loop(pb: PB, rng: np.random.Generator, size: int = BUSY_LOOP_SIZE) -> None:
    buf = rng.random(size)
    while pb.next():
        float(np.dot(buf, buf))


WORKLOADS: Dict[str, Callable[..., None]] = {
    WL_SLEEP_MIX: sleep_mix,
    WL_BUSY_LOOP: busy_loop,
}


def make_body(workload_id: str, rngs: Sequence[np.random.Generator]) -> Body:
    try:
        fn = WORKLOADS[workload_id]
    except KeyError:
        raise ConfigError(f"Unknown workload: {workload_id} (known: {', '.join(WORKLOADS)})") from None

    def body(pb: PB) -> None:
        fn(pb, rngs[pb.worker])

    return body
