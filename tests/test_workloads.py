import threading

import numpy as np
import pytest

from pctbench.errors import ConfigError
from pctbench.harness import Bench
from pctbench.lexicon import WL_BUSY_LOOP, WL_SLEEP_MIX
from pctbench.workloads import SLEEP_MIX_CLASSES, make_body, sleep_mix, sleep_mix_delay, worker_generators


def test_sleep_mix_class_frequencies():
    rng = np.random.default_rng(1)
    draws = np.array([sleep_mix_delay(rng) for _ in range(20_000)])
    expected = np.diff([0.0] + [c for _, c in SLEEP_MIX_CLASSES])
    for (delay, _), share in zip(SLEEP_MIX_CLASSES, expected):
        assert np.mean(draws == delay) == pytest.approx(share, abs=0.015)


def test_worker_generators_reproducible_and_independent():
    a = worker_generators(42, 3)
    b = worker_generators(42, 3)
    first = [g.random() for g in a]
    assert first == [g.random() for g in b]
    assert len(set(first)) == 3


def test_sleep_mix_uses_injected_sleep():
    slept, lock = [], threading.Lock()
    rngs = worker_generators(0, 2)

    def fake_sleep(seconds):
        with lock:
            slept.append(seconds)

    bench = Bench(iterations=64, parallelism=2, grain=8, percentiles=[0.5])
    bench.run("mix", lambda b: b.run_parallel(lambda pb: sleep_mix(pb, rngs[pb.worker], sleep=fake_sleep)))
    assert len(slept) == 64
    assert set(slept) <= {d for d, _ in SLEEP_MIX_CLASSES}


def test_busy_loop_body():
    bench = Bench(iterations=200, parallelism=2, percentiles=[0.5, 0.99])
    results = bench.run(WL_BUSY_LOOP, lambda b: b.run_parallel(make_body(WL_BUSY_LOOP, worker_generators(3, 2))))
    assert [r.label for r in results] == ["P50-2", "P99-2"]
    assert results[0].per_op_ns <= results[1].per_op_ns


def test_make_body_known_workloads():
    rngs = worker_generators(0, 1)
    assert callable(make_body(WL_SLEEP_MIX, rngs))
    assert callable(make_body(WL_BUSY_LOOP, rngs))


def test_make_body_unknown():
    with pytest.raises(ConfigError, match="Unknown workload"):
        make_body("NOPE", worker_generators(0, 1))
