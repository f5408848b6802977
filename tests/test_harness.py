import threading

import pytest

from pctbench.bench_defaults import BenchConfig
from pctbench.errors import ConfigError, ContractViolationError
from pctbench.harness import Bench
from pctbench.lexicon import ENGINE_EXACT, STATE_DISCARDED
from pctbench.stats import ExactSummary


def counting_body(counter, lock):
    def body(pb):
        while pb.next():
            with lock:
                counter[0] += 1

    return body


class TestBench:
    def test_budget_split_across_workers(self):
        counter, lock = [0], threading.Lock()
        bench = Bench(iterations=1_000, parallelism=4, grain=7, percentiles=[0.5, 0.99])
        seen = []

        def fn(b):
            seen.append(b)
            b.run_parallel(counting_body(counter, lock))

        results = bench.run("count", fn)

        assert counter[0] == 1_000
        assert [r.label for r in results] == ["P50-4", "P99-4"]
        assert all(r.bench == "count" and r.count == 1_000 for r in results)
        # every iteration, the last one of each worker included, is one sample
        assert seen[0].reporter.merged().count() == 1_000
        assert bench.results == results

    def test_fake_clock_gives_exact_per_op(self, step_clock):
        bench = Bench(
            iterations=50, parallelism=1, percentiles=[0.5, 0.99], summary_factory=ExactSummary, clock=step_clock
        )
        results = bench.run("steady", lambda b: b.run_parallel(lambda pb: [None for _ in iter(pb.next, False)]))
        assert [r.per_op_ns for r in results] == [100, 100]
        assert [r.total_ns for r in results] == [5_000, 5_000]

    def test_no_percentiles_still_runs(self):
        counter, lock = [0], threading.Lock()
        bench = Bench(iterations=30, parallelism=3, grain=4)
        results = bench.run("plain", lambda b: b.run_parallel(counting_body(counter, lock)))
        assert counter[0] == 30
        assert results == []

    def test_zero_iterations_reports_nothing(self, caplog):
        bench = Bench(iterations=0, parallelism=2, percentiles=[0.5])
        with caplog.at_level("WARNING", logger="pctbench.reporter"):
            results = bench.run("idle", lambda b: b.run_parallel(lambda pb: pb.next()))
        assert results == []
        assert "skipping P50-2" in caplog.text

    def test_sub_benchmarks_inherit_percentiles(self, step_clock):
        bench = Bench("root", iterations=10, percentiles=[0.5], clock=step_clock)

        def outer(b):
            b.report_percentile(0.9)
            b.run("inner", lambda c: c.run_parallel(lambda pb: [None for _ in iter(pb.next, False)]))

        results = bench.run("outer", outer)
        assert [r.full_label for r in results] == ["root/outer/inner/P50", "root/outer/inner/P90"]
        assert bench.percentiles == [0.5]

    def test_body_error_discards_run(self):
        bench = Bench(iterations=100, parallelism=2, percentiles=[0.5])
        inner = []

        def boom(pb):
            pb.next()
            raise RuntimeError("workload failed")

        def fn(b):
            inner.append(b)
            b.run_parallel(boom)

        with pytest.raises(RuntimeError, match="workload failed"):
            bench.run("broken", fn)
        assert inner[0].reporter.state == STATE_DISCARDED
        assert bench.results == []

    def test_next_after_exhaustion_records_nothing(self):
        bench = Bench(iterations=60, parallelism=3, grain=5, percentiles=[0.5])
        seen = []

        def body(pb):
            while pb.next():
                pass
            assert pb.next() is False
            assert pb.next() is False

        def fn(b):
            seen.append(b)
            b.run_parallel(body)

        bench.run("drained", fn)
        assert seen[0].reporter.merged().count() == 60

    def test_report_twice_keeps_one_copy(self, step_clock):
        bench = Bench("twice", iterations=10, percentiles=[0.5, 0.9], clock=step_clock)
        bench.run_parallel(lambda pb: [None for _ in iter(pb.next, False)])
        first = bench.report()
        second = bench.report()
        assert first == second
        assert [r.label for r in bench.results] == ["P50-1", "P90-1"]
        assert len(bench.lines()) == 2

    def test_run_parallel_once(self):
        bench = Bench(iterations=1, percentiles=[0.5])
        bench.run_parallel(lambda pb: pb.next())
        with pytest.raises(ContractViolationError):
            bench.run_parallel(lambda pb: pb.next())

    def test_percentile_after_sampling_rejected(self):
        bench = Bench(iterations=1)
        bench.run_parallel(lambda pb: pb.next())
        with pytest.raises(ContractViolationError):
            bench.report_percentile(0.5)

    @pytest.mark.parametrize("kwargs", [{"iterations": -1}, {"parallelism": 0}, {"grain": 0}])
    def test_bad_arguments(self, kwargs):
        with pytest.raises(ConfigError):
            Bench(**kwargs)

    def test_bad_percentile(self):
        with pytest.raises(ConfigError):
            Bench(percentiles=[99])

    def test_worker_indices(self):
        seen, lock = set(), threading.Lock()
        bench = Bench(iterations=40, parallelism=4, grain=1)

        def body(pb):
            with lock:
                seen.add(pb.worker)
            while pb.next():
                pass

        bench.run_parallel(body)
        assert seen == {0, 1, 2, 3}

    def test_from_config_and_lines(self, step_clock):
        config = BenchConfig(percentiles=(0.5, 0.95), iterations=20, parallelism=2, engine=ENGINE_EXACT)
        bench = Bench.from_config(config)
        assert bench.summary_factory is ExactSummary
        bench.clock = step_clock
        bench.run("sleepy", lambda b: b.run_parallel(lambda pb: [None for _ in iter(pb.next, False)]))
        lines = bench.lines()
        assert len(lines) == 2
        assert lines[0].startswith("sleepy/P50-2\t")
        assert lines[1].startswith("sleepy/P95-2\t")
        assert lines[0].endswith(" ns/op")
