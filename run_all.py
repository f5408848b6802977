from __future__ import annotations

import argparse
import logging
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from pctbench.bench_defaults import (
    DEFAULT_GRAIN,
    DEFAULT_ITERATIONS,
    DEFAULT_PERCENTILES,
    ENGINES,
    BenchConfig,
    parse_targets,
    resolve_engine,
    resolve_epsilon,
)
from pctbench.common import ensure_dir, out_dir, setup_logging, write_manifest
from pctbench.errors import ConfigError, InvariantError
from pctbench.harness import Bench
from pctbench.lexicon import ENGINE_EXACT, STATUS_EMPTY, STATUS_FAIL, STATUS_OK, WL_BUSY_LOOP, WL_SLEEP_MIX
from pctbench.output_contract import result_rows, write_results_csv, write_results_summary
from pctbench.reporter import PercentileResult, format_result, label_width
from pctbench.stats import summarize_latency_ns
from pctbench.workloads import WORKLOADS, make_body, worker_generators

logger = logging.getLogger("pctbench.orchestrator")


@dataclass
class Job:
    workload_id: str
    engine: str
    run_id: int
    seed: int
    config: BenchConfig
    out_dir: Path

    @property
    def name(self) -> str:
        return f"{self.workload_id}/{self.engine}/run{self.run_id}"


def run_job(job: Job) -> Tuple[str, List[PercentileResult]]:
    """Run one workload through the harness and write its artifacts."""
    root = Bench.from_config(job.config)
    inner_benches: List[Bench] = []

    def bench_fn(b: Bench) -> None:
        inner_benches.append(b)
        rngs = worker_generators(job.seed, b.parallelism)
        b.run_parallel(make_body(job.workload_id, rngs))

    started = time.perf_counter()
    results = root.run(job.workload_id, bench_fn)
    wall_s = time.perf_counter() - started

    bench = inner_benches[0]
    extra: Dict[str, object] = {
        "workload_id": job.workload_id,
        "engine": job.engine,
        "run_id": job.run_id,
        "seed": job.seed,
        "iterations": job.config.iterations,
        "parallelism": job.config.parallelism,
        "epsilon": job.config.epsilon,
        "elapsed_ns": bench.elapsed_ns,
        "wall_s": wall_s,
    }
    if bench.reporter is not None:
        merged = bench.reporter.merged()
        extra["samples"] = merged.count()
        extra["summary_size"] = merged.size()
        if job.engine == ENGINE_EXACT and merged.count():
            extra["exact"] = summarize_latency_ns(
                merged.samples(), percentiles=[p * 100.0 for p in job.config.percentiles]
            )

    rows = result_rows(
        results,
        percentiles=job.config.percentiles,
        bench=bench.name,
        workers=job.config.parallelism,
    )
    write_results_csv(job.out_dir, rows)
    write_results_summary(job.out_dir, results, extra=extra)

    # an empty summary leaves every percentile unanswered
    return (STATUS_OK if results else STATUS_EMPTY), results


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Run the percentile latency benchmarks.")
    p.add_argument("--out-root", type=Path, default=Path("outputs"))
    p.add_argument("--workloads", nargs="+", default=[WL_SLEEP_MIX, WL_BUSY_LOOP])
    p.add_argument("--percentiles", nargs="+", type=float, default=list(DEFAULT_PERCENTILES))
    p.add_argument("--targets", nargs="*", default=[], help="Extra PHI[:EPS] targets to track")
    p.add_argument("--epsilon", type=float, default=None)
    p.add_argument("--parallelism", type=int, default=None)
    p.add_argument("--iterations", type=int, default=DEFAULT_ITERATIONS)
    p.add_argument("--grain", type=int, default=DEFAULT_GRAIN)
    p.add_argument("--engines", nargs="+", default=None)
    p.add_argument("--seed", type=int, default=0)
    p.add_argument("--runs", type=int, default=1)
    p.add_argument("--log-level", default="INFO")
    return p.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    out_root = args.out_root
    orch_root = ensure_dir(out_root / "_orchestration")
    setup_logging(orch_root / "pctbench.log", level=getattr(logging, str(args.log_level).upper(), logging.INFO))

    for workload_id in args.workloads:
        if workload_id not in WORKLOADS:
            raise SystemExit(f"Unknown workload: {workload_id}")

    try:
        engines = [e.upper() for e in args.engines] if args.engines else [resolve_engine()]
        for engine in engines:
            if engine not in ENGINES:
                raise ConfigError(f"Unknown engine: {engine}")
        epsilon = args.epsilon if args.epsilon is not None else resolve_epsilon()
        configs = {
            engine: BenchConfig.from_env(
                percentiles=args.percentiles,
                epsilon=epsilon,
                parallelism=args.parallelism,
                iterations=args.iterations,
                grain=args.grain,
                engine=engine,
                extra_targets=parse_targets(args.targets, epsilon),
            )
            for engine in engines
        }
    except ConfigError as exc:
        raise SystemExit(str(exc))

    jobs: List[Job] = []
    for workload_id in args.workloads:
        for engine in engines:
            for run_id in range(args.runs):
                jobs.append(
                    Job(
                        workload_id=workload_id,
                        engine=engine,
                        run_id=run_id,
                        seed=args.seed + run_id,
                        config=configs[engine],
                        out_dir=out_dir(out_root, workload_id, engine, f"run{run_id}"),
                    )
                )

    logger.info("Planned %d job(s): workloads=%s engines=%s runs=%d", len(jobs), args.workloads, engines, args.runs)

    statuses: List[Tuple[Job, str]] = []
    total = len(jobs)
    manifest_args = {k: (str(v) if isinstance(v, Path) else v) for k, v in vars(args).items()}
    for idx, job in enumerate(jobs, start=1):
        write_manifest(job.out_dir, job.workload_id, job.config, run_id=job.run_id, seed=job.seed, args=manifest_args)
        start = time.perf_counter()
        try:
            status, results = run_job(job)
        except InvariantError:
            logger.exception("Internal invariant broken in %s; aborting", job.name)
            raise
        except Exception as exc:  # noqa: BLE001 - want to keep running
            logger.error("%s failed: %s: %s", job.name, type(exc).__name__, exc)
            status, results = STATUS_FAIL, []
        duration = time.perf_counter() - start

        width = label_width(results)
        for result in results:
            print(format_result(result, width=width))
        sys.stdout.flush()

        statuses.append((job, status))
        logger.info("[%d/%d] %s %s elapsed=%.1fs -> %s", idx, total, status, job.name, duration, job.out_dir)

    ok_count = sum(1 for _, status in statuses if status == STATUS_OK)
    empty_count = sum(1 for _, status in statuses if status == STATUS_EMPTY)
    fail_count = sum(1 for _, status in statuses if status == STATUS_FAIL)
    logger.info("Completed: OK=%d EMPTY=%d FAIL=%d", ok_count, empty_count, fail_count)

    if fail_count:
        logger.error("Failing jobs:")
        for job, status in statuses:
            if status == STATUS_FAIL:
                logger.error("  %s -> %s", job.name, job.out_dir)

    return 1 if fail_count > 0 else 0


if __name__ == "__main__":
    raise SystemExit(main())
