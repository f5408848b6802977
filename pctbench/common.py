from __future__ import annotations

import json
import logging
import logging.handlers
import os
import platform
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np

from pctbench.bench_defaults import BenchConfig

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def utc_stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def ensure_dir(p: Path) -> Path:
    p.mkdir(parents=True, exist_ok=True)
    return p


def out_dir(out_root: Path, workload_id: str, engine: str, tag: str) -> Path:
    return ensure_dir(out_root / workload_id / engine / tag)


def write_json(path: Path, obj: Any) -> None:
    ensure_dir(path.parent)
    path.write_text(json.dumps(obj, indent=2, ensure_ascii=False), encoding="utf-8")


def host_info() -> Dict[str, Any]:
    """What a latency number depends on besides the workload itself."""
    return {
        "python": platform.python_version(),
        "implementation": platform.python_implementation(),
        "platform": platform.platform(),
        "cpu_count": os.cpu_count(),
        "numpy": np.__version__,
    }


def run_record(config: BenchConfig, run_id: int, seed: int) -> Dict[str, Any]:
    return {
        "run_id": run_id,
        "seed": seed,
        "engine": config.engine,
        "percentiles": list(config.percentiles),
        "targets": [f"{t.phi:g}:{t.epsilon:g}" for t in config.targets()],
        "iterations": config.iterations,
        "parallelism": config.parallelism,
        "grain": config.grain,
    }


def write_manifest(
    out_dir: Path,
    workload_id: str,
    config: BenchConfig,
    *,
    run_id: int = 0,
    seed: int = 0,
    args: Optional[Dict[str, Any]] = None,
) -> Path:
    manifest = {
        "workload_id": workload_id,
        "timestamp_utc": utc_stamp(),
        "run": run_record(config, run_id, seed),
        "args": args or {},
        "host": host_info(),
    }
    path = Path(out_dir) / "manifest.json"
    write_json(path, manifest)
    return path


def setup_logging(log_path: Path, level: int = logging.INFO, name: str = "pctbench") -> logging.Logger:
    """Rotating file log plus stdout, shared by every pctbench.* logger."""
    logger = logging.getLogger(name)
    logger.setLevel(level)
    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()

    ensure_dir(Path(log_path).parent)
    handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=5_000_000, backupCount=3, encoding="utf-8"
    )
    formatter = logging.Formatter(LOG_FORMAT)
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    logger.addHandler(console)
    return logger
