from __future__ import annotations

import argparse
import csv
import math
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from pctbench.common import ensure_dir, utc_stamp, write_json
from pctbench.lexicon import STATUS_EMPTY, STATUS_FAIL, STATUS_OK
from pctbench.reporter import PercentileResult, percentile_label

RESULTS_FIELDS = ["bench", "label", "quantile", "per_op_ns", "count", "total_ns", "status"]

_LABEL_RE = re.compile(r"^P\d[\d.e+]*(-\d+)?$")
_STATUSES = {STATUS_OK, STATUS_EMPTY, STATUS_FAIL}


def _write_csv(path: Path, fieldnames: List[str], rows: Iterable[Mapping[str, Any]]) -> None:
    ensure_dir(path.parent)
    with path.open("w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames, extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            writer.writerow(row)


def _read_csv_rows(path: Path) -> Tuple[List[str], List[dict]]:
    with path.open("r", encoding="utf-8", newline="") as f:
        reader = csv.DictReader(f)
        rows = list(reader)
        return list(reader.fieldnames or []), rows


def result_rows(
    results: Sequence[PercentileResult],
    *,
    percentiles: Sequence[float] = (),
    bench: str = "",
    workers: int = 1,
) -> List[Dict[str, Any]]:
    """
    One CSV row per result; declared percentiles that produced no result get
    an EMPTY row so a missing line is visible in the table.
    """
    rows: List[Dict[str, Any]] = [dict(r.to_row(), status=STATUS_OK) for r in results]
    answered = {round(r.quantile, 9) for r in results}
    for phi in percentiles:
        if round(float(phi), 9) in answered:
            continue
        rows.append(
            {
                "bench": bench,
                "label": percentile_label(phi, workers),
                "quantile": float(phi),
                "per_op_ns": "",
                "count": 0,
                "total_ns": "",
                "status": STATUS_EMPTY,
            }
        )
    return rows


def write_results_csv(out_dir: Path, rows: List[Dict[str, Any]]) -> Path:
    path = Path(out_dir) / "results.csv"
    _write_csv(path, RESULTS_FIELDS, rows)
    return path


def summarize_results(results: Sequence[PercentileResult]) -> Dict[str, Any]:
    summary: Dict[str, Any] = {"n_results": len(results)}
    for r in results:
        summary[f"{r.label}_ns"] = r.per_op_ns
    if results:
        summary["count"] = results[0].count
    return summary


def write_results_summary(
    out_dir: Path,
    results: Sequence[PercentileResult],
    *,
    extra: Optional[Dict[str, Any]] = None,
) -> Path:
    summary = summarize_results(results)
    summary["timestamp_utc"] = utc_stamp()
    summary.update(extra or {})
    path = Path(out_dir) / "summary.json"
    write_json(path, summary)
    return path


def validate_results_csv(path: Path, expected_rows: Optional[int] = None) -> Tuple[bool, str]:
    if not path.exists():
        return False, f"Missing results.csv: {path}"
    header, rows = _read_csv_rows(path)
    missing = [k for k in RESULTS_FIELDS if k not in header]
    if missing:
        return False, f"results.csv missing column(s): {', '.join(missing)}"
    if expected_rows is not None and len(rows) != expected_rows:
        return False, f"results.csv rows={len(rows)} expected={expected_rows}"
    for idx, row in enumerate(rows):
        status = row.get("status", "")
        if status not in _STATUSES:
            return False, f"results.csv row {idx} unknown status {status!r}"
        try:
            quantile = float(row.get("quantile", "nan"))
        except ValueError:
            return False, f"results.csv row {idx} quantile not numeric"
        if not 0.0 <= quantile <= 1.0:
            return False, f"results.csv row {idx} quantile {quantile} outside [0, 1]"
        if status != STATUS_OK:
            continue
        if not _LABEL_RE.match(row.get("label", "")):
            return False, f"results.csv row {idx} malformed label {row.get('label')!r}"
        try:
            per_op = float(row.get("per_op_ns", "nan"))
            count = int(row.get("count", ""))
            total = float(row.get("total_ns", "nan"))
        except ValueError:
            return False, f"results.csv row {idx} per_op_ns/count/total_ns not numeric"
        if per_op < 0 or count < 0 or math.isnan(per_op):
            return False, f"results.csv row {idx} negative or NaN value"
        if not math.isclose(total, per_op * count, rel_tol=1e-9, abs_tol=1e-6):
            return False, f"results.csv row {idx} total_ns={total} != per_op_ns*count={per_op * count}"
    return True, "OK"


def main() -> int:
    parser = argparse.ArgumentParser(description="Validate percentile benchmark output artifacts.")
    parser.add_argument("--results-csv", type=Path, nargs="+", required=True)
    parser.add_argument("--expected-rows", type=int, default=None)
    args = parser.parse_args()

    failed = 0
    for path in args.results_csv:
        ok, msg = validate_results_csv(path, args.expected_rows)
        if ok:
            print(f"[OK] {path}")
        else:
            print(f"[FAIL] {msg}")
            failed += 1
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
