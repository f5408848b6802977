"""
Project lexicon constants.

GK    = streaming targeted Greenwald-Khanna summary (bounded memory)
EXACT = sort-all-samples summary (epsilon = 0, unbounded memory)
"""

# Summary engines
ENGINE_GK    = "GK"
ENGINE_EXACT = "EXACT"

# Reporter lifecycle
STATE_IDLE     = "IDLE"
STATE_SAMPLING = "SAMPLING"
STATE_MERGING  = "MERGING"
STATE_REPORTED = "REPORTED"
STATE_DISCARDED = "DISCARDED"

# Run status (as written to summary.json / results.csv)
STATUS_OK    = "OK"
STATUS_EMPTY = "EMPTY"
STATUS_FAIL  = "FAIL"

# Workloads (canonical IDs)
WL_SLEEP_MIX = "SLEEP_MIX"
WL_BUSY_LOOP = "BUSY_LOOP"

# Environment overrides
ENV_EPSILON     = "PCTBENCH_EPSILON"
ENV_PARALLELISM = "PCTBENCH_PARALLELISM"
ENV_ENGINE      = "PCTBENCH_ENGINE"
