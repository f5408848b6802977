from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Tuple

from pctbench.errors import ConfigError
from pctbench.lexicon import ENGINE_EXACT, ENGINE_GK, ENV_ENGINE, ENV_EPSILON, ENV_PARALLELISM
from pctbench.stats import ExactSummary
from pctbench.summary import QuantileSummary, Target, coerce_targets

DEFAULT_PERCENTILES: Tuple[float, ...] = (0.5, 0.95, 0.99)
DEFAULT_EPSILON = 0.001
DEFAULT_ITERATIONS = 10_000
DEFAULT_GRAIN = 100
DEFAULT_ENGINE = ENGINE_GK

ENGINES = (ENGINE_GK, ENGINE_EXACT)


def default_parallelism() -> int:
    return max(1, os.cpu_count() or 1)


def _env_value(env: Optional[Mapping[str, str]], key: str) -> str:
    env = os.environ if env is None else env
    return env.get(key, "").strip()


def resolve_epsilon(env: Optional[Mapping[str, str]] = None, default: float = DEFAULT_EPSILON) -> float:
    raw = _env_value(env, ENV_EPSILON)
    if not raw:
        return float(default)
    try:
        eps = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{ENV_EPSILON}={raw!r} is not a number") from exc
    if not 0.0 < eps < 1.0:
        raise ConfigError(f"{ENV_EPSILON}={raw!r} must be in (0, 1)")
    return eps


def resolve_parallelism(env: Optional[Mapping[str, str]] = None) -> int:
    raw = _env_value(env, ENV_PARALLELISM)
    if not raw:
        return default_parallelism()
    try:
        workers = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{ENV_PARALLELISM}={raw!r} is not an integer") from exc
    if workers < 1:
        raise ConfigError(f"{ENV_PARALLELISM}={raw!r} must be >= 1")
    return workers


def resolve_engine(env: Optional[Mapping[str, str]] = None) -> str:
    raw = _env_value(env, ENV_ENGINE).upper()
    if not raw:
        return DEFAULT_ENGINE
    if raw not in ENGINES:
        raise ConfigError(f"{ENV_ENGINE}={raw!r} must be one of {', '.join(ENGINES)}")
    return raw


@dataclass(frozen=True)
class BenchConfig:
    """Every tunable of a percentile benchmark run."""
    percentiles: Tuple[float, ...] = DEFAULT_PERCENTILES
    epsilon: float = DEFAULT_EPSILON
    parallelism: int = 1
    iterations: int = DEFAULT_ITERATIONS
    grain: int = DEFAULT_GRAIN
    engine: str = DEFAULT_ENGINE
    extra_targets: Tuple[Target, ...] = ()

    def __post_init__(self) -> None:
        if self.parallelism < 1:
            raise ConfigError(f"parallelism must be >= 1, got {self.parallelism}")
        if self.iterations < 0:
            raise ConfigError(f"iterations must be >= 0, got {self.iterations}")
        if self.grain < 1:
            raise ConfigError(f"grain must be >= 1, got {self.grain}")
        if self.engine not in ENGINES:
            raise ConfigError(f"engine must be one of {', '.join(ENGINES)}, got {self.engine!r}")
        # validate targets eagerly so a bad percentile fails before sampling starts
        self.targets()

    def targets(self) -> Tuple[Target, ...]:
        declared = [Target(p, self.epsilon) for p in self.percentiles]
        return coerce_targets(declared + list(self.extra_targets))

    def summary_factory(self):
        if self.engine == ENGINE_EXACT:
            return ExactSummary
        return QuantileSummary

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, **overrides) -> "BenchConfig":
        values = {
            "epsilon": resolve_epsilon(env),
            "parallelism": resolve_parallelism(env),
            "engine": resolve_engine(env),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        if "percentiles" in values:
            values["percentiles"] = tuple(float(p) for p in values["percentiles"])
        if "extra_targets" in values:
            values["extra_targets"] = tuple(values["extra_targets"])
        return cls(**values)


def parse_targets(texts: Iterable[str], default_epsilon: float) -> Tuple[Target, ...]:
    return tuple(Target.parse(text, default_epsilon) for text in texts)
