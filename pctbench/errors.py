from __future__ import annotations


class PctbenchError(Exception):
    """Base class for every error raised by pctbench."""


class ConfigError(PctbenchError, ValueError):
    """Invalid quantile target or tunable, raised at construction time."""


class QueryError(PctbenchError, LookupError):
    """Quantile not registered on the summary being queried."""


class EmptyError(QueryError):
    """Query against a summary that holds no sample yet.

    Recoverable: the reporter skips the affected percentile.
    """


class ContractViolationError(PctbenchError, RuntimeError):
    """Caller misuse, such as a negative sample or a record after End."""


class InvariantError(PctbenchError, AssertionError):
    """Internal bound arithmetic went wrong. Never caught inside pctbench."""
