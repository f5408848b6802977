import itertools
import logging
import threading

import pytest


class StepClock:
    """Deterministic nanosecond clock: every read advances by `step`."""

    def __init__(self, step=100, start=1_000):
        self._counter = itertools.count(start, step)
        self._lock = threading.Lock()
        self.reads = 0

    def __call__(self):
        with self._lock:
            self.reads += 1
            return next(self._counter)


@pytest.fixture
def step_clock():
    return StepClock()


@pytest.fixture
def countdown():
    """has_next callback that answers True `n` times, then False."""

    def make(n):
        left = [n]

        def has_next():
            if left[0] <= 0:
                return False
            left[0] -= 1
            return True

        return has_next

    return make


@pytest.fixture
def reset_pctbench_logging():
    yield
    logger = logging.getLogger("pctbench")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)
