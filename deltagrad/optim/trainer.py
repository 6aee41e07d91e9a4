# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Deltagrad — Neural Network Training Engine                          ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""The iterative training loop.

Each iteration orients (picks a direction from the current measurement),
runs a line search along it and keeps the resulting weights.  Non-finite
measurements are retried on a fresh data sample a bounded number of
times before the loop gives up with :class:`IterativeStopException`.
"""
from __future__ import annotations

import logging
import math
import random
import time
from typing import Callable

from ..config import get_config
from ..errors import IterativeStopException, NonFiniteError
from .line_search import ArmijoWolfeSearch, LineSearchStrategy
from .orient import FailsafeLineSearchCursor, LBFGS, OrientationStrategy
from .sample import PointSample
from .trainable import Trainable

logger = logging.getLogger(__name__)


class Step:
    """Record of one completed iteration."""
    __slots__ = ('point', 'iteration', 'time')

    def __init__(self, point: PointSample, iteration: int, time: float):
        self.point = point
        self.iteration = iteration
        self.time = time

    def __repr__(self) -> str:
        return (f"Step(iteration={self.iteration}, sum={self.point.sum:.6g}, "
                f"rate={self.point.rate:.3g})")


class TrainingMonitor:
    """Receives progress messages and per-iteration callbacks."""

    def __init__(self, log: Callable[[str], None] | None = None,
                 on_step_complete: Callable[[Step], None] | None = None):
        self._log = log
        self._on_step = on_step_complete

    def log(self, msg: str) -> None:
        logger.info(msg)
        if self._log is not None:
            self._log(msg)

    def on_step_complete(self, step: Step) -> None:
        if self._on_step is not None:
            self._on_step(step)


class IterativeTrainer:
    """Orient / line-search loop over a :class:`Trainable`.

    Stops at ``timeout`` seconds, after ``max_iterations`` iterations, once
    the loss reaches ``terminate_threshold``, or when two consecutive
    iterations fail to decrease the loss.
    """

    def __init__(self, subject: Trainable,
                 orientation: OrientationStrategy | None = None,
                 line_search: Callable[[str], LineSearchStrategy] | None = None,
                 monitor: TrainingMonitor | None = None,
                 timeout: float | None = None, max_iterations: int = 100,
                 terminate_threshold: float = -math.inf,
                 max_retries: int | None = None, seed: int | None = None):
        self.subject = subject
        self.orientation = orientation or LBFGS()
        self._line_search_factory = line_search or (lambda kind: ArmijoWolfeSearch())
        self._line_searches: dict[str, LineSearchStrategy] = {}
        self.monitor = monitor or TrainingMonitor()
        self.timeout = timeout
        self.max_iterations = max_iterations
        self.terminate_threshold = terminate_threshold
        self.max_retries = (get_config().max_retries if max_retries is None
                            else max_retries)
        self._rng = random.Random(seed)
        self.history: list[Step] = []

    def _line_search(self, direction_type: str) -> LineSearchStrategy:
        ls = self._line_searches.get(direction_type)
        if ls is None:
            ls = self._line_searches[direction_type] = \
                self._line_search_factory(direction_type)
        return ls

    def measure(self) -> PointSample:
        """Measure the subject, reseeding while the loss is not finite."""
        retries = 0
        while True:
            try:
                point = self.subject.measure(self.monitor)
                if point.is_finite():
                    return point
                reason = f"loss {point.sum}"
            except NonFiniteError as e:
                reason = str(e)
            if retries >= self.max_retries:
                raise IterativeStopException(
                    f"Non-finite measurement after {retries} retries ({reason})")
            retries += 1
            seed = self._rng.getrandbits(31)
            logger.warning("Non-finite measurement (%s); retry %d/%d with "
                           "seed %d", reason, retries, self.max_retries, seed)
            if not self.subject.reseed(seed) and retries > 1:
                raise IterativeStopException(
                    f"Non-finite measurement and the subject cannot be "
                    f"reseeded ({reason})")

    def run(self) -> float:
        """Train until a stop condition holds; returns the final loss."""
        start = time.monotonic()
        deadline = start + self.timeout if self.timeout is not None else math.inf
        current = self.measure()
        iteration = 0
        failures = 0
        while (iteration < self.max_iterations and time.monotonic() < deadline
               and current.sum > self.terminate_threshold):
            iteration += 1
            cursor = FailsafeLineSearchCursor(
                self.orientation.orient(self.subject, current, self.monitor))
            chosen = self._line_search(cursor.direction_type).step(cursor, self.monitor)
            point = cursor.settle(chosen, self.monitor)
            if not point.sum < current.sum:
                failures += 1
                current.restore()
                self.monitor.log(
                    f"Iteration {iteration} failed to improve "
                    f"({point.sum:.6g} >= {current.sum:.6g}); "
                    f"failure {failures} of 2")
                self.orientation.reset()
                if failures >= 2:
                    break
                continue
            failures = 0
            previous, current = current, point
            step = Step(current, iteration, time.monotonic() - start)
            self.history.append(step)
            self.monitor.log(
                f"Iteration {iteration} via {cursor.direction_type}: "
                f"{previous.sum:.6g} -> {current.sum:.6g} "
                f"(alpha={current.rate:.3g})")
            self.monitor.on_step_complete(step)
        return current.sum


__all__ = ['IterativeTrainer', 'TrainingMonitor', 'Step']
