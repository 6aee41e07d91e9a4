# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Deltagrad — Neural Network Training Engine                          ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""Search directions and the cursors that walk along them.

An orientation strategy turns a :class:`PointSample` into a
:class:`LineSearchCursor`: a one-dimensional view of the objective along
a direction in weight space, parameterised by the step length ``alpha``.
"""
from __future__ import annotations

import logging
import math
from collections import deque
from typing import TYPE_CHECKING, Callable

from ..autograd import DeltaSet
from ..errors import NonFiniteError
from .sample import PointSample

if TYPE_CHECKING:
    from .trainable import Trainable
    from .trainer import TrainingMonitor

logger = logging.getLogger(__name__)


# ──────────────────────── Cursors ─────────────────────────────────────

class LineSearchPoint:
    """A measurement along a line plus the directional derivative there."""
    __slots__ = ('point', 'derivative')

    def __init__(self, point: PointSample, derivative: float):
        self.point = point
        self.derivative = float(derivative)

    @property
    def rate(self) -> float:
        return self.point.rate

    @property
    def sum(self) -> float:
        return self.point.sum

    def is_finite(self) -> bool:
        return self.point.is_finite() and math.isfinite(self.derivative)

    def __repr__(self) -> str:
        return (f"LineSearchPoint(alpha={self.rate:.4g}, sum={self.sum:.6g}, "
                f"derivative={self.derivative:.4g})")


class LineSearchCursor:
    """Base class for cursors."""

    direction_type = ''

    def step(self, alpha: float,
             monitor: 'TrainingMonitor | None' = None) -> LineSearchPoint:
        raise NotImplementedError

    def origin_point(self) -> LineSearchPoint:
        raise NotImplementedError

    def position(self, alpha: float) -> DeltaSet:
        raise NotImplementedError

    def reset(self) -> None:
        raise NotImplementedError


class SimpleLineSearchCursor(LineSearchCursor):
    """Moves the weights to ``origin + position(alpha)`` and measures.

    The straight-line cursor uses ``position(alpha) = alpha * direction``.
    A probe whose loss or gradient is not finite is reported with an
    infinite loss so line searches back off from it.  Every finite probe
    is passed to ``observer`` when one is given.
    """

    def __init__(self, subject: 'Trainable', origin: PointSample,
                 direction: DeltaSet, direction_type: str = '',
                 observer: Callable[[PointSample], None] | None = None):
        self.subject = subject
        self.origin = origin
        self.direction = direction
        self.direction_type = direction_type
        self.observer = observer
        self.last_alpha = 0.0

    def tangent(self, alpha: float) -> DeltaSet:
        """d position / d alpha."""
        return self.direction

    def origin_point(self) -> LineSearchPoint:
        return LineSearchPoint(self.origin.set_rate(0.0),
                               self.origin.delta.dot(self.tangent(0.0)))

    def position(self, alpha: float) -> DeltaSet:
        return self.direction.scale(alpha)

    def reset(self) -> None:
        self.origin.weights.overwrite()
        self.last_alpha = 0.0

    def step(self, alpha, monitor=None):
        if not math.isfinite(alpha):
            raise ValueError(f"step length must be finite, got {alpha}")
        self.reset()
        if alpha != 0.0:
            self.position(alpha).write()
        self.last_alpha = alpha
        try:
            point = self.subject.measure(monitor).set_rate(alpha)
        except NonFiniteError as e:
            logger.warning("non-finite probe at alpha=%g: %s", alpha, e)
            return LineSearchPoint(
                PointSample(DeltaSet(), self.origin.weights, math.inf, alpha),
                math.inf)
        if self.observer is not None:
            self.observer(point)
        derivative = point.delta.dot(self.tangent(alpha))
        return LineSearchPoint(point, derivative)


class QuadraticLineSearchCursor(SimpleLineSearchCursor):
    """Walks a quadratic path from a gradient step into a quasi-Newton step.

    ``position(t) = gradient * (t - t**2) + quasi_newton * t**2``: the path
    leaves the origin along the (rescaled) negative gradient and reaches the
    quasi-Newton point at ``t = 1``.
    """

    def __init__(self, subject, origin, gradient: DeltaSet,
                 quasi_newton: DeltaSet, observer=None):
        super().__init__(subject, origin, quasi_newton, 'QQN', observer)
        self.gradient = gradient

    def tangent(self, alpha):
        return self.gradient.scale(1.0 - 2.0 * alpha).add(
            self.direction.scale(2.0 * alpha))

    def position(self, alpha):
        return self.gradient.scale(alpha - alpha * alpha).add(
            self.direction.scale(alpha * alpha))


class FailsafeLineSearchCursor(LineSearchCursor):
    """Wraps a cursor and remembers the best point it has seen."""

    def __init__(self, inner: SimpleLineSearchCursor):
        self.inner = inner
        self.direction_type = inner.direction_type
        self.best: LineSearchPoint = inner.origin_point()

    def _track(self, p: LineSearchPoint) -> LineSearchPoint:
        if p.point.is_finite() and p.sum < self.best.sum:
            self.best = p
        return p

    def step(self, alpha, monitor=None):
        return self._track(self.inner.step(alpha, monitor))

    def origin_point(self):
        return self.inner.origin_point()

    def position(self, alpha):
        return self.inner.position(alpha)

    def reset(self):
        self.inner.reset()

    @property
    def last_alpha(self) -> float:
        return self.inner.last_alpha

    def settle(self, chosen: LineSearchPoint,
               monitor: 'TrainingMonitor | None' = None) -> PointSample:
        """Leave the weights at *chosen*, or at the best point if better."""
        target = chosen
        if not chosen.point.is_finite() or self.best.sum < chosen.sum:
            target = self.best
        if target.rate == 0.0:
            self.inner.reset()
            return self.inner.origin
        if self.inner.last_alpha != target.rate:
            target = self.inner.step(target.rate, monitor)
        return target.point


# ──────────────────────── Strategies ──────────────────────────────────

class OrientationStrategy:
    """Base class for direction strategies."""

    def orient(self, subject: 'Trainable', measurement: PointSample,
               monitor: 'TrainingMonitor | None' = None) -> LineSearchCursor:
        raise NotImplementedError

    def reset(self) -> None:
        pass


class GradientDescent(OrientationStrategy):
    """Steepest descent: the negative gradient."""

    def orient(self, subject, measurement, monitor=None):
        direction = measurement.delta.scale(-1.0)
        return SimpleLineSearchCursor(subject, measurement, direction, 'GD')


class MomentumStrategy(OrientationStrategy):
    """Adds a decaying carry of previous directions to an inner strategy."""

    def __init__(self, inner: OrientationStrategy | None = None,
                 carry_over: float = 0.1):
        self.inner = inner or GradientDescent()
        self.carry_over = carry_over
        self._prev: DeltaSet = DeltaSet()

    def orient(self, subject, measurement, monitor=None):
        cursor = self.inner.orient(subject, measurement, monitor)
        direction = cursor.direction
        carried = DeltaSet()
        for key, buf in direction.items():
            prev = self._prev.get(key, buf.target)
            carried.get(key, buf.target, buf.owner).accumulate(
                prev.scale(self.carry_over).delta + buf.delta)
        self._prev = carried
        return SimpleLineSearchCursor(subject, measurement, carried,
                                      f'Momentum({cursor.direction_type})')

    def reset(self):
        self._prev = DeltaSet()
        self.inner.reset()


class LBFGS(OrientationStrategy):
    """Limited-memory BFGS via the two-loop recursion.

    The history collects every finite point measured: the origins passed
    to :meth:`orient` and each line-search probe of the cursors it hands
    out.  Falls back to steepest descent while the history is shorter than
    ``min_history`` or when the quasi-Newton direction is not a descent
    direction.
    """

    def __init__(self, max_history: int = 30, min_history: int = 3):
        self.max_history = max_history
        self.min_history = min_history
        self.history: deque[PointSample] = deque(maxlen=max_history)

    def add_to_history(self, point: PointSample) -> None:
        if not point.is_finite():
            return
        if self.history:
            last = self.history[-1]
            if not point.weights.is_different(last.weights):
                return
        self.history.append(point)

    def _pairs(self, keys) -> list[tuple[DeltaSet, DeltaSet]]:
        pairs = []
        hist = list(self.history)
        for prev, cur in zip(hist[:-1], hist[1:]):
            s = _restrict(cur.weights, keys).subtract(_restrict(prev.weights, keys))
            y = _restrict(cur.delta, keys).subtract(_restrict(prev.delta, keys))
            if s.dot(y) > 0:
                pairs.append((s, y))
        return pairs

    def _cursor(self, subject, measurement, direction, kind):
        return SimpleLineSearchCursor(subject, measurement, direction, kind,
                                      observer=self.add_to_history)

    def orient(self, subject, measurement, monitor=None):
        self.add_to_history(measurement)
        gradient = measurement.delta
        steepest = gradient.scale(-1.0)
        if len(self.history) < self.min_history:
            return self._cursor(subject, measurement, steepest, 'GD')

        keys = gradient.keys()
        pairs = self._pairs(keys)
        if not pairs:
            return self._cursor(subject, measurement, steepest, 'GD')

        q = gradient.copy()
        alphas = []
        for s, y in reversed(pairs):
            rho = 1.0 / y.dot(s)
            a = rho * s.dot(q)
            alphas.append((a, rho))
            q = q.subtract(y.scale(a))
        s, y = pairs[-1]
        r = q.scale(s.dot(y) / y.dot(y))
        for (s, y), (a, rho) in zip(pairs, reversed(alphas)):
            b = rho * y.dot(r)
            r = r.add(s.scale(a - b))
        direction = r.scale(-1.0)

        descent = direction.dot(gradient)
        if not math.isfinite(descent) or descent >= 0:
            logger.info("LBFGS direction is not a descent direction; "
                        "using steepest descent")
            if monitor is not None:
                monitor.log("LBFGS fallback to steepest descent")
            self.history.clear()
            self.history.append(measurement)
            return self._cursor(subject, measurement, steepest, 'GD')
        return self._cursor(subject, measurement, direction, 'LBFGS')

    def reset(self):
        self.history.clear()


class QQN(OrientationStrategy):
    """Quadratic quasi-Newton.

    Blends steepest descent with :class:`LBFGS` along the quadratic path of
    :class:`QuadraticLineSearchCursor`.  The negative gradient is rescaled
    to the magnitude of the LBFGS direction; when both already agree in
    magnitude the plain LBFGS cursor is used.  Every probe feeds the LBFGS
    history.
    """

    def __init__(self, max_history: int = 30, min_history: int = 3,
                 magnitude_tolerance: float = 1e-2):
        self.inner = LBFGS(max_history, min_history)
        self.magnitude_tolerance = magnitude_tolerance

    def orient(self, subject, measurement, monitor=None):
        cursor = self.inner.orient(subject, measurement, monitor)
        quasi_newton = cursor.direction
        steepest = measurement.delta.scale(-1.0)
        qn_mag, gd_mag = quasi_newton.magnitude(), steepest.magnitude()
        if qn_mag + gd_mag == 0 or \
                abs(qn_mag - gd_mag) / (qn_mag + gd_mag) <= self.magnitude_tolerance:
            return cursor
        if monitor is not None:
            monitor.log(f"Quadratic cursor: |GD|={gd_mag:.4g}, |QN|={qn_mag:.4g}")
        return QuadraticLineSearchCursor(
            subject, measurement, steepest.scale(qn_mag / gd_mag), quasi_newton,
            observer=self.inner.add_to_history)

    def reset(self):
        self.inner.reset()


def _restrict(deltas: DeltaSet, keys) -> DeltaSet:
    return DeltaSet(deltas[k] for k in keys if k in deltas)


__all__ = ['LineSearchPoint', 'LineSearchCursor', 'SimpleLineSearchCursor',
           'QuadraticLineSearchCursor', 'FailsafeLineSearchCursor',
           'OrientationStrategy', 'GradientDescent', 'MomentumStrategy',
           'LBFGS', 'QQN']
