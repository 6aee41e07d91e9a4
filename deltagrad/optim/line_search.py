# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Deltagrad — Neural Network Training Engine                          ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""Line search strategies.

Each strategy probes a :class:`LineSearchCursor` at a few step lengths
and returns the :class:`LineSearchPoint` it accepts.  Strategies keep the
accepted step length between iterations as the next starting guess.
"""
from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING

from .orient import LineSearchCursor, LineSearchPoint

if TYPE_CHECKING:
    from .trainer import TrainingMonitor

logger = logging.getLogger(__name__)


def _log(monitor, msg: str) -> None:
    if monitor is not None:
        monitor.log(msg)
    else:
        logger.debug(msg)


class LineSearchStrategy:
    """Base class for line searches."""

    def step(self, cursor: LineSearchCursor,
             monitor: 'TrainingMonitor | None' = None) -> LineSearchPoint:
        raise NotImplementedError


class StaticLearningRate(LineSearchStrategy):
    """Fixed step, halved until the loss decreases or the rate bottoms out."""

    def __init__(self, rate: float = 1e-4, minimum_rate: float = 1e-12):
        self.rate = rate
        self.minimum_rate = minimum_rate

    def step(self, cursor, monitor=None):
        start = cursor.origin_point()
        rate = self.rate
        while rate >= self.minimum_rate:
            p = cursor.step(rate, monitor)
            if p.point.is_finite() and p.sum < start.sum:
                return p
            _log(monitor, f"Static rate {rate:.3g} did not improve "
                          f"({p.sum:.6g} >= {start.sum:.6g})")
            rate /= 2.0
        cursor.reset()
        return start


class QuadraticSearch(LineSearchStrategy):
    """Brackets a minimum, then fits the derivative linearly.

    The next probe is the root of the line through the two bracketing
    derivatives, which is the minimum of the matching quadratic model.
    Stops when the derivative has shrunk to ``relative_tolerance`` of its
    value at the origin or the bracket collapses.
    """

    def __init__(self, absolute_tolerance: float = 1e-12,
                 relative_tolerance: float = 1e-2, max_iterations: int = 50,
                 initial_rate: float | None = None):
        self.absolute_tolerance = absolute_tolerance
        self.relative_tolerance = relative_tolerance
        self.max_iterations = max_iterations
        self.current_rate = initial_rate

    def _is_same(self, a: float, b: float) -> bool:
        diff = abs(a - b)
        if diff < self.absolute_tolerance:
            return True
        scale = max(abs(a), abs(b))
        return scale > 0 and diff / scale < self.relative_tolerance

    def step(self, cursor, monitor=None):
        origin = cursor.origin_point()
        if not origin.derivative < 0:
            _log(monitor, "Quadratic search: not a descent direction")
            cursor.reset()
            return origin
        if self.current_rate:
            x = self.current_rate
        else:
            x = abs(origin.sum * 1e-4 / origin.derivative) or 1e-4
        best = origin
        left = origin
        right = cursor.step(x, monitor)
        evals = 1

        # Shrink until the probe is usable, then grow until it brackets.
        while not right.is_finite() or (right.sum > origin.sum
                                        and right.derivative <= 0):
            if evals >= self.max_iterations:
                break
            x /= 2.0
            right = cursor.step(x, monitor)
            evals += 1
        while right.is_finite() and right.derivative < 0 and right.sum < left.sum:
            if evals >= self.max_iterations:
                break
            left, best = right, right
            x *= 2.0
            right = cursor.step(x, monitor)
            evals += 1
        if right.is_finite() and right.sum < best.sum:
            best = right

        while evals < self.max_iterations and right.is_finite():
            lx, rx = left.rate, right.rate
            if self._is_same(lx, rx):
                break
            dl, dr = left.derivative, right.derivative
            if dr != dl and dl < 0 < dr:
                mx = lx - dl * (rx - lx) / (dr - dl)
                if not lx < mx < rx:
                    mx = (lx + rx) / 2.0
            else:
                mx = (lx + rx) / 2.0
            mid = cursor.step(mx, monitor)
            evals += 1
            _log(monitor, f"Quadratic probe {mid!r}")
            if mid.is_finite() and mid.sum < best.sum:
                best = mid
            if not mid.is_finite() or mid.derivative > 0 or mid.sum > left.sum:
                right = mid
            else:
                left = mid
            if abs(mid.derivative) <= self.relative_tolerance * abs(origin.derivative):
                break

        if best.rate > 0:
            self.current_rate = best.rate
        return best


class ArmijoWolfeSearch(LineSearchStrategy):
    """Bisection on the Armijo and (strong) Wolfe conditions.

    ``mu``/``nu`` bound the acceptable step from below and above; with no
    upper bound yet the step grows by ``alpha_growth``.  The accepted step
    seeds the next search.
    """

    def __init__(self, alpha: float = 1.0, c1: float = 1e-6, c2: float = 0.9,
                 alpha_growth: float = 10 ** (1.0 / 3.0), strong_wolfe: bool = True,
                 min_alpha: float = 1e-20, max_iterations: int = 50):
        self.alpha = alpha
        self.c1 = c1
        self.c2 = c2
        self.alpha_growth = alpha_growth
        self.strong_wolfe = strong_wolfe
        self.min_alpha = min_alpha
        self.max_iterations = max_iterations

    def step(self, cursor, monitor=None):
        origin = cursor.origin_point()
        f0, d0 = origin.sum, origin.derivative
        if not d0 < 0:
            _log(monitor, "Armijo/Wolfe: not a descent direction")
            cursor.reset()
            return origin
        alpha = self.alpha
        mu, nu = 0.0, math.inf
        best = origin
        for _ in range(self.max_iterations):
            if alpha < self.min_alpha or (math.isfinite(nu) and nu - mu < self.min_alpha):
                break
            p = cursor.step(alpha, monitor)
            if p.is_finite() and p.sum < best.sum:
                best = p
            if not p.is_finite() or p.sum > f0 + self.c1 * alpha * d0:
                _log(monitor, f"Armijo: alpha={alpha:.3g} overshoots")
                nu = alpha
            elif p.derivative < self.c2 * d0:
                _log(monitor, f"Wolfe: alpha={alpha:.3g} too short")
                mu = alpha
            elif self.strong_wolfe and p.derivative > -self.c2 * d0:
                _log(monitor, f"Strong Wolfe: alpha={alpha:.3g} overshoots")
                nu = alpha
            else:
                self.alpha = alpha
                return p
            alpha = (mu + nu) / 2.0 if math.isfinite(nu) else alpha * self.alpha_growth
        # Loosen: restart the next search from whatever worked best.
        if best.rate > 0:
            self.alpha = best.rate
        else:
            self.alpha = max(alpha, self.min_alpha * self.alpha_growth)
        return best


__all__ = ['LineSearchStrategy', 'StaticLearningRate', 'QuadraticSearch',
           'ArmijoWolfeSearch']
