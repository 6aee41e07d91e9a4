# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Deltagrad — Neural Network Training Engine                          ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""Measurements of the objective at one point in weight space."""
from __future__ import annotations

import math

from ..autograd import DeltaSet, StateSet


class PointSample:
    """Loss and gradient measured at a weight snapshot.

    ``delta`` holds d(loss)/d(weight) per parameter key, ``weights`` a
    snapshot that can restore the point, ``sum`` the loss summed over
    ``count`` items, and ``rate`` the step length that produced it.
    """
    __slots__ = ('delta', 'weights', 'sum', 'rate', 'count')

    def __init__(self, delta: DeltaSet, weights: StateSet, sum: float,
                 rate: float = 0.0, count: int = 1):
        self.delta = delta
        self.weights = weights
        self.sum = float(sum)
        self.rate = float(rate)
        self.count = int(count)

    @property
    def mean(self) -> float:
        return self.sum / self.count if self.count else float('nan')

    def is_finite(self) -> bool:
        return math.isfinite(self.sum)

    def normalize(self) -> 'PointSample':
        """Per-item sample: sum and delta divided by ``count``."""
        if self.count == 1:
            return self
        return PointSample(self.delta.scale(1.0 / self.count), self.weights,
                           self.sum / self.count, self.rate, 1)

    def add(self, other: 'PointSample') -> 'PointSample':
        """Merge two un-normalized samples taken at the same weights."""
        return PointSample(self.delta.add(other.delta), self.weights,
                           self.sum + other.sum, self.rate,
                           self.count + other.count)

    def set_rate(self, rate: float) -> 'PointSample':
        return PointSample(self.delta, self.weights, self.sum, rate,
                           self.count)

    def copy(self) -> 'PointSample':
        return PointSample(self.delta.copy(), self.weights.copy(), self.sum,
                           self.rate, self.count)

    def restore(self) -> 'PointSample':
        """Write this sample's weights back into the layers."""
        self.weights.overwrite()
        return self

    # ── measurement vocabulary ──

    @property
    def loss_sum(self) -> float:
        return self.sum

    @property
    def delta_set(self) -> DeltaSet:
        return self.delta

    @property
    def applied_rate(self) -> float:
        return self.rate

    def __repr__(self) -> str:
        return (f"PointSample(sum={self.sum:.6g}, rate={self.rate:.3g}, "
                f"count={self.count}, keys={len(self.delta)})")


Measurement = PointSample

__all__ = ['PointSample', 'Measurement']
