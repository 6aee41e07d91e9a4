# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Deltagrad — Neural Network Training Engine                          ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""Objectives the optimizer can measure.

A trainable wraps a network and its training data and turns one call to
:meth:`Trainable.measure` into a forward pass, a backward pass and a
:class:`PointSample`.
"""
from __future__ import annotations

import logging
import numpy as np
from typing import TYPE_CHECKING, Sequence

from ..autograd import ConstantResult, DeltaSet, MutableResult, StateSet
from ..config import get_config
from ..cuda.cache import DeviceBufferCache
from ..errors import ShapeMismatchError
from ..nn.layer import Layer
from ..nn.network import GraphEvaluationContext
from ..pool import run_all
from ..tensor import Tensor, TensorList
from .sample import PointSample

if TYPE_CHECKING:
    from .trainer import TrainingMonitor

logger = logging.getLogger(__name__)


def _columns(data, arity: int) -> list[TensorList]:
    if isinstance(data, TensorList):
        data = [data]
    cols = [c if isinstance(c, TensorList) else TensorList.from_array(c)
            for c in data]
    if len(cols) != arity:
        raise ShapeMismatchError(
            f"Network takes {arity} input(s), data has {len(cols)} column(s)")
    n = len(cols[0])
    if any(len(c) != n for c in cols):
        raise ShapeMismatchError(
            f"Data columns have batch lengths {[len(c) for c in cols]}")
    return cols


def _ones_like(batch: TensorList) -> TensorList:
    return TensorList(Tensor(np.ones(t.length), t.dims) for t in batch)


class Trainable:
    """Base class for objectives."""

    def measure(self, monitor: 'TrainingMonitor | None' = None) -> PointSample:
        raise NotImplementedError

    def reseed(self, seed: int) -> bool:
        """Draw a new sample of the data; False if not supported."""
        return False

    @property
    def layer(self) -> Layer:
        raise NotImplementedError


class BasicTrainable(Trainable):
    """Full-batch objective: the summed network output over all rows.

    ``data`` holds one :class:`TensorList` per network input.  Inputs
    whose ``mask`` entry is true are fed as :class:`MutableResult` so the
    gradient also covers the data itself.  With a ``device`` set, each
    measurement runs inside a device cache scope, so no device buffer
    survives it.
    """

    def __init__(self, network: Layer, data, mask: Sequence[bool] | None = None,
                 device=None, cache: DeviceBufferCache | None = None):
        self.network = network
        arity = network.arity or 1
        self._data = _columns(data, arity)
        self.mask = list(mask) if mask is not None else [False] * arity
        self.device = device
        if cache is None and device is not None:
            cache = DeviceBufferCache()
        self.cache = cache

    @property
    def layer(self) -> Layer:
        return self.network

    @property
    def data(self) -> list[TensorList]:
        return self._data

    @data.setter
    def data(self, data):
        self._data = _columns(data, len(self._data))

    def __len__(self) -> int:
        return len(self._data[0])

    def _inputs(self, cols: Sequence[TensorList]) -> list:
        """Masked column ``i`` gets the DeltaSet key ``'input{i}'``."""
        return [MutableResult(c, key=f'input{i}') if m else ConstantResult(c)
                for i, (c, m) in enumerate(zip(cols, self.mask))]

    def eval(self, cols: Sequence[TensorList] | None = None,
             device=None) -> PointSample:
        """Un-normalized sample over *cols* (default: all data)."""
        cols = self._data if cols is None else cols
        device = self.device if device is None else device
        inputs = self._inputs(cols)
        if device is not None and self.cache is not None:
            with self.cache.scope() as scope:
                return self._forward_backward(
                    inputs, GraphEvaluationContext((), self.cache, device, scope))
        return self._forward_backward(inputs, None)

    def _forward_backward(self, inputs, ctx) -> PointSample:
        result = self.network(*inputs, ctx=ctx)
        deltas = DeltaSet()
        result.accumulate(deltas, _ones_like(result.data))
        total = result.data.sum()
        return PointSample(deltas, StateSet.snapshot(deltas), total, 0.0,
                           len(result.data))

    def measure(self, monitor=None) -> PointSample:
        return self.eval().normalize()


class SampledTrainable(Trainable):
    """Stochastic objective over a random subset of the data rows."""

    def __init__(self, inner: BasicTrainable, sample_size: int,
                 seed: int | None = None):
        self.inner = inner
        self.sample_size = sample_size
        self._full = list(inner.data)
        self.seed = None
        self.reseed(seed if seed is not None
                    else int(np.random.default_rng().integers(2 ** 31)))

    @property
    def layer(self) -> Layer:
        return self.inner.layer

    def reseed(self, seed: int) -> bool:
        n = len(self._full[0])
        rng = np.random.default_rng(seed)
        k = min(self.sample_size, n)
        idx = np.sort(rng.choice(n, size=k, replace=False))
        self.inner.data = [TensorList(col[int(i)] for i in idx)
                           for col in self._full]
        self.seed = seed
        logger.debug("resampled %d of %d rows (seed=%d)", k, n, seed)
        return True

    def measure(self, monitor=None) -> PointSample:
        return self.inner.measure(monitor)


class ParallelTrainable(BasicTrainable):
    """Full-batch objective measured in chunks on the worker pool.

    The batch is split into one contiguous chunk per worker; with
    ``devices`` given, chunks are assigned to them round-robin.  The
    per-chunk samples are merged key-wise before normalizing.  Inputs are
    never masked: each chunk would own a different slice of the data.
    """

    def __init__(self, network: Layer, data, devices: Sequence | None = None,
                 chunks: int | None = None,
                 cache: DeviceBufferCache | None = None):
        devices = list(devices) if devices else []
        if cache is None and devices:
            cache = DeviceBufferCache()
        super().__init__(network, data, cache=cache)
        self.devices = devices
        self.chunks = chunks

    def _split(self) -> list[list[TensorList]]:
        n = len(self)
        k = self.chunks or max(len(self.devices), get_config().num_threads)
        k = max(1, min(k, n))
        bounds = np.linspace(0, n, k + 1).astype(int)
        return [[TensorList(col[i] for i in range(lo, hi)) for col in self._data]
                for lo, hi in zip(bounds[:-1], bounds[1:])]

    def measure(self, monitor=None) -> PointSample:
        chunks = self._split()
        devices = self.devices
        tasks = [
            (lambda c=c, d=(devices[i % len(devices)] if devices else None):
             self.eval(c, d))
            for i, c in enumerate(chunks)
        ]
        samples = run_all(tasks)
        total = samples[0]
        for s in samples[1:]:
            total = total.add(s)
        return total.normalize()


class L12Normalizer(Trainable):
    """Adds ``l1 * |w| + l2 * w**2`` over every layer weight to the loss."""

    def __init__(self, inner: Trainable, l1: float = 0.0, l2: float = 0.0):
        self.inner = inner
        self.l1 = l1
        self.l2 = l2

    @property
    def layer(self) -> Layer:
        return self.inner.layer

    def reseed(self, seed: int) -> bool:
        return self.inner.reseed(seed)

    def measure(self, monitor=None) -> PointSample:
        point = self.inner.measure(monitor)
        penalty = 0.0
        deltas = point.delta.copy()
        for key, buf in deltas.items():
            if not isinstance(buf.owner, Layer):
                continue
            w = buf.target.reshape(-1)
            penalty += self.l1 * np.abs(w).sum() + self.l2 * np.dot(w, w)
            buf.accumulate(self.l1 * np.sign(w) + 2.0 * self.l2 * w)
        return PointSample(deltas, point.weights, point.sum + penalty,
                           point.rate, point.count)


__all__ = ['Trainable', 'BasicTrainable', 'SampledTrainable',
           'ParallelTrainable', 'L12Normalizer']
