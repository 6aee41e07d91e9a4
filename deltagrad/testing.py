# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Deltagrad — Neural Network Training Engine                          ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""Finite-difference gradient checking for layers.

The objective is ``J = sum(E * y)`` for a fixed random error ``E`` shaped
like the layer output ``y``.  Back-propagating ``E`` must then reproduce
the centered finite-difference estimate of ``dJ`` for every parameter
(``learning``) and for every input element (``feedback``).
"""
from __future__ import annotations

import numpy as np
from typing import Sequence

from .autograd import ConstantResult, DeltaSet, MutableResult
from .dtype import Precision
from .nn.layer import Layer
from .tensor import TensorList

_PROBE_SIZE = {
    Precision.double: 1e-5,
    Precision.float: 1e-2,
    Precision.half: 1e-1,
}


class DerivativeTester:
    """Compares analytic and numeric derivatives of a layer.

    ``tolerance`` defaults to the precision's tolerance and is applied both
    absolutely and relative to the larger of the two estimates.
    """

    def __init__(self, precision: Precision = Precision.double,
                 tolerance: float | None = None,
                 probe_size: float | None = None, seed: int = 0):
        self.precision = precision
        self.tolerance = precision.tolerance if tolerance is None else tolerance
        self.probe_size = _PROBE_SIZE[precision] if probe_size is None else probe_size
        self.seed = seed

    # ── helpers ──

    @staticmethod
    def _batches(inputs) -> list[TensorList]:
        return [x if isinstance(x, TensorList) else TensorList.from_array(x)
                for x in inputs]

    def _error(self, layer: Layer, inputs: Sequence[TensorList]) -> TensorList:
        out = layer(*[ConstantResult(x) for x in inputs])
        rng = np.random.default_rng(self.seed)
        return TensorList.from_array(rng.normal(size=out.data.stack().shape),
                                     out.data.dims)

    @staticmethod
    def _objective(layer: Layer, inputs: Sequence[TensorList],
                   error: TensorList) -> float:
        out = layer(*[ConstantResult(x) for x in inputs])
        return float(np.sum(out.data.stack() * error.stack()))

    def _compare(self, what: str, analytic: np.ndarray,
                 numeric: np.ndarray) -> float:
        diff = np.abs(analytic - numeric)
        scale = np.maximum(np.maximum(np.abs(analytic), np.abs(numeric)), 1.0)
        worst = float(np.max(diff / scale)) if diff.size else 0.0
        if worst > self.tolerance:
            i = int(np.argmax(diff / scale))
            raise AssertionError(
                f"{what}: analytic {analytic[i]:.8g} vs numeric "
                f"{numeric[i]:.8g} at element {i} "
                f"(error {worst:.3g} > {self.tolerance:.3g})")
        return worst

    # ── derivative estimates ──

    def learning(self, layer: Layer, *inputs) -> dict:
        """``{key: (analytic, numeric)}`` for every parameter buffer."""
        inputs = self._batches(inputs)
        error = self._error(layer, inputs)
        deltas = DeltaSet()
        layer(*[ConstantResult(x) for x in inputs]).accumulate(deltas, error)
        h = self.probe_size
        out = {}
        for key, buf in deltas.items():
            flat = buf.target.reshape(-1)
            numeric = np.zeros(flat.size)
            for i in range(flat.size):
                orig = flat[i]
                flat[i] = orig + h
                plus = self._objective(layer, inputs, error)
                flat[i] = orig - h
                minus = self._objective(layer, inputs, error)
                flat[i] = orig
                numeric[i] = (plus - minus) / (2 * h)
            out[key] = (buf.copy_delta(), numeric)
        return out

    def feedback(self, layer: Layer, *inputs) -> list:
        """``[(analytic, numeric)]`` per input."""
        inputs = self._batches(inputs)
        error = self._error(layer, inputs)
        deltas = DeltaSet()
        results = [MutableResult(x, key=f'input{i}') for i, x in enumerate(inputs)]
        layer(*results).accumulate(deltas, error)
        h = self.probe_size
        out = []
        for i, x in enumerate(inputs):
            base = x.stack()
            numeric = np.zeros(base.size)
            for j in range(base.size):
                probe = base.copy().reshape(-1)
                probe[j] += h
                cols = list(inputs)
                cols[i] = TensorList.from_array(probe.reshape(base.shape), x.dims)
                plus = self._objective(layer, cols, error)
                probe[j] -= 2 * h
                cols[i] = TensorList.from_array(probe.reshape(base.shape), x.dims)
                minus = self._objective(layer, cols, error)
                numeric[j] = (plus - minus) / (2 * h)
            key = f'input{i}'
            analytic = deltas[key].copy_delta() if key in deltas else np.zeros(base.size)
            out.append((analytic, numeric))
        return out

    def test(self, layer: Layer, *inputs, learning: bool = True,
             feedback: bool = True) -> float:
        """Assert both derivative kinds match; returns the worst error."""
        worst = 0.0
        if learning:
            for key, (a, n) in self.learning(layer, *inputs).items():
                worst = max(worst, self._compare(f"{layer.name} learning[{key}]", a, n))
        if feedback:
            for i, (a, n) in enumerate(self.feedback(layer, *inputs)):
                worst = max(worst, self._compare(f"{layer.name} feedback[{i}]", a, n))
        return worst


__all__ = ['DerivativeTester']
