# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Deltagrad — Neural Network Training Engine                          ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""nn.layers — concrete layer implementations.

Each layer computes its forward pass on the ``(batch, length)`` matrix of
its inputs and records a dedicated :class:`GradFn` subclass holding
exactly what that layer's adjoint rule needs.
"""
from __future__ import annotations

import math
import numpy as np
from typing import Sequence

from ..autograd import GradFn, Result
from ..dtype import Precision
from ..errors import ShapeMismatchError
from ..tensor import TensorList, dims_length
from . import init
from .layer import Layer


def _live(r: Result) -> bool:
    return r.is_alive()


def _batch(matrix: np.ndarray, dims: Sequence[int]) -> TensorList:
    return TensorList.from_array(matrix, dims)


def _same_batch(layer: Layer, inputs: Sequence[Result]) -> int:
    n = len(inputs[0].data)
    for r in inputs[1:]:
        if len(r.data) != n:
            raise ShapeMismatchError(
                f"{layer.name}: batch lengths {n} and {len(r.data)} differ")
    return n


# ──────────────────────── Elementwise ─────────────────────────────────

class ActivationBackward(GradFn):
    __slots__ = ()

    def apply(self, deltas, error):
        s = self.saved
        if not _live(self.inputs[0]):
            return (None,)
        e = error.stack()
        y = s['y']
        mode = s['mode']
        if mode == 'relu':
            g = e * (s['x'] > 0)
        elif mode == 'sigmoid':
            g = e * y * (1.0 - y)
        else:
            g = e * (1.0 - y * y)
        return (_batch(g, s['dims']),)


class ActivationLayer(Layer):
    """Elementwise nonlinearity: ``relu``, ``sigmoid`` or ``tanh``."""

    MODES = ('relu', 'sigmoid', 'tanh')

    def __init__(self, mode: str = 'relu', name: str | None = None):
        super().__init__(name)
        if mode not in self.MODES:
            raise ValueError(f"Unknown activation mode {mode!r}")
        self.mode = mode

    def eval(self, *inputs, ctx=None):
        (inp,) = inputs
        x = inp.data.stack()
        if self.mode == 'relu':
            y = np.maximum(x, 0.0)
        elif self.mode == 'sigmoid':
            y = 1.0 / (1.0 + np.exp(-x))
        else:
            y = np.tanh(x)
        fn = ActivationBackward(name=f'{self.mode.capitalize()}Backward',
                                inputs=inputs, layer=self)
        fn.saved = {'x': x, 'y': y, 'mode': self.mode, 'dims': inp.data.dims}
        return Result(_batch(y, inp.data.dims), fn)

    def extra_repr(self) -> str:
        return repr(self.mode)


class LinearActivationBackward(GradFn):
    __slots__ = ()

    def apply(self, deltas, error):
        s = self.saved
        e = error.stack()
        x = s['x']
        self.deposit(deltas, s['weights'],
                     np.array([np.sum(e * x), np.sum(e)]))
        if not _live(self.inputs[0]):
            return (None,)
        return (_batch(e * s['scale'], s['dims']),)


class LinearActivationLayer(Layer):
    """Learned scalar affine map ``y = scale * x + bias``."""

    def __init__(self, scale: float = 1.0, bias: float = 0.0,
                 name: str | None = None):
        super().__init__(name)
        self.weights = np.array([scale, bias], dtype=np.float64)

    @property
    def scale(self) -> float:
        return float(self.weights[0])

    @property
    def bias(self) -> float:
        return float(self.weights[1])

    def state(self):
        return [self.weights]

    def eval(self, *inputs, ctx=None):
        (inp,) = inputs
        x = inp.data.stack()
        scale, bias = self.weights
        fn = LinearActivationBackward(name='LinearActivationBackward',
                                      inputs=inputs, layer=self)
        fn.saved = {'x': x, 'scale': scale, 'weights': self.weights,
                    'dims': inp.data.dims}
        return Result(_batch(x * scale + bias, inp.data.dims), fn)

    def extra_repr(self) -> str:
        return f"scale={self.scale:g}, bias={self.bias:g}"


# ──────────────────────── Reductions ──────────────────────────────────

class SumReducerBackward(GradFn):
    __slots__ = ()

    def apply(self, deltas, error):
        e = error.stack()
        out = []
        for inp, dims in zip(self.inputs, self.saved['dims']):
            if not _live(inp):
                out.append(None)
                continue
            g = np.repeat(e, dims_length(dims), axis=1) * self.saved['weight'](dims)
            out.append(_batch(g, dims))
        return tuple(out)


class SumReducerLayer(Layer):
    """Sum of every element of every input: one scalar per item."""

    arity = None

    @staticmethod
    def _weight(dims) -> float:
        return 1.0

    def eval(self, *inputs, ctx=None):
        _same_batch(self, inputs)
        w = self._weight
        y = sum(r.data.stack().sum(axis=1, keepdims=True) * w(r.data.dims)
                for r in inputs)
        fn = SumReducerBackward(name=f'{type(self).__name__[:-5]}Backward',
                                inputs=inputs, layer=self)
        fn.saved = {'dims': [r.data.dims for r in inputs], 'weight': w}
        return Result(_batch(y, (1,)), fn)


class AvgReducerLayer(SumReducerLayer):
    """Mean of every input's elements, summed across inputs."""

    @staticmethod
    def _weight(dims) -> float:
        return 1.0 / dims_length(dims)


class MeanSqLossBackward(GradFn):
    __slots__ = ()

    def apply(self, deltas, error):
        s = self.saved
        e = error.stack()
        g = 2.0 * s['diff'] * e / s['diff'].shape[1]
        a, b = self.inputs
        return (_batch(g, s['dims'][0]) if _live(a) else None,
                _batch(-g, s['dims'][1]) if _live(b) else None)


class MeanSqLossLayer(Layer):
    """Mean squared difference of two inputs: one scalar per item."""

    arity = 2

    def eval(self, *inputs, ctx=None):
        a, b = inputs
        _same_batch(self, inputs)
        xa, xb = a.data.stack(), b.data.stack()
        if xa.shape != xb.shape:
            raise ShapeMismatchError(
                f"{self.name}: {a.data.dims} vs {b.data.dims}")
        diff = xa - xb
        y = np.sum(diff * diff, axis=1, keepdims=True) / diff.shape[1]
        fn = MeanSqLossBackward(name='MeanSqLossBackward', inputs=inputs,
                                layer=self)
        fn.saved = {'diff': diff, 'dims': (a.data.dims, b.data.dims)}
        return Result(_batch(y, (1,)), fn)

    def explode(self) -> Layer:
        """Equivalent network: ``avg((a - b) * (a - b))``."""
        from .network import DAGNetwork
        net = DAGNetwork(inputs=2, name=f'{self.name}[exploded]')
        neg = net.add(LinearActivationLayer(-1.0, 0.0).freeze(), net.input(1))
        diff = net.add(SumInputsLayer(), net.input(0), neg)
        sq = net.add(ProductInputsLayer(), diff, diff)
        net.add(AvgReducerLayer(), sq)
        return net


# ──────────────────────── Multi-input ─────────────────────────────────

class SumInputsBackward(GradFn):
    __slots__ = ()

    def apply(self, deltas, error):
        e = error.stack()
        out = []
        for inp, n in zip(self.inputs, self.saved['lengths']):
            if not _live(inp):
                out.append(None)
                continue
            g = e.sum(axis=0, keepdims=True) if n == 1 and e.shape[0] != 1 else e
            out.append(_batch(g, self.saved['dims']))
        return tuple(out)


class SumInputsLayer(Layer):
    """Elementwise sum of inputs; a batch of one broadcasts over the rest."""

    arity = None

    def eval(self, *inputs, ctx=None):
        lengths = [len(r.data) for r in inputs]
        n = max(lengths)
        if any(k not in (1, n) for k in lengths):
            raise ShapeMismatchError(
                f"{self.name}: incompatible batch lengths {lengths}")
        dims = inputs[0].data.dims
        y = np.zeros((n, dims_length(dims)))
        for r in inputs:
            x = r.data.stack()
            if x.shape[1] != y.shape[1]:
                raise ShapeMismatchError(
                    f"{self.name}: {r.data.dims} vs {dims}")
            y += x
        fn = SumInputsBackward(name='SumInputsBackward', inputs=inputs,
                               layer=self)
        fn.saved = {'lengths': lengths, 'dims': dims}
        return Result(_batch(y, dims), fn)


class ProductInputsBackward(GradFn):
    __slots__ = ()

    def apply(self, deltas, error):
        e = error.stack()
        xs = self.saved['xs']
        out = []
        for i, inp in enumerate(self.inputs):
            if not _live(inp):
                out.append(None)
                continue
            others = np.ones_like(e)
            for j, x in enumerate(xs):
                if j != i:
                    others = others * x
            out.append(_batch(e * others, self.saved['dims']))
        return tuple(out)


class ProductInputsLayer(Layer):
    """Elementwise product of equally shaped inputs."""

    arity = None

    def eval(self, *inputs, ctx=None):
        _same_batch(self, inputs)
        dims = inputs[0].data.dims
        xs = [r.data.stack() for r in inputs]
        y = xs[0].copy()
        for r, x in zip(inputs[1:], xs[1:]):
            if x.shape != y.shape:
                raise ShapeMismatchError(
                    f"{self.name}: {r.data.dims} vs {dims}")
            y *= x
        fn = ProductInputsBackward(name='ProductInputsBackward',
                                   inputs=inputs, layer=self)
        fn.saved = {'xs': xs, 'dims': dims}
        return Result(_batch(y, dims), fn)


class ConcatBackward(GradFn):
    __slots__ = ()

    def apply(self, deltas, error):
        e = error.stack()
        out = []
        for inp, (start, stop), dims in zip(self.inputs, self.saved['slices'],
                                            self.saved['dims']):
            out.append(_batch(e[:, start:stop], dims) if _live(inp) else None)
        return tuple(out)


class ConcatLayer(Layer):
    """Concatenates flattened inputs into one vector per item."""

    arity = None

    def eval(self, *inputs, ctx=None):
        _same_batch(self, inputs)
        xs = [r.data.stack() for r in inputs]
        slices, start = [], 0
        for x in xs:
            slices.append((start, start + x.shape[1]))
            start += x.shape[1]
        fn = ConcatBackward(name='ConcatBackward', inputs=inputs, layer=self)
        fn.saved = {'slices': slices, 'dims': [r.data.dims for r in inputs]}
        return Result(_batch(np.concatenate(xs, axis=1), (start,)), fn)


# ──────────────────────── Structural ──────────────────────────────────

class ReshapeBackward(GradFn):
    __slots__ = ()

    def apply(self, deltas, error):
        if not _live(self.inputs[0]):
            return (None,)
        return (_batch(error.stack(), self.saved['dims']),)


class ReshapeLayer(Layer):
    """Reinterprets each item with new dimensions of the same length."""

    def __init__(self, dims: Sequence[int], name: str | None = None):
        super().__init__(name)
        self.dims = tuple(int(d) for d in dims)

    def eval(self, *inputs, ctx=None):
        (inp,) = inputs
        if inp.data.element_length != dims_length(self.dims):
            raise ShapeMismatchError(
                f"Cannot reshape {inp.data.dims} to {self.dims}")
        fn = ReshapeBackward(name='ReshapeBackward', inputs=inputs,
                             layer=self)
        fn.saved = {'dims': inp.data.dims}
        return Result(_batch(inp.data.stack(), self.dims), fn)

    def extra_repr(self) -> str:
        return f"dims={self.dims}"


# ──────────────────────── Learned affine ──────────────────────────────

class BiasBackward(GradFn):
    __slots__ = ()

    def apply(self, deltas, error):
        e = error.stack()
        self.deposit(deltas, self.saved['bias'], e.sum(axis=0))
        if not _live(self.inputs[0]):
            return (None,)
        return (_batch(e, self.saved['dims']),)


class BiasLayer(Layer):
    """Adds a learned offset to every element."""

    def __init__(self, dims: Sequence[int] | int, name: str | None = None):
        super().__init__(name)
        self.dims = (int(dims),) if isinstance(dims, int) else tuple(dims)
        self.bias = np.zeros(dims_length(self.dims), dtype=np.float64)

    def state(self):
        return [self.bias]

    def eval(self, *inputs, ctx=None):
        (inp,) = inputs
        x = inp.data.stack()
        if x.shape[1] != self.bias.size:
            raise ShapeMismatchError(
                f"{self.name}: input {inp.data.dims} vs bias {self.dims}")
        fn = BiasBackward(name='BiasBackward', inputs=inputs, layer=self)
        fn.saved = {'bias': self.bias, 'dims': inp.data.dims}
        return Result(_batch(x + self.bias, inp.data.dims), fn)

    def extra_repr(self) -> str:
        return f"dims={self.dims}"


class FullyConnectedBackward(GradFn):
    __slots__ = ()

    def apply(self, deltas, error):
        s = self.saved
        e = error.stack().astype(s['x'].dtype)
        self.deposit(deltas, s['weights'],
                     (s['x'].T @ e).astype(np.float64))
        if not _live(self.inputs[0]):
            return (None,)
        return (_batch((e @ s['w'].T).astype(np.float64), s['dims']),)


class FullyConnectedLayer(Layer):
    """Dense matrix product ``y = x @ W``.

    Supports reduced precision and, when evaluated inside a network
    context with an attached device cache, computes on device copies of
    its weights and input.
    """

    def __init__(self, in_dims: Sequence[int] | int,
                 out_dims: Sequence[int] | int,
                 weights: np.ndarray | None = None,
                 precision: Precision = Precision.double,
                 name: str | None = None):
        super().__init__(name)
        self.in_dims = (in_dims,) if isinstance(in_dims, int) else tuple(in_dims)
        self.out_dims = (out_dims,) if isinstance(out_dims, int) else tuple(out_dims)
        shape = (dims_length(self.in_dims), dims_length(self.out_dims))
        self.weights = np.zeros(shape, dtype=np.float64)
        if weights is None:
            init.xavier_uniform_(self.weights)
        else:
            w = np.asarray(weights, dtype=np.float64)
            if w.size != self.weights.size:
                raise ShapeMismatchError(
                    f"weights of size {w.size} do not fit {shape}")
            self.weights[:] = w.reshape(shape)
        self.precision = precision

    def state(self):
        return [self.weights]

    def device_buffers(self, result: Result, ctx) -> tuple[np.ndarray, np.ndarray]:
        """Device-precision arrays for the weights and *result*'s batch."""
        cache, dev, scope = ctx.cache, ctx.device, ctx.scope
        w = cache.get_array(self.weights, dev, self.precision, scope)
        x = cache.get_array(result, dev, self.precision, scope)
        return w.reshape(self.weights.shape), x.reshape(len(result.data), -1)

    def eval(self, *inputs, ctx=None):
        (inp,) = inputs
        if inp.data.element_length != self.weights.shape[0]:
            raise ShapeMismatchError(
                f"{self.name}: input {inp.data.dims} vs in_dims {self.in_dims}")
        if ctx is not None and ctx.device_for(self) is not None:
            w, x = self.device_buffers(inp, ctx)
        else:
            dt = self.precision.to_numpy()
            w = np.array(self.weights, dtype=dt)
            x = inp.data.stack().astype(dt, copy=False)
        y = (x @ w).astype(np.float64)
        fn = FullyConnectedBackward(name='FullyConnectedBackward',
                                    inputs=inputs, layer=self)
        fn.saved = {'x': x, 'w': w, 'weights': self.weights,
                    'dims': inp.data.dims}
        return Result(_batch(y, self.out_dims), fn)

    def extra_repr(self) -> str:
        prec = '' if self.precision is Precision.double else f", {self.precision.name}"
        return f"{self.in_dims} -> {self.out_dims}{prec}"


# ──────────────────────── Convolution ─────────────────────────────────

def _im2col(xp: np.ndarray, kH: int, kW: int, H: int, W: int) -> np.ndarray:
    """Stride-1 patches of a padded batch.

    xp: (B, C, H + kH - 1, W + kW - 1)
    Returns: (B, C*kH*kW, H*W), grouped by channel then kernel offset.
    """
    B, C = xp.shape[:2]
    col = np.empty((B, C, kH, kW, H, W), dtype=xp.dtype)
    for i in range(kH):
        for j in range(kW):
            col[:, :, i, j] = xp[:, :, i:i + H, j:j + W]
    return col.reshape(B, C * kH * kW, H * W)


def _col2im(col: np.ndarray, C: int, kH: int, kW: int,
            H: int, W: int) -> np.ndarray:
    """Adjoint of :func:`_im2col`: scatter-add patches back, padded."""
    B = col.shape[0]
    col = col.reshape(B, C, kH, kW, H, W)
    xp = np.zeros((B, C, H + kH - 1, W + kW - 1), dtype=col.dtype)
    for i in range(kH):
        for j in range(kW):
            xp[:, :, i:i + H, j:j + W] += col[:, :, i, j]
    return xp


class ConvolutionBackward(GradFn):
    __slots__ = ()

    def apply(self, deltas, error):
        s = self.saved
        B = len(error)
        C, H, W = s['in_dims']
        kH, kW = s['kernel']
        (pt, pb), (pl, pr) = s['pads']
        w2 = s['w'].reshape(s['w'].shape[0], -1)
        e = error.stack().astype(w2.dtype).reshape(B, w2.shape[0], H * W)
        dw = np.einsum('bon,bkn->ok', e, s['col'])
        self.deposit(deltas, s['weights'], dw.astype(np.float64))
        if not _live(self.inputs[0]):
            return (None,)
        dcol = np.einsum('ok,bon->bkn', w2, e)
        dxp = _col2im(dcol, C, kH, kW, H, W)
        dx = dxp[:, :, pt:pt + H, pl:pl + W]
        return (_batch(dx.reshape(B, -1).astype(np.float64), s['in_dims']),)


class ConvolutionLayer(Layer):
    """2D convolution with stride 1 and "same" zero padding.

    Input items have dims ``(in_bands, H, W)``; outputs ``(out_bands, H, W)``.
    """

    def __init__(self, kernel: int | tuple[int, int], in_bands: int,
                 out_bands: int, precision: Precision = Precision.double,
                 name: str | None = None):
        super().__init__(name)
        self.kernel = kernel if isinstance(kernel, tuple) else (kernel, kernel)
        self.in_bands = in_bands
        self.out_bands = out_bands
        kH, kW = self.kernel
        self.weights = np.zeros((out_bands, in_bands, kH, kW), dtype=np.float64)
        k = 1.0 / math.sqrt(in_bands * kH * kW)
        init.uniform_(self.weights, -k, k)
        self.precision = precision

    def state(self):
        return [self.weights]

    def eval(self, *inputs, ctx=None):
        (inp,) = inputs
        dims = inp.data.dims
        if dims is None or len(dims) != 3 or dims[0] != self.in_bands:
            raise ShapeMismatchError(
                f"{self.name}: expected ({self.in_bands}, H, W), got {dims}")
        C, H, W = dims
        kH, kW = self.kernel
        pads = (((kH - 1) // 2, kH - 1 - (kH - 1) // 2),
                ((kW - 1) // 2, kW - 1 - (kW - 1) // 2))
        dt = self.precision.to_numpy()
        B = len(inp.data)
        x = inp.data.stack().astype(dt, copy=False).reshape(B, C, H, W)
        xp = np.pad(x, ((0, 0), (0, 0)) + pads, mode='constant')
        col = _im2col(xp, kH, kW, H, W)
        w = np.array(self.weights, dtype=dt)
        out = np.einsum('ok,bkn->bon', w.reshape(self.out_bands, -1), col)
        fn = ConvolutionBackward(name='ConvolutionBackward', inputs=inputs,
                                 layer=self)
        fn.saved = {'col': col, 'w': w, 'weights': self.weights,
                    'in_dims': dims, 'kernel': self.kernel, 'pads': pads}
        return Result(_batch(out.reshape(B, -1).astype(np.float64),
                             (self.out_bands, H, W)), fn)

    def extra_repr(self) -> str:
        return (f"{self.in_bands}, {self.out_bands}, "
                f"kernel_size={self.kernel}")


__all__ = [
    'ActivationLayer', 'LinearActivationLayer', 'SumReducerLayer',
    'AvgReducerLayer', 'MeanSqLossLayer', 'SumInputsLayer',
    'ProductInputsLayer', 'ConcatLayer', 'ReshapeLayer', 'BiasLayer',
    'FullyConnectedLayer', 'ConvolutionLayer',
]
