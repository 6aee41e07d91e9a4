# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Deltagrad — Neural Network Training Engine                          ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""Dense host tensors and batch containers backed by NumPy.

A :class:`Tensor` owns a flat, row-major ``float64`` store plus an
immutable dimension vector.  A :class:`TensorList` is one mini-batch:
an ordered sequence of tensors sharing the same dimensions.
"""
from __future__ import annotations

import math
import numpy as np
from typing import Any, Callable, Iterable, Iterator, Sequence

from .device import device as Device, CPU
from .errors import ShapeMismatchError


def _check_dims(dims) -> tuple[int, ...]:
    if isinstance(dims, (int, np.integer)):
        dims = (int(dims),)
    dims = tuple(int(d) for d in dims)
    if len(dims) == 0:
        raise ShapeMismatchError("Tensor rank must be >= 1")
    if any(d < 0 for d in dims):
        raise ShapeMismatchError(f"Negative dimension in {dims}")
    return dims


def dims_length(dims: Sequence[int]) -> int:
    """Number of elements described by a dimension vector."""
    return int(math.prod(dims))


class Tensor:
    """Immutable-shape numeric array.

    ``data`` may be another :class:`Tensor`, an array-like, or ``None``
    (zeros of ``dims``).  Input arrays are always copied; use
    :meth:`wrap` to share storage explicitly.
    """

    __slots__ = ('_data', '_dims', '_device')

    # ------------------------------------------------------------------ #
    #  Construction                                                      #
    # ------------------------------------------------------------------ #

    def __init__(
        self,
        data: Any = None,
        dims: Sequence[int] | int | None = None,
        device: Device | str | None = None,
    ):
        if isinstance(data, Tensor):
            arr = data._data.copy()
            if dims is None:
                dims = data._dims
            if device is None:
                device = data._device
        elif data is None:
            if dims is None:
                raise ShapeMismatchError("Tensor needs data or dims")
            arr = np.zeros(dims_length(_check_dims(dims)), dtype=np.float64)
        else:
            src = np.array(data, dtype=np.float64)
            if dims is None:
                dims = src.shape if src.ndim > 0 else (1,)
            arr = src.reshape(-1)

        self._dims: tuple[int, ...] = _check_dims(dims)
        if arr.size != dims_length(self._dims):
            raise ShapeMismatchError(
                f"{arr.size} values do not fit dims {self._dims}")
        self._data: np.ndarray = arr
        self._device: Device = Device(device) if device is not None else CPU

    @classmethod
    def wrap(cls, array: np.ndarray, dims: Sequence[int] | None = None) -> 'Tensor':
        """Share *array* as the backing store without copying."""
        if not isinstance(array, np.ndarray) or array.dtype != np.float64:
            raise ShapeMismatchError("Tensor.wrap needs a float64 ndarray")
        t = cls.__new__(cls)
        t._dims = _check_dims(dims if dims is not None else (array.shape or (1,)))
        flat = array.reshape(-1)
        if not np.shares_memory(flat, array) and array.size > 0:
            raise ShapeMismatchError("Tensor.wrap needs a contiguous array")
        if flat.size != dims_length(t._dims):
            raise ShapeMismatchError(
                f"{flat.size} values do not fit dims {t._dims}")
        t._data = flat
        t._device = CPU
        return t

    # ------------------------------------------------------------------ #
    #  Properties                                                        #
    # ------------------------------------------------------------------ #

    @property
    def data(self) -> np.ndarray:
        """The flat backing store (live, not a copy)."""
        return self._data

    @property
    def dims(self) -> tuple[int, ...]:
        return self._dims

    @property
    def length(self) -> int:
        return self._data.size

    @property
    def device(self) -> Device:
        return self._device

    def as_array(self) -> np.ndarray:
        """View of the store shaped as ``dims``."""
        return self._data.reshape(self._dims)

    def __array__(self, dtype=None, copy=None):
        arr = self.as_array()
        if dtype is not None:
            return arr.astype(dtype)
        return arr.copy() if copy else arr

    # ------------------------------------------------------------------ #
    #  Element access                                                    #
    # ------------------------------------------------------------------ #

    def _flat_index(self, index) -> int:
        if isinstance(index, (int, np.integer)):
            return int(index)
        return int(np.ravel_multi_index(tuple(index), self._dims))

    def get(self, index) -> float:
        return float(self._data[self._flat_index(index)])

    def set(self, index, value: float) -> 'Tensor':
        self._data[self._flat_index(index)] = value
        return self

    def fill(self, value: float | Callable[[], float]) -> 'Tensor':
        """Fill in place with a constant or a supplier function."""
        if callable(value):
            for i in range(self._data.size):
                self._data[i] = value()
        else:
            self._data.fill(value)
        return self

    # ------------------------------------------------------------------ #
    #  Arithmetic (always returns a new tensor)                          #
    # ------------------------------------------------------------------ #

    def _check_same(self, other: 'Tensor') -> None:
        if self._data.size != other._data.size:
            raise ShapeMismatchError(
                f"{self._dims} is incompatible with {other._dims}")

    def copy(self) -> 'Tensor':
        return Tensor(self)

    def add(self, other: 'Tensor') -> 'Tensor':
        self._check_same(other)
        return Tensor._from_flat(self._data + other._data, self._dims, self._device)

    def minus(self, other: 'Tensor') -> 'Tensor':
        self._check_same(other)
        return Tensor._from_flat(self._data - other._data, self._dims, self._device)

    def scale(self, factor: float) -> 'Tensor':
        return Tensor._from_flat(self._data * factor, self._dims, self._device)

    def map(self, fn: Callable[[np.ndarray], np.ndarray]) -> 'Tensor':
        """Apply a vectorised function to the flat store."""
        out = np.asarray(fn(self._data), dtype=np.float64)
        if out.size != self._data.size:
            raise ShapeMismatchError("map must preserve the element count")
        return Tensor._from_flat(out.reshape(-1), self._dims, self._device)

    def reshape(self, dims: Sequence[int]) -> 'Tensor':
        dims = _check_dims(dims)
        if dims_length(dims) != self._data.size:
            raise ShapeMismatchError(f"Cannot reshape {self._dims} to {dims}")
        return Tensor._from_flat(self._data.copy(), dims, self._device)

    def to(self, device: Device | str) -> 'Tensor':
        return Tensor(self, device=device)

    # ------------------------------------------------------------------ #
    #  Reductions                                                        #
    # ------------------------------------------------------------------ #

    def sum(self) -> float:
        return float(self._data.sum())

    def sum_sq(self) -> float:
        return float(np.dot(self._data, self._data))

    def rms(self) -> float:
        if self._data.size == 0:
            return 0.0
        return math.sqrt(self.sum_sq() / self._data.size)

    def dot(self, other: 'Tensor') -> float:
        self._check_same(other)
        return float(np.dot(self._data, other._data))

    # ------------------------------------------------------------------ #
    #  Internals                                                         #
    # ------------------------------------------------------------------ #

    @classmethod
    def _from_flat(cls, flat: np.ndarray, dims: tuple[int, ...],
                   device: Device = CPU) -> 'Tensor':
        """Adopt an already-owned flat array without copying or validation."""
        t = cls.__new__(cls)
        t._data = flat
        t._dims = dims
        t._device = device
        return t

    def __repr__(self) -> str:
        body = np.array2string(self.as_array(), precision=4, threshold=20)
        dev = f", device='{self._device}'" if self._device != CPU else ''
        return f"Tensor({body}, dims={list(self._dims)}{dev})"


class TensorList:
    """One mini-batch: an ordered sequence of same-shaped tensors."""

    __slots__ = ('_tensors', '_dims')

    def __init__(self, tensors: Iterable[Tensor] = ()):
        self._tensors: tuple[Tensor, ...] = tuple(tensors)
        self._dims: tuple[int, ...] | None = None
        for t in self._tensors:
            if not isinstance(t, Tensor):
                raise ShapeMismatchError(
                    f"TensorList holds Tensors, got {type(t).__name__}")
            if self._dims is None:
                self._dims = t.dims
            elif t.dims != self._dims:
                raise ShapeMismatchError(
                    f"Batch mixes dims {self._dims} and {t.dims}")

    @classmethod
    def from_array(cls, array, dims: Sequence[int] | None = None) -> 'TensorList':
        """Build from an array whose first axis is the batch axis."""
        arr = np.asarray(array, dtype=np.float64)
        if arr.ndim == 1:
            arr = arr.reshape(-1, 1)
        if dims is None:
            dims = arr.shape[1:]
        dims = _check_dims(dims)
        rows = arr.reshape(arr.shape[0], -1)
        if rows.shape[1] != dims_length(dims):
            raise ShapeMismatchError(
                f"Rows of length {rows.shape[1]} do not fit dims {dims}")
        return cls(Tensor._from_flat(rows[i].copy(), dims)
                   for i in range(rows.shape[0]))

    # ── container protocol ──

    def __len__(self) -> int:
        return len(self._tensors)

    def __iter__(self) -> Iterator[Tensor]:
        return iter(self._tensors)

    def __getitem__(self, i: int) -> Tensor:
        return self._tensors[i]

    def get(self, i: int) -> Tensor:
        return self._tensors[i]

    @property
    def dims(self) -> tuple[int, ...] | None:
        return self._dims

    @property
    def element_length(self) -> int:
        return 0 if self._dims is None else dims_length(self._dims)

    # ── batch arithmetic ──

    def _check_batch(self, right: 'TensorList') -> None:
        if len(self) != len(right):
            raise ShapeMismatchError(
                f"Batch length {len(self)} != {len(right)}")

    def add(self, right: 'TensorList') -> 'TensorList':
        if len(right) == 0:
            return self
        if len(self) == 0:
            return right
        self._check_batch(right)
        return TensorList(a.add(b) for a, b in zip(self._tensors, right._tensors))

    def minus(self, right: 'TensorList') -> 'TensorList':
        if len(right) == 0:
            return self
        self._check_batch(right)
        return TensorList(a.minus(b) for a, b in zip(self._tensors, right._tensors))

    def scale(self, factor: float) -> 'TensorList':
        return TensorList(t.scale(factor) for t in self._tensors)

    def copy(self) -> 'TensorList':
        return TensorList(t.copy() for t in self._tensors)

    def sum(self) -> float:
        return float(sum(t.sum() for t in self._tensors))

    def stack(self) -> np.ndarray:
        """``(batch, element_length)`` matrix of the flat stores."""
        if not self._tensors:
            return np.zeros((0, 0), dtype=np.float64)
        return np.stack([t.data for t in self._tensors])

    def as_array(self) -> np.ndarray:
        """``(batch, *dims)`` array."""
        if not self._tensors:
            return np.zeros((0,), dtype=np.float64)
        return self.stack().reshape((len(self),) + self._dims)

    def to(self, device: Device | str) -> 'TensorList':
        return TensorList(t.to(device) for t in self._tensors)

    def __repr__(self) -> str:
        return f"TensorList(len={len(self)}, dims={self._dims})"


def tensor(data, dims=None) -> Tensor:
    """Factory mirroring :class:`Tensor` for call-site brevity."""
    return Tensor(data, dims)


def batch(*rows) -> TensorList:
    """Build a TensorList where each positional argument is one item."""
    return TensorList(r if isinstance(r, Tensor) else Tensor(r) for r in rows)


__all__ = ['Tensor', 'TensorList', 'tensor', 'batch', 'dims_length']
