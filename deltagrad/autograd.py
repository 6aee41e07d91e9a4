# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Deltagrad — Neural Network Training Engine                          ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""Reverse-mode gradient accumulation.

Forward evaluation builds a DAG of :class:`Result` objects, each carrying
the :class:`GradFn` tape node that produced it.  :func:`backward` walks the
live part of that DAG in reverse topological order and deposits parameter
gradients into a :class:`DeltaSet`, a map from parameter key to
:class:`DeltaBuffer`.
"""
from __future__ import annotations

import logging
import math
import threading
import numpy as np
from typing import TYPE_CHECKING, Any, Callable, Hashable, Iterator, Sequence

from .config import get_config
from .cuda.cache import invalidate
from .errors import NonFiniteError, ShapeMismatchError
from .tensor import Tensor, TensorList

if TYPE_CHECKING:
    from .nn.layer import Layer

logger = logging.getLogger(__name__)


# ──────────────────────── DeltaBuffer ─────────────────────────────────

class DeltaBuffer:
    """Gradient accumulator bound to a live parameter array.

    The *target* array is never owned: :meth:`write` and :meth:`overwrite`
    mutate it in place so the change is visible to whichever layer holds it,
    and drop every cached device copy of it.
    The *delta* array is owned and has the same length as the target for
    the buffer's whole lifetime.
    """
    __slots__ = ('_key', '_target', '_flat', '_delta', '_owner', '_lock')

    def __init__(self, key: Hashable, target: np.ndarray,
                 delta: np.ndarray | None = None, owner: Any = None):
        if not isinstance(target, np.ndarray):
            raise ShapeMismatchError(
                f"DeltaBuffer target must be an ndarray, got {type(target).__name__}")
        flat = target.reshape(-1)
        if target.size and not np.shares_memory(flat, target):
            raise ShapeMismatchError("DeltaBuffer target must be contiguous")
        if delta is None:
            delta = np.zeros(flat.size, dtype=np.float64)
        else:
            delta = np.asarray(delta, dtype=np.float64).reshape(-1)
            if delta.size != flat.size:
                raise ShapeMismatchError(
                    f"delta length {delta.size} != target length {flat.size}")
        self._key = key
        self._target = target
        self._flat = flat
        self._delta = delta
        self._owner = owner
        self._lock = threading.Lock()

    # ── properties ──

    @property
    def key(self) -> Hashable:
        return self._key

    @property
    def target(self) -> np.ndarray:
        return self._target

    @property
    def delta(self) -> np.ndarray:
        """The live accumulator (not a copy)."""
        return self._delta

    @property
    def owner(self) -> Any:
        return self._owner

    @property
    def length(self) -> int:
        return self._delta.size

    # ── accumulation ──

    def accumulate(self, values) -> 'DeltaBuffer':
        """Element-wise add *values* into the delta; safe under concurrency."""
        values = np.asarray(values, dtype=np.float64).reshape(-1)
        if values.size != self._delta.size:
            raise ShapeMismatchError(
                f"Cannot accumulate {values.size} values into a buffer of "
                f"length {self._delta.size} (key={self._key!r})")
        if get_config().check_finite and not np.isfinite(values).all():
            raise NonFiniteError(
                f"Non-finite gradient for key {self._key!r}")
        with self._lock:
            np.add(self._delta, values, out=self._delta)
        return self

    def map(self, fn: Callable[[np.ndarray], np.ndarray]) -> 'DeltaBuffer':
        """New buffer on the same target with ``fn(delta)`` as its delta."""
        out = np.array(fn(self._delta), dtype=np.float64).reshape(-1)
        return DeltaBuffer(self._key, self._target, out, self._owner)

    def scale(self, factor: float) -> 'DeltaBuffer':
        return DeltaBuffer(self._key, self._target, self._delta * factor,
                           self._owner)

    # ── application to the target ──

    def write(self, factor: float = 1.0) -> 'DeltaBuffer':
        """``target += factor * delta``."""
        with self._lock:
            np.add(self._flat, self._delta * factor, out=self._flat)
        invalidate(self._target)
        return self

    def overwrite(self) -> 'DeltaBuffer':
        """``target[:] = delta``."""
        with self._lock:
            self._flat[:] = self._delta
        invalidate(self._target)
        return self

    # ── reductions ──

    def dot(self, other: 'DeltaBuffer') -> float:
        if other._target is not self._target:
            raise ShapeMismatchError(
                f"dot over different targets ({self._key!r} vs {other._key!r})")
        if other.length != self.length:
            raise ShapeMismatchError(
                f"dot over lengths {self.length} and {other.length}")
        return float(np.dot(self._delta, other._delta))

    def sum(self) -> float:
        return float(self._delta.sum())

    def sum_sq(self) -> float:
        return float(np.dot(self._delta, self._delta))

    # ── copies ──

    def copy(self) -> 'DeltaBuffer':
        return DeltaBuffer(self._key, self._target, self._delta.copy(),
                           self._owner)

    def copy_delta(self) -> np.ndarray:
        return self._delta.copy()

    def copy_target(self) -> np.ndarray:
        return self._flat.copy()

    def __repr__(self) -> str:
        return (f"DeltaBuffer(key={self._key!r}, length={self.length}, "
                f"sum_sq={self.sum_sq():.4g})")


# ──────────────────────── DeltaSet ────────────────────────────────────

class DeltaSet:
    """Map from parameter key to :class:`DeltaBuffer`.

    Buffers are created lazily and exactly once per key, even when several
    backward branches request the same key concurrently.
    """
    __slots__ = ('_map', '_lock')

    def __init__(self, buffers: Sequence[DeltaBuffer] = ()):
        self._map: dict[Hashable, DeltaBuffer] = {}
        self._lock = threading.Lock()
        for buf in buffers:
            self._map[buf.key] = buf

    def get(self, key: Hashable, target: np.ndarray | None = None,
            owner: Any = None) -> DeltaBuffer:
        """Existing buffer for *key*, or a new zero buffer bound to *target*."""
        buf = self._map.get(key)
        if buf is not None:
            return buf
        with self._lock:
            buf = self._map.get(key)
            if buf is None:
                if target is None:
                    raise ShapeMismatchError(
                        f"No buffer for key {key!r} and no target to bind")
                buf = DeltaBuffer(key, target, owner=owner)
                self._map[key] = buf
        return buf

    # ── container protocol ──

    def __getitem__(self, key: Hashable) -> DeltaBuffer:
        return self._map[key]

    def __contains__(self, key: Hashable) -> bool:
        return key in self._map

    def __len__(self) -> int:
        return len(self._map)

    def __iter__(self) -> Iterator[Hashable]:
        return iter(list(self._map))

    def keys(self) -> list[Hashable]:
        return list(self._map)

    def values(self) -> list[DeltaBuffer]:
        return list(self._map.values())

    def items(self) -> list[tuple[Hashable, DeltaBuffer]]:
        return list(self._map.items())

    # ── algebra (new sets; receivers untouched) ──

    def _new(self, buffers) -> 'DeltaSet':
        return type(self)(buffers)

    def add(self, other: 'DeltaSet') -> 'DeltaSet':
        out = {k: b.copy() for k, b in self._map.items()}
        for k, b in other._map.items():
            mine = out.get(k)
            if mine is None:
                out[k] = b.copy()
            else:
                if mine.length != b.length:
                    raise ShapeMismatchError(
                        f"Cannot add buffers of lengths {mine.length} and "
                        f"{b.length} (key={k!r})")
                np.add(mine.delta, b.delta, out=mine.delta)
        return self._new(out.values())

    def subtract(self, other: 'DeltaSet') -> 'DeltaSet':
        return self.add(other.scale(-1.0))

    def scale(self, factor: float) -> 'DeltaSet':
        return self._new(b.scale(factor) for b in self._map.values())

    def map(self, fn: Callable[[np.ndarray], np.ndarray]) -> 'DeltaSet':
        return self._new(b.map(fn) for b in self._map.values())

    def copy(self) -> 'DeltaSet':
        return self._new(b.copy() for b in self._map.values())

    def unit(self) -> 'DeltaSet':
        """Copy scaled to unit magnitude; a zero set stays zero."""
        mag = self.magnitude()
        if mag == 0.0:
            return self.copy()
        return self.scale(1.0 / mag)

    # ── reductions ──

    def magnitude(self) -> float:
        return math.sqrt(sum(b.sum_sq() for b in self._map.values()))

    def dot(self, other: 'DeltaSet') -> float:
        """Sum of buffer dot products over the keys both sets share."""
        total = 0.0
        for k, b in self._map.items():
            o = other._map.get(k)
            if o is not None:
                total += b.dot(o)
        return total

    def sum(self) -> float:
        return float(sum(b.sum() for b in self._map.values()))

    # ── application ──

    def write(self, factor: float = 1.0) -> 'DeltaSet':
        for b in self._map.values():
            b.write(factor)
        return self

    def overwrite(self) -> 'DeltaSet':
        for b in self._map.values():
            b.overwrite()
        return self

    def is_different(self, other: 'DeltaSet') -> bool:
        if set(self._map) != set(other._map):
            return True
        return any(not np.array_equal(b.delta, other._map[k].delta)
                   for k, b in self._map.items())

    def __repr__(self) -> str:
        return (f"{type(self).__name__}(keys={len(self)}, "
                f"magnitude={self.magnitude():.4g})")


class StateSet(DeltaSet):
    """A DeltaSet whose deltas hold copies of the target weights.

    ``StateSet.snapshot(deltas).overwrite()`` restores every target to the
    values it held when the snapshot was taken.
    """
    __slots__ = ()

    @classmethod
    def snapshot(cls, deltas: DeltaSet) -> 'StateSet':
        return cls(DeltaBuffer(k, b.target, b.copy_target(), b.owner)
                   for k, b in deltas.items())


# ──────────────────────── GradFn tape node ────────────────────────────

class GradFn:
    """Tagged backward-tape node.

    ``inputs`` are the :class:`Result` objects the forward step consumed,
    ``saved`` holds whatever the adjoint needs.  Subclasses implement
    :meth:`apply`, returning one error signal per input.
    """
    __slots__ = ('inputs', 'saved', 'name', 'layer')

    def __init__(self, name: str = 'GradFn', inputs: Sequence['Result'] = (),
                 layer: 'Layer | None' = None):
        self.inputs: tuple[Result, ...] = tuple(inputs)
        self.saved: dict | None = {}
        self.name = name
        self.layer = layer

    def owns_live_state(self) -> bool:
        layer = self.layer
        return layer is not None and not layer.frozen and bool(layer.state())

    def is_alive(self) -> bool:
        return self.owns_live_state() or any(r.is_alive() for r in self.inputs)

    def deposit(self, deltas: DeltaSet, target: np.ndarray,
                values: np.ndarray) -> None:
        """Accumulate a parameter gradient for this node's layer."""
        if self.owns_live_state():
            deltas.get(self.layer.id, target, owner=self.layer).accumulate(values)

    def apply(self, deltas: DeltaSet,
              error: TensorList) -> tuple[TensorList | None, ...]:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{self.name}>"


# ──────────────────────── Results ─────────────────────────────────────

def _as_batch(data) -> TensorList:
    if isinstance(data, TensorList):
        return data
    if isinstance(data, Tensor):
        return TensorList([data])
    return TensorList(data)


class Result:
    """Forward output of one layer evaluation plus its backward tape node."""
    __slots__ = ('_data', '_grad_fn', '_alive')

    def __init__(self, data, grad_fn: GradFn | None = None,
                 alive: bool | None = None):
        self._data: TensorList = _as_batch(data)
        self._grad_fn = grad_fn
        if alive is None:
            alive = grad_fn is not None and grad_fn.is_alive()
        self._alive = bool(alive)

    @property
    def data(self) -> TensorList:
        return self._data

    @property
    def grad_fn(self) -> GradFn | None:
        return self._grad_fn

    def is_alive(self) -> bool:
        return self._alive

    def __len__(self) -> int:
        return len(self._data)

    def accumulate(self, deltas: DeltaSet, error: TensorList | None = None,
                   retain: bool = False) -> DeltaSet:
        """Back-propagate *error* (unit error by default) into *deltas*."""
        return backward(self, deltas, error, retain=retain)

    def __repr__(self) -> str:
        fn = f", grad_fn={self._grad_fn!r}" if self._grad_fn is not None else ''
        return f"{type(self).__name__}({self._data!r}, alive={self._alive}{fn})"


class ConstantResult(Result):
    """Input that never needs a gradient."""
    __slots__ = ()

    def __init__(self, data):
        super().__init__(data, None, alive=False)


class _InputDeltaFn(GradFn):
    __slots__ = ()

    def apply(self, deltas, error):
        s = self.saved
        deltas.get(s['key'], s['target'], owner=s['result']).accumulate(
            error.stack())
        return ()


class MutableResult(Result):
    """Input whose gradient is wanted.

    The batch is copied into one contiguous ``(n, length)`` matrix that the
    tensors view; that matrix is the target of the buffer keyed by
    :attr:`key`, so writing the buffer moves the inputs themselves.
    """
    __slots__ = ('_key', '_target')

    def __init__(self, data, key: Hashable | None = None):
        batch = _as_batch(data)
        target = batch.stack().copy()
        dims = batch.dims
        views = TensorList(Tensor.wrap(target[i], dims) for i in range(len(batch)))
        self._key = key if key is not None else f"input-{id(self):x}"
        self._target = target
        fn = _InputDeltaFn(name='InputDelta')
        fn.saved = {'key': self._key, 'target': target, 'result': self}
        super().__init__(views, fn, alive=True)

    @property
    def key(self) -> Hashable:
        return self._key

    @property
    def target(self) -> np.ndarray:
        return self._target


# ──────────────────────── Topological backward ────────────────────────

def _topo_sort(root: Result) -> list[Result]:
    """Live results reachable from *root*, consumers before producers."""
    visited: set[int] = set()
    order: list[Result] = []
    stack: list[tuple[Result, bool]] = [(root, False)]
    while stack:
        r, processed = stack[-1]
        rid = id(r)
        if processed:
            stack.pop()
            if rid not in visited:
                visited.add(rid)
                order.append(r)
            continue
        if rid in visited:
            stack.pop()
            continue
        stack[-1] = (r, True)
        if r._grad_fn is not None:
            for inp in r._grad_fn.inputs:
                if inp.is_alive() and id(inp) not in visited:
                    stack.append((inp, False))
    order.reverse()
    return order


def unit_error(data: TensorList) -> TensorList:
    """Error signal of 1.0 per item; each item must be a scalar."""
    for t in data:
        if t.length != 1:
            raise ShapeMismatchError(
                f"Default error needs a scalar per item, got dims {t.dims}")
    return TensorList(Tensor(np.ones(1)) for _ in range(len(data)))


def _check_error(data: TensorList, error: TensorList) -> None:
    if len(error) != len(data):
        raise ShapeMismatchError(
            f"Error batch length {len(error)} != result batch length {len(data)}")
    if len(data) and error.element_length != data.element_length:
        raise ShapeMismatchError(
            f"Error dims {error.dims} do not match result dims {data.dims}")
    if get_config().check_finite:
        for t in error:
            if not np.isfinite(t.data).all():
                raise NonFiniteError("Non-finite error signal")


def backward(root: Result, deltas: DeltaSet, error: TensorList | None = None,
             retain: bool = False) -> DeltaSet:
    """Propagate *error* from *root* through the live tape into *deltas*.

    Error signals reaching a result from several consumers are summed
    before that result's adjoint runs, so every node's adjoint runs once.
    Non-live results are never visited.  Unless *retain* is set, each
    node's saved state is released once its adjoint has run.
    """
    if error is None:
        error = unit_error(root.data)
    else:
        error = _as_batch(error)
        _check_error(root.data, error)
    if not root.is_alive():
        return deltas

    order = _topo_sort(root)
    pending: dict[int, TensorList] = {id(root): error}
    logger.debug("backward: %d live nodes from %r", len(order), root.grad_fn)

    for r in order:
        err = pending.pop(id(r), None)
        if err is None:
            continue
        gfn = r._grad_fn
        if gfn is None:
            continue
        if gfn.saved is None:
            raise RuntimeError(
                f"Trying to backward through {gfn!r} a second time; its "
                "saved state was already released. Pass retain=True to "
                "the first call.")
        grads = gfn.apply(deltas, err)
        for inp, g in zip(gfn.inputs, grads):
            if g is None or not inp.is_alive():
                continue
            prev = pending.get(id(inp))
            pending[id(inp)] = g if prev is None else prev.add(g)
        if not retain:
            gfn.saved = None
    return deltas


__all__ = [
    'DeltaBuffer', 'DeltaSet', 'StateSet', 'GradFn', 'Result',
    'ConstantResult', 'MutableResult', 'backward', 'unit_error',
]
