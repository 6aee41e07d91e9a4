# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Deltagrad — Neural Network Training Engine                          ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""nn.Layer — base class for all differentiable components."""
from __future__ import annotations

import uuid
import numpy as np
from typing import TYPE_CHECKING

from ..autograd import ConstantResult, Result
from ..errors import GraphConfigurationError
from ..tensor import Tensor, TensorList

if TYPE_CHECKING:
    from .network import GraphEvaluationContext


class Layer:
    """Base class for all layers.

    A layer maps one or more input :class:`Result` objects to an output
    Result whose tape node knows how to push an error signal back.  The
    layer's :attr:`id` is its key in a :class:`~deltagrad.DeltaSet`.

    ``arity`` is the number of inputs ``eval`` accepts; ``None`` means
    any positive number.
    """

    arity: int | None = 1

    def __init__(self, name: str | None = None):
        self.id: str = str(uuid.uuid4())
        self.name: str = name or type(self).__name__
        self.frozen: bool = False

    # ---- Contract ----

    def eval(self, *inputs: Result,
             ctx: 'GraphEvaluationContext | None' = None) -> Result:
        raise NotImplementedError

    def state(self) -> list[np.ndarray]:
        """Mutable parameter arrays; empty for stateless layers."""
        return []

    def children(self) -> list['Layer']:
        return []

    def __call__(self, *inputs, ctx=None) -> Result:
        results = tuple(
            r if isinstance(r, Result) else ConstantResult(_as_batch(r))
            for r in inputs)
        self.check_arity(len(results))
        return self.eval(*results, ctx=ctx)

    def check_arity(self, count: int) -> None:
        if count == 0 or (self.arity is not None and count != self.arity):
            want = 'at least 1' if self.arity is None else self.arity
            raise GraphConfigurationError(
                f"{self.name} takes {want} input(s), got {count}")

    # ---- Freezing ----

    def freeze(self) -> 'Layer':
        self.frozen = True
        for c in self.children():
            c.freeze()
        return self

    def unfreeze(self) -> 'Layer':
        self.frozen = False
        for c in self.children():
            c.unfreeze()
        return self

    # ---- Repr ----

    def extra_repr(self) -> str:
        return ''

    def __repr__(self) -> str:
        frozen = ', frozen' if self.frozen else ''
        return f"{type(self).__name__}({self.extra_repr()}{frozen})"


def _as_batch(data) -> TensorList:
    if isinstance(data, TensorList):
        return data
    if isinstance(data, Tensor):
        return TensorList([data])
    return TensorList.from_array(data)
