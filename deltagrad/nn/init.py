# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Deltagrad — Neural Network Training Engine                          ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""nn.init — parameter initialization routines.

All functions write into a layer's state array in place and return it.
"""
from __future__ import annotations

import math
import numpy as np

_rng = np.random.default_rng()


def manual_seed(seed: int) -> None:
    """Reseed the generator used by the initializers."""
    global _rng
    _rng = np.random.default_rng(seed)


def normal_(array: np.ndarray, mean: float = 0.0,
            std: float = 1.0) -> np.ndarray:
    """Fill array with values from N(mean, std^2) in-place."""
    array[...] = _rng.normal(mean, std, array.shape)
    return array


def uniform_(array: np.ndarray, a: float = 0.0, b: float = 1.0) -> np.ndarray:
    array[...] = _rng.uniform(a, b, array.shape)
    return array


def zeros_(array: np.ndarray) -> np.ndarray:
    array.fill(0)
    return array


def constant_(array: np.ndarray, val: float) -> np.ndarray:
    array.fill(val)
    return array


def xavier_uniform_(array: np.ndarray, gain: float = 1.0) -> np.ndarray:
    fan_in, fan_out = _calculate_fan_in_and_fan_out(array)
    std = gain * math.sqrt(2.0 / (fan_in + fan_out))
    bound = math.sqrt(3.0) * std
    return uniform_(array, -bound, bound)


def _calculate_fan_in_and_fan_out(array: np.ndarray) -> tuple[int, int]:
    if array.ndim < 2:
        raise ValueError("Fan in and fan out need an array with >= 2 dimensions")
    # (in, out) for dense weights; (out, in, kH, kW) for convolution kernels
    if array.ndim == 2:
        return array.shape[0], array.shape[1]
    receptive = int(np.prod(array.shape[2:]))
    return array.shape[1] * receptive, array.shape[0] * receptive


__all__ = ['manual_seed', 'normal_', 'uniform_', 'zeros_', 'constant_',
           'xavier_uniform_']
