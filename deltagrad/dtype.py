# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Deltagrad — Neural Network Training Engine                          ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""Numeric precision definitions for host and device buffers."""
from __future__ import annotations

import enum
import numpy as np


class Precision(enum.Enum):
    """Storage precision of a buffer.

    Host tensors are always ``double``; device-resident copies may be
    reduced to ``float`` or ``half``.
    """
    double = "double"
    float = "float"
    half = "half"

    def to_numpy(self) -> np.dtype:
        """Convert to numpy dtype."""
        _map = {
            Precision.double: np.float64,
            Precision.float: np.float32,
            Precision.half: np.float16,
        }
        return np.dtype(_map[self])

    @staticmethod
    def from_numpy(np_dtype) -> 'Precision':
        """Convert numpy dtype to a precision; unknown kinds map to double."""
        _map = {
            np.dtype(np.float64): Precision.double,
            np.dtype(np.float32): Precision.float,
            np.dtype(np.float16): Precision.half,
        }
        return _map.get(np.dtype(np_dtype), Precision.double)

    @property
    def itemsize(self) -> int:
        return self.to_numpy().itemsize

    @property
    def tolerance(self) -> float:
        """Relative tolerance for finite-difference gradient checks."""
        return {
            Precision.double: 1e-6,
            Precision.float: 1e-3,
            Precision.half: 1e-2,
        }[self]

    def __repr__(self) -> str:
        return f"deltagrad.{self.name}"


# Convenience aliases
double = Precision.double
float32 = Precision.float
float16 = Precision.half
