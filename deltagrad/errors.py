# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Deltagrad — Neural Network Training Engine                          ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""Exception taxonomy for deltagrad.

Shape/argument and graph-configuration errors always propagate to the
caller.  Only :class:`NonFiniteError` (at the measurement boundary) and
:class:`DeviceOutOfMemoryError` (inside the device cache) have bounded
local recovery.
"""
from __future__ import annotations


class DeltaGradError(Exception):
    """Base class for all deltagrad errors."""


class ShapeMismatchError(DeltaGradError, ValueError):
    """Mismatched tensor, batch or delta-buffer dimensions."""


class NonFiniteError(DeltaGradError, ArithmeticError):
    """A NaN or infinite value reached a gradient accumulator."""


class GraphConfigurationError(DeltaGradError, ValueError):
    """Dangling node reference, cycle, or malformed network wiring."""


class DeviceOutOfMemoryError(DeltaGradError, MemoryError):
    """Device allocation failed even after evicting cached buffers."""

    def __init__(self, message: str, device: int | None = None,
                 requested: int = 0):
        super().__init__(message)
        self.device = device
        self.requested = requested


class IterativeStopException(DeltaGradError, RuntimeError):
    """Signals that the training loop cannot make further progress."""


__all__ = [
    'DeltaGradError', 'ShapeMismatchError', 'NonFiniteError',
    'GraphConfigurationError', 'DeviceOutOfMemoryError',
    'IterativeStopException',
]
