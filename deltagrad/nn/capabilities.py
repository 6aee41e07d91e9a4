# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Deltagrad — Neural Network Training Engine                          ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""Optional layer capabilities, checked structurally at runtime."""
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ..dtype import Precision

if TYPE_CHECKING:
    from .layer import Layer


@runtime_checkable
class MultiPrecision(Protocol):
    """Layer that can compute in a reduced precision."""
    precision: Precision


@runtime_checkable
class DeviceResident(Protocol):
    """Layer that computes on device copies when a device is attached."""

    def device_buffers(self, result: Any, ctx: Any) -> tuple:
        ...


@runtime_checkable
class Explodable(Protocol):
    """Layer that can be rewritten as an equivalent network of simpler ones."""

    def explode(self) -> 'Layer':
        ...


def supports(layer: Any, trait: type) -> bool:
    return isinstance(layer, trait)


def set_precision(layer: 'Layer', precision: Precision) -> int:
    """Set *precision* on every MultiPrecision layer in a tree; returns count."""
    count = 0
    if supports(layer, MultiPrecision):
        layer.precision = precision
        count += 1
    for child in layer.children():
        count += set_precision(child, precision)
    return count


__all__ = ['MultiPrecision', 'DeviceResident', 'Explodable', 'supports',
           'set_precision']
