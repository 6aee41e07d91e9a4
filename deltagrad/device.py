# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Deltagrad — Neural Network Training Engine                          ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""Device residency marker for tensors and device buffers."""
from __future__ import annotations

_DEVICE_TYPES = ('cpu', 'cuda')


class device:
    """Represents where a buffer lives: host (``cpu``) or an accelerator
    (``cuda:N``)."""

    __slots__ = ('_type', '_index')

    def __init__(self, type_or_str='cpu', index: int | None = None):
        if isinstance(type_or_str, device):
            self._type = type_or_str._type
            self._index = type_or_str._index
            return
        if isinstance(type_or_str, int):
            self._type = 'cuda'
            self._index = type_or_str
            return
        s = str(type_or_str)
        if ':' in s:
            kind, _, idx = s.partition(':')
            self._type = kind
            self._index = int(idx)
        else:
            self._type = s
            self._index = index
        if self._type not in _DEVICE_TYPES:
            raise ValueError(f"Unknown device type {self._type!r}")
        if self._type == 'cuda' and self._index is None:
            self._index = 0
        if self._type == 'cpu':
            self._index = None

    @property
    def type(self) -> str:
        return self._type

    @property
    def index(self) -> int | None:
        return self._index

    @property
    def is_accelerator(self) -> bool:
        return self._type == 'cuda'

    def __eq__(self, other) -> bool:
        if isinstance(other, (str, int)):
            other = device(other)
        if not isinstance(other, device):
            return NotImplemented
        return self._type == other._type and self._index == other._index

    def __hash__(self) -> int:
        return hash((self._type, self._index))

    def __repr__(self) -> str:
        if self._index is not None:
            return f"device(type='{self._type}', index={self._index})"
        return f"device(type='{self._type}')"

    def __str__(self) -> str:
        if self._index is not None:
            return f"{self._type}:{self._index}"
        return self._type


CPU = device('cpu')
