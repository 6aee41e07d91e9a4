# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Deltagrad — Neural Network Training Engine                          ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""Device memory handles and per-device capacity accounting.

Accelerators are emulated: a device buffer is a host ndarray in the
requested precision, but every allocation is charged against the
device's configured capacity (``config.device_memory``) and must be
released explicitly.
"""
from __future__ import annotations

import logging
import threading
import numpy as np

from ..config import get_config
from ..device import device as Device
from ..dtype import Precision
from ..errors import DeviceOutOfMemoryError

logger = logging.getLogger(__name__)


# ================================================================
#  Memory tracking
# ================================================================

class _MemoryStats:
    """Per-device memory usage tracking."""
    __slots__ = ('allocated', 'max_allocated', 'live', 'total_allocs',
                 'lock')

    def __init__(self):
        self.allocated = 0
        self.max_allocated = 0
        self.live = 0
        self.total_allocs = 0
        self.lock = threading.Lock()

    def alloc(self, size: int, device: int):
        capacity = get_config().device_memory
        with self.lock:
            if self.allocated + size > capacity:
                raise DeviceOutOfMemoryError(
                    f"Device {device} out of memory: requested {size} bytes, "
                    f"{capacity - self.allocated} of {capacity} free",
                    device=device, requested=size)
            self.allocated += size
            self.live += 1
            self.total_allocs += 1
            if self.allocated > self.max_allocated:
                self.max_allocated = self.allocated

    def free(self, size: int):
        with self.lock:
            self.allocated -= size
            self.live -= 1

    def reset_peak(self):
        with self.lock:
            self.max_allocated = self.allocated


_mem_stats: dict[int, _MemoryStats] = {}
_stats_lock = threading.Lock()
_local = threading.local()


def current_device() -> int:
    """Return the calling thread's current device index."""
    return getattr(_local, 'device', 0)


def set_device(device) -> None:
    """Set the current device for the calling thread."""
    _local.device = device_index(device)


def device_index(device) -> int:
    """Normalise an int, ``'cuda:N'`` string or device to an index.

    ``None`` means the calling thread's current device.
    """
    if device is None:
        return current_device()
    if isinstance(device, (int, np.integer)):
        index = int(device)
    else:
        dev = Device(device)
        if not dev.is_accelerator:
            raise ValueError(f"{dev} is not an accelerator device")
        index = dev.index
    count = get_config().device_count
    if not 0 <= index < count:
        raise ValueError(
            f"Invalid device index {index} ({count} device(s) configured)")
    return index


def get_mem_stats(device: int = 0) -> _MemoryStats:
    stats = _mem_stats.get(device)
    if stats is None:
        with _stats_lock:
            stats = _mem_stats.setdefault(device, _MemoryStats())
    return stats


# ================================================================
#  Device buffers
# ================================================================

class DeviceMemory:
    """A device-resident buffer with a single owner.

    Usable as a context manager; :meth:`release` is idempotent and any
    access after release raises ``RuntimeError``.
    """
    __slots__ = ('_device', '_precision', '_array', '_nbytes', '_lock')

    def __init__(self, device, length: int,
                 precision: Precision = Precision.double):
        index = device_index(device)
        nbytes = int(length) * precision.itemsize
        get_mem_stats(index).alloc(nbytes, index)
        self._device = index
        self._precision = precision
        self._nbytes = nbytes
        self._array: np.ndarray | None = np.zeros(int(length),
                                                  dtype=precision.to_numpy())
        self._lock = threading.Lock()
        logger.debug("alloc %d bytes on cuda:%d (%s)", nbytes, index,
                     precision.name)

    @classmethod
    def upload(cls, values, device,
               precision: Precision = Precision.double) -> 'DeviceMemory':
        values = np.asarray(values).reshape(-1)
        mem = cls(device, values.size, precision)
        mem._array[:] = values
        return mem

    # ── properties ──

    @property
    def device(self) -> int:
        return self._device

    @property
    def precision(self) -> Precision:
        return self._precision

    @property
    def nbytes(self) -> int:
        return self._nbytes

    @property
    def length(self) -> int:
        return self._nbytes // self._precision.itemsize

    @property
    def released(self) -> bool:
        return self._array is None

    @property
    def array(self) -> np.ndarray:
        """The device-precision store."""
        arr = self._array
        if arr is None:
            raise RuntimeError(
                f"Device buffer on cuda:{self._device} used after release")
        return arr

    # ── transfer ──

    def read(self) -> np.ndarray:
        """Host ``float64`` copy of the buffer."""
        return self.array.astype(np.float64)

    def write(self, values) -> 'DeviceMemory':
        values = np.asarray(values).reshape(-1)
        arr = self.array
        if values.size != arr.size:
            raise ValueError(
                f"Cannot write {values.size} values into a device buffer "
                f"of length {arr.size}")
        arr[:] = values
        return self

    # ── lifecycle ──

    def release(self) -> None:
        with self._lock:
            if self._array is None:
                return
            self._array = None
        get_mem_stats(self._device).free(self._nbytes)
        logger.debug("free %d bytes on cuda:%d", self._nbytes, self._device)

    def __enter__(self) -> 'DeviceMemory':
        return self

    def __exit__(self, *exc) -> None:
        self.release()

    def __repr__(self) -> str:
        state = 'released' if self.released else f'{self._nbytes} bytes'
        return (f"DeviceMemory(cuda:{self._device}, {self._precision.name}, "
                f"{state})")


def allocate(device, length: int,
             precision: Precision = Precision.double) -> DeviceMemory:
    """Allocate a zeroed device buffer, charging the device's capacity."""
    return DeviceMemory(device, length, precision)


def allocation_count(device=0) -> int:
    """Number of live (unreleased) buffers on *device*."""
    return get_mem_stats(device_index(device)).live


__all__ = ['DeviceMemory', 'allocate', 'allocation_count', 'device_index',
           'current_device', 'set_device']
