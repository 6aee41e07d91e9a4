# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Deltagrad — Neural Network Training Engine                          ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""
deltagrad.cuda — accelerator device management and memory tracking.

Devices are emulated on the host: ``config.device_count`` devices, each
with ``config.device_memory`` bytes of capacity.  Buffers placed on a
device are charged against that capacity and must be released
explicitly, either directly (:class:`DeviceMemory`) or through a
:class:`DeviceBufferCache`.
"""
from __future__ import annotations

from contextlib import contextmanager

from ..config import get_config
from .memory import (DeviceMemory, _local, allocate, allocation_count,
                     current_device, device_index, get_mem_stats, set_device)
from .cache import CacheScope, DeviceBufferCache


# ================================================================
#  PUBLIC API — Device management
# ================================================================

def is_available() -> bool:
    """Return True if at least one accelerator device is configured."""
    return device_count() > 0


def device_count() -> int:
    """Return the number of accelerator devices."""
    return get_config().device_count


@contextmanager
def device_ctx(device):
    """Context manager to temporarily switch the current device.

    Cache lookups and network evaluations that name no device use it.
    """
    prev = current_device()
    set_device(device)
    try:
        yield
    finally:
        _local.device = prev


# ================================================================
#  Memory tracking
# ================================================================

def memory_allocated(device=0) -> int:
    """Return bytes currently allocated on *device*."""
    return get_mem_stats(device_index(device)).allocated


def max_memory_allocated(device=0) -> int:
    """Return peak bytes allocated on *device*."""
    return get_mem_stats(device_index(device)).max_allocated


def reset_peak_memory_stats(device=0) -> None:
    """Reset the peak memory tracking."""
    get_mem_stats(device_index(device)).reset_peak()


def mem_get_info(device=0) -> tuple[int, int]:
    """Return (free, total) bytes for *device*."""
    total = get_config().device_memory
    return total - memory_allocated(device), total


def memory_summary(device=0) -> str:
    """Return a human-readable memory summary string."""
    index = device_index(device)
    stats = get_mem_stats(index)
    free_mem, total_mem = mem_get_info(index)
    return (
        f"Deltagrad Device Memory Summary (Device {index}):\n"
        f"  Allocated:     {stats.allocated / 1024**2:.1f} MB\n"
        f"  Peak:          {stats.max_allocated / 1024**2:.1f} MB\n"
        f"  Live buffers:  {stats.live}\n"
        f"  Free:          {free_mem / 1024**2:.1f} MB\n"
        f"  Total:         {total_mem / 1024**2:.1f} MB\n"
    )


__all__ = [
    'is_available', 'device_count', 'set_device', 'current_device',
    'device_ctx', 'memory_allocated', 'max_memory_allocated',
    'reset_peak_memory_stats', 'mem_get_info', 'memory_summary',
    'DeviceMemory', 'allocate', 'allocation_count', 'DeviceBufferCache',
    'CacheScope',
]
