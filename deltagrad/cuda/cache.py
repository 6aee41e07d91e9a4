# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Deltagrad — Neural Network Training Engine                          ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""Per-device cache of uploaded host data.

Each device keeps an LRU map keyed by ``(id(source), precision)``.  The
cache holds a reference to every source it caches so ids stay unique
while an entry lives.  When an upload runs out of device memory the
least-recently-used unpinned entries of that device are evicted and the
upload is retried once.

Entries are tracked by a :class:`CacheScope`.  A scope releases the
entries created inside it when it closes and pins every entry it has
touched against eviction while it is open.  A scope can be passed to
:meth:`DeviceBufferCache.get` explicitly, which is how an evaluation pass
tracks lookups made on pool worker threads; lookups that pass none are
recorded in the scopes opened on the calling thread.
"""
from __future__ import annotations

import logging
import threading
import weakref
import numpy as np
from collections import OrderedDict
from contextlib import contextmanager
from typing import Any, Iterator

from ..dtype import Precision
from ..errors import DeviceOutOfMemoryError
from .memory import DeviceMemory, device_index

logger = logging.getLogger(__name__)

_live_caches: 'weakref.WeakSet[DeviceBufferCache]' = weakref.WeakSet()


def _host_array(source) -> np.ndarray:
    # Result -> TensorList -> Tensor -> ndarray
    if isinstance(source, np.ndarray):
        return source.reshape(-1)
    data = getattr(source, 'data', source)
    if hasattr(data, 'stack'):
        return data.stack().reshape(-1)
    return np.asarray(data).reshape(-1)


def invalidate(source) -> int:
    """Drop the device copies of *source* from every live cache.

    Called whenever *source* is written in place, so no cache serves a
    copy of superseded data.
    """
    return sum(cache.release(source) for cache in list(_live_caches))


class _CacheEntry:
    __slots__ = ('source', 'memory', 'pins', 'doomed')

    def __init__(self, source: Any, memory: DeviceMemory):
        self.source = source
        self.memory = memory
        self.pins = 0
        self.doomed = False


class CacheScope:
    """Entries used by one unit of work, such as an evaluation pass."""

    def __init__(self, cache: 'DeviceBufferCache'):
        self.cache = cache
        self.closed = False
        self._touched: list[tuple[int, tuple, _CacheEntry, bool]] = []
        self._lock = threading.Lock()

    def _record(self, index: int, key: tuple, entry: _CacheEntry,
                created: bool) -> None:
        # caller holds the device lock
        with self._lock:
            if self.closed:
                raise RuntimeError("cache scope used after it was closed")
            entry.pins += 1
            self._touched.append((index, key, entry, created))

    @property
    def created(self) -> int:
        with self._lock:
            return sum(1 for *_, c in self._touched if c)

    def close(self) -> None:
        """Unpin everything touched and release what was created here.

        An entry created here but still pinned by another open scope is
        released when that scope closes.
        """
        with self._lock:
            if self.closed:
                return
            self.closed = True
            touched, self._touched = self._touched, []
        for index, key, entry, created in touched:
            lock, lru = self.cache._device_state(index)
            with lock:
                entry.pins -= 1
                if created:
                    entry.doomed = True
                drop = entry.doomed and entry.pins == 0
                if drop and lru.get(key) is entry:
                    del lru[key]
            if drop:
                entry.memory.release()

    def __enter__(self) -> 'CacheScope':
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __repr__(self) -> str:
        state = 'closed' if self.closed else f'{len(self._touched)} touched'
        return f"CacheScope({state})"


class DeviceBufferCache:
    """LRU cache of device copies, one independent map per device."""

    def __init__(self):
        self._lru: dict[int, OrderedDict] = {}
        self._locks: dict[int, threading.RLock] = {}
        self._meta_lock = threading.Lock()
        self._local = threading.local()
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        _live_caches.add(self)

    # ── per-device state ──

    def _device_state(self, index: int) -> tuple[threading.RLock, OrderedDict]:
        with self._meta_lock:
            lock = self._locks.get(index)
            if lock is None:
                lock = self._locks[index] = threading.RLock()
                self._lru[index] = OrderedDict()
            return lock, self._lru[index]

    def _scopes(self) -> list[CacheScope]:
        stack = getattr(self._local, 'scopes', None)
        if stack is None:
            stack = self._local.scopes = []
        return stack

    # ── lookup ──

    def get(self, source, device=None,
            precision: Precision = Precision.double,
            scope: CacheScope | None = None) -> DeviceMemory:
        """Device copy of *source*, uploading it on a miss.

        *device* defaults to the calling thread's current device.  The
        entry is recorded in *scope*, or in every scope open on this
        thread when none is given.
        """
        index = device_index(device)
        lock, lru = self._device_state(index)
        key = (id(source), precision)
        scopes = [scope] if scope is not None else list(self._scopes())
        if scope is not None and scope.closed:
            raise RuntimeError("cache scope used after it was closed")
        with lock:
            entry = lru.get(key)
            if entry is not None:
                lru.move_to_end(key)
                self.hits += 1
                for s in scopes:
                    s._record(index, key, entry, False)
                return entry.memory
            self.misses += 1
            host = _host_array(source)
            try:
                memory = DeviceMemory.upload(host, index, precision)
            except DeviceOutOfMemoryError as e:
                logger.warning(
                    "cuda:%d out of memory for %d bytes; evicting cached "
                    "buffers and retrying", index, e.requested)
                self._evict_locked(index, lru, e.requested)
                memory = DeviceMemory.upload(host, index, precision)
            entry = lru[key] = _CacheEntry(source, memory)
            for s in scopes:
                s._record(index, key, entry, True)
        return memory

    def get_array(self, source, device=None,
                  precision: Precision = Precision.double,
                  scope: CacheScope | None = None) -> np.ndarray:
        """Like :meth:`get`, but returns the device array itself.

        The array is taken while the device lock is held, so a concurrent
        eviction or scope exit on another thread cannot release the entry
        between lookup and use.
        """
        lock, _ = self._device_state(device_index(device))
        with lock:
            return self.get(source, device, precision, scope).array

    def __contains__(self, item) -> bool:
        source, device, precision = item
        lock, lru = self._device_state(device_index(device))
        with lock:
            return (id(source), precision) in lru

    # ── release / eviction ──

    def _evict_locked(self, index: int, lru: OrderedDict, nbytes: int) -> int:
        freed = 0
        for key, entry in list(lru.items()):
            if freed >= nbytes:
                break
            if entry.pins:
                continue
            del lru[key]
            freed += entry.memory.nbytes
            entry.memory.release()
            self.evictions += 1
        logger.debug("evicted %d bytes from cuda:%d", freed, index)
        return freed

    def evict(self, device, nbytes: int) -> int:
        """Release unpinned LRU entries of *device* until *nbytes* are freed."""
        index = device_index(device)
        lock, lru = self._device_state(index)
        with lock:
            return self._evict_locked(index, lru, nbytes)

    def release(self, source) -> int:
        """Release every device copy of *source*; returns how many."""
        sid = id(source)
        released = 0
        for index in list(self._lru):
            lock, lru = self._device_state(index)
            with lock:
                keys = [k for k in lru if k[0] == sid]
                entries = [lru.pop(k) for k in keys]
            for entry in entries:
                entry.memory.release()
                released += 1
        return released

    def clear(self) -> None:
        for index in list(self._lru):
            lock, lru = self._device_state(index)
            with lock:
                entries = list(lru.values())
                lru.clear()
            for entry in entries:
                entry.memory.release()

    @contextmanager
    def scope(self) -> Iterator[CacheScope]:
        """Release every entry created inside the block, however it exits.

        The yielded :class:`CacheScope` also collects lookups that name it
        explicitly from other threads.
        """
        scope = CacheScope(self)
        stack = self._scopes()
        stack.append(scope)
        try:
            yield scope
        finally:
            stack.remove(scope)
            scope.close()

    # ── introspection ──

    def __len__(self) -> int:
        return sum(len(lru) for lru in list(self._lru.values()))

    def entries(self, device) -> list[DeviceMemory]:
        lock, lru = self._device_state(device_index(device))
        with lock:
            return [e.memory for e in lru.values()]

    def __repr__(self) -> str:
        return (f"DeviceBufferCache(entries={len(self)}, hits={self.hits}, "
                f"misses={self.misses}, evictions={self.evictions})")


__all__ = ['DeviceBufferCache', 'CacheScope', 'invalidate']
