# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Deltagrad — Neural Network Training Engine                          ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""Shared bounded worker pool.

Work submitted from inside a pool worker runs inline on that worker, so
nested parallel sections cannot starve the pool.
"""
from __future__ import annotations

import atexit
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Sequence, TypeVar

from .config import get_config

T = TypeVar('T')

_pool: ThreadPoolExecutor | None = None
_pool_size = 0
_pool_lock = threading.Lock()
_local = threading.local()


def _mark_worker():
    _local.worker = True


def in_worker() -> bool:
    return getattr(_local, 'worker', False)


def get_pool() -> ThreadPoolExecutor:
    """The process-wide pool, resized if ``num_threads`` changed."""
    global _pool, _pool_size
    size = get_config().num_threads
    with _pool_lock:
        if _pool is None or _pool_size != size:
            if _pool is not None:
                _pool.shutdown(wait=False)
            _pool = ThreadPoolExecutor(max_workers=size,
                                       thread_name_prefix='deltagrad',
                                       initializer=_mark_worker)
            _pool_size = size
        return _pool


def run_all(tasks: Sequence[Callable[[], T]]) -> list[T]:
    """Run *tasks* and return their results in order.

    Runs serially when single-threaded, when there is only one task, or
    when called from a pool worker.  The first exception is re-raised
    after every task has finished.
    """
    if (len(tasks) <= 1 or get_config().single_threaded or in_worker()):
        return [t() for t in tasks]
    futures = [get_pool().submit(t) for t in tasks]
    errors = [f.exception() for f in futures]
    for e in errors:
        if e is not None:
            raise e
    return [f.result() for f in futures]


@atexit.register
def _shutdown():
    with _pool_lock:
        if _pool is not None:
            _pool.shutdown(wait=False)


__all__ = ['get_pool', 'run_all', 'in_worker']
