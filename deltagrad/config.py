# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Deltagrad — Neural Network Training Engine                          ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""deltagrad.config — runtime configuration.

Values are seeded from environment variables at import time and can be
changed at runtime either directly on the singleton or temporarily via
:func:`override`::

    from deltagrad import config
    config.get_config().num_threads = 8

    with config.override(single_threaded=True, max_retries=2):
        trainer.run()

Environment variables:
    DELTAGRAD_THREADS          — worker pool size (default: min(4, cpus))
    DELTAGRAD_SINGLE_THREADED  — set to 1 to evaluate everything serially
    DELTAGRAD_DEVICES          — number of emulated accelerator devices
    DELTAGRAD_DEVICE_MEMORY    — per-device capacity in bytes (default 1 GiB)
    DELTAGRAD_MAX_RETRIES      — non-finite loss retry budget (default 10)
    DELTAGRAD_CHECK_FINITE     — set to 0 to skip finite checks in accumulate
"""
from __future__ import annotations

import os
import threading
from contextlib import contextmanager

GiB = 1024 ** 3


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, '')
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f'{name} must be an integer, got {raw!r}') from None


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name, '')
    if not raw:
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


class _Config:
    """Process-wide configuration singleton."""
    __slots__ = ('_num_threads', '_single_threaded', '_device_count',
                 '_device_memory', '_max_retries', '_check_finite',
                 '_lock')

    def __init__(self):
        self._lock = threading.Lock()
        self._num_threads = max(1, _env_int(
            'DELTAGRAD_THREADS', min(4, os.cpu_count() or 1)))
        self._single_threaded = _env_flag('DELTAGRAD_SINGLE_THREADED', False)
        self._device_count = max(0, _env_int('DELTAGRAD_DEVICES', 1))
        self._device_memory = _env_int('DELTAGRAD_DEVICE_MEMORY', GiB)
        self._max_retries = max(0, _env_int('DELTAGRAD_MAX_RETRIES', 10))
        self._check_finite = _env_flag('DELTAGRAD_CHECK_FINITE', True)

    # ── num_threads ──
    @property
    def num_threads(self) -> int:
        return self._num_threads

    @num_threads.setter
    def num_threads(self, value: int):
        if value < 1:
            raise ValueError(f'num_threads must be >= 1, got {value}')
        self._num_threads = int(value)

    # ── single_threaded ──
    @property
    def single_threaded(self) -> bool:
        return self._single_threaded

    @single_threaded.setter
    def single_threaded(self, value: bool):
        self._single_threaded = bool(value)

    # ── device_count ──
    @property
    def device_count(self) -> int:
        return self._device_count

    @device_count.setter
    def device_count(self, value: int):
        if value < 0:
            raise ValueError(f'device_count must be >= 0, got {value}')
        self._device_count = int(value)

    # ── device_memory ──
    @property
    def device_memory(self) -> int:
        return self._device_memory

    @device_memory.setter
    def device_memory(self, value: int):
        if value <= 0:
            raise ValueError(f'device_memory must be > 0, got {value}')
        self._device_memory = int(value)

    # ── max_retries ──
    @property
    def max_retries(self) -> int:
        return self._max_retries

    @max_retries.setter
    def max_retries(self, value: int):
        if value < 0:
            raise ValueError(f'max_retries must be >= 0, got {value}')
        self._max_retries = int(value)

    # ── check_finite ──
    @property
    def check_finite(self) -> bool:
        return self._check_finite

    @check_finite.setter
    def check_finite(self, value: bool):
        self._check_finite = bool(value)

    def as_dict(self) -> dict:
        return {name[1:]: getattr(self, name[1:])
                for name in self.__slots__ if name != '_lock'}

    def __repr__(self) -> str:
        body = ', '.join(f'{k}={v!r}' for k, v in self.as_dict().items())
        return f'Config({body})'


_config = _Config()


def get_config() -> _Config:
    return _config


@contextmanager
def override(**values):
    """Temporarily set configuration values, restoring them on exit."""
    with _config._lock:
        previous = {}
        for key, value in values.items():
            if not hasattr(_config, key) or key.startswith('_'):
                raise AttributeError(f'Unknown config option {key!r}')
            previous[key] = getattr(_config, key)
    try:
        for key, value in values.items():
            setattr(_config, key, value)
        yield _config
    finally:
        for key, value in previous.items():
            setattr(_config, key, value)


__all__ = ['get_config', 'override', 'GiB']
