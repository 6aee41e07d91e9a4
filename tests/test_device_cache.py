"""
Tests for emulated device memory and the DeviceBufferCache.
"""
import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import numpy as np
import pytest

import deltagrad as dg
import deltagrad.nn as nn
import deltagrad.cuda as cuda
from deltagrad import DeviceOutOfMemoryError, NonFiniteError
from deltagrad.cuda import CacheScope, DeviceBufferCache, DeviceMemory
from deltagrad.optim import BasicTrainable


def test_device_queries():
    print("=== Test device queries ===")
    with dg.override(device_count=2):
        assert cuda.is_available()
        assert cuda.device_count() == 2
        with cuda.device_ctx('cuda:1'):
            assert cuda.current_device() == 1
        assert cuda.current_device() == 0
        with pytest.raises(ValueError):
            cuda.set_device(2)
        summary = cuda.memory_summary(1)
        assert 'Device 1' in summary
    with dg.override(device_count=0):
        assert not cuda.is_available()
    print("  PASS")


def test_device_memory_lifecycle():
    """Buffers are charged on allocation and freed exactly once."""
    print("=== Test DeviceMemory lifecycle ===")
    with dg.override(device_count=2):
        base = cuda.allocation_count(1)
        used = cuda.memory_allocated(1)
        with DeviceMemory.upload([1.0, 2.0, 3.0], 1, dg.float32) as mem:
            assert cuda.allocation_count(1) == base + 1
            assert cuda.memory_allocated(1) == used + 12
            assert mem.array.dtype == np.float32
            assert np.allclose(mem.read(), [1.0, 2.0, 3.0])
            mem.write([4.0, 5.0, 6.0])
            assert mem.read().dtype == np.float64
        assert mem.released
        assert cuda.allocation_count(1) == base
        assert cuda.memory_allocated(1) == used
        mem.release()
        assert cuda.allocation_count(1) == base
        with pytest.raises(RuntimeError):
            mem.read()
    print("  PASS")


def test_allocation_over_capacity():
    print("=== Test allocation over capacity ===")
    with dg.override(device_count=2, device_memory=64):
        with pytest.raises(DeviceOutOfMemoryError) as info:
            cuda.allocate(1, 9)
        assert info.value.device == 1
        assert info.value.requested == 72
        with cuda.allocate(1, 8):
            assert cuda.mem_get_info(1) == (0, 64)
    print("  PASS")


def test_cache_hit_and_miss():
    print("=== Test cache hits ===")
    with dg.override(device_count=2):
        cache = DeviceBufferCache()
        src = np.arange(4.0)
        first = cache.get(src, 0)
        assert cache.get(src, 0) is first
        assert (cache.hits, cache.misses) == (1, 1)
        half = cache.get(src, 0, dg.float16)
        assert half is not first and half.array.dtype == np.float16
        other = cache.get(src, 1)
        assert other is not first
        assert len(cache) == 3
        assert (src, 1, dg.double) in cache
        assert cache.release(src) == 3
        assert len(cache) == 0
        assert first.released and other.released
    print("  PASS")


def test_oom_evicts_and_retries_once():
    """An upload that does not fit evicts LRU entries and is retried."""
    print("=== Test OOM eviction ===")
    with dg.override(device_count=2, device_memory=200):
        cache = DeviceBufferCache()
        a, b, c = np.zeros(10), np.ones(10), np.full(10, 2.0)
        mem_a = cache.get(a, 1)
        cache.get(b, 1)
        cache.get(a, 1)          # a is now most recently used
        cache.get(c, 1)          # 240 bytes > 200: evicts b only
        assert (a, 1, dg.double) in cache
        assert (b, 1, dg.double) not in cache
        assert (c, 1, dg.double) in cache
        assert cache.evictions == 1
        assert not mem_a.released

        with pytest.raises(DeviceOutOfMemoryError):
            cache.get(np.zeros(30), 1)   # larger than the whole device
        assert len(cache.entries(1)) == 0, "retry evicts everything first"
        cache.clear()
        assert cuda.memory_allocated(1) == 0
    print("  PASS")


def test_evict_is_per_device():
    print("=== Test per-device eviction ===")
    with dg.override(device_count=2):
        cache = DeviceBufferCache()
        src = np.zeros(8)
        cache.get(src, 0)
        cache.get(src, 1)
        assert cache.evict(1, 1) == 64
        assert (src, 0, dg.double) in cache
        assert (src, 1, dg.double) not in cache
        cache.clear()
        assert len(cache) == 0
    print("  PASS")


def test_scope_releases_on_exception():
    print("=== Test scope release on failure ===")
    with dg.override(device_count=2):
        cache = DeviceBufferCache()
        kept = np.zeros(2)
        cache.get(kept, 0)
        base = cuda.allocation_count(0)
        with pytest.raises(ValueError):
            with cache.scope():
                cache.get(np.zeros(3), 0)
                cache.get(np.zeros(5), 1)
                assert len(cache) == 3
                raise ValueError("boom")
        assert len(cache) == 1, "entries created in the scope must go"
        assert (kept, 0, dg.double) in cache
        assert cuda.allocation_count(0) == base
        cache.clear()
    print("  PASS")


def _regression(precision=dg.double):
    nn.init.manual_seed(7)
    net = nn.DAGNetwork(inputs=2)
    fc = net.add(nn.FullyConnectedLayer(3, 1, precision=precision), net.input(0))
    net.add(nn.MeanSqLossLayer(), fc, net.input(1))
    rng = np.random.default_rng(0)
    x = rng.normal(size=(8, 3))
    y = x @ np.array([[1.0], [-2.0], [0.5]])
    return net, x, y


def test_trainable_on_device_leaves_no_entries():
    """A device measurement matches the host one and frees every buffer."""
    print("=== Test BasicTrainable on device ===")
    with dg.override(device_count=1):
        net, x, y = _regression()
        base = cuda.allocation_count(0)
        host = BasicTrainable(net, [x, y]).measure()
        on_device = BasicTrainable(net, [x, y], device=0)
        point = on_device.measure()
        assert abs(point.sum - host.sum) < 1e-12
        assert point.delta.subtract(host.delta).magnitude() < 1e-12
        assert len(on_device.cache) == 0
        assert cuda.allocation_count(0) == base
        assert on_device.cache.misses == 2, "weights and input uploaded once"
    print("  PASS")


def test_trainable_on_device_failure_leaves_no_entries():
    print("=== Test BasicTrainable device failure ===")
    with dg.override(device_count=1):
        net, x, y = _regression()
        x[0, 0] = np.nan
        base = cuda.allocation_count(0)
        trainable = BasicTrainable(net, [x, y], device=0)
        with pytest.raises(NonFiniteError):
            trainable.measure()
        assert len(trainable.cache) == 0
        assert cuda.allocation_count(0) == base
    print("  PASS")


def test_reduced_precision_on_device():
    print("=== Test float32 device evaluation ===")
    with dg.override(device_count=1):
        net, x, y = _regression(dg.float32)
        host = BasicTrainable(net, [x, y]).measure()
        dev = BasicTrainable(net, [x, y], device=0).measure()
        assert abs(host.sum - dev.sum) <= 1e-5 * max(1.0, abs(host.sum))
    print("  PASS")


def test_trainable_on_device_with_worker_threads():
    """Buffers uploaded on pool workers belong to the measurement too."""
    print("=== Test BasicTrainable on device, multithreaded ===")
    with dg.override(device_count=1, num_threads=4, single_threaded=False):
        net, x, y = _regression()
        base = cuda.allocation_count(0)
        trainable = BasicTrainable(net, [x, y], device=0)
        host = BasicTrainable(net, [x, y]).measure()
        point = trainable.measure()
        assert abs(point.sum - host.sum) < 1e-12
        assert len(trainable.cache) == 0, f"{len(trainable.cache)} entries left"
        assert cuda.allocation_count(0) == base

        x[0, 0] = np.nan
        failing = BasicTrainable(net, [x, y], device=0)
        with pytest.raises(NonFiniteError):
            failing.measure()
        assert len(failing.cache) == 0
        assert cuda.allocation_count(0) == base
    print("  PASS")


def test_parallel_trainable_on_devices_leaves_no_entries():
    print("=== Test ParallelTrainable on devices ===")
    from deltagrad.optim import ParallelTrainable
    with dg.override(device_count=2, num_threads=4, single_threaded=False):
        net, x, y = _regression()
        host = BasicTrainable(net, [x, y]).measure()
        parallel = ParallelTrainable(net, [x, y], devices=[0, 1], chunks=4)
        point = parallel.measure()
        assert abs(point.sum - host.sum) < 1e-12
        assert len(parallel.cache) == 0
    print("  PASS")


def test_scope_passed_explicitly_tracks_other_threads():
    print("=== Test explicit cache scope ===")
    import threading
    with dg.override(device_count=1):
        cache = DeviceBufferCache()
        src = np.arange(3.0)
        with cache.scope() as scope:
            worker = threading.Thread(target=lambda: cache.get(src, 0, scope=scope))
            worker.start()
            worker.join()
            assert (src, 0, dg.double) in cache
            assert scope.created == 1
        assert len(cache) == 0
        assert scope.closed
    print("  PASS")


def test_scope_pins_entries_against_eviction():
    """OOM eviction skips entries the open scope is still using."""
    print("=== Test pinned entries ===")
    with dg.override(device_count=2, device_memory=200):
        cache = DeviceBufferCache()
        old, a, b = np.zeros(10), np.ones(10), np.full(10, 2.0)
        cache.get(old, 1)
        with cache.scope():
            mem_a = cache.get(a, 1)
            cache.get(b, 1)                  # 240 bytes: evicts the unpinned entry
            assert (old, 1, dg.double) not in cache
            assert not mem_a.released
            with pytest.raises(DeviceOutOfMemoryError):
                cache.get(np.zeros(10), 1)   # a and b are both pinned
            assert not mem_a.released
            assert (a, 1, dg.double) in cache and (b, 1, dg.double) in cache
        assert len(cache) == 0
        assert cuda.memory_allocated(1) == 0
    print("  PASS")


def test_shared_entry_outlives_creating_scope():
    """An entry created in one scope and used by another lives until both close."""
    print("=== Test entry shared by two scopes ===")
    with dg.override(device_count=1):
        cache = DeviceBufferCache()
        src = np.arange(4.0)
        creator, user = CacheScope(cache), CacheScope(cache)
        mem = cache.get(src, 0, scope=creator)
        assert cache.get(src, 0, scope=user) is mem
        creator.close()
        assert not mem.released
        assert (src, 0, dg.double) in cache
        user.close()
        assert mem.released and len(cache) == 0
        with pytest.raises(RuntimeError):
            cache.get(src, 0, scope=user)
        cache.clear()
    print("  PASS")


def test_write_invalidates_device_copies():
    print("=== Test write invalidates cached copies ===")
    from deltagrad import DeltaSet
    with dg.override(device_count=1):
        cache = DeviceBufferCache()
        w = np.array([1.0, 2.0])
        cache.get(w, 0)
        deltas = DeltaSet()
        deltas.get('w', w).accumulate([0.5, 0.5])
        deltas.write()
        assert (w, 0, dg.double) not in cache
        assert np.allclose(cache.get(w, 0).read(), [1.5, 2.5])
        deltas.overwrite()
        assert (w, 0, dg.double) not in cache
        cache.clear()
    print("  PASS")


def test_network_evaluate_on_device_sees_new_weights():
    print("=== Test DAGNetwork.evaluate on device ===")
    with dg.override(device_count=1):
        net, x, y = _regression()
        fc = net.layers()[0]
        cache = DeviceBufferCache()
        first = net.evaluate(x, y, cache=cache, device=0)
        assert len(cache) == 0
        assert abs(first.data.sum() - net(x, y).data.sum()) < 1e-12
        fc.weights[:] = 0.0
        second = net.evaluate(x, y, cache=cache, device=0)
        assert abs(second.data.sum() - net(x, y).data.sum()) < 1e-12
        assert second.data.sum() != first.data.sum()
    print("  PASS")


def test_current_device_is_the_default():
    print("=== Test current device default ===")
    with dg.override(device_count=2):
        cache = DeviceBufferCache()
        src = np.arange(2.0)
        with cuda.device_ctx(1):
            cache.get(src)
            net, x, y = _regression()
            out = net.evaluate(x, y, cache=cache)
        assert (src, 1, dg.double) in cache
        assert (src, 0, dg.double) not in cache
        assert abs(out.data.sum() - net(x, y).data.sum()) < 1e-12
        cache.clear()
    print("  PASS")
