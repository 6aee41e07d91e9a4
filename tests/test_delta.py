"""
Tests for DeltaBuffer, DeltaSet and StateSet.
"""
import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import threading

import numpy as np
import pytest

import deltagrad as dg
from deltagrad import (DeltaBuffer, DeltaSet, StateSet, ShapeMismatchError,
                       NonFiniteError)


def test_buffer_starts_at_zero():
    """A new buffer's delta is zero and as long as its target."""
    print("=== Test DeltaBuffer zero init ===")
    target = np.array([1.0, 2.0, 3.0])
    buf = DeltaBuffer('w', target)
    assert buf.length == 3
    assert np.all(buf.delta == 0.0)
    assert buf.target is target
    print("  PASS")


def test_accumulate():
    print("=== Test DeltaBuffer.accumulate ===")
    buf = DeltaBuffer('w', np.zeros(3))
    buf.accumulate([1.0, 2.0, 3.0]).accumulate([1.0, 1.0, 1.0])
    assert np.allclose(buf.delta, [2.0, 3.0, 4.0])

    with pytest.raises(ShapeMismatchError):
        buf.accumulate([1.0, 2.0])
    with pytest.raises(NonFiniteError):
        buf.accumulate([1.0, np.nan, 0.0])
    with dg.override(check_finite=False):
        buf.accumulate([0.0, np.inf, 0.0])
    assert np.isinf(buf.delta[1])
    print("  PASS")


def test_concurrent_accumulate():
    """Deposits from many threads into one buffer are never lost."""
    print("=== Test concurrent accumulate ===")
    buf = DeltaBuffer('w', np.zeros(4))
    ones = np.ones(4)

    def worker():
        for _ in range(500):
            buf.accumulate(ones)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert np.allclose(buf.delta, 4000.0), f"got {buf.delta}"
    print("  PASS")


def test_write_and_overwrite_round_trip():
    """write moves the target by factor * delta; a snapshot restores it."""
    print("=== Test write/overwrite round trip ===")
    weights = np.array([1.0, 2.0, 3.0])
    deltas = DeltaSet()
    deltas.get('w', weights).accumulate([0.5, 0.5, 0.5])
    saved = StateSet.snapshot(deltas)

    deltas.write(2.0)
    assert np.allclose(weights, [2.0, 3.0, 4.0])
    deltas.write(-1.0)
    assert np.allclose(weights, [1.5, 2.5, 3.5])

    saved.overwrite()
    assert np.allclose(weights, [1.0, 2.0, 3.0])
    print("  PASS")


def test_map_and_scale_leave_receiver():
    print("=== Test map/scale purity ===")
    target = np.zeros(2)
    buf = DeltaBuffer('w', target, delta=[1.0, -2.0])
    doubled = buf.scale(2.0)
    squared = buf.map(np.square)
    assert np.allclose(buf.delta, [1.0, -2.0])
    assert np.allclose(doubled.delta, [2.0, -4.0])
    assert np.allclose(squared.delta, [1.0, 4.0])
    assert doubled.target is target and squared.target is target
    print("  PASS")


def test_dot_requires_same_target():
    print("=== Test DeltaBuffer.dot ===")
    target = np.zeros(3)
    a = DeltaBuffer('w', target, delta=[1.0, 2.0, 3.0])
    b = DeltaBuffer('w', target, delta=[1.0, 1.0, 1.0])
    assert a.dot(b) == 6.0
    other = DeltaBuffer('w', np.zeros(3), delta=[1.0, 1.0, 1.0])
    with pytest.raises(ShapeMismatchError):
        a.dot(other)
    print("  PASS")


def test_set_get_is_idempotent():
    """Repeated gets return one buffer; the first target wins."""
    print("=== Test DeltaSet.get ===")
    first, second = np.zeros(2), np.ones(2)
    deltas = DeltaSet()
    buf = deltas.get('k', first)
    assert deltas.get('k', second) is buf
    assert buf.target is first
    assert deltas.get('k') is buf
    with pytest.raises(ShapeMismatchError):
        deltas.get('missing')
    print("  PASS")


def test_concurrent_get_creates_once():
    print("=== Test concurrent DeltaSet.get ===")
    deltas = DeltaSet()
    target = np.zeros(3)
    barrier = threading.Barrier(8)
    seen = []

    def worker():
        barrier.wait()
        buf = deltas.get('k', target)
        buf.accumulate(np.ones(3))
        seen.append(buf)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(deltas) == 1
    assert all(b is seen[0] for b in seen)
    assert np.allclose(deltas['k'].delta, 8.0)
    print("  PASS")


def test_set_algebra():
    """add passes single-operand keys through; magnitude and dot follow."""
    print("=== Test DeltaSet algebra ===")
    wa, wb, wc = np.zeros(2), np.zeros(1), np.zeros(1)
    left = DeltaSet()
    left.get('a', wa).accumulate([3.0, 0.0])
    left.get('b', wb).accumulate([4.0])
    right = DeltaSet()
    right.get('a', wa).accumulate([1.0, 1.0])
    right.get('c', wc).accumulate([2.0])

    total = left.add(right)
    assert set(total.keys()) == {'a', 'b', 'c'}
    assert np.allclose(total['a'].delta, [4.0, 1.0])
    assert np.allclose(total['c'].delta, [2.0])
    assert np.allclose(left['a'].delta, [3.0, 0.0]), "receiver must not change"

    assert left.magnitude() == 5.0
    assert left.dot(right) == 3.0
    assert np.allclose(left.subtract(right)['a'].delta, [2.0, -1.0])
    assert left.scale(2.0).sum() == 14.0
    assert abs(left.unit().magnitude() - 1.0) < 1e-12
    assert DeltaSet().unit().magnitude() == 0.0
    print("  PASS")


def test_is_different():
    print("=== Test DeltaSet.is_different ===")
    w = np.zeros(2)
    a = DeltaSet()
    a.get('w', w).accumulate([1.0, 2.0])
    b = a.copy()
    assert not a.is_different(b)
    b['w'].accumulate([0.0, 1.0])
    assert a.is_different(b)
    print("  PASS")
