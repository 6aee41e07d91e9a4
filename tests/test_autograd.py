"""
Tests for Result liveness and the backward pass.
"""
import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import numpy as np
import pytest

import deltagrad as dg
import deltagrad.nn as nn
from deltagrad import (ConstantResult, MutableResult, DeltaSet, GradFn,
                       Result, ShapeMismatchError, NonFiniteError)


class CountingBackward(GradFn):
    __slots__ = ()

    def apply(self, deltas, error):
        self.layer.adjoint_calls += 1
        return tuple(error for _ in self.inputs)


class CountingLayer(nn.Layer):
    """Identity that counts forward and adjoint runs."""

    def __init__(self):
        super().__init__()
        self.forward_calls = 0
        self.adjoint_calls = 0

    def eval(self, *inputs, ctx=None):
        self.forward_calls += 1
        (inp,) = inputs
        return Result(inp.data, CountingBackward('CountingBackward', inputs, self))


def test_sum_scenario():
    """[1,2] + [3,4] reduced to one scalar; unit error reaches both inputs."""
    print("=== Test summation scenario ===")
    a = MutableResult(dg.batch([1.0, 2.0]))
    b = MutableResult(dg.batch([3.0, 4.0]))
    summed = nn.SumInputsLayer()(a, b)
    total = nn.SumReducerLayer()(summed)
    assert total.data[0].get(0) == 10.0

    deltas = total.accumulate(DeltaSet())
    assert np.allclose(deltas[a.key].delta, [1.0, 1.0])
    assert np.allclose(deltas[b.key].delta, [1.0, 1.0])
    print("  PASS")


def test_liveness_pruning():
    """No buffer and no adjoint for a branch that reaches no live state."""
    print("=== Test liveness pruning ===")
    dead = CountingLayer()
    const = ConstantResult(dg.batch([1.0, 2.0]))
    dead_out = dead(const)
    assert not dead_out.is_alive()

    live_in = MutableResult(dg.batch([5.0, 6.0]), key='x')
    out = nn.SumReducerLayer()(nn.SumInputsLayer()(dead_out, live_in))
    assert out.is_alive()

    deltas = out.accumulate(DeltaSet())
    assert dead.adjoint_calls == 0, "dead branch adjoint must not run"
    assert list(deltas.keys()) == ['x']
    print("  PASS")


def test_constant_graph_is_noop():
    print("=== Test constant-only backward ===")
    out = nn.SumReducerLayer()(ConstantResult(dg.batch([1.0, 2.0])))
    assert not out.is_alive()
    deltas = out.accumulate(DeltaSet())
    assert len(deltas) == 0
    print("  PASS")


def test_parameter_gradient_keyed_by_layer():
    print("=== Test parameter gradient key ===")
    bias = nn.BiasLayer(2)
    out = nn.SumReducerLayer()(bias(ConstantResult(dg.batch([1.0, 2.0], [3.0, 4.0]))))
    assert out.is_alive()
    deltas = out.accumulate(DeltaSet())
    buf = deltas[bias.id]
    assert buf.target is bias.bias
    assert buf.owner is bias
    assert np.allclose(buf.delta, [2.0, 2.0]), "two items each add 1"
    print("  PASS")


def test_fan_in_adjoint_runs_once():
    """A result consumed twice gets one summed error and one adjoint run."""
    print("=== Test fan-in summation ===")
    counter = CountingLayer()
    x = MutableResult(dg.batch([1.0, 2.0]), key='x')
    shared = counter(x)
    out = nn.SumReducerLayer()(nn.SumInputsLayer()(shared, shared))
    deltas = out.accumulate(DeltaSet())
    assert counter.adjoint_calls == 1
    assert np.allclose(deltas['x'].delta, [2.0, 2.0])
    print("  PASS")


def test_frozen_layer():
    """Frozen layers deposit nothing and only pass error to live inputs."""
    print("=== Test frozen layer policy ===")
    lin = nn.LinearActivationLayer(3.0, 1.0).freeze()
    const_out = lin(ConstantResult(dg.batch([2.0])))
    assert not const_out.is_alive()

    x = MutableResult(dg.batch([2.0]), key='x')
    out = nn.SumReducerLayer()(lin(x))
    deltas = out.accumulate(DeltaSet())
    assert lin.id not in deltas
    assert np.allclose(deltas['x'].delta, [3.0])

    lin.unfreeze()
    x = MutableResult(dg.batch([2.0]), key='x')
    deltas = nn.SumReducerLayer()(lin(x)).accumulate(DeltaSet())
    assert np.allclose(deltas[lin.id].delta, [2.0, 1.0])
    print("  PASS")


def test_saved_state_released():
    """A second backward over the same tape needs retain=True."""
    print("=== Test saved-state release ===")
    x = MutableResult(dg.batch([1.0, 2.0]), key='x')
    out = nn.SumReducerLayer()(nn.ActivationLayer('tanh')(x))
    out.accumulate(DeltaSet(), retain=True)
    deltas = out.accumulate(DeltaSet())
    assert 'x' in deltas
    with pytest.raises(RuntimeError):
        out.accumulate(DeltaSet())
    print("  PASS")


def test_error_validation():
    print("=== Test error signal validation ===")
    x = MutableResult(dg.batch([1.0, 2.0]), key='x')
    vec = nn.BiasLayer(2)(x)
    with pytest.raises(ShapeMismatchError):
        vec.accumulate(DeltaSet())  # not one scalar per item
    with pytest.raises(ShapeMismatchError):
        vec.accumulate(DeltaSet(), dg.batch([1.0, 1.0], [1.0, 1.0]))
    with pytest.raises(NonFiniteError):
        vec.accumulate(DeltaSet(), dg.batch([np.nan, 1.0]))

    deltas = vec.accumulate(DeltaSet(), dg.batch([2.0, -1.0]))
    assert np.allclose(deltas['x'].delta, [2.0, -1.0])
    print("  PASS")


def test_mutable_result_target():
    """Writing an input buffer moves the input tensors themselves."""
    print("=== Test MutableResult target ===")
    x = MutableResult(dg.batch([1.0, 2.0], [3.0, 4.0]), key='x')
    deltas = nn.SumReducerLayer()(x).accumulate(DeltaSet())
    assert deltas['x'].target is x.target
    deltas.write(-1.0)
    assert np.allclose(x.data.stack(), [[0.0, 1.0], [2.0, 3.0]])
    print("  PASS")
