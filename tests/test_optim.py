"""
Tests for deltagrad.optim: trainables, orientation, line search and the
training loop.
"""
import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import numpy as np
import pytest

import deltagrad as dg
import deltagrad.nn as nn
from deltagrad import (DeltaSet, StateSet, IterativeStopException,
                       NonFiniteError)
from deltagrad.optim import (
    PointSample, Trainable, BasicTrainable, SampledTrainable,
    ParallelTrainable, L12Normalizer, SimpleLineSearchCursor,
    FailsafeLineSearchCursor, QuadraticLineSearchCursor, GradientDescent,
    MomentumStrategy, LBFGS, QQN,
    StaticLearningRate, QuadraticSearch, ArmijoWolfeSearch,
    IterativeTrainer, TrainingMonitor,
)

TRUE_W = np.array([[1.0], [-2.0], [0.5]])


def _regression(rows=8):
    """Least-squares fit of a 3 -> 1 dense layer; the optimum has zero loss."""
    nn.init.manual_seed(7)
    net = nn.DAGNetwork(inputs=2)
    fc_node = net.add(nn.FullyConnectedLayer(3, 1), net.input(0))
    net.add(nn.MeanSqLossLayer(), fc_node, net.input(1))
    rng = np.random.default_rng(0)
    x = rng.normal(size=(rows, 3))
    return net, fc_node.layer, x, x @ TRUE_W


# ──────────────────────── PointSample ─────────────────────────────────

def test_point_sample():
    print("=== Test PointSample ===")
    w = np.array([1.0, 2.0])
    deltas = DeltaSet()
    deltas.get('w', w).accumulate([4.0, 8.0])
    sample = PointSample(deltas, StateSet.snapshot(deltas), 10.0, count=4)
    assert sample.mean == 2.5
    norm = sample.normalize()
    assert norm.sum == 2.5 and norm.count == 1
    assert np.allclose(norm.delta['w'].delta, [1.0, 2.0])
    assert norm.normalize() is norm

    merged = sample.add(sample)
    assert merged.sum == 20.0 and merged.count == 8
    assert np.allclose(merged.delta['w'].delta, [8.0, 16.0])
    assert sample.set_rate(0.5).applied_rate == 0.5
    assert sample.loss_sum == 10.0

    w[:] = [9.0, 9.0]
    sample.restore()
    assert np.allclose(w, [1.0, 2.0])
    print("  PASS")


# ──────────────────────── Trainables ──────────────────────────────────

def test_basic_trainable_matches_closed_form():
    print("=== Test BasicTrainable ===")
    net, fc, x, y = _regression()
    point = BasicTrainable(net, [x, y]).measure()
    resid = x @ fc.weights - y
    assert abs(point.sum - np.mean(resid[:, 0] ** 2)) < 1e-12
    grad = 2.0 * x.T @ resid / len(x)
    assert np.allclose(point.delta[fc.id].delta, grad.reshape(-1))
    assert point.count == 1
    print("  PASS")


def test_masked_input_gradient():
    """A masked data column gets its own buffer keyed 'input{i}'."""
    print("=== Test masked input ===")
    net, fc, x, y = _regression()
    point = BasicTrainable(net, [x, y], mask=[True, False]).measure()
    assert 'input0' in point.delta and 'input1' not in point.delta
    resid = x @ fc.weights - y
    expected = 2.0 * resid @ fc.weights.T / len(x)
    assert np.allclose(point.delta['input0'].delta, expected.reshape(-1))
    print("  PASS")


def test_sampled_trainable():
    print("=== Test SampledTrainable ===")
    net, fc, x, y = _regression()
    sampled = SampledTrainable(BasicTrainable(net, [x, y]), sample_size=4, seed=3)
    idx = np.sort(np.random.default_rng(3).choice(8, size=4, replace=False))
    expected = BasicTrainable(net, [x[idx], y[idx]]).measure()
    point = sampled.measure()
    assert len(sampled.inner) == 4
    assert abs(point.sum - expected.sum) < 1e-12
    assert sampled.reseed(5) is True
    assert sampled.seed == 5
    assert len(sampled.inner) == 4
    print("  PASS")


def test_parallel_trainable_matches_basic():
    print("=== Test ParallelTrainable ===")
    net, fc, x, y = _regression(rows=10)
    basic = BasicTrainable(net, [x, y]).measure()
    parallel = ParallelTrainable(net, [x, y], chunks=3).measure()
    assert abs(parallel.sum - basic.sum) < 1e-12
    assert parallel.delta.subtract(basic.delta).magnitude() < 1e-12
    print("  PASS")


def test_parallel_trainable_on_devices():
    """Chunks spread over two devices and free every device buffer."""
    print("=== Test ParallelTrainable on devices ===")
    with dg.override(device_count=2):
        net, fc, x, y = _regression(rows=10)
        basic = BasicTrainable(net, [x, y]).measure()
        trainable = ParallelTrainable(net, [x, y], devices=[0, 1], chunks=4)
        point = trainable.measure()
        assert abs(point.sum - basic.sum) < 1e-12
        assert len(trainable.cache) == 0
    print("  PASS")


def test_l12_normalizer():
    print("=== Test L12Normalizer ===")
    net, fc, x, y = _regression()
    basic = BasicTrainable(net, [x, y], mask=[True, False])
    plain = basic.measure()
    reg = L12Normalizer(basic, l1=0.1, l2=0.5).measure()
    w = fc.weights.reshape(-1)
    penalty = 0.1 * np.abs(w).sum() + 0.5 * np.dot(w, w)
    assert abs(reg.sum - plain.sum - penalty) < 1e-12
    extra = reg.delta[fc.id].delta - plain.delta[fc.id].delta
    assert np.allclose(extra, 0.1 * np.sign(w) + w)
    # data buffers are not penalized
    assert np.allclose(reg.delta['input0'].delta, plain.delta['input0'].delta)
    print("  PASS")


# ──────────────────────── Cursors ─────────────────────────────────────

def test_cursor_step_and_reset():
    print("=== Test SimpleLineSearchCursor ===")
    net, fc, x, y = _regression()
    trainable = BasicTrainable(net, [x, y])
    origin = trainable.measure()
    w0 = fc.weights.copy()
    grad = origin.delta[fc.id].delta.copy()

    cursor = GradientDescent().orient(trainable, origin)
    assert cursor.direction_type == 'GD'
    start = cursor.origin_point()
    assert abs(start.derivative + np.dot(grad, grad)) < 1e-12

    p = cursor.step(0.01)
    assert np.allclose(fc.weights.reshape(-1), w0.reshape(-1) - 0.01 * grad)
    assert p.rate == 0.01 and p.sum < origin.sum
    assert np.allclose(cursor.position(0.01)[fc.id].delta, -0.01 * grad)
    cursor.reset()
    assert np.array_equal(fc.weights, w0)
    print("  PASS")


def test_lbfgs_history_includes_line_search_points():
    print("=== Test LBFGS history ===")
    net, fc, x, y = _regression()
    trainable = BasicTrainable(net, [x, y])
    origin = trainable.measure()
    lbfgs = LBFGS()
    cursor = lbfgs.orient(trainable, origin)
    assert len(lbfgs.history) == 1
    cursor.step(0.01)
    cursor.step(0.02)
    assert len(lbfgs.history) == 3
    assert lbfgs.history[-1].rate == 0.02
    cursor.reset()
    print("  PASS")


def test_quadratic_cursor_path():
    """The path starts along the gradient and ends at the quasi-Newton step."""
    print("=== Test QuadraticLineSearchCursor ===")
    net, fc, x, y = _regression()
    trainable = BasicTrainable(net, [x, y])
    origin = trainable.measure()
    w0 = fc.weights.copy()
    grad = origin.delta.scale(-1.0)
    qn = origin.delta.map(lambda d: -0.5 * d[::-1])
    seen = []
    cursor = QuadraticLineSearchCursor(trainable, origin, grad, qn,
                                       observer=seen.append)
    assert cursor.direction_type == 'QQN'
    assert cursor.position(0.0).magnitude() == 0.0
    assert np.allclose(cursor.position(1.0)[fc.id].delta, qn[fc.id].delta)
    assert np.allclose(cursor.tangent(0.0)[fc.id].delta, grad[fc.id].delta)
    assert abs(cursor.origin_point().derivative - origin.delta.dot(grad)) < 1e-12

    t = 0.3
    p = cursor.step(t)
    expected = w0.reshape(-1) + grad[fc.id].delta * (t - t * t) \
        + qn[fc.id].delta * t * t
    assert np.allclose(fc.weights.reshape(-1), expected)
    tangent = grad.scale(1 - 2 * t).add(qn.scale(2 * t))
    assert abs(p.derivative - p.point.delta.dot(tangent)) < 1e-12
    assert seen == [p.point]
    with pytest.raises(ValueError):
        cursor.step(float('nan'))
    cursor.reset()
    assert np.array_equal(fc.weights, w0)
    print("  PASS")


class _ExplodingTrainable(Trainable):
    """Raises NonFiniteError whenever the weights have moved."""

    def __init__(self, inner, weights):
        self.inner = inner
        self.weights = weights
        self.start = weights.copy()

    def measure(self, monitor=None):
        if not np.array_equal(self.weights, self.start):
            raise NonFiniteError("diverged")
        return self.inner.measure(monitor)


def test_failsafe_cursor_backs_off_non_finite_point():
    print("=== Test FailsafeLineSearchCursor ===")
    net, fc, x, y = _regression()
    subject = _ExplodingTrainable(BasicTrainable(net, [x, y]), fc.weights)
    origin = subject.measure()
    cursor = FailsafeLineSearchCursor(GradientDescent().orient(subject, origin))
    p = cursor.step(1.0)
    assert not p.is_finite()
    assert p.sum == float('inf')
    settled = cursor.settle(p)
    assert settled is origin
    assert np.array_equal(fc.weights, subject.start)
    print("  PASS")


# ──────────────────────── Training loop ───────────────────────────────

class _FlakyTrainable(Trainable):
    """Reports a NaN loss for the first ``failures`` measurements."""

    def __init__(self, failures, reseedable=True, raise_error=False):
        self.failures = failures
        self.reseedable = reseedable
        self.raise_error = raise_error
        self.calls = 0
        self.seeds = []

    def measure(self, monitor=None):
        self.calls += 1
        if self.calls <= self.failures:
            if self.raise_error:
                raise NonFiniteError("nan gradient")
            return PointSample(DeltaSet(), StateSet(), float('nan'))
        return PointSample(DeltaSet(), StateSet(), 1.0)

    def reseed(self, seed):
        self.seeds.append(seed)
        return self.reseedable


def test_retry_budget_exhausted():
    print("=== Test retry budget ===")
    flaky = _FlakyTrainable(failures=100)
    trainer = IterativeTrainer(flaky, max_retries=3, seed=0)
    with pytest.raises(IterativeStopException):
        trainer.measure()
    assert flaky.calls == 4
    assert len(flaky.seeds) == 3
    assert len(set(flaky.seeds)) == 3, "each retry draws a new seed"

    with dg.override(max_retries=1):
        flaky = _FlakyTrainable(failures=100, raise_error=True)
        with pytest.raises(IterativeStopException):
            IterativeTrainer(flaky).run()
        assert flaky.calls == 2
    print("  PASS")


def test_retry_recovers():
    print("=== Test retry recovery ===")
    flaky = _FlakyTrainable(failures=2)
    point = IterativeTrainer(flaky, max_retries=5).measure()
    assert point.sum == 1.0
    assert flaky.calls == 3 and len(flaky.seeds) == 2

    fixed = _FlakyTrainable(failures=100, reseedable=False)
    with pytest.raises(IterativeStopException, match='reseeded'):
        IterativeTrainer(fixed, max_retries=5).measure()
    assert fixed.calls == 2
    print("  PASS")


def _train(line_search, orientation=None, iterations=10, **kwargs):
    net, fc, x, y = _regression()
    trainable = BasicTrainable(net, [x, y])
    start = trainable.measure().sum
    messages = []
    trainer = IterativeTrainer(
        trainable, orientation=orientation or GradientDescent(),
        line_search=lambda kind: line_search,
        monitor=TrainingMonitor(log=messages.append),
        max_iterations=iterations, **kwargs)
    final = trainer.run()
    # the weights are left at the reported point
    assert abs(trainable.measure().sum - final) < 1e-12
    return start, final, trainer, messages


@pytest.mark.parametrize('search', [
    lambda: StaticLearningRate(rate=0.05),
    lambda: QuadraticSearch(),
    lambda: ArmijoWolfeSearch(),
])
def test_line_searches_reduce_loss(search):
    print("=== Test line search reduces loss ===")
    start, final, trainer, _ = _train(search())
    print(f"  {start:.6g} -> {final:.6g}")
    assert final < start
    assert len(trainer.history) >= 1
    sums = [step.point.sum for step in trainer.history]
    assert all(b < a for a, b in zip(sums, sums[1:])), "loss must decrease"


def test_momentum_reduces_loss():
    print("=== Test MomentumStrategy ===")
    start, final, _, _ = _train(ArmijoWolfeSearch(),
                                orientation=MomentumStrategy(carry_over=0.1))
    assert final < start


def test_lbfgs_converges():
    print("=== Test LBFGS ===")
    start, final, trainer, messages = _train(ArmijoWolfeSearch(),
                                             orientation=LBFGS(),
                                             iterations=50)
    print(f"  {start:.6g} -> {final:.6g} in {len(trainer.history)} steps")
    assert final < 1e-4 * start
    assert any('via GD' in m for m in messages)
    assert any('via LBFGS' in m for m in messages)


def test_qqn_converges():
    print("=== Test QQN ===")
    start, final, trainer, messages = _train(ArmijoWolfeSearch(),
                                             orientation=QQN(),
                                             iterations=50)
    print(f"  {start:.6g} -> {final:.6g} in {len(trainer.history)} steps")
    assert final < 1e-4 * start
    assert any('via GD' in m for m in messages)
    assert any('Quadratic cursor' in m for m in messages)
    assert any('via QQN' in m for m in messages)


def test_monitor_and_stop_conditions():
    print("=== Test monitor callbacks and stop conditions ===")
    net, fc, x, y = _regression()
    trainable = BasicTrainable(net, [x, y])
    steps = []
    trainer = IterativeTrainer(
        trainable, orientation=GradientDescent(),
        monitor=TrainingMonitor(on_step_complete=steps.append),
        max_iterations=3)
    trainer.run()
    assert steps == trainer.history
    assert [s.iteration for s in steps] == list(range(1, len(steps) + 1))

    w = fc.weights.copy()
    idle = IterativeTrainer(trainable, terminate_threshold=float('inf'))
    idle.run()
    assert idle.history == []
    assert np.array_equal(fc.weights, w)

    timed = IterativeTrainer(trainable, timeout=0.0)
    timed.run()
    assert timed.history == []
    print("  PASS")
