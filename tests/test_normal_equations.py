from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from rgbd_odometry.config import OdometryOption
from rgbd_odometry.exceptions import (InsufficientCorrespondenceError,
                                      SingularSystemError)
from rgbd_odometry.image_pyramid import build_pyramid
from rgbd_odometry.jacobians import HybridTerm
from rgbd_odometry.level_optimizer import LevelOutcome, optimize_level
from rgbd_odometry.math_utils import se3_exp, transform_error
from rgbd_odometry.normal_equations import (NormalEquations, SystemBuilder,
                                            robust_cost, robust_weights,
                                            solve_normal_equations)


def _make_option(**kwargs):
    kwargs.setdefault("max_depth_difference", 0.07)
    return OdometryOption(**kwargs)


def _make_builder(moved_pair, level=0, executor=None, **kwargs):
    source, target, intr, _ = moved_pair
    option = _make_option(**kwargs)
    sp = build_pyramid(source, intr, option.num_levels)
    tp = build_pyramid(target, intr, option.num_levels)
    return SystemBuilder(sp[level], tp[level], HybridTerm(option), option, executor), option


# ---------------------------------------------------------------------------
# Robust loss
# ---------------------------------------------------------------------------

def test_huber_weights_and_cost():
    r = np.array([0.0, 0.05, -0.1, 0.4])
    w = robust_weights(r, "huber", 0.1)
    assert np.allclose(w, [1.0, 1.0, 1.0, 0.25])
    rho = robust_cost(r, "huber", 0.1)
    assert np.allclose(rho[:3], r[:3] ** 2)
    assert np.isclose(rho[3], 2 * 0.1 * 0.4 - 0.01)


def test_tukey_rejects_large_residuals():
    r = np.array([0.0, 0.05, 0.2])
    w = robust_weights(r, "tukey", 0.1)
    assert w[0] == 1.0 and 0.0 < w[1] < 1.0 and w[2] == 0.0
    rho = robust_cost(r, "tukey", 0.1)
    assert np.isclose(rho[2], 0.01 / 3.0)


def test_robust_weight_is_cost_derivative():
    r = np.linspace(-0.3, 0.3, 13)
    r = r[r != 0]
    eps = 1e-7
    for loss in ("none", "huber", "tukey"):
        d_rho = (robust_cost(r + eps, loss, 0.1) - robust_cost(r - eps, loss, 0.1)) / (2 * eps)
        assert np.allclose(robust_weights(r, loss, 0.1), d_rho / (2 * r), atol=1e-5)


def test_unknown_loss_raises():
    with pytest.raises(ValueError):
        robust_weights(np.zeros(3), "cauchy", 1.0)


# ---------------------------------------------------------------------------
# Accumulator
# ---------------------------------------------------------------------------

def test_accumulate_matches_dense_formula():
    rng = np.random.default_rng(1)
    J = rng.normal(size=(50, 1, 6))
    r = rng.normal(scale=0.01, size=(50, 1))
    eq = NormalEquations().accumulate(J, r, np.array([2.0]), np.array([1.0]), "none")
    Jm = J[:, 0, :]
    assert np.allclose(eq.H, 2.0 * Jm.T @ Jm)
    assert np.allclose(eq.b, 2.0 * Jm.T @ r[:, 0])
    assert np.isclose(eq.cost, 2.0 * np.sum(r ** 2))
    assert eq.num_valid == 50


def test_merge_is_order_independent():
    rng = np.random.default_rng(2)
    parts = []
    for _ in range(4):
        J = rng.normal(size=(20, 2, 6))
        r = rng.normal(size=(20, 2))
        parts.append(NormalEquations(num_total=30).accumulate(
            J, r, np.array([0.5, 1.5]), np.array([0.3, 0.3]), "huber"))
    forward = NormalEquations()
    for p in parts:
        forward = forward.merge(p)
    backward = NormalEquations()
    for p in reversed(parts):
        backward = backward.merge(p)
    assert np.allclose(forward.H, backward.H)
    assert np.allclose(forward.b, backward.b)
    assert forward.num_valid == 80 and forward.num_total == 120
    assert np.isclose(forward.valid_fraction, 80 / 120)


def test_empty_system_mean_cost_is_infinite():
    assert NormalEquations().mean_cost == float("inf")


def test_partitioning_and_workers_do_not_change_system(moved_pair):
    pose = np.eye(4)
    serial, _ = _make_builder(moved_pair, rows_per_partition=32)
    fine_bands, _ = _make_builder(moved_pair, rows_per_partition=7)
    with ThreadPoolExecutor(max_workers=4) as pool:
        parallel, _ = _make_builder(moved_pair, executor=pool, rows_per_partition=32)
        a = serial.build(pose)
        c = parallel.build(pose)
    b = fine_bands.build(pose)
    assert np.array_equal(a.H, c.H) and np.array_equal(a.b, c.b)
    assert np.allclose(a.H, b.H, rtol=1e-10) and np.allclose(a.b, b.b, rtol=1e-10, atol=1e-14)
    assert a.num_valid == b.num_valid == c.num_valid


def test_builder_raises_on_insufficient_overlap(moved_pair):
    builder, _ = _make_builder(moved_pair, min_correspondence_fraction=0.99)
    with pytest.raises(InsufficientCorrespondenceError) as exc:
        builder.build(np.eye(4))
    assert exc.value.num_total == builder.target.num_pixels
    # the unchecked build still reports the counts
    system = builder.build(np.eye(4), check_overlap=False)
    assert 0 < system.valid_fraction < 0.99


# ---------------------------------------------------------------------------
# Solver
# ---------------------------------------------------------------------------

def test_solve_normal_equations():
    rng = np.random.default_rng(3)
    A = rng.normal(size=(20, 6))
    H = A.T @ A
    b = rng.normal(size=6)
    assert np.allclose(solve_normal_equations(H, b), -np.linalg.solve(H, b))
    damped = solve_normal_equations(H, b, damping=0.5)
    assert np.allclose(damped, -np.linalg.solve(H + 0.5 * np.diag(np.diag(H)), b))


def test_solve_singular_system_raises():
    H = np.eye(6)
    H[5, 5] = 0.0
    with pytest.raises(SingularSystemError):
        solve_normal_equations(H, np.ones(6))
    with pytest.raises(SingularSystemError):
        solve_normal_equations(np.zeros((6, 6)), np.zeros(6))
    bad = np.eye(6)
    bad[0, 0] = np.nan
    with pytest.raises(np.linalg.LinAlgError):
        solve_normal_equations(bad, np.ones(6))


# ---------------------------------------------------------------------------
# Level optimizer
# ---------------------------------------------------------------------------

def test_level_cost_is_non_increasing(moved_pair):
    builder, option = _make_builder(moved_pair)
    result = optimize_level(builder, np.eye(4), 15, option)
    assert result.outcome is not LevelOutcome.DIVERGED
    assert len(result.cost_history) >= 2
    assert all(b <= a for a, b in zip(result.cost_history, result.cost_history[1:]))
    assert result.cost_history[-1] < result.cost_history[0]
    assert result.iterations <= 15


def test_level_recovers_motion(moved_pair):
    _, _, _, T_true = moved_pair
    builder, option = _make_builder(moved_pair, level=1)
    result = optimize_level(builder, np.eye(4), 30, option, level=1)
    rot, trans = transform_error(T_true, result.pose)
    assert trans < 0.01 and rot < 0.01


def test_level_diverges_without_overlap_and_keeps_pose(moved_pair):
    builder, option = _make_builder(moved_pair, min_correspondence_fraction=0.99)
    start = se3_exp(np.array([0.0, 0.0, 0.0, 0.01, 0.0, 0.0]))
    result = optimize_level(builder, start, 10, option)
    assert result.diverged
    assert result.reason.startswith("insufficient_correspondence")
    assert np.array_equal(result.pose, start)
    assert result.pose is not start


class _ShrinkingOverlapBuilder:
    """Any move away from identity lowers the mean cost but loses most pixels."""

    def build(self, pose):
        if np.allclose(pose, np.eye(4)):
            return NormalEquations(H=np.eye(6), b=np.ones(6), cost=1000.0,
                                   num_valid=1000, num_total=2000)
        return NormalEquations(H=np.eye(6), b=np.zeros(6), cost=10.0,
                               num_valid=100, num_total=2000)


def test_step_losing_overlap_is_rejected():
    result = optimize_level(_ShrinkingOverlapBuilder(), np.eye(4), 5, _make_option())
    assert result.outcome is LevelOutcome.MAX_ITER_REACHED
    assert result.iterations == 5
    assert np.array_equal(result.pose, np.eye(4))
    assert result.cost_history == [1.0]
    assert result.valid_fraction == 0.5
