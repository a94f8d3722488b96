#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Pyramid-Level Optimizer
=======================

Gauss-Newton with Levenberg-Marquardt fallback at one pyramid level.

State machine:
    Start -> Iterate -> CONVERGED | MAX_ITER_REACHED | DIVERGED

Iterate:
    1. solve (H + mu diag(H)) dxi = -b at the current pose
    2. candidate = exp(dxi) @ pose
    3. linearize at the candidate
    4. accept if its mean robust cost is not larger and it keeps enough of
       the current correspondences; relax mu
       otherwise keep the pose and grow mu (x10)

Every attempt counts toward the iteration budget, so the loop is bounded.
The cost of accepted iterations is non-increasing.

DIVERGED (singular system, or too few correspondences at the incoming
pose) returns the incoming pose; the driver carries it to the next level.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List

import numpy as np

from .exceptions import InsufficientCorrespondenceError, SingularSystemError
from .math_utils import compose_left
from .normal_equations import solve_normal_equations

# First damping value after a rejected step, and the value below which
# damping is dropped again (pure Gauss-Newton)
INITIAL_DAMPING = 1e-4
MIN_DAMPING = 1e-6

# Share of the current correspondences an accepted candidate must keep
MIN_OVERLAP_RETENTION = 0.5


class LevelOutcome(Enum):
    CONVERGED = "converged"
    MAX_ITER_REACHED = "max_iter_reached"
    DIVERGED = "diverged"


@dataclass
class LevelResult:
    """Outcome of one pyramid level."""
    level: int
    outcome: LevelOutcome
    pose: np.ndarray
    iterations: int = 0
    cost_history: List[float] = field(default_factory=list)
    valid_fraction: float = 0.0
    reason: str = ""

    @property
    def diverged(self) -> bool:
        return self.outcome is LevelOutcome.DIVERGED


def optimize_level(builder, initial_pose: np.ndarray, max_iterations: int,
                   option, level: int = 0) -> LevelResult:
    """
    Refine `initial_pose` at one pyramid level.

    Args:
        builder: SystemBuilder of this level
        initial_pose: 4x4 incoming estimate (not modified)
        max_iterations: Iteration budget of this level
        option: OdometryOption (tolerances, damping ceiling, verbosity)
        level: Pyramid index, for reporting

    Returns:
        LevelResult
    """
    pose = np.array(initial_pose, dtype=float, copy=True)

    try:
        system = builder.build(pose)
    except InsufficientCorrespondenceError as e:
        if option.verbose:
            print(f"[LEVEL] L{level}: diverged at start ({e})")
        return LevelResult(level, LevelOutcome.DIVERGED, pose,
                           reason=f"insufficient_correspondence: {e}")

    history = [system.mean_cost]
    damping = 0.0
    outcome = LevelOutcome.MAX_ITER_REACHED
    reason = "max_iterations"
    iterations = 0

    while iterations < max_iterations:
        iterations += 1
        try:
            delta = solve_normal_equations(system.H, system.b, damping,
                                           option.singular_tolerance)
        except SingularSystemError as e:
            if option.verbose:
                print(f"[LEVEL] L{level} iter {iterations}: singular system ({e})")
            return LevelResult(level, LevelOutcome.DIVERGED,
                               np.array(initial_pose, dtype=float, copy=True),
                               iterations=iterations, cost_history=history,
                               valid_fraction=system.valid_fraction,
                               reason=f"singular_system: {e}")

        step = float(np.linalg.norm(delta))
        candidate = compose_left(pose, delta)
        try:
            cand_system = builder.build(candidate)
        except InsufficientCorrespondenceError:
            cand_system = None

        accepted = (cand_system is not None
                    and cand_system.mean_cost <= system.mean_cost
                    and cand_system.num_valid >= MIN_OVERLAP_RETENTION * system.num_valid)
        if option.verbose:
            cand_cost = float("nan") if cand_system is None else cand_system.mean_cost
            print(f"[LEVEL] L{level} iter {iterations}: cost={system.mean_cost:.6e} "
                  f"-> {cand_cost:.6e} |dxi|={step:.3e} mu={damping:.1e} "
                  f"{'accept' if accepted else 'reject'}")

        if accepted:
            rel_decrease = (system.mean_cost - cand_system.mean_cost) / max(system.mean_cost, 1e-300)
            pose, system = candidate, cand_system
            history.append(system.mean_cost)
            damping = damping / 10.0 if damping > MIN_DAMPING else 0.0
            if rel_decrease < option.relative_cost_tolerance or step < option.update_tolerance:
                outcome = LevelOutcome.CONVERGED
                reason = "cost_converged" if rel_decrease < option.relative_cost_tolerance \
                    else "update_converged"
                break
        else:
            if step < option.update_tolerance:
                outcome = LevelOutcome.CONVERGED
                reason = "update_converged"
                break
            damping = max(damping * 10.0, INITIAL_DAMPING)
            if damping > option.max_damping:
                outcome = LevelOutcome.CONVERGED
                reason = "damping_limit"
                break

    return LevelResult(level, outcome, pose, iterations=iterations,
                       cost_history=history, valid_fraction=system.valid_fraction,
                       reason=reason)
