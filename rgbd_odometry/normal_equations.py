#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Linear System Accumulator and Solver
====================================

Reduces per-pixel (Jacobian, residual) rows into the Gauss-Newton normal
equations

    H = sum_i  lam_i * w(r_i) * J_i^T J_i        (6x6)
    b = sum_i  lam_i * w(r_i) * J_i^T r_i        (6,)

where lam is the fixed per-term weight and w the IRLS weight of the robust
loss, evaluated on the unscaled residual (so H is linear in lam).

The image is cut into fixed bands of target rows. Each band produces its
own partial system, and partial systems are merged in band order, so the
sum does not depend on how many worker threads ran the bands.
"""

from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np
import scipy.linalg as linalg

from .correspondence import compute_correspondences
from .exceptions import InsufficientCorrespondenceError, SingularSystemError

# Rank floor: fewer rows than unknowns can never give a regular system
MIN_CORRESPONDENCES = 6


# =============================================================================
# Robust loss (IRLS weights w = rho'(r) / 2r, cost rho with rho(r) = r^2 for "none")
# =============================================================================

def robust_weights(r: np.ndarray, loss: str, scale) -> np.ndarray:
    """IRLS weights for residuals `r` (scale broadcasts against r)."""
    if loss == "none":
        return np.ones_like(r)
    a = np.abs(r)
    if loss == "huber":
        with np.errstate(divide="ignore", invalid="ignore"):
            return np.where(a <= scale, 1.0, scale / a)
    if loss == "tukey":
        u = (r / scale) ** 2
        return np.where(u <= 1.0, (1.0 - u) ** 2, 0.0)
    raise ValueError(f"Unknown robust loss '{loss}'")


def robust_cost(r: np.ndarray, loss: str, scale) -> np.ndarray:
    """Per-residual robust cost rho(r)."""
    if loss == "none":
        return r * r
    a = np.abs(r)
    if loss == "huber":
        return np.where(a <= scale, r * r, 2.0 * scale * a - scale * scale)
    if loss == "tukey":
        c2 = np.broadcast_to(np.asarray(scale, dtype=float) ** 2, np.shape(r))
        u = np.minimum((r * r) / c2, 1.0)
        return c2 / 3.0 * (1.0 - (1.0 - u) ** 3)
    raise ValueError(f"Unknown robust loss '{loss}'")


# =============================================================================
# Normal equations
# =============================================================================

@dataclass
class NormalEquations:
    """Accumulated H, b and robust cost of one linearization."""
    H: np.ndarray = field(default_factory=lambda: np.zeros((6, 6)))
    b: np.ndarray = field(default_factory=lambda: np.zeros(6))
    cost: float = 0.0
    num_valid: int = 0
    num_total: int = 0

    def accumulate(self, J: np.ndarray, r: np.ndarray, lam: np.ndarray,
                   scales: np.ndarray, loss: str) -> "NormalEquations":
        """
        Add N correspondences.

        Args:
            J: (N, rows, 6) Jacobians
            r: (N, rows) residuals
            lam: (rows,) fixed weights
            scales: (rows,) robust loss scales
            loss: "none" | "huber" | "tukey"
        """
        if r.shape[0] == 0:
            return self
        w = robust_weights(r, loss, scales[None, :]) * lam[None, :]
        Jw = J * w[..., None]
        self.H += np.einsum('nri,nrj->ij', Jw, J)
        self.b += np.einsum('nri,nr->i', Jw, r)
        self.cost += float(np.sum(robust_cost(r, loss, scales[None, :]) * lam[None, :]))
        self.num_valid += int(r.shape[0])
        return self

    def merge(self, other: "NormalEquations") -> "NormalEquations":
        """Sum of two partial systems (new object)."""
        return NormalEquations(
            H=self.H + other.H,
            b=self.b + other.b,
            cost=self.cost + other.cost,
            num_valid=self.num_valid + other.num_valid,
            num_total=self.num_total + other.num_total,
        )

    @property
    def mean_cost(self) -> float:
        """Robust cost per valid correspondence."""
        if self.num_valid == 0:
            return float("inf")
        return self.cost / self.num_valid

    @property
    def valid_fraction(self) -> float:
        return self.num_valid / max(self.num_total, 1)

    def information_matrix(self) -> np.ndarray:
        """Undamped H, symmetrized."""
        return 0.5 * (self.H + self.H.T)


def solve_normal_equations(H: np.ndarray, b: np.ndarray, damping: float = 0.0,
                           singular_tolerance: float = 1e-12) -> np.ndarray:
    """
    Solve (H + damping * diag(H)) dxi = -b.

    Raises:
        SingularSystemError: non-finite system, eigenvalue floor violated
            (lambda_min <= tol * lambda_max) or Cholesky failure
    """
    if not (np.all(np.isfinite(H)) and np.all(np.isfinite(b))):
        raise SingularSystemError("Normal equations contain NaN/inf")

    A = 0.5 * (H + H.T)
    if damping > 0:
        A = A + damping * np.diag(np.diag(A))

    eigvals = np.linalg.eigvalsh(A)
    lambda_min, lambda_max = eigvals[0], eigvals[-1]
    if lambda_max <= 0 or lambda_min <= singular_tolerance * lambda_max:
        raise SingularSystemError(
            f"H not positive definite (lambda_min={lambda_min:.3e}, lambda_max={lambda_max:.3e})")

    try:
        c, lower = linalg.cho_factor(A)
        return -linalg.cho_solve((c, lower), b)
    except np.linalg.LinAlgError as e:
        raise SingularSystemError(f"Cholesky failed: {e}") from e


# =============================================================================
# Partitioned system builder
# =============================================================================

class SystemBuilder:
    """
    Builds the normal equations of one pyramid level at a given pose.

    Holds only read-only references (levels, residual term, option) and an
    optional executor; nothing is written between calls.
    """

    def __init__(self, source_level, target_level, term, option,
                 executor: Optional[Executor] = None):
        self.source = source_level
        self.target = target_level
        self.term = term
        self.option = option
        self.executor = executor
        step = int(option.rows_per_partition)
        height = target_level.height
        self.bands: List[Tuple[int, int]] = [
            (r, min(r + step, height)) for r in range(0, height, step)
        ]

    def build_band(self, pose: np.ndarray, band: Tuple[int, int]) -> NormalEquations:
        corr = compute_correspondences(
            pose, self.source, self.target, self.option, rows=band,
            require_depth_gradient=self.term.uses_depth_gradient)
        system = NormalEquations(num_total=corr.num_total)
        if corr.size == 0:
            return system
        J, r = self.term.compute(corr, self.source.intrinsics)
        return system.accumulate(J, r, self.term.lam, self.term.scales, self.option.robust_loss)

    def build(self, pose: np.ndarray, check_overlap: bool = True) -> NormalEquations:
        """
        Linearize at `pose`.

        Raises:
            InsufficientCorrespondenceError: if check_overlap and the valid
                fraction is below option.min_correspondence_fraction
        """
        if self.executor is None:
            partials = [self.build_band(pose, band) for band in self.bands]
        else:
            partials = list(self.executor.map(lambda band: self.build_band(pose, band),
                                              self.bands))

        system = NormalEquations()
        for partial in partials:
            system = system.merge(partial)

        if check_overlap and (system.num_valid < MIN_CORRESPONDENCES
                              or system.valid_fraction < self.option.min_correspondence_fraction):
            raise InsufficientCorrespondenceError(
                system.num_valid, system.num_total, self.option.min_correspondence_fraction)
        return system
