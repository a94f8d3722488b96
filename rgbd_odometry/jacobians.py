#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Residual & Jacobian Builder
===========================

Three interchangeable residual formulations, picked once per odometry
call and evaluated vectorized over all correspondences of a partition:

- IntensityTerm: r = I_s(pi(P)) - I_t(u_t)
- DepthTerm:     r = Z(P) - D_s(pi(P))
- HybridTerm:    both rows stacked (default)

Derivatives are analytic. With the left-perturbation convention of
math_utils (P' = exp(xi) P):

    dP/dxi   = [ -[P]x | I ]                             (3x6)
    dpi/dP   = [ fx/Z   0    -fx X/Z^2 ]
               [ 0      fy/Z -fy Y/Z^2 ]                 (2x3)

    J_I = [gx, gy] @ dpi/dP @ dP/dxi
    J_D = dZ/dxi - [Dx, Dy] @ dpi/dP @ dP/dxi,   dZ/dxi = [Y, -X, 0, 0, 0, 1]

where (gx, gy) / (Dx, Dy) are source intensity / depth gradients sampled
at the projected location.

Every term returns J with shape (N, rows, 6) and r with shape (N, rows),
together with per-row weights (lam) and robust loss scales.
"""

from typing import Tuple, Union

import numpy as np

from .camera import PinholeCameraIntrinsics
from .config import (OdometryOption, RESIDUAL_DEPTH, RESIDUAL_HYBRID,
                     RESIDUAL_INTENSITY)
from .correspondence import CorrespondenceSet
from .exceptions import InvalidInputError


def point_jacobian(points: np.ndarray) -> np.ndarray:
    """dP/dxi for (N, 3) points -> (N, 3, 6)."""
    n = points.shape[0]
    X, Y, Z = points[:, 0], points[:, 1], points[:, 2]
    J = np.zeros((n, 3, 6))
    # -[P]x
    J[:, 0, 1] = Z
    J[:, 0, 2] = -Y
    J[:, 1, 0] = -Z
    J[:, 1, 2] = X
    J[:, 2, 0] = Y
    J[:, 2, 1] = -X
    J[:, 0, 3] = 1.0
    J[:, 1, 4] = 1.0
    J[:, 2, 5] = 1.0
    return J


def projection_jacobian(points: np.ndarray, intrinsics: PinholeCameraIntrinsics) -> np.ndarray:
    """dpi/dP for (N, 3) points -> (N, 2, 3)."""
    n = points.shape[0]
    inv_z = 1.0 / points[:, 2]
    inv_z2 = inv_z * inv_z
    J = np.zeros((n, 2, 3))
    J[:, 0, 0] = intrinsics.fx * inv_z
    J[:, 0, 2] = -intrinsics.fx * points[:, 0] * inv_z2
    J[:, 1, 1] = intrinsics.fy * inv_z
    J[:, 1, 2] = -intrinsics.fy * points[:, 1] * inv_z2
    return J


def pixel_jacobian(points: np.ndarray, intrinsics: PinholeCameraIntrinsics) -> np.ndarray:
    """d(u, v)/dxi = dpi/dP @ dP/dxi -> (N, 2, 6)."""
    return np.einsum('nij,njk->nik', projection_jacobian(points, intrinsics),
                     point_jacobian(points))


class ResidualTerm:
    """Base class of a residual formulation (strategy object)."""

    name = ""
    rows = 0
    uses_depth_gradient = False

    def __init__(self, option: OdometryOption):
        self.lam = np.ones(self.rows)
        self.scales = np.ones(self.rows)

    def compute(self, corr: CorrespondenceSet,
                intrinsics: PinholeCameraIntrinsics) -> Tuple[np.ndarray, np.ndarray]:
        raise NotImplementedError

    def __repr__(self):
        return f"{type(self).__name__}(lam={self.lam.tolist()}, scales={self.scales.tolist()})"


def _intensity_rows(corr, J_pix):
    g = np.stack([corr.intensity_dx, corr.intensity_dy], axis=1)
    J = np.einsum('ni,nik->nk', g, J_pix)
    r = corr.source_intensity - corr.target_intensity
    return J, r


def _depth_rows(corr, J_pix):
    dgrad = np.stack([corr.depth_dx, corr.depth_dy], axis=1)
    X, Y = corr.points[:, 0], corr.points[:, 1]
    n = corr.size
    dz = np.zeros((n, 6))
    dz[:, 0] = Y
    dz[:, 1] = -X
    dz[:, 5] = 1.0
    J = dz - np.einsum('ni,nik->nk', dgrad, J_pix)
    r = corr.points[:, 2] - corr.source_depth
    return J, r


class IntensityTerm(ResidualTerm):
    """Photometric residual only."""

    name = RESIDUAL_INTENSITY
    rows = 1

    def __init__(self, option: OdometryOption):
        super().__init__(option)
        self.lam = np.array([option.intensity_weight], dtype=float)
        self.scales = np.array([option.intensity_robust_scale], dtype=float)

    def compute(self, corr, intrinsics):
        J, r = _intensity_rows(corr, pixel_jacobian(corr.points, intrinsics))
        return J[:, None, :], r[:, None]


class DepthTerm(ResidualTerm):
    """Geometric (depth) residual only."""

    name = RESIDUAL_DEPTH
    rows = 1
    uses_depth_gradient = True

    def __init__(self, option: OdometryOption):
        super().__init__(option)
        self.lam = np.array([option.depth_weight], dtype=float)
        self.scales = np.array([option.depth_robust_scale], dtype=float)

    def compute(self, corr, intrinsics):
        J, r = _depth_rows(corr, pixel_jacobian(corr.points, intrinsics))
        return J[:, None, :], r[:, None]


class HybridTerm(ResidualTerm):
    """Photometric and geometric rows stacked per pixel."""

    name = RESIDUAL_HYBRID
    rows = 2
    uses_depth_gradient = True

    def __init__(self, option: OdometryOption):
        super().__init__(option)
        self.lam = np.array([option.intensity_weight, option.depth_weight], dtype=float)
        self.scales = np.array([option.intensity_robust_scale, option.depth_robust_scale],
                               dtype=float)

    def compute(self, corr, intrinsics):
        J_pix = pixel_jacobian(corr.points, intrinsics)
        J_i, r_i = _intensity_rows(corr, J_pix)
        J_d, r_d = _depth_rows(corr, J_pix)
        return np.stack([J_i, J_d], axis=1), np.stack([r_i, r_d], axis=1)


_TERMS = {
    RESIDUAL_INTENSITY: IntensityTerm,
    RESIDUAL_DEPTH: DepthTerm,
    RESIDUAL_HYBRID: HybridTerm,
}


def make_residual_term(formulation: Union[str, ResidualTerm, None],
                       option: OdometryOption) -> ResidualTerm:
    """
    Resolve the residual formulation for one call.

    Args:
        formulation: None (use option.residual_formulation), a name, or a
            ready ResidualTerm instance
    """
    if isinstance(formulation, ResidualTerm):
        return formulation
    name = option.residual_formulation if formulation is None else formulation
    try:
        return _TERMS[name](option)
    except KeyError:
        raise InvalidInputError(
            f"Unknown residual formulation '{name}', expected one of {sorted(_TERMS)}") from None
