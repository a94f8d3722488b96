#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Odometry Math Utilities Module
==============================

Rigid-body (SE(3)) helpers shared by the Jacobian builder, the level
optimizer and the driver.

Twist Convention:
-----------------
A twist is a 6-vector xi = [wx, wy, wz, vx, vy, vz]:
- w is the rotation vector (axis * angle, radians)
- v is the translational part

Pose Update Convention:
-----------------------
Increments are applied by LEFT multiplication:

    T_new = exp(xi) @ T

so a point P already expressed in the source frame moves as

    P' = exp(xi) P  ~=  P + w x P + v  =  P + [-[P]x | I] xi

The same convention is used by the Jacobians (jacobians.py) and by the
optimizer update (level_optimizer.py).

Key Operations:
---------------
- skew_symmetric: 3x3 cross-product matrix
- se3_exp / se3_log: twist <-> 4x4 transform
- compose_left: apply a twist increment to a pose
- inverse_transform: closed-form rigid inverse
- is_rigid_transform: orthonormality / last-row check
- transform_error: rotation angle + translation distance between poses
"""

import numpy as np
from scipy.spatial.transform import Rotation as R_scipy


# =============================================================================
# Matrix Operations
# =============================================================================

def skew_symmetric(v: np.ndarray) -> np.ndarray:
    """
    Create skew-symmetric matrix from 3D vector.
    [v]x such that [v]x @ u = v x u (cross product)

    [v]x = [ 0   -vz   vy ]
           [ vz   0   -vx ]
           [-vy   vx   0  ]
    """
    return np.array([
        [0,      -v[2],  v[1]],
        [v[2],    0,    -v[0]],
        [-v[1],   v[0],   0   ]
    ], dtype=float)


def _so3_left_jacobian(w: np.ndarray) -> np.ndarray:
    """Left Jacobian V of SO(3), so that t = V @ v in se3_exp."""
    theta = np.linalg.norm(w)
    W = skew_symmetric(w)
    if theta < 1e-8:
        # Second-order series
        return np.eye(3) + 0.5 * W + (W @ W) / 6.0
    theta2 = theta * theta
    return (np.eye(3)
            + (1.0 - np.cos(theta)) / theta2 * W
            + (theta - np.sin(theta)) / (theta2 * theta) * (W @ W))


def _so3_left_jacobian_inverse(w: np.ndarray) -> np.ndarray:
    theta = np.linalg.norm(w)
    W = skew_symmetric(w)
    if theta < 1e-8:
        return np.eye(3) - 0.5 * W + (W @ W) / 12.0
    half = 0.5 * theta
    coef = (1.0 - half * np.cos(half) / np.sin(half)) / (theta * theta)
    return np.eye(3) - 0.5 * W + coef * (W @ W)


# =============================================================================
# SE(3) exponential / logarithm
# =============================================================================

def se3_exp(xi: np.ndarray) -> np.ndarray:
    """
    Exponential map se(3) -> SE(3).

    Args:
        xi: Twist [wx, wy, wz, vx, vy, vz]

    Returns:
        4x4 homogeneous transform
    """
    xi = np.asarray(xi, dtype=float).reshape(6)
    w = xi[:3]
    v = xi[3:]

    T = np.eye(4)
    T[:3, :3] = R_scipy.from_rotvec(w).as_matrix()
    T[:3, 3] = _so3_left_jacobian(w) @ v
    return T


def se3_log(T: np.ndarray) -> np.ndarray:
    """
    Logarithm map SE(3) -> se(3).

    Returns:
        Twist [wx, wy, wz, vx, vy, vz] such that se3_exp(xi) == T
    """
    T = np.asarray(T, dtype=float)
    w = R_scipy.from_matrix(T[:3, :3]).as_rotvec()
    v = _so3_left_jacobian_inverse(w) @ T[:3, 3]
    return np.concatenate([w, v])


def compose_left(T: np.ndarray, xi: np.ndarray) -> np.ndarray:
    """Apply twist increment by left multiplication: exp(xi) @ T."""
    return se3_exp(xi) @ T


def inverse_transform(T: np.ndarray) -> np.ndarray:
    """Closed-form inverse of a rigid transform."""
    R = T[:3, :3]
    t = T[:3, 3]
    Ti = np.eye(4)
    Ti[:3, :3] = R.T
    Ti[:3, 3] = -R.T @ t
    return Ti


def is_rigid_transform(T, tol: float = 1e-6) -> bool:
    """Check that T is a finite 4x4 rigid transform (R orthonormal, det=+1)."""
    T = np.asarray(T)
    if T.shape != (4, 4) or not np.all(np.isfinite(T)):
        return False
    if not np.allclose(T[3], [0.0, 0.0, 0.0, 1.0], atol=tol):
        return False
    R = T[:3, :3]
    if not np.allclose(R.T @ R, np.eye(3), atol=tol):
        return False
    return abs(np.linalg.det(R) - 1.0) < tol


def transform_error(T_a: np.ndarray, T_b: np.ndarray):
    """
    Distance between two rigid transforms.

    Returns:
        (rotation_error_rad, translation_error) of T_a^-1 @ T_b
    """
    dT = inverse_transform(T_a) @ T_b
    rot_err = float(np.linalg.norm(R_scipy.from_matrix(dT[:3, :3]).as_rotvec()))
    trans_err = float(np.linalg.norm(dT[:3, 3]))
    return rot_err, trans_err
