#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Correspondence Evaluator
========================

For a candidate pose T (target camera -> source camera), every target
pixel with valid depth is back-projected, moved into the source frame,
and projected onto the source image:

    P_t = depth_t(u_t, v_t) * K^-1 [u_t, v_t, 1]^T
    P_s = R P_t + t
    (u_s, v_s) = pi(P_s)

A pixel yields a correspondence only if:
- target depth is present and within [min_depth, max_depth]
- P_s lies in front of the source camera
- (u_s, v_s) falls strictly inside the source image (4 bilinear neighbours)
- interpolated source depth is present and within range
- |Z(P_s) - depth_s(u_s, v_s)| <= max_depth_difference

Failing pixels are simply dropped; invalidity is a normal outcome and
never raises.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from .image_pyramid import PyramidLevel
from .sampling import bilinear_sample, sample_depth


@dataclass
class CorrespondenceSet:
    """Per-pixel correspondences of one evaluation (arrays of length N)."""
    target_u: np.ndarray
    target_v: np.ndarray
    source_u: np.ndarray
    source_v: np.ndarray
    points: np.ndarray            # (N, 3) target points in the source frame
    target_intensity: np.ndarray
    source_intensity: np.ndarray
    source_depth: np.ndarray
    intensity_dx: np.ndarray
    intensity_dy: np.ndarray
    depth_dx: np.ndarray
    depth_dy: np.ndarray
    num_total: int = 0            # pixels examined

    @property
    def size(self) -> int:
        return int(self.target_u.shape[0])

    @property
    def valid_fraction(self) -> float:
        return self.size / max(self.num_total, 1)


def compute_correspondences(pose: np.ndarray, source: PyramidLevel, target: PyramidLevel,
                            option, rows: Optional[Tuple[int, int]] = None,
                            require_depth_gradient: bool = False) -> CorrespondenceSet:
    """
    Evaluate correspondences at one pyramid level.

    Args:
        pose: 4x4 transform mapping target-frame points into the source frame
        source, target: Same-index pyramid levels of both frames
        option: OdometryOption (depth range and rejection threshold)
        rows: Optional [start, stop) band of target rows to evaluate
        require_depth_gradient: Also require valid source depth gradients
            (depth / hybrid formulations)

    Returns:
        CorrespondenceSet holding only valid correspondences
    """
    r0, r1 = (0, target.height) if rows is None else rows
    num_total = (r1 - r0) * target.width

    depth_t = target.depth[r0:r1]
    vv, uu = np.nonzero((depth_t > 0)
                        & (depth_t >= option.min_depth)
                        & (depth_t <= option.max_depth))
    vv = vv + r0
    z_t = target.depth[vv, uu]

    R = pose[:3, :3]
    t = pose[:3, 3]
    points = target.intrinsics.backproject(uu, vv, z_t) @ R.T + t

    us, vs = source.intrinsics.project(points)
    d_s, ok = sample_depth(source.depth, us, vs)
    ok &= (d_s >= option.min_depth) & (d_s <= option.max_depth)
    ok &= np.abs(points[:, 2] - d_s) <= option.max_depth_difference

    if require_depth_gradient:
        _, grad_ok = bilinear_sample(source.depth_dx, us, vs,
                                     valid_mask=source.depth_gradient_valid)
        ok &= grad_ok

    uu, vv = uu[ok], vv[ok]
    us, vs = us[ok], vs[ok]
    points = points[ok]
    d_s = d_s[ok]

    # All remaining samples are in bounds, so the validity flags are all True
    i_s, _ = bilinear_sample(source.intensity, us, vs)
    gx, _ = bilinear_sample(source.intensity_dx, us, vs)
    gy, _ = bilinear_sample(source.intensity_dy, us, vs)
    if require_depth_gradient:
        ddx, _ = bilinear_sample(source.depth_dx, us, vs)
        ddy, _ = bilinear_sample(source.depth_dy, us, vs)
    else:
        ddx = np.zeros_like(d_s)
        ddy = np.zeros_like(d_s)

    return CorrespondenceSet(
        target_u=uu,
        target_v=vv,
        source_u=us,
        source_v=vs,
        points=points,
        target_intensity=target.intensity[vv, uu],
        source_intensity=i_s,
        source_depth=d_s,
        intensity_dx=gx,
        intensity_dy=gy,
        depth_dx=ddx,
        depth_dy=ddy,
        num_total=num_total,
    )
