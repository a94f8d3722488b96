#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Sub-pixel image sampling.

Bilinear lookups at non-integer (u, v). A lookup is valid only when all
four neighbouring pixels exist (0 <= u < W-1, 0 <= v < H-1) and, if a
validity mask is given, all four are valid in it. Invalid lookups return
0.0 so downstream arrays stay finite.
"""

from typing import Optional, Tuple

import numpy as np


def bilinear_sample(image: np.ndarray, u: np.ndarray, v: np.ndarray,
                    valid_mask: Optional[np.ndarray] = None) -> Tuple[np.ndarray, np.ndarray]:
    """
    Bilinearly interpolate `image` at pixel coordinates (u, v).

    Args:
        image: (H, W) array
        u, v: (N,) column / row coordinates
        valid_mask: optional (H, W) bool mask of usable pixels

    Returns:
        values: (N,) interpolated values (0.0 where invalid)
        ok: (N,) bool validity
    """
    u = np.asarray(u, dtype=float)
    v = np.asarray(v, dtype=float)
    h, w = image.shape

    with np.errstate(invalid="ignore"):
        ok = (u >= 0) & (u < w - 1) & (v >= 0) & (v < h - 1)
    ok &= np.isfinite(u) & np.isfinite(v)

    values = np.zeros(u.shape, dtype=float)
    if not np.any(ok):
        return values, ok

    uo = u[ok]
    vo = v[ok]
    u0 = np.floor(uo).astype(np.intp)
    v0 = np.floor(vo).astype(np.intp)
    au = uo - u0
    av = vo - v0

    if valid_mask is not None:
        corners_ok = (valid_mask[v0, u0] & valid_mask[v0, u0 + 1]
                      & valid_mask[v0 + 1, u0] & valid_mask[v0 + 1, u0 + 1])
        idx = np.flatnonzero(ok)
        ok[idx[~corners_ok]] = False
        u0 = u0[corners_ok]
        v0 = v0[corners_ok]
        au = au[corners_ok]
        av = av[corners_ok]

    top = (1.0 - au) * image[v0, u0] + au * image[v0, u0 + 1]
    bottom = (1.0 - au) * image[v0 + 1, u0] + au * image[v0 + 1, u0 + 1]
    values[ok] = (1.0 - av) * top + av * bottom
    return values, ok


def sample_depth(depth: np.ndarray, u: np.ndarray, v: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Depth lookup; any invalid (0.0) neighbour invalidates the sample."""
    return bilinear_sample(depth, u, v, valid_mask=depth > 0)
