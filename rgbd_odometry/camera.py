#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Camera Model Helpers Module

Pinhole camera intrinsics with per-pyramid-level scaling, plus vectorized
back-projection and projection used by the correspondence evaluator.

Image convention: u = column (x, right), v = row (y, down), OpenCV camera
frame (X-right, Y-down, Z-forward). Depth is the Z coordinate in meters.
"""

from dataclasses import dataclass
from typing import Tuple

import numpy as np

from .exceptions import InvalidInputError


@dataclass(frozen=True)
class PinholeCameraIntrinsics:
    """
    Pinhole intrinsics for one image resolution.

    Args:
        width, height: Image dimensions in pixels
        fx, fy: Focal lengths in pixels
        cx, cy: Principal point in pixels
    """
    width: int
    height: int
    fx: float
    fy: float
    cx: float
    cy: float

    @classmethod
    def from_matrix(cls, K: np.ndarray, width: int, height: int) -> "PinholeCameraIntrinsics":
        """Build intrinsics from a 3x3 camera matrix."""
        K = np.asarray(K, dtype=float)
        if K.shape != (3, 3):
            raise InvalidInputError(f"Expected 3x3 camera matrix, got shape {K.shape}")
        return cls(width=int(width), height=int(height),
                   fx=float(K[0, 0]), fy=float(K[1, 1]),
                   cx=float(K[0, 2]), cy=float(K[1, 2]))

    @property
    def matrix(self) -> np.ndarray:
        """Camera matrix K."""
        return np.array([
            [self.fx, 0.0, self.cx],
            [0.0, self.fy, self.cy],
            [0.0, 0.0, 1.0]
        ], dtype=np.float64)

    @property
    def shape(self) -> Tuple[int, int]:
        """Image shape as (height, width), matching numpy arrays."""
        return (self.height, self.width)

    def validate(self) -> None:
        """Raise InvalidInputError for non-positive or non-finite parameters."""
        values = np.array([self.fx, self.fy, self.cx, self.cy], dtype=float)
        if not np.all(np.isfinite(values)):
            raise InvalidInputError(f"Non-finite intrinsics: {self}")
        if self.fx <= 0 or self.fy <= 0:
            raise InvalidInputError(f"Focal lengths must be positive: fx={self.fx}, fy={self.fy}")
        if self.width <= 0 or self.height <= 0:
            raise InvalidInputError(
                f"Resolution must be positive: {self.width}x{self.height}")

    def scaled(self, level: int) -> "PinholeCameraIntrinsics":
        """
        Intrinsics for pyramid level `level` (0 = full resolution).

        Each level halves focal lengths, principal point and resolution.
        """
        s = 0.5 ** int(level)
        return PinholeCameraIntrinsics(
            width=self.width >> int(level),
            height=self.height >> int(level),
            fx=self.fx * s,
            fy=self.fy * s,
            cx=self.cx * s,
            cy=self.cy * s,
        )

    def backproject(self, u: np.ndarray, v: np.ndarray, depth: np.ndarray) -> np.ndarray:
        """
        Convert pixel coordinates and depth to 3D camera coordinates.

        Returns:
            (N, 3) points; rows with depth <= 0 are meaningless
        """
        depth = np.asarray(depth, dtype=float)
        x = (np.asarray(u, dtype=float) - self.cx) * depth / self.fx
        y = (np.asarray(v, dtype=float) - self.cy) * depth / self.fy
        return np.stack([x, y, depth], axis=-1)

    def project(self, points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Project (N, 3) camera-frame points to sub-pixel coordinates.

        Points with Z <= 0 project to NaN.
        """
        points = np.asarray(points, dtype=float)
        z = points[..., 2]
        with np.errstate(divide="ignore", invalid="ignore"):
            inv_z = np.where(z > 0, 1.0 / z, np.nan)
        u = self.fx * points[..., 0] * inv_z + self.cx
        v = self.fy * points[..., 1] * inv_z + self.cy
        return u, v
