#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Odometry Error Types

Only InvalidInputError crosses the public boundary of estimate_odometry().
The other two are raised by the system builder / solver and recovered
by the level optimizer and the driver.
"""

import numpy as np


class OdometryError(Exception):
    """Base class for RGB-D odometry errors."""


class InvalidInputError(OdometryError, ValueError):
    """Inputs are malformed (frame shapes, intrinsics, initial pose, options)."""


class InsufficientCorrespondenceError(OdometryError):
    """Too few valid pixel correspondences at a pyramid level."""

    def __init__(self, num_valid: int, num_total: int, min_fraction: float):
        self.num_valid = int(num_valid)
        self.num_total = int(num_total)
        self.min_fraction = float(min_fraction)
        frac = self.num_valid / max(self.num_total, 1)
        super().__init__(
            f"{self.num_valid}/{self.num_total} valid correspondences "
            f"({frac:.3f} < {self.min_fraction:.3f})"
        )


class SingularSystemError(OdometryError, np.linalg.LinAlgError):
    """Normal-equations matrix is not positive definite within tolerance."""
