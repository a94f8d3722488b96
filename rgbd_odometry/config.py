#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Odometry Configuration Module
=============================

Handles YAML configuration loading and defines the validated option set
for one RGB-D odometry call.

Configuration Structure:
------------------------
The YAML config file contains:
- camera: pinhole intrinsics at full resolution (width, height, fx, fy, cx, cy)
- input: raw depth conversion (depth_scale, depth_trunc)
- odometry: solver options (see OdometryOption)

Example:
--------
    odometry:
      iterations_per_level: [20, 10, 5]   # coarse -> fine
      min_depth: 0.0
      max_depth: 4.0
      max_depth_difference: 0.03
      min_correspondence_fraction: 0.05
      residual_formulation: hybrid

Units:
------
- depths and thresholds: meters
- intensity: [0, 1]
"""

import numbers
from collections.abc import Sequence
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional, Tuple

import numpy as np
import yaml

from .camera import PinholeCameraIntrinsics
from .exceptions import InvalidInputError

# ========================================
# Residual formulations / robust losses
# ========================================
RESIDUAL_INTENSITY = "intensity"
RESIDUAL_DEPTH = "depth"
RESIDUAL_HYBRID = "hybrid"
RESIDUAL_FORMULATIONS = (RESIDUAL_INTENSITY, RESIDUAL_DEPTH, RESIDUAL_HYBRID)

ROBUST_LOSSES = ("none", "huber", "tukey")

# =============================================================================
# Default Configuration Variables
# =============================================================================

# Pyramid schedule (coarse -> fine)
ITERATIONS_PER_LEVEL = (20, 10, 5)

# Depth validity (meters)
MIN_DEPTH = 0.0
MAX_DEPTH = 4.0
MAX_DEPTH_DIFFERENCE = 0.03

# Overlap requirement
MIN_CORRESPONDENCE_FRACTION = 0.05

# Hybrid weighting: depth residuals are in meters, intensity in [0, 1]
INTENSITY_WEIGHT = 0.032
DEPTH_WEIGHT = 0.968

# Robust loss
ROBUST_LOSS = "huber"
INTENSITY_ROBUST_SCALE = 0.1
DEPTH_ROBUST_SCALE = 0.03

# Convergence / conditioning
RELATIVE_COST_TOLERANCE = 1e-6
UPDATE_TOLERANCE = 1e-7
SINGULAR_TOLERANCE = 1e-12
MAX_DAMPING = 1e8

# Raw depth conversion (TUM RGB-D: 5000 units per meter; RealSense: 1000)
DEPTH_SCALE = 1000.0
DEPTH_TRUNC = 3.0

# Partitioned pixel reduction
NUM_WORKERS = 1
ROWS_PER_PARTITION = 32


def _as_iteration_budgets(values) -> Tuple[int, ...]:
    """
    Convert a list of per-level iteration budgets to a tuple of ints.

    Raises:
        InvalidInputError: scalar / string input or non-integral entries
    """
    if isinstance(values, (str, bytes)) or not isinstance(values, (Sequence, np.ndarray)):
        raise InvalidInputError(
            f"iterations_per_level must be a list of integers, got {values!r}")
    budgets = []
    for n in values:
        if isinstance(n, bool) or not isinstance(n, numbers.Real):
            raise InvalidInputError(f"Iteration budget must be an integer, got {n!r}")
        if not isinstance(n, numbers.Integral) and not float(n).is_integer():
            raise InvalidInputError(f"Iteration budget must be an integer, got {n!r}")
        budgets.append(int(n))
    return tuple(budgets)


@dataclass(frozen=True)
class OdometryOption:
    """
    Solver options for one odometry call.

    Constructed before the call and never mutated; estimate_odometry()
    validates it before any optimization starts.

    iterations_per_level is ordered COARSE -> FINE, i.e. the first entry
    is the budget of the coarsest pyramid level.
    """
    iterations_per_level: Tuple[int, ...] = ITERATIONS_PER_LEVEL
    pyramid_levels: Optional[int] = None
    min_depth: float = MIN_DEPTH
    max_depth: float = MAX_DEPTH
    max_depth_difference: float = MAX_DEPTH_DIFFERENCE
    min_correspondence_fraction: float = MIN_CORRESPONDENCE_FRACTION
    residual_formulation: str = RESIDUAL_HYBRID
    intensity_weight: float = INTENSITY_WEIGHT
    depth_weight: float = DEPTH_WEIGHT
    robust_loss: str = ROBUST_LOSS
    intensity_robust_scale: float = INTENSITY_ROBUST_SCALE
    depth_robust_scale: float = DEPTH_ROBUST_SCALE
    relative_cost_tolerance: float = RELATIVE_COST_TOLERANCE
    update_tolerance: float = UPDATE_TOLERANCE
    singular_tolerance: float = SINGULAR_TOLERANCE
    max_damping: float = MAX_DAMPING
    normalize_intensity: bool = True
    num_workers: int = NUM_WORKERS
    rows_per_partition: int = ROWS_PER_PARTITION
    verbose: bool = False

    def __post_init__(self):
        # YAML and callers hand in lists; keep the stored value hashable
        object.__setattr__(self, "iterations_per_level",
                           _as_iteration_budgets(self.iterations_per_level))

    @property
    def num_levels(self) -> int:
        """Number of pyramid levels (length of iterations_per_level)."""
        return len(self.iterations_per_level)

    def validate(self) -> "OdometryOption":
        """
        Check option consistency.

        Raises:
            InvalidInputError: on the first inconsistent value
        """
        if self.num_levels == 0:
            raise InvalidInputError("iterations_per_level must not be empty")
        if any(n <= 0 for n in self.iterations_per_level):
            raise InvalidInputError(
                f"iterations_per_level must be positive: {self.iterations_per_level}")
        if self.pyramid_levels is not None and int(self.pyramid_levels) != self.num_levels:
            raise InvalidInputError(
                f"pyramid_levels={self.pyramid_levels} does not match "
                f"{self.num_levels} iteration budgets")
        if self.min_depth < 0 or self.max_depth <= self.min_depth:
            raise InvalidInputError(
                f"Invalid depth range [{self.min_depth}, {self.max_depth}]")
        if self.max_depth_difference <= 0:
            raise InvalidInputError(
                f"max_depth_difference must be positive: {self.max_depth_difference}")
        if not 0.0 <= self.min_correspondence_fraction <= 1.0:
            raise InvalidInputError(
                f"min_correspondence_fraction outside [0, 1]: {self.min_correspondence_fraction}")
        if self.residual_formulation not in RESIDUAL_FORMULATIONS:
            raise InvalidInputError(
                f"Unknown residual_formulation '{self.residual_formulation}', "
                f"expected one of {RESIDUAL_FORMULATIONS}")
        if self.robust_loss not in ROBUST_LOSSES:
            raise InvalidInputError(
                f"Unknown robust_loss '{self.robust_loss}', expected one of {ROBUST_LOSSES}")
        if self.intensity_weight <= 0 or self.depth_weight <= 0:
            raise InvalidInputError("Residual weights must be positive")
        if self.intensity_robust_scale <= 0 or self.depth_robust_scale <= 0:
            raise InvalidInputError("Robust loss scales must be positive")
        if self.relative_cost_tolerance < 0 or self.update_tolerance < 0:
            raise InvalidInputError("Convergence tolerances must be non-negative")
        if self.singular_tolerance <= 0 or self.max_damping <= 0:
            raise InvalidInputError("singular_tolerance and max_damping must be positive")
        if self.num_workers < 1 or self.rows_per_partition < 1:
            raise InvalidInputError("num_workers and rows_per_partition must be >= 1")
        return self


_OPTION_KEYS = {f.name for f in fields(OdometryOption)}


def option_from_dict(values: Optional[Dict[str, Any]]) -> OdometryOption:
    """
    Build a validated OdometryOption from a plain dictionary.

    Raises:
        InvalidInputError: on unknown keys or inconsistent values
    """
    values = dict(values or {})
    unknown = sorted(set(values) - _OPTION_KEYS)
    if unknown:
        raise InvalidInputError(f"Unknown odometry option(s): {unknown}")
    try:
        return OdometryOption(**values).validate()
    except TypeError as e:
        # e.g. a string where a number is expected
        raise InvalidInputError(f"Invalid odometry option value: {e}") from e


def load_config(config_path: str) -> Dict[str, Any]:
    """
    Load YAML configuration file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Dictionary with configuration parameters:
        - ODOMETRY_OPTION: validated OdometryOption
        - CAMERA_INTRINSICS: PinholeCameraIntrinsics or None
        - DEPTH_SCALE: raw depth units per meter
        - DEPTH_TRUNC: depth truncation in meters

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If config file is malformed
        InvalidInputError: If a section holds invalid values

    Example:
        >>> config = load_config("configs/odometry_default.yaml")
        >>> option = config['ODOMETRY_OPTION']
        >>> print(option.iterations_per_level)
    """
    with open(config_path, 'r') as f:
        config = yaml.safe_load(f) or {}

    result = {}

    # ========================================
    # Odometry options
    # ========================================
    result['ODOMETRY_OPTION'] = option_from_dict(config.get('odometry', {}))

    # ========================================
    # Camera intrinsics (optional; CLI may pass them another way)
    # ========================================
    cam = config.get('camera')
    if cam is not None:
        intrinsic = PinholeCameraIntrinsics(
            width=int(cam['width']),
            height=int(cam['height']),
            fx=float(cam['fx']),
            fy=float(cam['fy']),
            cx=float(cam['cx']),
            cy=float(cam['cy']),
        )
        intrinsic.validate()
        result['CAMERA_INTRINSICS'] = intrinsic
    else:
        result['CAMERA_INTRINSICS'] = None

    # ========================================
    # Raw depth conversion
    # ========================================
    inp = config.get('input', {})
    result['DEPTH_SCALE'] = float(inp.get('depth_scale', DEPTH_SCALE))
    result['DEPTH_TRUNC'] = float(inp.get('depth_trunc', DEPTH_TRUNC))
    if result['DEPTH_SCALE'] <= 0 or result['DEPTH_TRUNC'] <= 0:
        raise InvalidInputError("input.depth_scale and input.depth_trunc must be positive")

    if result['ODOMETRY_OPTION'].verbose:
        print(f"[CONFIG] Loaded {config_path}: "
              f"levels={result['ODOMETRY_OPTION'].num_levels} "
              f"formulation={result['ODOMETRY_OPTION'].residual_formulation}")

    return result
