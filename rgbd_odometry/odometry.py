#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
RGB-D Odometry Driver
=====================

Estimates the rigid motion between a source and a target RGB-D frame with
coarse-to-fine dense alignment and reports an information matrix.

Pipeline (one stateless call):
    1. validate inputs (the only hard failure: InvalidInputError)
    2. invalidate depth outside [min_depth, max_depth]
    3. build source / target pyramids
    4. optionally normalize intensities over the initial correspondences
    5. optimize every level from coarsest to finest, each seeded with the
       previous output; a DIVERGED level hands on its incoming pose
    6. linearize once more at the finest level and final pose (no
       damping) -> information matrix = H

Transform convention:
    The returned T maps points of the target camera frame into the source
    camera frame (X_s = T X_t). odo_init uses the same convention.

Usage:
    from rgbd_odometry.odometry import compute_rgbd_odometry
    success, T, info = compute_rgbd_odometry(source, target, intrinsics)
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np

from .camera import PinholeCameraIntrinsics
from .config import OdometryOption
from .correspondence import compute_correspondences
from .exceptions import InvalidInputError
from .image_pyramid import (RGBDFrame, build_pyramid, check_pyramid_size,
                            preprocess_depth)
from .jacobians import make_residual_term
from .level_optimizer import LevelResult, optimize_level
from .math_utils import is_rigid_transform
from .normal_equations import NormalEquations, SystemBuilder
from .numerical_checks import assert_finite, check_information_psd

# Target mean intensity after normalization
NORMALIZED_MEAN_INTENSITY = 0.5


@dataclass
class OdometryResult:
    """
    Result of one odometry call.

    information is only meaningful when success is True; on failure the
    transformation is the identity and information is all zeros.
    """
    success: bool
    transformation: np.ndarray
    information: np.ndarray
    levels: List[LevelResult] = field(default_factory=list)
    valid_fraction: float = 0.0
    reason: str = ""

    def as_tuple(self) -> Tuple[bool, np.ndarray, np.ndarray]:
        return self.success, self.transformation, self.information


def _check_inputs(source, target, intrinsics, odo_init, option) -> np.ndarray:
    """Fail fast on malformed inputs; returns the initial pose."""
    for name, frame in (("source", source), ("target", target)):
        if not isinstance(frame, RGBDFrame):
            raise InvalidInputError(f"{name} must be an RGBDFrame, got {type(frame).__name__}")
        if frame.depth is None or frame.intensity is None:
            raise InvalidInputError(f"{name} frame is missing a channel")
        if frame.intensity.shape != frame.depth.shape:
            raise InvalidInputError(f"{name} intensity and depth shapes differ")
    if source.shape != target.shape:
        raise InvalidInputError(
            f"Source {source.shape} and target {target.shape} dimensions differ")
    if not isinstance(intrinsics, PinholeCameraIntrinsics):
        raise InvalidInputError("intrinsics must be PinholeCameraIntrinsics")
    intrinsics.validate()
    if source.shape != intrinsics.shape:
        raise InvalidInputError(
            f"Frame shape {source.shape} does not match intrinsics "
            f"{intrinsics.width}x{intrinsics.height}")
    check_pyramid_size(source.shape[0], source.shape[1], option.num_levels)

    if odo_init is None:
        return np.eye(4)
    odo_init = np.asarray(odo_init, dtype=float)
    if not is_rigid_transform(odo_init, tol=1e-5):
        raise InvalidInputError("odo_init must be a 4x4 rigid transform")
    return odo_init.copy()


def _preprocess(frame: RGBDFrame, option: OdometryOption) -> RGBDFrame:
    return RGBDFrame(intensity=frame.intensity,
                     depth=preprocess_depth(frame.depth, option.min_depth, option.max_depth))


def _scale_intensity(levels, factor: float) -> None:
    for lvl in levels:
        lvl.intensity = lvl.intensity * factor
        lvl.intensity_dx = lvl.intensity_dx * factor
        lvl.intensity_dy = lvl.intensity_dy * factor


def normalize_intensity(source_pyramid, target_pyramid, pose: np.ndarray,
                        option: OdometryOption) -> bool:
    """
    Rescale both pyramids so that the mean intensity over the correspondences
    at `pose` (full resolution) is 0.5 in each image.

    The means are taken once, at the initial guess. When the guess is off,
    the two means cover slightly different surface patches, so the gains
    differ and the photometric residual carries a small bias. Disable
    `option.normalize_intensity` for frames with matched exposure.

    Returns:
        True if applied; False if no usable correspondences / zero means
    """
    corr = compute_correspondences(pose, source_pyramid[0], target_pyramid[0], option)
    if corr.size == 0:
        return False
    mean_s = float(np.mean(corr.source_intensity))
    mean_t = float(np.mean(corr.target_intensity))
    if mean_s <= 1e-9 or mean_t <= 1e-9:
        return False
    _scale_intensity(source_pyramid, NORMALIZED_MEAN_INTENSITY / mean_s)
    _scale_intensity(target_pyramid, NORMALIZED_MEAN_INTENSITY / mean_t)
    if option.verbose:
        print(f"[ODOM] Intensity normalized: mean_s={mean_s:.4f} mean_t={mean_t:.4f} "
              f"over {corr.size} correspondences")
    return True


def _failure(levels, valid_fraction, reason, verbose) -> OdometryResult:
    if verbose:
        print(f"[ODOM] FAILED: {reason}")
    return OdometryResult(False, np.eye(4), np.zeros((6, 6)), levels=levels,
                          valid_fraction=valid_fraction, reason=reason)


def estimate_odometry(source: RGBDFrame, target: RGBDFrame,
                      intrinsics: PinholeCameraIntrinsics,
                      odo_init: Optional[np.ndarray] = None,
                      residual_formulation=None,
                      option: Optional[OdometryOption] = None) -> OdometryResult:
    """
    Estimate 6-DoF odometry between two RGB-D frames.

    Args:
        source, target: RGBDFrame pair of identical resolution
        intrinsics: Full-resolution pinhole intrinsics
        odo_init: Initial 4x4 guess (target -> source), identity if None
        residual_formulation: None (use option), "intensity" | "depth" |
            "hybrid", or a ResidualTerm instance
        option: OdometryOption, defaults if None

    Returns:
        OdometryResult

    Raises:
        InvalidInputError: malformed frames, intrinsics, pose or options
    """
    option = OdometryOption() if option is None else option
    option.validate()
    init = _check_inputs(source, target, intrinsics, odo_init, option)
    term = make_residual_term(residual_formulation, option)
    n_levels = option.num_levels

    if option.verbose:
        print(f"[ODOM] {term.name}: {n_levels} levels, iterations "
              f"{list(option.iterations_per_level)}, {source.shape[1]}x{source.shape[0]}")

    source_pyramid = build_pyramid(_preprocess(source, option), intrinsics, n_levels,
                                   verbose=option.verbose)
    target_pyramid = build_pyramid(_preprocess(target, option), intrinsics, n_levels,
                                   verbose=option.verbose)
    if option.normalize_intensity:
        normalize_intensity(source_pyramid, target_pyramid, init, option)

    executor = ThreadPoolExecutor(max_workers=option.num_workers) \
        if option.num_workers > 1 else None
    try:
        pose = init
        levels: List[LevelResult] = []
        for k, level in enumerate(range(n_levels - 1, -1, -1)):
            builder = SystemBuilder(source_pyramid[level], target_pyramid[level],
                                    term, option, executor)
            result = optimize_level(builder, pose, option.iterations_per_level[k],
                                    option, level=level)
            levels.append(result)
            if result.diverged:
                if option.verbose:
                    print(f"[ODOM] level {level} diverged ({result.reason}), "
                          f"keeping incoming pose")
            else:
                pose = result.pose
            if option.verbose:
                print(f"[ODOM] level {level}: {result.outcome.value} after "
                      f"{result.iterations} iterations, valid={result.valid_fraction:.3f}")

        final_builder = SystemBuilder(source_pyramid[0], target_pyramid[0],
                                      term, option, executor)
        final: NormalEquations = final_builder.build(pose, check_overlap=False)
    finally:
        if executor is not None:
            executor.shutdown(wait=True)

    if levels[-1].diverged:
        return _failure(levels, final.valid_fraction,
                        f"finest level diverged: {levels[-1].reason}", option.verbose)
    if final.num_valid == 0 or final.valid_fraction < option.min_correspondence_fraction:
        return _failure(levels, final.valid_fraction,
                        f"insufficient correspondence at final pose "
                        f"({final.valid_fraction:.3f} < {option.min_correspondence_fraction:.3f})",
                        option.verbose)

    information = final.information_matrix()
    if not assert_finite("transformation", pose) or \
            not check_information_psd(information, verbose=option.verbose):
        return _failure(levels, final.valid_fraction, "non-finite or indefinite result",
                        option.verbose)

    if option.verbose:
        print(f"[ODOM] success: valid={final.valid_fraction:.3f} "
              f"trace(info)={np.trace(information):.3e}")
    return OdometryResult(True, pose, information, levels=levels,
                          valid_fraction=final.valid_fraction, reason="ok")


def compute_rgbd_odometry(source: RGBDFrame, target: RGBDFrame,
                          intrinsics: PinholeCameraIntrinsics,
                          odo_init: Optional[np.ndarray] = None,
                          residual_formulation=None,
                          option: Optional[OdometryOption] = None):
    """
    Tuple form of estimate_odometry().

    Returns:
        (success, 4x4 transformation, 6x6 information)
    """
    return estimate_odometry(source, target, intrinsics, odo_init,
                             residual_formulation, option).as_tuple()
