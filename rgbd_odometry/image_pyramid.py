#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
RGB-D Frame and Image Pyramid Module

Holds the aligned intensity/depth pair of one frame and builds the
coarse-to-fine pyramid consumed by the odometry solver.

Key concepts:
1. Depth is stored in meters; 0.0 marks invalid/missing depth
2. Level 0 is full resolution, every next level halves both dimensions
3. Depth down-sampling never synthesizes depth: a coarse pixel is valid
   only when all four fine pixels under it are valid
4. Intensity and depth gradients are precomputed per level (Sobel / 8)

Author: RGB-D odometry project
"""

from dataclasses import dataclass
from typing import List, Optional

import cv2
import numpy as np

from .camera import PinholeCameraIntrinsics
from .exceptions import InvalidInputError

# Sobel 3x3 kernel sums to 8 per unit slope
SOBEL_SCALE = 0.125

# Smallest image side allowed at the coarsest level
MIN_LEVEL_SIZE = 4


@dataclass
class RGBDFrame:
    """
    Aligned intensity and depth images of one RGB-D frame.

    intensity: (H, W) float64, nominally in [0, 1]
    depth: (H, W) float64 meters, 0.0 = invalid
    """
    intensity: np.ndarray
    depth: np.ndarray

    @classmethod
    def create(cls, intensity: Optional[np.ndarray], depth: Optional[np.ndarray]) -> "RGBDFrame":
        """
        Validate and normalize raw channels.

        Integer intensity is scaled to [0, 1] by its dtype range. Non-finite
        and non-positive depth values become the invalid sentinel 0.0.

        Raises:
            InvalidInputError: missing channel, wrong rank or mismatched shapes
        """
        if intensity is None:
            raise InvalidInputError("RGB-D frame has no intensity channel")
        if depth is None:
            raise InvalidInputError("RGB-D frame has no depth channel")

        intensity = np.asarray(intensity)
        depth = np.asarray(depth)
        if intensity.ndim != 2 or depth.ndim != 2:
            raise InvalidInputError(
                f"Expected single-channel (H,W) images, got intensity {intensity.shape} "
                f"and depth {depth.shape}")
        if intensity.shape != depth.shape:
            raise InvalidInputError(
                f"Intensity {intensity.shape} and depth {depth.shape} shapes differ")
        if intensity.size == 0:
            raise InvalidInputError("RGB-D frame is empty")

        if np.issubdtype(intensity.dtype, np.integer):
            intensity = intensity.astype(np.float64) / float(np.iinfo(intensity.dtype).max)
        else:
            intensity = intensity.astype(np.float64)
        if not np.all(np.isfinite(intensity)):
            raise InvalidInputError("Intensity image contains NaN/inf")

        depth = depth.astype(np.float64)
        depth = np.where(np.isfinite(depth) & (depth > 0), depth, 0.0)
        return cls(intensity=intensity, depth=depth)

    @classmethod
    def from_color_and_depth(cls, color: np.ndarray, depth_raw: np.ndarray,
                             depth_scale: float = 1000.0,
                             depth_trunc: float = 3.0) -> "RGBDFrame":
        """
        Build a frame from a color (BGR or gray) image and raw depth.

        Args:
            color: (H,W,3) BGR as read by cv2.imread, or (H,W) gray
            depth_raw: (H,W) raw depth units (e.g. uint16 millimeters)
            depth_scale: raw units per meter
            depth_trunc: depth beyond this distance (meters) becomes invalid
        """
        if color is None or depth_raw is None:
            raise InvalidInputError("Color and depth images are required")
        color = np.asarray(color)
        if color.ndim == 3:
            if color.dtype in (np.uint8, np.uint16):
                # keeps the integer dtype so create() rescales by its range
                gray = cv2.cvtColor(color, cv2.COLOR_BGR2GRAY)
            elif np.issubdtype(color.dtype, np.integer):
                scaled = color.astype(np.float32) / float(np.iinfo(color.dtype).max)
                gray = cv2.cvtColor(scaled, cv2.COLOR_BGR2GRAY)
            else:
                gray = cv2.cvtColor(color.astype(np.float32), cv2.COLOR_BGR2GRAY)
        else:
            gray = color

        depth = np.asarray(depth_raw, dtype=np.float64) / float(depth_scale)
        depth[depth > depth_trunc] = 0.0
        return cls.create(gray, depth)

    @property
    def shape(self):
        return self.depth.shape

    def valid_depth_mask(self) -> np.ndarray:
        return self.depth > 0


@dataclass
class PyramidLevel:
    """One resolution stage of an RGB-D pyramid."""
    level: int
    intrinsics: PinholeCameraIntrinsics
    intensity: np.ndarray
    depth: np.ndarray
    intensity_dx: np.ndarray
    intensity_dy: np.ndarray
    depth_dx: np.ndarray
    depth_dy: np.ndarray
    depth_gradient_valid: np.ndarray

    @property
    def height(self) -> int:
        return self.depth.shape[0]

    @property
    def width(self) -> int:
        return self.depth.shape[1]

    @property
    def num_pixels(self) -> int:
        return int(self.depth.size)


def preprocess_depth(depth: np.ndarray, min_depth: float, max_depth: float) -> np.ndarray:
    """Invalidate depth outside [min_depth, max_depth]."""
    out = np.array(depth, dtype=np.float64, copy=True)
    out[(out < min_depth) | (out > max_depth)] = 0.0
    return out


def check_pyramid_size(height: int, width: int, num_levels: int) -> None:
    """Raise InvalidInputError if the coarsest level would be too small."""
    coarsest = num_levels - 1
    if (height >> coarsest) < MIN_LEVEL_SIZE or (width >> coarsest) < MIN_LEVEL_SIZE:
        raise InvalidInputError(
            f"{num_levels} pyramid levels are too many for a {width}x{height} image")


def downsample_intensity(intensity: np.ndarray) -> np.ndarray:
    """3x3 Gaussian blur followed by a 2x2 block mean."""
    blurred = cv2.GaussianBlur(intensity, (3, 3), 0)
    h2, w2 = intensity.shape[0] // 2, intensity.shape[1] // 2
    blocks = blurred[:2 * h2, :2 * w2].reshape(h2, 2, w2, 2)
    return blocks.mean(axis=(1, 3))


def downsample_depth(depth: np.ndarray) -> np.ndarray:
    """2x2 block mean; invalid if any of the four samples is invalid."""
    h2, w2 = depth.shape[0] // 2, depth.shape[1] // 2
    blocks = depth[:2 * h2, :2 * w2].reshape(h2, 2, w2, 2)
    valid = np.all(blocks > 0, axis=(1, 3))
    return np.where(valid, blocks.mean(axis=(1, 3)), 0.0)


def compute_gradients(image: np.ndarray):
    """Sobel derivatives per pixel along u (columns) and v (rows)."""
    dx = cv2.Sobel(image, cv2.CV_64F, 1, 0, ksize=3, scale=SOBEL_SCALE,
                   borderType=cv2.BORDER_REPLICATE)
    dy = cv2.Sobel(image, cv2.CV_64F, 0, 1, ksize=3, scale=SOBEL_SCALE,
                   borderType=cv2.BORDER_REPLICATE)
    return dx, dy


def compute_depth_gradients(depth: np.ndarray):
    """
    Depth derivatives, valid only where the full 3x3 neighborhood has depth.

    Returns:
        (depth_dx, depth_dy, valid_mask); gradients are 0 where invalid
    """
    valid = (depth > 0).astype(np.uint8)
    valid = cv2.erode(valid, np.ones((3, 3), np.uint8),
                      borderType=cv2.BORDER_CONSTANT, borderValue=0).astype(bool)
    dx, dy = compute_gradients(depth)
    dx[~valid] = 0.0
    dy[~valid] = 0.0
    return dx, dy, valid


def make_level(level: int, intrinsics: PinholeCameraIntrinsics,
               intensity: np.ndarray, depth: np.ndarray) -> PyramidLevel:
    idx, idy = compute_gradients(intensity)
    ddx, ddy, dvalid = compute_depth_gradients(depth)
    return PyramidLevel(
        level=level,
        intrinsics=intrinsics,
        intensity=intensity,
        depth=depth,
        intensity_dx=idx,
        intensity_dy=idy,
        depth_dx=ddx,
        depth_dy=ddy,
        depth_gradient_valid=dvalid,
    )


def build_pyramid(frame: RGBDFrame, intrinsics: PinholeCameraIntrinsics,
                  num_levels: int, verbose: bool = False) -> List[PyramidLevel]:
    """
    Build an RGB-D pyramid.

    Args:
        frame: Full-resolution frame (shape must match intrinsics)
        intrinsics: Full-resolution intrinsics
        num_levels: Number of levels including full resolution

    Returns:
        List of PyramidLevel, index 0 = full resolution
    """
    if frame.shape != intrinsics.shape:
        raise InvalidInputError(
            f"Frame shape {frame.shape} does not match intrinsics "
            f"{intrinsics.width}x{intrinsics.height}")
    check_pyramid_size(frame.shape[0], frame.shape[1], num_levels)

    levels = []
    intensity = frame.intensity
    depth = frame.depth
    for level in range(num_levels):
        if level > 0:
            intensity = downsample_intensity(intensity)
            depth = downsample_depth(depth)
        lvl = make_level(level, intrinsics.scaled(level), intensity, depth)
        levels.append(lvl)
        if verbose:
            valid = 100.0 * np.count_nonzero(depth) / depth.size
            print(f"[PYRAMID] level {level}: {lvl.width}x{lvl.height} "
                  f"valid depth {valid:.1f}%")
    return levels
