#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
RGB-D Data Loaders Module

Loading utilities for color/depth image pairs and TUM-style association
files (one line per frame: "t_rgb rgb_path t_depth depth_path").
"""

import os
from dataclasses import dataclass
from typing import List

import cv2
import numpy as np
import pandas as pd

from .config import DEPTH_SCALE, DEPTH_TRUNC
from .exceptions import InvalidInputError
from .image_pyramid import RGBDFrame


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class FramePair:
    """One associated color/depth frame of a sequence."""
    t_color: float  # timestamp (seconds)
    color_path: str
    t_depth: float
    depth_path: str

    @property
    def t(self) -> float:
        """Frame timestamp (color clock)."""
        return self.t_color


# =============================================================================
# Loaders
# =============================================================================

def load_rgbd_frame(color_path: str, depth_path: str,
                    depth_scale: float = DEPTH_SCALE,
                    depth_trunc: float = DEPTH_TRUNC) -> RGBDFrame:
    """
    Read a color image and a raw depth image into an RGBDFrame.

    Args:
        color_path: 8-bit color or gray image (any format OpenCV reads)
        depth_path: 16-bit raw depth image (read unchanged)
        depth_scale: Raw depth units per meter (TUM: 5000, RealSense: 1000)
        depth_trunc: Depth beyond this distance (meters) becomes invalid

    Raises:
        FileNotFoundError: If an image is missing or unreadable
        InvalidInputError: If the images do not form a valid frame
    """
    for path in (color_path, depth_path):
        if not os.path.exists(path):
            raise FileNotFoundError(f"Image not found: {path}")

    color = cv2.imread(color_path, cv2.IMREAD_COLOR)
    if color is None:
        raise FileNotFoundError(f"OpenCV could not read color image: {color_path}")
    depth_raw = cv2.imread(depth_path, cv2.IMREAD_UNCHANGED)
    if depth_raw is None:
        raise FileNotFoundError(f"OpenCV could not read depth image: {depth_path}")
    if depth_raw.ndim != 2:
        raise InvalidInputError(
            f"Depth image must be single-channel, got shape {depth_raw.shape}: {depth_path}")

    return RGBDFrame.from_color_and_depth(color, depth_raw.astype(np.float64),
                                          depth_scale=depth_scale, depth_trunc=depth_trunc)


def load_associations(path: str) -> List[FramePair]:
    """
    Load a TUM RGB-D association file.

    Lines starting with '#' are comments. Relative image paths are resolved
    against the directory of the association file.

    Returns:
        FramePair list in file order

    Raises:
        FileNotFoundError: If the association file does not exist
        InvalidInputError: If a line does not have four columns
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Association file not found: {path}")

    df = pd.read_csv(path, sep=r"\s+", comment="#", header=None, engine="python")
    if df.empty:
        print(f"[Assoc] No frames in {path}")
        return []
    if df.shape[1] != 4:
        raise InvalidInputError(
            f"Association file must have 4 columns (t_rgb rgb t_depth depth), "
            f"got {df.shape[1]}: {path}")

    base_dir = os.path.dirname(os.path.abspath(path))
    pairs = []
    for row in df.itertuples(index=False):
        t_color, color_rel, t_depth, depth_rel = row
        pairs.append(FramePair(
            t_color=float(t_color),
            color_path=os.path.join(base_dir, str(color_rel).strip()),
            t_depth=float(t_depth),
            depth_path=os.path.join(base_dir, str(depth_rel).strip()),
        ))

    print(f"[Assoc] Loaded {len(pairs)} frame pairs from {os.path.basename(path)}")
    return pairs
