#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
RGB-D Odometry Entry Point (run_odometry.py)

Runs dense RGB-D odometry on one frame pair or on a whole TUM-style
sequence using the rgbd_odometry/ package.

Configuration Model:
--------------------
    YAML config is the single source of truth for solver settings
    (odometry section), camera intrinsics (camera section) and raw depth
    conversion (input section).
    CLI provides only paths and runtime flags.

Modes:
------
    Pair mode:
        --source-color --source-depth --target-color --target-depth
        Prints success, the 4x4 transform (target -> source) and the
        information matrix; optionally saves them to --output (.npz).

    Sequence mode:
        --associations assoc.txt
        Frame-to-frame odometry between consecutive frames (every pair is
        solved independently with identity initialization; poses are
        chained only for the report). Writes a CSV to --output with
        timestamp, success, the flattened 4x4 transform and trace(info).

Exit codes:
    0 = success, 1 = odometry failed (pair mode), 2 = invalid input

Usage:
    python run_odometry.py --config configs/odometry_default.yaml \\
        --source-color s.png --source-depth s_depth.png \\
        --target-color t.png --target-depth t_depth.png

    python run_odometry.py --config configs/odometry_default.yaml \\
        --associations rgbd_dataset/assoc.txt --output odometry.csv

Author: RGB-D odometry project
Version: 1.0.0
"""

import argparse
import sys
import os
from dataclasses import replace

import numpy as np
import pandas as pd

# Add workspace to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from rgbd_odometry import __version__
from rgbd_odometry.config import load_config
from rgbd_odometry.data_loaders import load_associations, load_rgbd_frame
from rgbd_odometry.exceptions import InvalidInputError
from rgbd_odometry.odometry import estimate_odometry

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_INVALID_INPUT = 2


def parse_args(argv=None):
    """
    Parse command line arguments.

    Exactly one mode must be given: the four pair paths, or --associations.
    """
    parser = argparse.ArgumentParser(
        description=f"RGB-D Odometry - Entry Point (v{__version__})",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Solver Settings (in YAML):
  odometry.iterations_per_level, odometry.residual_formulation,
  odometry.max_depth_difference, odometry.robust_loss, ...
  camera.width/height/fx/fy/cx/cy, input.depth_scale/depth_trunc

Examples:
  # One pair:
  python run_odometry.py --source-color s.png --source-depth sd.png \\
      --target-color t.png --target-depth td.png

  # Sequence:
  python run_odometry.py --associations assoc.txt --output odometry.csv
        """
    )

    parser.add_argument("--config", type=str,
                        default="configs/odometry_default.yaml",
                        help="Path to YAML config file (single source of truth)")

    # Pair mode
    parser.add_argument("--source-color", type=str, default=None,
                        help="Source frame color image")
    parser.add_argument("--source-depth", type=str, default=None,
                        help="Source frame raw depth image")
    parser.add_argument("--target-color", type=str, default=None,
                        help="Target frame color image")
    parser.add_argument("--target-depth", type=str, default=None,
                        help="Target frame raw depth image")

    # Sequence mode
    parser.add_argument("--associations", type=str, default=None,
                        help="TUM-style association file (t_rgb rgb t_depth depth)")

    parser.add_argument("--output", type=str, default=None,
                        help="Output file (.npz in pair mode, .csv in sequence mode)")
    parser.add_argument("--verbose", action="store_true",
                        help="Print per-level solver trace")

    return parser.parse_args(argv)


def _load_setup(args):
    config = load_config(args.config)
    option = config['ODOMETRY_OPTION']
    if args.verbose and not option.verbose:
        option = replace(option, verbose=True)
    intrinsics = config['CAMERA_INTRINSICS']
    if intrinsics is None:
        raise InvalidInputError(f"No camera section in {args.config}")
    return config, option, intrinsics


def run_pair(args) -> int:
    config, option, intrinsics = _load_setup(args)
    source = load_rgbd_frame(args.source_color, args.source_depth,
                             config['DEPTH_SCALE'], config['DEPTH_TRUNC'])
    target = load_rgbd_frame(args.target_color, args.target_depth,
                             config['DEPTH_SCALE'], config['DEPTH_TRUNC'])

    result = estimate_odometry(source, target, intrinsics, option=option)

    np.set_printoptions(precision=6, suppress=True)
    print(f"success: {result.success} ({result.reason})")
    print(f"transformation (target -> source):\n{result.transformation}")
    print(f"information:\n{result.information}")

    if args.output:
        out_dir = os.path.dirname(os.path.abspath(args.output))
        os.makedirs(out_dir, exist_ok=True)
        np.savez(args.output, success=result.success,
                 transformation=result.transformation,
                 information=result.information)
        print(f"Saved: {args.output}")

    return EXIT_SUCCESS if result.success else EXIT_FAILURE


def run_sequence(args) -> int:
    config, option, intrinsics = _load_setup(args)
    pairs = load_associations(args.associations)
    if len(pairs) < 2:
        raise InvalidInputError(f"Need at least two frames in {args.associations}")

    rows = []
    trajectory = np.eye(4)
    n_ok = 0
    previous = load_rgbd_frame(pairs[0].color_path, pairs[0].depth_path,
                               config['DEPTH_SCALE'], config['DEPTH_TRUNC'])
    for i in range(1, len(pairs)):
        current = load_rgbd_frame(pairs[i].color_path, pairs[i].depth_path,
                                  config['DEPTH_SCALE'], config['DEPTH_TRUNC'])
        # source = previous frame, so T maps the current camera into the previous one
        result = estimate_odometry(previous, current, intrinsics, option=option)
        if result.success:
            n_ok += 1
            trajectory = trajectory @ result.transformation

        row = {"timestamp": pairs[i].t, "success": bool(result.success)}
        for r in range(4):
            for c in range(4):
                row[f"T{r}{c}"] = float(result.transformation[r, c])
        row["info_trace"] = float(np.trace(result.information))
        for k, name in enumerate(("x", "y", "z")):
            row[f"traj_{name}"] = float(trajectory[k, 3])
        rows.append(row)

        print(f"[SEQ] {i}/{len(pairs) - 1} t={pairs[i].t:.6f} "
              f"{'OK' if result.success else 'FAIL'} ({result.reason})")
        previous = current

    df = pd.DataFrame(rows)
    if args.output:
        out_dir = os.path.dirname(os.path.abspath(args.output))
        os.makedirs(out_dir, exist_ok=True)
        df.to_csv(args.output, index=False)
        print(f"Saved: {args.output}")

    print(f"[SEQ] {n_ok}/{len(rows)} pairs succeeded")
    return EXIT_SUCCESS


def main(argv=None) -> int:
    """Main entry point - load YAML config and run odometry."""
    args = parse_args(argv)

    pair_paths = [args.source_color, args.source_depth, args.target_color, args.target_depth]
    pair_mode = any(p is not None for p in pair_paths)
    if pair_mode == (args.associations is not None):
        print("❌ Give either the four pair paths or --associations")
        return EXIT_INVALID_INPUT
    if pair_mode and not all(p is not None for p in pair_paths):
        print("❌ Pair mode needs --source-color, --source-depth, --target-color, --target-depth")
        return EXIT_INVALID_INPUT

    print("=" * 70)
    print(f"RGB-D Odometry (v{__version__})")
    print(f"Config: {args.config}")
    print("=" * 70)

    try:
        if pair_mode:
            return run_pair(args)
        return run_sequence(args)
    except (FileNotFoundError, InvalidInputError) as e:
        print(f"❌ Invalid input: {e}")
        return EXIT_INVALID_INPUT


if __name__ == "__main__":
    sys.exit(main())
