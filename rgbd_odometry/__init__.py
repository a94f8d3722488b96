"""
RGB-D Odometry Package

Dense frame-to-frame RGB-D odometry: coarse-to-fine Gauss-Newton /
Levenberg-Marquardt alignment over photometric and geometric residuals,
returning (success, 4x4 transformation, 6x6 information matrix).

Version: 1.0.0

Submodules:
- config: YAML loading, default constants, OdometryOption
- exceptions: InvalidInputError, InsufficientCorrespondenceError, SingularSystemError
- math_utils: SE(3) exp/log, composition, rigid-transform checks
- camera: Pinhole intrinsics, per-level scaling, (back)projection
- image_pyramid: RGBDFrame, depth preprocessing, pyramid builder
- sampling: Bilinear sampling with validity masks
- correspondence: Per-pixel correspondence evaluator
- jacobians: Intensity / depth / hybrid residual terms
- normal_equations: Robust accumulation, partitioned builder, Cholesky solve
- level_optimizer: Per-level GN/LM state machine
- odometry: Driver (estimate_odometry, compute_rgbd_odometry)
- numerical_checks: NaN/inf tripwires, information matrix checks
- data_loaders: Image pair and association file loading

Usage:
    # Import specific modules (lazy loading)
    from rgbd_odometry import odometry
    from rgbd_odometry import config

    # Or import specific functions
    from rgbd_odometry.config import load_config, OdometryOption
    from rgbd_odometry.camera import PinholeCameraIntrinsics
    from rgbd_odometry.image_pyramid import RGBDFrame
    from rgbd_odometry.odometry import compute_rgbd_odometry, estimate_odometry
    from rgbd_odometry.data_loaders import load_rgbd_frame, load_associations
"""

__version__ = "1.0.0"

# Lazy module imports - access as rgbd_odometry.config, rgbd_odometry.odometry, etc.
# This avoids importing OpenCV / pandas until a submodule needs them
import importlib

# Available submodules
_SUBMODULES = {
    "config", "exceptions", "math_utils", "camera", "image_pyramid",
    "sampling", "correspondence", "jacobians", "normal_equations",
    "level_optimizer", "odometry", "numerical_checks", "data_loaders",
}


def __getattr__(name):
    """Lazy module loading to avoid importing all dependencies at once."""
    if name in _SUBMODULES:
        module = importlib.import_module(f".{name}", __name__)
        globals()[name] = module  # Cache in globals to avoid repeated import
        return module
    raise AttributeError(f"module 'rgbd_odometry' has no attribute '{name}'")


def __dir__():
    """List available submodules."""
    return list(_SUBMODULES)


__all__ = list(_SUBMODULES)
